"""Example running a small order pipeline with taskwright.

The pipeline validates an order, reserves stock and charges the card in
parallel, then ships it. The payment step fails once with a transient error
to show retry with backoff.
"""

import asyncio
import logging

from taskwright import (
    Coordinator,
    StepFailure,
    StepHandler,
    StepTemplate,
    TaskDispatcher,
    TaskTemplate,
    get_event_sink,
    get_repository,
    register_task,
)


class ValidateOrder(StepHandler):
    async def handle(self, task, step, dependency_results):
        if not task.context.get("items"):
            raise StepFailure.permanent("order has no items")
        return {"order_id": task.context["order_id"], "items": task.context["items"]}


class ReserveStock(StepHandler):
    async def handle(self, task, step, dependency_results):
        order = step.inputs["validate"]
        await asyncio.sleep(0.1)
        return {"reserved": len(order["items"])}


class ChargeCard(StepHandler):
    def __init__(self, config=None):
        super().__init__(config)
        self.calls = 0

    async def handle(self, task, step, dependency_results):
        self.calls += 1
        if self.calls == 1:
            raise StepFailure.retryable("payment gateway timeout", retry_after=0.5)
        return {"charged": self.config.get("amount", 0)}


class ShipOrder(StepHandler):
    async def handle(self, task, step, dependency_results):
        return {
            "shipped": step.inputs["reserve"]["reserved"],
            "charged": step.inputs["charge"]["charged"],
        }


async def main():
    """Register the pipeline, submit one order and drive it to completion."""
    logging.basicConfig(level=logging.INFO)

    register_task(
        TaskTemplate(
            name="order_pipeline",
            namespace="shop",
            version="1.0.0",
            step_templates=[
                StepTemplate(name="validate", handler=ValidateOrder),
                StepTemplate(name="reserve", depends_on_steps=["validate"], handler=ReserveStock),
                StepTemplate(
                    name="charge",
                    depends_on_steps=["validate"],
                    handler=ChargeCard,
                    handler_config={"amount": 42},
                ),
                StepTemplate(name="ship", depends_on_steps=["reserve", "charge"], handler=ShipOrder),
            ],
        )
    )

    repository = get_repository()
    sink = get_event_sink()
    dispatcher = TaskDispatcher(repository, sink=sink)
    task = await dispatcher.submit(
        "order_pipeline", namespace="shop", context={"order_id": 1001, "items": ["book", "pen"]}
    )

    final = await Coordinator(repository=repository, sink=sink).run(task.task_id)
    print(f"Task {final.task_id} finished with status {final.status.value}")
    for step in await repository.get_steps(task.task_id):
        print(f"  {step.name}: {step.status.value} after {step.attempts} attempt(s) -> {step.results}")


if __name__ == "__main__":
    asyncio.run(main())
