"""Tests for template registration, handler resolution and YAML loading."""

import pytest

from fixtures.handlers import EchoHandler, build_template, double_value
from taskwright.contracts import StepHandler, StepTemplate, TaskTemplate
from taskwright.errors import (
    ConfigurationError,
    GraphValidationError,
    HandlerNotFoundError,
    TaskwrightError,
    TemplateNotFoundError,
)
from taskwright.registry import (
    REGISTRY,
    FunctionStepHandler,
    import_string,
    load_task_template,
    register_task,
    resolve_handler,
)


def test_register_and_lookup(registry):
    template = build_template("etl", [("a", [], EchoHandler), ("b", ["a"], EchoHandler)])
    entry = registry.register(template)

    assert registry.get("etl") is entry
    assert registry.get("etl", "default", "0.1.0") is entry
    assert entry.analysis.topology == ["a", "b"]
    assert entry.topology_index == {"a": 0, "b": 1}
    assert entry.dependents_of("a") == ["b"]
    assert isinstance(registry.handler_for("etl", "default", "0.1.0", "b"), EchoHandler)
    assert ("default", "etl", "0.1.0") in registry
    assert registry.list_templates() == [template]


def test_cyclic_template_is_refused(registry):
    template = build_template("loop", [("a", ["b"], EchoHandler), ("b", ["a"], EchoHandler)])
    with pytest.raises(GraphValidationError):
        registry.register(template)
    assert len(registry) == 0
    with pytest.raises(TemplateNotFoundError):
        registry.get("loop")


def test_missing_handler_fails_at_registration(registry):
    template = TaskTemplate(name="bare", step_templates=[StepTemplate(name="a")])
    with pytest.raises(HandlerNotFoundError):
        registry.register(template)


def test_duplicate_registration_needs_replace(registry):
    template = build_template("etl", [("a", [], EchoHandler)])
    first = registry.register(template)
    with pytest.raises(TaskwrightError, match="already registered"):
        registry.register(template)
    second = registry.register(template, replace=True)
    assert second is not first
    assert registry.get("etl") is second


def test_latest_version_wins_without_explicit_version(registry):
    registry.register(build_template("etl", [("a", [], EchoHandler)], version="1.0.0"))
    newer = registry.register(build_template("etl", [("a", [], EchoHandler)], version="2.0.0"))
    assert registry.get("etl") is newer


def test_namespaces_are_separate(registry):
    registry.register(build_template("etl", [("a", [], EchoHandler)], namespace="sales"))
    with pytest.raises(TemplateNotFoundError):
        registry.get("etl")
    assert registry.get("etl", "sales").template.namespace == "sales"


def test_resolve_handler_forms():
    class Custom(StepHandler):
        async def handle(self, task, step, dependency_results):
            return None

    instance = Custom()
    assert resolve_handler(StepTemplate(name="a", handler=instance)) is instance

    from_class = resolve_handler(StepTemplate(name="a", handler=Custom, handler_config={"k": 1}))
    assert isinstance(from_class, Custom)
    assert from_class.config == {"k": 1}

    from_function = resolve_handler(StepTemplate(name="a", handler=double_value))
    assert isinstance(from_function, FunctionStepHandler)

    from_string = resolve_handler(
        StepTemplate(name="a", handler="fixtures.handlers:double_value")
    )
    assert from_string.func is double_value


def test_resolve_handler_rejects_non_handlers():
    with pytest.raises(HandlerNotFoundError):
        resolve_handler(StepTemplate(name="a", handler=42))
    with pytest.raises(HandlerNotFoundError):
        resolve_handler(StepTemplate(name="a", handler=dict))


def test_import_string_errors():
    assert import_string("fixtures.handlers.double_value") is double_value
    with pytest.raises(HandlerNotFoundError):
        import_string("fixtures.handlers:nope")
    with pytest.raises(HandlerNotFoundError):
        import_string("no_such_module_anywhere:thing")


def test_register_task_uses_global_registry():
    register_task(build_template("global", [("a", [], EchoHandler)]))
    assert REGISTRY.get("global").template.name == "global"


def test_load_task_template_from_yaml(tmp_path):
    path = tmp_path / "order.yaml"
    path.write_text(
        """
name: order
namespace: shop
version: 1.2.0
description: Order processing
step_templates:
  - name: double
    handler: fixtures.handlers:double_value
  - name: increment
    handler: fixtures.handlers:add_one
    depends_on_step: double
    default_retry_limit: 5
  - name: notify
    handler: fixtures.handlers:EchoHandler
    handler_config:
      channel: email
    depends_on_steps: [increment]
    skippable: true
"""
    )
    template = load_task_template(str(path))
    assert template.key == ("shop", "order", "1.2.0")
    assert template.step_names == ["double", "increment", "notify"]
    assert template.step_templates[1].default_retry_limit == 5
    assert template.step_templates[2].skippable

    entry = register_task(template)
    assert isinstance(entry.handlers["notify"], EchoHandler)
    assert entry.handlers["notify"].config == {"channel": "email"}


def test_load_task_template_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_task_template(str(tmp_path / "missing.yaml"))

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n")
    with pytest.raises(ConfigurationError):
        load_task_template(str(bad))

    invalid = tmp_path / "invalid.yaml"
    invalid.write_text("step_templates: []\n")
    with pytest.raises(ConfigurationError):
        load_task_template(str(invalid))
