"""Pydantic models describing registry entries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from ..analysis import GraphAnalysis
from ..contracts import StepHandler, TaskTemplate


class RegisteredTask(BaseModel):
    """A validated task template together with its resolved handlers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    template: TaskTemplate
    analysis: GraphAnalysis
    handlers: Dict[str, StepHandler] = Field(default_factory=dict)
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple[str, str, str]:
        return self.template.key

    @property
    def topology_index(self) -> Dict[str, int]:
        """Position of each step name in the cached topological order."""
        return {name: i for i, name in enumerate(self.analysis.topology)}

    def dependents_of(self, step_name: str) -> List[str]:
        return [e.to_step for e in self.analysis.edges if e.from_step == step_name]
