"""Pydantic models describing workflow definitions."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

COMPLETED = "completed"
FAILED = "failed"

# Final state names whose outcome is implied when not declared.
_IMPLIED_OUTCOMES = {
    "completed": COMPLETED,
    "workflow-completed": COMPLETED,
    "failed": FAILED,
    "workflow-failed": FAILED,
}


class StateSpec(BaseModel):
    """One node of a workflow graph.

    A state is either ``dispatch`` (bound to a worker type, with outgoing
    transitions) or ``terminal`` (``final``). Input may use ``kind`` or
    ``final``; ``agent`` is accepted as an alias of ``worker``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    worker: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("worker", "agent")
    )
    final: bool = False
    transitions: Dict[str, str] = Field(default_factory=dict)
    outcome: Optional[Literal["completed", "failed"]] = None

    @model_validator(mode="before")
    @classmethod
    def _from_kind(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" in data:
            data = dict(data)
            kind = data.pop("kind")
            if kind not in ("terminal", "dispatch"):
                raise ValueError(f"unknown state kind {kind!r}")
            data.setdefault("final", kind == "terminal")
        return data

    @property
    def kind(self) -> str:
        return "terminal" if self.final else "dispatch"


class WorkflowDefinition(BaseModel):
    """Immutable state graph registered under a workflow type."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str = ""
    name: str = ""
    description: str = ""
    initial_state: str = Field(alias="initialState")
    states: Dict[str, StateSpec]

    def state(self, name: str) -> StateSpec:
        return self.states[name]

    def outcome_of(self, name: str) -> Optional[str]:
        """``completed``/``failed`` for final states, ``None`` otherwise."""
        spec = self.states.get(name)
        if spec is None or not spec.final:
            return None
        return spec.outcome or _IMPLIED_OUTCOMES.get(name)

    def _final_with(self, outcome: str) -> Optional[str]:
        for name in self.states:
            if self.outcome_of(name) == outcome:
                return name
        return None

    @property
    def completed_state(self) -> Optional[str]:
        return self._final_with(COMPLETED)

    @property
    def failed_state(self) -> Optional[str]:
        return self._final_with(FAILED)

    def next_state(self, current: str, label: str) -> Optional[str]:
        spec = self.states.get(current)
        if spec is None:
            return None
        return spec.transitions.get(label)

    def summary(self) -> Dict[str, str]:
        return {"type": self.type, "name": self.name, "description": self.description}
