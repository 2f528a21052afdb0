"""Workflow definitions and the registry that validates them."""

from __future__ import annotations

from .defaults import DEFAULT_WORKFLOWS, register_default_workflows
from .models import COMPLETED, FAILED, StateSpec, WorkflowDefinition
from .registry import WorkflowRegistry, unreachable_states, validate_definition

__all__ = [
    "COMPLETED",
    "FAILED",
    "StateSpec",
    "WorkflowDefinition",
    "WorkflowRegistry",
    "DEFAULT_WORKFLOWS",
    "register_default_workflows",
    "unreachable_states",
    "validate_definition",
]
