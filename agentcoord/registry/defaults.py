"""Built-in content workflows."""

from __future__ import annotations

from typing import Any, Dict

from .registry import WorkflowRegistry

_BRAND_CHECK_LOOP: Dict[str, Any] = {
    "content-optimization": {
        "worker": "optimisation",
        "transitions": {"success": "brand-consistency-check", "failure": "workflow-failed"},
    },
    "brand-consistency-check": {
        "worker": "brand-consistency",
        "transitions": {"consistent": "workflow-completed", "inconsistent": "content-revision"},
    },
    "content-revision": {
        "worker": "content-creation",
        "transitions": {"success": "brand-consistency-check", "failure": "workflow-failed"},
    },
    "workflow-completed": {"kind": "terminal"},
    "workflow-failed": {"kind": "terminal"},
}

_CONTENT_MANAGEMENT = {
    "worker": "content-management",
    "transitions": {"success": "content-optimization", "failure": "workflow-failed"},
}

DEFAULT_WORKFLOWS: Dict[str, Dict[str, Any]] = {
    "content-creation": {
        "name": "Content Creation Workflow",
        "description": "End-to-end content creation workflow from strategy to publication",
        "initialState": "strategy-planning",
        "states": {
            "strategy-planning": {
                "worker": "content-strategy",
                "transitions": {"success": "content-creation", "failure": "workflow-failed"},
            },
            "content-creation": {
                "worker": "content-creation",
                "transitions": {
                    "success": "content-management",
                    "failure": "workflow-failed",
                    "review": "content-review",
                },
            },
            "content-review": {
                "worker": "content-management",
                "transitions": {
                    "approved": "content-management",
                    "rejected": "content-creation",
                },
            },
            "content-management": _CONTENT_MANAGEMENT,
            **_BRAND_CHECK_LOOP,
        },
    },
    "content-update": {
        "name": "Content Update Workflow",
        "description": "Workflow for updating existing content",
        "initialState": "content-update",
        "states": {
            "content-update": {
                "worker": "content-creation",
                "transitions": {"success": "content-management", "failure": "workflow-failed"},
            },
            "content-management": _CONTENT_MANAGEMENT,
            **_BRAND_CHECK_LOOP,
        },
    },
    "content-optimization": {
        "name": "Content Optimization Workflow",
        "description": "Workflow for optimizing existing content",
        "initialState": "content-optimization",
        "states": dict(_BRAND_CHECK_LOOP),
    },
}


def register_default_workflows(registry: WorkflowRegistry) -> None:
    for wf_type, definition in DEFAULT_WORKFLOWS.items():
        registry.register_workflow(wf_type, definition)
