"""In-memory workflow registry with definition validation."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..utils import utcnow
from .models import COMPLETED, FAILED, WorkflowDefinition

logger = logging.getLogger(__name__)


def unreachable_states(definition: WorkflowDefinition) -> List[str]:
    """States that cannot be reached from the initial state."""
    seen = {definition.initial_state}
    queue = deque([definition.initial_state])
    while queue:
        spec = definition.states.get(queue.popleft())
        if spec is None:
            continue
        for target in spec.transitions.values():
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return [name for name in definition.states if name not in seen]


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Check graph invariants.

    Returns a list of warnings. Raises:
        ValidationError: listing every violated invariant.
    """
    problems: List[str] = []
    states = definition.states

    if definition.initial_state not in states:
        problems.append(f"initial state {definition.initial_state!r} is not defined")

    for name, spec in states.items():
        for label, target in spec.transitions.items():
            if target not in states:
                problems.append(
                    f"state {name!r} transition {label!r} targets unknown state {target!r}"
                )
        if spec.final:
            continue
        if not spec.worker:
            problems.append(f"non-final state {name!r} has no worker")
        if not spec.transitions:
            problems.append(f"non-final state {name!r} has no transitions")

    finals = [name for name, spec in states.items() if spec.final]
    if not finals:
        problems.append("no final state defined")
    else:
        for outcome in (COMPLETED, FAILED):
            matching = [n for n in finals if definition.outcome_of(n) == outcome]
            if len(matching) != 1:
                problems.append(
                    f"expected exactly one final state with outcome {outcome!r}, "
                    f"found {len(matching)}"
                )

    if problems:
        raise ValidationError(
            f"Invalid workflow definition {definition.type or definition.name!r}",
            code="INVALID_WORKFLOW_DEFINITION",
            details={"problems": problems},
        )

    warnings = [
        f"state {name!r} is unreachable" for name in unreachable_states(definition)
    ]
    return warnings


class WorkflowRegistry:
    """Holds validated workflow definitions keyed by type.

    Definitions are frozen once registered; registering the same type again
    replaces the entry.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._registered_at: Dict[str, datetime] = {}
        self._clock = clock

    def register_workflow(
        self,
        workflow_type: str,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
    ) -> WorkflowDefinition:
        if not workflow_type:
            raise ValidationError("Workflow type must be a non-empty string")
        if isinstance(definition, WorkflowDefinition):
            definition = definition.model_copy(update={"type": workflow_type})
        else:
            try:
                definition = WorkflowDefinition.model_validate(
                    {**definition, "type": workflow_type}
                )
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Malformed workflow definition {workflow_type!r}",
                    code="INVALID_WORKFLOW_DEFINITION",
                    details={"problems": [err["msg"] for err in e.errors()]},
                ) from e

        for warning in validate_definition(definition):
            logger.warning(f"Workflow {workflow_type}: {warning}")

        if workflow_type in self._definitions:
            logger.info(f"Replacing workflow definition {workflow_type}")
        self._definitions[workflow_type] = definition
        self._registered_at[workflow_type] = self._clock()
        logger.debug(f"Registered workflow {workflow_type}")
        return definition

    def unregister_workflow(self, workflow_type: str) -> bool:
        self._registered_at.pop(workflow_type, None)
        return self._definitions.pop(workflow_type, None) is not None

    def get_workflow(self, workflow_type: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(workflow_type)

    def registered_at(self, workflow_type: str) -> Optional[datetime]:
        return self._registered_at.get(workflow_type)

    def list_workflows(self) -> List[Dict[str, Any]]:
        return [
            {**definition.summary(), "registeredAt": self._registered_at[wf_type].isoformat()}
            for wf_type, definition in self._definitions.items()
        ]

    def load_workflows_from_yaml(self, path: Union[str, Path]) -> List[str]:
        """Register every definition in a YAML mapping ``type -> definition``."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must contain a mapping of workflow definitions")
        workflows = data.get("workflows", data)
        registered = []
        for wf_type, definition in workflows.items():
            self.register_workflow(wf_type, definition)
            registered.append(wf_type)
        logger.info(f"Loaded {len(registered)} workflow definitions from {path}")
        return registered

    def __contains__(self, workflow_type: object) -> bool:
        return workflow_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
