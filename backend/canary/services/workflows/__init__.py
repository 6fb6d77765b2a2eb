from canary.services.workflows.client import WorkflowClient
from canary.services.workflows.lifecycle import WorkflowLifecycle
from canary.services.workflows.strategies import (
    COMMAND_WORKFLOW,
    EVENT_WORKFLOW,
    AnchorKind,
    TriggerMode,
    WorkflowStrategy,
)

__all__ = [
    "COMMAND_WORKFLOW",
    "EVENT_WORKFLOW",
    "AnchorKind",
    "TriggerMode",
    "WorkflowClient",
    "WorkflowLifecycle",
    "WorkflowStrategy",
]
