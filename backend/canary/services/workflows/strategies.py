import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from string import Template
from typing import Any, Dict, Optional

from canary.schemas.platform import CMD_SERVICE_LOCAL_ID, SENSOR_SERVICE_LOCAL_ID

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


class TriggerMode(str, Enum):
    DIRECT = "direct"
    EVENT_DRIVEN = "event_driven"


class AnchorKind(str, Enum):
    TASK = "task"
    CONDITIONAL_EVENT = "conditional_event"


@dataclass(frozen=True)
class WorkflowMetricNames:
    deployment_err: str
    instance_state_err: str
    instance_duration_ms: str
    prepared_deployment_err: str
    prepared_selectables_err: str
    start_err: Optional[str] = None
    unexpected_command_count_err: Optional[str] = None


@dataclass(frozen=True)
class WorkflowStrategy:
    """Everything that differs between the command and the event workflow leg."""

    trigger_mode: TriggerMode
    reserved_name: str
    anchor_id: str
    anchor_kind: AnchorKind
    service_local_id: str
    deployment_template: str
    bpmn_file: str
    svg_file: str
    metrics: WorkflowMetricNames
    expected_command_payload: Optional[Dict[str, str]] = None

    def load_bpmn(self) -> str:
        return (TEMPLATE_DIR / self.bpmn_file).read_text(encoding="utf-8")

    def load_svg(self) -> str:
        return (TEMPLATE_DIR / self.svg_file).read_text(encoding="utf-8")

    def render_deployment(self, device_id: str, service_id: str) -> Dict[str, Any]:
        """Fill the deployment template with the canary device and service."""
        raw = (TEMPLATE_DIR / self.deployment_template).read_text(encoding="utf-8")
        # Substituted inside JSON strings, so the values are escaped the same way.
        rendered = Template(raw).substitute(
            device_id=json.dumps(device_id)[1:-1],
            service_id=json.dumps(service_id)[1:-1],
        )
        deployment = json.loads(rendered)
        deployment["name"] = self.reserved_name
        deployment["diagram"] = {
            "xml_raw": self.load_bpmn(),
            "xml_deployed": "",
            "svg": self.load_svg(),
        }
        return deployment


COMMAND_WORKFLOW = WorkflowStrategy(
    trigger_mode=TriggerMode.DIRECT,
    reserved_name="snowflake_canary_process",
    anchor_id="Task_0yuqb45",
    anchor_kind=AnchorKind.TASK,
    service_local_id=CMD_SERVICE_LOCAL_ID,
    deployment_template="command_deployment.json",
    bpmn_file="command_process.bpmn",
    svg_file="command_process.svg",
    metrics=WorkflowMetricNames(
        deployment_err="process_deployment_err",
        instance_state_err="process_instance_state_err",
        instance_duration_ms="process_instance_duration_ms",
        prepared_deployment_err="process_prepared_deployment_err",
        prepared_selectables_err="unexpected_prepared_deployment_selectables_err",
        start_err="process_start_err",
        unexpected_command_count_err="process_unexpected_command_count_err",
    ),
    expected_command_payload={
        "data": '<commands><valueCommand value="42"/></commands>',
        "metadata": "on",
    },
)

EVENT_WORKFLOW = WorkflowStrategy(
    trigger_mode=TriggerMode.EVENT_DRIVEN,
    reserved_name="canary_event_process",
    anchor_id="StartEvent_1",
    anchor_kind=AnchorKind.CONDITIONAL_EVENT,
    service_local_id=SENSOR_SERVICE_LOCAL_ID,
    deployment_template="event_deployment.json",
    bpmn_file="event_process.bpmn",
    svg_file="event_process.svg",
    metrics=WorkflowMetricNames(
        deployment_err="event_process_deployment_err",
        instance_state_err="event_process_instance_state_err",
        instance_duration_ms="event_process_instance_duration_ms",
        prepared_deployment_err="event_process_prepared_deployment_err",
        prepared_selectables_err="event_unexpected_prepared_deployment_selectables_err",
    ),
)
