"""
Prometheus outcome recorder for the canary.

Every component updates named counters and gauges as a side effect of its
work. Recording is fire-and-forget: a bad metric name or a prometheus_client
failure is logged and swallowed so it can never fail a probe.
"""
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

logger = structlog.get_logger()

COUNT_HELP = (
    "how often this test has been started. Used to tell a started test without "
    "errors apart from a test that never started."
)


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricDefinition:
    name: str
    description: str
    metric_type: MetricType
    # Exported name when it differs from the name used in code, kept for existing dashboards.
    exported_name: Optional[str] = None

    @property
    def export_name(self) -> str:
        return self.exported_name or self.name


@dataclass
class _Operation:
    """A count/latency/err triple for one kind of outbound call."""

    name: str
    description: str
    exported_err_name: Optional[str] = None
    definitions: List[MetricDefinition] = field(init=False)

    def __post_init__(self) -> None:
        self.definitions = [
            MetricDefinition(f"{self.name}_count", COUNT_HELP, MetricType.COUNTER),
            MetricDefinition(
                f"{self.name}_latency_ms", f"latency of {self.description} in milliseconds", MetricType.GAUGE
            ),
            MetricDefinition(
                f"{self.name}_err",
                f"total count of {self.description} errors since canary startup",
                MetricType.COUNTER,
                self.exported_err_name,
            ),
        ]


OPERATIONS = (
    _Operation("auth", "auth request"),
    _Operation("device_meta_update", "device manager write"),
    _Operation("device_repo_request", "device repository read", "device_repo_request_update_err"),
    _Operation("device_data_request", "last value query", "device_data_request_update_err"),
    _Operation("permissions_request", "permission search query"),
    _Operation("connector_login", "mqtt connect"),
    _Operation("connector_subscribe", "mqtt subscribe"),
    _Operation("connector_publish", "mqtt publish"),
)

ANOMALIES = (
    MetricDefinition(
        "unexpected_permissions_device_online_state_err",
        "device reported online by permission search while expected offline",
        MetricType.COUNTER,
        "unexpected_device_online_state_err",
    ),
    MetricDefinition(
        "unexpected_permissions_device_offline_state_err",
        "device reported offline by permission search while expected online",
        MetricType.COUNTER,
        "unexpected_device_offline_state_err",
    ),
    MetricDefinition(
        "unexpected_device_repo_metadata_err",
        "device repository did not reflect the renamed device",
        MetricType.COUNTER,
    ),
    MetricDefinition(
        "unexpected_permissions_metadata_err",
        "permission search did not reflect the renamed device",
        MetricType.COUNTER,
    ),
    MetricDefinition(
        "unexpected_device_data_err",
        "last value query did not return the published values",
        MetricType.COUNTER,
    ),
    MetricDefinition(
        "uncategorized_err",
        "unexpected response shapes and other errors without a dedicated metric",
        MetricType.COUNTER,
    ),
)

WORKFLOW_METRICS = (
    MetricDefinition("process_deployment_err", "command process deployment errors", MetricType.COUNTER),
    MetricDefinition("process_start_err", "command process start errors", MetricType.COUNTER),
    MetricDefinition(
        "process_instance_state_err", "command process instance not in state COMPLETED", MetricType.COUNTER
    ),
    MetricDefinition(
        "process_unexpected_command_count_err",
        "command process finished without a command reaching the device",
        MetricType.COUNTER,
    ),
    MetricDefinition("process_instance_duration_ms", "duration of the last command process instance", MetricType.GAUGE),
    MetricDefinition(
        "process_prepared_deployment_err", "command process prepared deployment errors", MetricType.COUNTER
    ),
    MetricDefinition(
        "unexpected_prepared_deployment_selectables_err",
        "canary device or service missing from the command process selectables",
        MetricType.COUNTER,
    ),
    MetricDefinition("event_process_deployment_err", "event process deployment errors", MetricType.COUNTER),
    MetricDefinition(
        "event_process_instance_state_err", "event process instance not in state COMPLETED", MetricType.COUNTER
    ),
    MetricDefinition(
        "event_process_instance_duration_ms", "duration of the last event process instance", MetricType.GAUGE
    ),
    MetricDefinition(
        "event_process_prepared_deployment_err", "event process prepared deployment errors", MetricType.COUNTER
    ),
    MetricDefinition(
        "event_unexpected_prepared_deployment_selectables_err",
        "canary device or service missing from the event process selectables",
        MetricType.COUNTER,
    ),
)


def all_metric_definitions() -> List[MetricDefinition]:
    definitions: List[MetricDefinition] = []
    for operation in OPERATIONS:
        definitions.extend(operation.definitions)
    definitions.extend(ANOMALIES)
    definitions.extend(WORKFLOW_METRICS)
    return definitions


class OutcomeRecorder:
    """
    Named counters and gauges on a private registry.

    Names are given without the prefix, e.g. ``recorder.increment("auth_err")``.
    prometheus_client exposes counters with a ``_total`` suffix.
    """

    def __init__(self, prefix: str = "snowflake_canary", registry: Optional[CollectorRegistry] = None):
        self._prefix = prefix.rstrip("_")
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Union[Counter, Gauge]] = {}
        self._exported: Dict[str, str] = {}
        for metric_def in all_metric_definitions():
            self._register_metric(metric_def)
        logger.debug("Outcome recorder initialized", metrics=len(self._metrics))

    def _register_metric(self, metric_def: MetricDefinition) -> None:
        full_name = f"{self._prefix}_{metric_def.export_name}"
        if metric_def.metric_type == MetricType.COUNTER:
            metric = Counter(full_name, metric_def.description, registry=self.registry)
        else:
            metric = Gauge(full_name, metric_def.description, registry=self.registry)
        self._metrics[metric_def.name] = metric
        self._exported[metric_def.name] = full_name

    def increment(self, name: str) -> None:
        metric = self._metrics.get(name)
        if not isinstance(metric, Counter):
            logger.warning("Unknown counter", metric=name)
            return
        try:
            metric.inc()
        except Exception as e:
            logger.error("Failed to increment counter", metric=name, error=str(e))

    def set(self, name: str, value: float) -> None:
        metric = self._metrics.get(name)
        if not isinstance(metric, Gauge):
            logger.warning("Unknown gauge", metric=name)
            return
        try:
            metric.set(value)
        except Exception as e:
            logger.error("Failed to set gauge", metric=name, error=str(e))

    @contextmanager
    def track(self, operation: str) -> Iterator[None]:
        """
        Count one call of ``operation`` and record its latency.

        Increments ``<operation>_count`` on entry, sets
        ``<operation>_latency_ms`` on exit and increments ``<operation>_err``
        if the body raises. The exception is re-raised.
        """
        self.increment(f"{operation}_count")
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.increment(f"{operation}_err")
            raise
        finally:
            self.set(f"{operation}_latency_ms", round((time.perf_counter() - start) * 1000, 3))

    def value(self, name: str) -> float:
        """Current value of a metric; mainly for tests and diagnostics."""
        metric = self._metrics.get(name)
        if metric is None:
            raise KeyError(name)
        sample_name = self._exported[name]
        if isinstance(metric, Counter):
            sample_name += "_total"
        result = self.registry.get_sample_value(sample_name)
        return result if result is not None else 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


__all__ = ["OutcomeRecorder", "MetricDefinition", "MetricType", "OPERATIONS", "ANOMALIES", "WORKFLOW_METRICS"]
