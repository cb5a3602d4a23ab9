"""Prometheus text exposition rendering of registry snapshots"""
import re
from typing import Dict, List, Optional, Sequence, TYPE_CHECKING
from exceptions import RenderError
from .models import MetricType, MetricValue, RegistryEntry, escape_help_text

if TYPE_CHECKING:
    from collectors.process_memory import CollectionStatus


CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# (metric name, MemorySample attribute, help text)
PROCESS_GAUGES = (
    ("node_process_resident_bytes", "resident_bytes", "Resident set size of the process in bytes."),
    ("node_process_virtual_bytes", "virtual_bytes", "Virtual memory size of the process in bytes."),
    ("node_process_shared_bytes", "shared_bytes", "Resident file-backed and shared memory of the process in bytes."),
    ("node_process_swap_bytes", "swap_bytes", "Swapped-out anonymous memory of the process in bytes."),
)

USER_GAUGES = (
    ("node_user_processes", "The number of processes per user."),
    ("node_user_processes_rss", "The RSS on a node per user."),
    ("node_user_processes_swap", "The swap on a node per user."),
)


class PrometheusRenderer:
    """Render registry snapshots in the Prometheus text format.

    Output depends only on the arguments, so rendering the same snapshot
    twice gives byte-identical text.
    """

    def __init__(self, static_labels: Optional[Dict[str, str]] = None, enable_user_metrics: bool = True):
        self.static_labels = dict(static_labels or {})
        self.enable_user_metrics = enable_user_metrics

    @classmethod
    def from_config(cls, config) -> "PrometheusRenderer":
        return cls(config.get_static_labels(), enable_user_metrics=config.enable_user_metrics)

    def render(self, entries: Sequence[RegistryEntry], status: Optional["CollectionStatus"] = None) -> str:
        metrics = self.build_metrics(entries, status)
        return self._generate_prometheus_output(metrics)

    def build_metrics(self, entries: Sequence[RegistryEntry], status: Optional["CollectionStatus"] = None) -> List[MetricValue]:
        """Flatten a snapshot into metric samples, family by family"""
        metrics = []

        for name, attr, help_text in PROCESS_GAUGES:
            for entry in entries:
                metrics.append(MetricValue(
                    name=name,
                    value=self._memory_value(entry, attr),
                    labels=self._process_labels(entry),
                    help_text=help_text,
                ))

        if self.enable_user_metrics:
            metrics.extend(self._user_metrics(entries))

        if status is not None:
            metrics.extend(self._status_metrics(status))

        return metrics

    def _process_labels(self, entry: RegistryEntry) -> Dict[str, str]:
        labels = {
            "pid": str(entry.identity.pid),
            "command": entry.identity.command,
            "user": entry.user,
        }
        labels.update(self.static_labels)
        return labels

    @staticmethod
    def _memory_value(entry: RegistryEntry, attr: str) -> int:
        value = getattr(entry.sample, attr)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise RenderError(f"pid {entry.pid}: invalid {attr} value {value!r}")
        return value

    def _user_metrics(self, entries: Sequence[RegistryEntry]) -> List[MetricValue]:
        totals: Dict[str, List[int]] = {}
        for entry in entries:
            count_rss_swap = totals.setdefault(entry.user, [0, 0, 0])
            count_rss_swap[0] += 1
            count_rss_swap[1] += self._memory_value(entry, "resident_bytes")
            count_rss_swap[2] += self._memory_value(entry, "swap_bytes")

        metrics = []
        for index, (name, help_text) in enumerate(USER_GAUGES):
            for user in sorted(totals):
                labels = {"username": user}
                labels.update(self.static_labels)
                metrics.append(MetricValue(name=name, value=totals[user][index], labels=labels, help_text=help_text))
        return metrics

    @staticmethod
    def _status_metrics(status: "CollectionStatus") -> List[MetricValue]:
        metrics = [
            MetricValue(
                name="proc_mem_exporter_collections_total",
                value=status.cycles_total,
                help_text="Collection cycles attempted.",
                metric_type=MetricType.COUNTER,
            ),
            MetricValue(
                name="proc_mem_exporter_collection_failures_total",
                value=status.failures_total,
                help_text="Collection cycles that could not list the process table.",
                metric_type=MetricType.COUNTER,
            ),
        ]
        if status.last_success_at is not None:
            metrics.append(MetricValue(
                name="proc_mem_exporter_last_success_timestamp_seconds",
                value=float(status.last_success_at),
                help_text="Unix time of the last successful collection.",
            ))
        metrics.extend([
            MetricValue(
                name="proc_mem_exporter_snapshot_stale",
                value=1 if status.stale else 0,
                help_text="1 when the served snapshot is older than the configured maximum age.",
            ),
            MetricValue(
                name="proc_mem_exporter_tracked_processes",
                value=status.tracked_processes,
                help_text="Processes currently tracked in the registry.",
            ),
        ])
        return metrics

    def _generate_prometheus_output(self, metrics: List[MetricValue]) -> str:
        """Generate Prometheus exposition format output"""
        lines = []

        for metric_name, metric_list in self._group_metrics_by_name(metrics).items():
            if not _METRIC_NAME_RE.match(metric_name):
                raise RenderError(f"invalid metric name {metric_name!r}")

            lines.append(f"# HELP {metric_name} {escape_help_text(metric_list[0].help_text)}")
            lines.append(f"# TYPE {metric_name} {metric_list[0].metric_type.value}")

            for metric in metric_list:
                for label_name in metric.labels:
                    if not _LABEL_NAME_RE.match(label_name) or label_name.startswith("__"):
                        raise RenderError(f"invalid label name {label_name!r} on {metric_name}")
                lines.append(metric.to_prometheus_line())

        if not lines:
            return ""
        return "\n".join(lines) + "\n"

    def _group_metrics_by_name(self, metrics: List[MetricValue]) -> Dict[str, List[MetricValue]]:
        """Group metrics by name, preserving order"""
        grouped = {}
        for metric in metrics:
            if metric.name not in grouped:
                grouped[metric.name] = []
            grouped[metric.name].append(metric)
        return grouped
