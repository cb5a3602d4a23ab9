"""Process memory data models and metric value representation"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Union
from enum import Enum


class MetricType(Enum):
    """Prometheus metric types"""
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class ProcessIdentity:
    """Identity of one process instance.

    ``start_time`` is the kernel start-time token; two processes sharing a pid
    over time are told apart by it.
    """
    pid: int
    command: str
    start_time: Optional[str] = None

    def is_same_instance(self, other: "ProcessIdentity") -> bool:
        """Check whether ``other`` describes the same process instance"""
        if self.pid != other.pid:
            return False
        if self.start_time is not None and other.start_time is not None:
            return self.start_time == other.start_time
        return self.command == other.command


@dataclass(frozen=True)
class MemorySample:
    """Memory accounting figures of one process at one point in time, in bytes"""
    resident_bytes: int = 0
    virtual_bytes: int = 0
    shared_bytes: int = 0
    swap_bytes: int = 0
    sampled_at: float = 0.0


@dataclass(frozen=True)
class RegistryEntry:
    """Latest known state of a tracked process"""
    identity: ProcessIdentity
    sample: MemorySample
    user: str
    first_seen_at: float
    last_seen_at: float
    missed_cycles: int = 0

    @property
    def pid(self) -> int:
        return self.identity.pid


def escape_label_value(value: str) -> str:
    """Escape a label value for the text exposition format"""
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


def escape_help_text(value: str) -> str:
    """Escape HELP text for the text exposition format"""
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def format_value(value: Union[int, float]) -> str:
    """Format a sample value; integers stay integral"""
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


@dataclass
class MetricValue:
    """Represents a single metric sample"""
    name: str
    value: Union[int, float]
    labels: Dict[str, str] = field(default_factory=dict)
    help_text: str = ""
    metric_type: MetricType = MetricType.GAUGE

    def __post_init__(self):
        # Ensure labels is never None
        if self.labels is None:
            self.labels = {}

    def to_prometheus_line(self) -> str:
        """Convert to Prometheus exposition format"""
        labels_str = ""
        if self.labels:
            label_pairs = [f'{k}="{escape_label_value(v)}"' for k, v in self.labels.items()]
            labels_str = "{" + ",".join(label_pairs) + "}"

        return f"{self.name}{labels_str} {format_value(self.value)}"
