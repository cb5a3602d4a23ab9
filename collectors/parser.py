"""Parsing of /proc/<pid>/status and /proc/<pid>/stat"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from exceptions import ParseError
from metrics.models import MemorySample


# status field -> MemorySample attribute
MEMORY_FIELDS = {
    "VmRSS": "resident_bytes",
    "VmSize": "virtual_bytes",
    "VmSwap": "swap_bytes",
}

# shared_bytes is the file-backed plus shmem part of the resident set
SHARED_FIELDS = ("RssFile", "RssShmem")

UNIT_MULTIPLIERS = {
    "": 1,
    "b": 1,
    "kb": 1024,
    "kib": 1024,
    "mb": 1024 ** 2,
    "mib": 1024 ** 2,
    "gb": 1024 ** 3,
    "gib": 1024 ** 3,
}

# starttime is field 22 of stat; index 19 counting from the field after comm
_STAT_STARTTIME_INDEX = 19


@dataclass(frozen=True)
class ParsedStatus:
    """Structured view of one status blob"""
    pid: int
    command: str
    euid: Optional[int]
    sample: MemorySample
    missing_fields: Tuple[str, ...] = ()
    malformed_fields: Tuple[str, ...] = ()


class StatusParser:
    """Turns raw status bytes into a MemorySample"""

    def parse(self, pid: int, raw: bytes, sampled_at: float) -> ParsedStatus:
        if not raw:
            raise ParseError(pid, "empty status")

        fields = self.parse_key_values(raw.decode("utf-8", errors="replace"))
        if not fields:
            raise ParseError(pid, "no key/value lines")
        if "Name" not in fields:
            raise ParseError(pid, "missing Name field")

        missing = []
        malformed = []
        values = {}

        for key, attr in MEMORY_FIELDS.items():
            values[attr] = self._field_bytes(fields, key, missing, malformed)

        shared = 0
        for key in SHARED_FIELDS:
            shared += self._field_bytes(fields, key, missing, malformed)
        values["shared_bytes"] = shared

        return ParsedStatus(
            pid=pid,
            command=fields["Name"],
            euid=self._effective_uid(fields.get("Uid")),
            sample=MemorySample(sampled_at=sampled_at, **values),
            missing_fields=tuple(missing),
            malformed_fields=tuple(malformed),
        )

    @staticmethod
    def parse_key_values(text: str) -> Dict[str, str]:
        """Parse ``Key:<tab>value`` lines"""
        data = {}
        for line in text.splitlines():
            if ':' in line:
                key, value = line.split(':', 1)
                key = key.strip()
                if key:
                    data[key] = value.strip()
        return data

    @staticmethod
    def to_bytes(value: str) -> int:
        """Convert ``'1234 kB'`` style values to bytes using integer arithmetic"""
        parts = value.split()
        if not parts or len(parts) > 2:
            raise ValueError(f"unexpected size value {value!r}")
        amount = int(parts[0])
        if amount < 0:
            raise ValueError(f"negative size value {value!r}")
        unit = parts[1].lower() if len(parts) == 2 else ""
        if unit not in UNIT_MULTIPLIERS:
            raise ValueError(f"unknown unit {parts[1]!r}")
        return amount * UNIT_MULTIPLIERS[unit]

    def _field_bytes(self, fields, key, missing, malformed) -> int:
        raw_value = fields.get(key)
        if raw_value is None:
            missing.append(key)
            return 0
        try:
            return self.to_bytes(raw_value)
        except ValueError:
            malformed.append(key)
            return 0

    @staticmethod
    def _effective_uid(value: Optional[str]) -> Optional[int]:
        # Uid: real effective saved filesystem
        if not value:
            return None
        parts = value.split()
        try:
            return int(parts[1] if len(parts) > 1 else parts[0])
        except ValueError:
            return None


def parse_start_time(raw_stat: Optional[bytes]) -> Optional[str]:
    """Extract the start-time token from raw stat bytes.

    comm may contain spaces and parentheses, so fields are counted from the
    last closing parenthesis.
    """
    if not raw_stat:
        return None
    text = raw_stat.decode("utf-8", errors="replace")
    end_comm = text.rfind(")")
    if end_comm < 0:
        return None
    fields = text[end_comm + 1:].split()
    if len(fields) <= _STAT_STARTTIME_INDEX:
        return None
    token = fields[_STAT_STARTTIME_INDEX]
    return token if token.isdigit() else None
