"""Registry of tracked processes and their latest memory samples"""
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple
from .models import MemorySample, ProcessIdentity, RegistryEntry
from logging_config import get_logger


logger = get_logger(__name__)


class ProcessRegistry:
    """Mapping from pid to its latest RegistryEntry.

    Entries are immutable and replaced as a whole under the registry lock, so a
    snapshot never contains a half-updated entry. The collector is the only
    writer; readers work on snapshots.
    """

    def __init__(self, grace_cycles: int = 2):
        if grace_cycles < 0:
            raise ValueError("grace_cycles must be >= 0")
        self.grace_cycles = grace_cycles
        self._entries: Dict[int, RegistryEntry] = {}
        self._lock = threading.Lock()

    def update(self, pid: int, identity: ProcessIdentity, sample: MemorySample,
               user: str = "unknown", now: Optional[float] = None) -> RegistryEntry:
        """Insert or refresh the entry for ``pid``"""
        if identity.pid != pid:
            raise ValueError(f"identity pid {identity.pid} does not match {pid}")
        seen_at = sample.sampled_at if now is None else now

        with self._lock:
            existing = self._entries.get(pid)
            if existing is not None and existing.identity.is_same_instance(identity):
                entry = replace(
                    existing,
                    sample=sample,
                    user=user,
                    last_seen_at=seen_at,
                    missed_cycles=0,
                )
            else:
                if existing is not None:
                    logger.debug(
                        "Pid reused by a new process",
                        pid=pid,
                        previous_command=existing.identity.command,
                        command=identity.command,
                        event_type="pid_reuse"
                    )
                entry = RegistryEntry(
                    identity=identity,
                    sample=sample,
                    user=user,
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                )
            self._entries[pid] = entry
        return entry

    def reconcile(self, observed_pids: Iterable[int]) -> List[int]:
        """Age out entries missing from ``observed_pids``; return removed pids"""
        observed = set(observed_pids)
        removed = []

        with self._lock:
            for pid, entry in list(self._entries.items()):
                if pid in observed:
                    continue
                missed = entry.missed_cycles + 1
                if missed > self.grace_cycles:
                    del self._entries[pid]
                    removed.append(pid)
                else:
                    self._entries[pid] = replace(entry, missed_cycles=missed)

        if removed:
            logger.debug("Removed exited processes", pids=removed, event_type="registry_purge")
        return removed

    def snapshot(self) -> Tuple[RegistryEntry, ...]:
        """Point-in-time copy of all entries ordered by pid"""
        with self._lock:
            entries = list(self._entries.values())
        return tuple(sorted(entries, key=lambda e: e.pid))

    def get(self, pid: int) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.get(pid)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __contains__(self, pid: int) -> bool:
        with self._lock:
            return pid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
