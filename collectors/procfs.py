"""Process table access through the /proc filesystem"""
import errno
import os
import pwd
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, NamedTuple, Optional, Sequence, Union
from exceptions import EnumerationError, TransientReadError
from logging_config import get_logger


logger = get_logger(__name__)

_RETRYABLE_ERRNOS = (errno.EINTR, errno.EAGAIN)


class RawProcessMetadata(NamedTuple):
    """Raw metadata blobs of one process"""
    pid: int
    status: bytes
    stat: Optional[bytes]


class PidListing:
    """Snapshot of the process table taken at listing time.

    Iteration converts directory names to pids lazily and can be repeated.
    """

    def __init__(self, names: Sequence[str]):
        self._names = tuple(sorted((n for n in names if n.isdigit()), key=int))

    def __iter__(self) -> Iterator[int]:
        return (int(name) for name in self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, pid: int) -> bool:
        return str(pid) in self._names


class ProcfsReader:
    """Reads per-process memory accounting metadata from a proc root"""

    def __init__(self, proc_root: Union[str, Path] = "/proc", read_attempts: int = 2):
        self.proc_root = Path(proc_root)
        self.read_attempts = max(1, read_attempts)

    def list_processes(self) -> PidListing:
        """List the pids currently visible under the proc root"""
        try:
            names = os.listdir(self.proc_root)
        except OSError as e:
            raise EnumerationError(f"cannot list {self.proc_root}: {e}", cause=e) from e
        return PidListing(names)

    def read_raw_metadata(self, pid: int) -> Optional[bytes]:
        """Raw ``status`` bytes, or None when the process no longer exists"""
        return self._read(pid, "status")

    def read_start_time_token(self, pid: int) -> Optional[bytes]:
        """Raw ``stat`` bytes, or None when they cannot be read"""
        try:
            return self._read(pid, "stat")
        except TransientReadError as e:
            logger.debug("Start time unavailable", pid=pid, reason=e.reason, event_type="read_skip")
            return None

    def read_process(self, pid: int) -> Optional[RawProcessMetadata]:
        """Read everything needed to sample one process"""
        status = self.read_raw_metadata(pid)
        if status is None:
            return None
        return RawProcessMetadata(pid=pid, status=status, stat=self.read_start_time_token(pid))

    def _read(self, pid: int, name: str) -> Optional[bytes]:
        path = self.proc_root / str(pid) / name
        for attempt in range(1, self.read_attempts + 1):
            try:
                with open(path, "rb") as f:
                    return f.read()
            except (FileNotFoundError, ProcessLookupError):
                return None
            except PermissionError as e:
                raise TransientReadError(pid, f"permission denied reading {name}") from e
            except OSError as e:
                # ESRCH shows up when the process exits mid-read
                if e.errno == errno.ESRCH:
                    return None
                if e.errno in _RETRYABLE_ERRNOS and attempt < self.read_attempts:
                    continue
                raise TransientReadError(pid, f"cannot read {name}: {e}") from e
        return None


class UserNameCache:
    """Resolves uids to login names, caching the answers"""

    def __init__(self, resolver: Optional[Callable[[int], str]] = None):
        self._resolver = resolver or self._resolve_with_pwd
        self._cache: Dict[int, str] = {}
        self._lock = threading.Lock()

    def lookup(self, uid: Optional[int]) -> str:
        if uid is None:
            return "unknown"
        with self._lock:
            name = self._cache.get(uid)
        if name is None:
            name = self._resolver(uid)
            with self._lock:
                self._cache[uid] = name
        return name

    @staticmethod
    def _resolve_with_pwd(uid: int) -> str:
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return str(uid)
