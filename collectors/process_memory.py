"""Process memory collector driving one collection cycle at a time"""
import asyncio
import threading
import time
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
from config import Config
from exceptions import EnumerationError, ParseError, TransientReadError
from metrics.models import ProcessIdentity
from metrics.registry import ProcessRegistry
from logging_config import get_logger, log_metrics_collection
from .parser import StatusParser, parse_start_time
from .procfs import ProcfsReader, UserNameCache


logger = get_logger(__name__)


class CollectorState(Enum):
    IDLE = "idle"
    COLLECTING = "collecting"


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one collection cycle"""
    started_at: float
    finished_at: float
    success: bool
    sampled: int = 0
    skipped: int = 0
    removed: Tuple[int, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class CollectionStatus:
    """Collector health as seen by the HTTP layer and the renderer"""
    state: CollectorState
    cycles_total: int
    failures_total: int
    consecutive_failures: int
    last_attempt_at: Optional[float]
    last_success_at: Optional[float]
    last_error: Optional[str]
    tracked_processes: int
    stale: bool
    healthy: bool


class ProcessMemoryCollector:
    """Collects per-process memory samples into a ProcessRegistry.

    Only one cycle runs at a time; a trigger arriving while a cycle is in
    flight returns immediately and the caller uses the current snapshot.
    """

    def __init__(self, config: Config, registry: ProcessRegistry,
                 reader: Optional[ProcfsReader] = None,
                 parser: Optional[StatusParser] = None,
                 users: Optional[UserNameCache] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.registry = registry
        self.reader = reader or ProcfsReader(config.proc_root, read_attempts=config.read_attempts)
        self.parser = parser or StatusParser()
        self.users = users or UserNameCache()
        self._clock = clock

        self._state = CollectorState.IDLE
        self._cycle_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._read_executor = ThreadPoolExecutor(max_workers=config.read_workers, thread_name_prefix="procfs_reader")
        self._cycle_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collection_cycle")
        # pid -> read not yet returned, possibly from an earlier cycle
        self._inflight: Dict[int, Future] = {}
        self._read_started: Dict[int, float] = {}

        self.cycles_total = 0
        self.failures_total = 0
        self.consecutive_failures = 0
        self.last_attempt_at: Optional[float] = None
        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def state(self) -> CollectorState:
        return self._state

    def is_stale(self, now: Optional[float] = None) -> bool:
        """True when no cycle succeeded yet or the last success is too old"""
        with self._status_lock:
            last_success = self.last_success_at
        if last_success is None:
            return True
        now = self._clock() if now is None else now
        return now - last_success >= self.config.max_snapshot_age

    def is_healthy(self) -> bool:
        with self._status_lock:
            return self.last_success_at is not None and self.consecutive_failures < self.config.failure_threshold

    def status(self, now: Optional[float] = None) -> CollectionStatus:
        stale = self.is_stale(now)
        healthy = self.is_healthy()
        with self._status_lock:
            return CollectionStatus(
                state=self._state,
                cycles_total=self.cycles_total,
                failures_total=self.failures_total,
                consecutive_failures=self.consecutive_failures,
                last_attempt_at=self.last_attempt_at,
                last_success_at=self.last_success_at,
                last_error=self.last_error,
                tracked_processes=len(self.registry),
                stale=stale,
                healthy=healthy,
            )

    def refresh(self) -> Optional[CycleResult]:
        """Run one collection cycle; None if one is already running or shutting down"""
        if self._shutdown.is_set():
            return None
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Collection already in progress", event_type="collection_skipped")
            return None
        try:
            self._state = CollectorState.COLLECTING
            return self._run_cycle()
        finally:
            self._state = CollectorState.IDLE
            self._cycle_lock.release()

    async def refresh_async(self) -> Optional[CycleResult]:
        """Run ``refresh`` on the cycle thread"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._cycle_executor, self.refresh)

    async def ensure_fresh(self) -> Optional[CycleResult]:
        """Refresh if the snapshot is stale, waiting at most scrape_collect_timeout"""
        if not self.is_stale():
            return None
        try:
            return await asyncio.wait_for(self.refresh_async(), timeout=self.config.scrape_collect_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Scrape-triggered collection timed out, serving stale snapshot",
                timeout_seconds=self.config.scrape_collect_timeout,
                event_type="collection_timeout"
            )
            return None

    def close(self):
        """Abandon any in-flight cycle and release the worker threads"""
        self._shutdown.set()
        self._read_executor.shutdown(wait=False, cancel_futures=True)
        self._cycle_executor.shutdown(wait=False, cancel_futures=True)

    def _timed_read(self, pid: int):
        self._read_started[pid] = time.monotonic()
        return self.reader.read_process(pid)

    def _is_overdue(self, pid: int, now: float) -> bool:
        started = self._read_started.get(pid)
        return started is not None and now - started >= self.config.read_timeout

    def _stuck_readers(self, now: float) -> int:
        return sum(1 for pid, future in self._inflight.items() if not future.done() and self._is_overdue(pid, now))

    def _forget_read(self, pid: int):
        self._inflight.pop(pid, None)
        self._read_started.pop(pid, None)

    def _abandon(self, started_at: float, futures) -> CycleResult:
        for future in futures:
            future.cancel()
        logger.info("Collection abandoned on shutdown", event_type="collection_abandoned")
        return CycleResult(started_at, self._clock(), success=False, error="shutdown")

    def _run_cycle(self) -> CycleResult:
        started_at = self._clock()
        with self._status_lock:
            self.cycles_total += 1
            self.last_attempt_at = started_at

        try:
            pids = list(self.reader.list_processes())
        except EnumerationError as e:
            return self._record_failure(started_at, e)

        if self._shutdown.is_set():
            return CycleResult(started_at, self._clock(), success=False, error="shutdown")

        # reads hung in earlier cycles that have since returned
        for pid in [pid for pid, future in self._inflight.items() if future.done()]:
            self._forget_read(pid)

        pending: Dict[Future, int] = {}
        observed = set()
        skipped = 0

        for pid in pids:
            if pid in self._inflight:
                logger.debug("Previous metadata read still running", pid=pid, event_type="read_skip")
                skipped += 1
                continue
            try:
                future = self._read_executor.submit(self._timed_read, pid)
            except RuntimeError:
                # executor shut down by close()
                return self._abandon(started_at, pending)
            pending[future] = pid
            self._inflight[pid] = future

        waiting = set(pending)
        poll_interval = self.config.read_timeout / 4
        while waiting:
            if self._shutdown.is_set():
                return self._abandon(started_at, waiting)

            done, waiting = wait(waiting, timeout=poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                pid = pending[future]
                self._forget_read(pid)
                if self._sample(pid, future, started_at):
                    observed.add(pid)
                else:
                    skipped += 1

            now = time.monotonic()
            for future in [f for f in waiting if self._is_overdue(pending[f], now)]:
                waiting.discard(future)
                logger.warning("Process metadata read timed out", pid=pending[future], timeout_seconds=self.config.read_timeout, event_type="read_timeout")
                skipped += 1

            if waiting and self._stuck_readers(now) >= self.config.read_workers:
                # every reader thread is blocked; queued reads cannot start
                for future in waiting:
                    if future.cancel():
                        self._forget_read(pending[future])
                logger.warning(
                    "All metadata readers are blocked, skipping remaining processes",
                    remaining=len(waiting),
                    read_workers=self.config.read_workers,
                    event_type="read_timeout"
                )
                skipped += len(waiting)
                break

        removed = self.registry.reconcile(observed)
        finished_at = self._clock()

        with self._status_lock:
            self.consecutive_failures = 0
            self.last_success_at = started_at
            self.last_error = None

        log_metrics_collection(logger, len(observed), finished_at - started_at, errors=skipped)
        return CycleResult(
            started_at=started_at,
            finished_at=finished_at,
            success=True,
            sampled=len(observed),
            skipped=skipped,
            removed=tuple(removed),
        )

    def _sample(self, pid: int, future: Future, sampled_at: float) -> bool:
        """Parse a finished read into the registry; False when the pid is skipped"""
        try:
            raw = future.result()
        except CancelledError:
            return False
        except TransientReadError as e:
            logger.debug("Process metadata unreadable", pid=pid, reason=e.reason, event_type="read_skip")
            return False
        except Exception as e:
            logger.warning("Unexpected error reading process metadata", pid=pid, error=str(e), error_type=type(e).__name__, event_type="read_error")
            return False

        if raw is None:
            # exited between listing and reading
            return False

        try:
            parsed = self.parser.parse(pid, raw.status, sampled_at=sampled_at)
        except ParseError as e:
            logger.info("Process metadata unparseable", pid=pid, reason=e.reason, event_type="parse_error")
            return False

        if parsed.malformed_fields:
            logger.info("Malformed memory fields defaulted to zero", pid=pid, fields=list(parsed.malformed_fields), event_type="parse_error")

        identity = ProcessIdentity(pid=pid, command=parsed.command, start_time=parse_start_time(raw.stat))
        self.registry.update(pid, identity, parsed.sample, user=self.users.lookup(parsed.euid), now=sampled_at)
        return True

    def _record_failure(self, started_at: float, error: EnumerationError) -> CycleResult:
        with self._status_lock:
            self.failures_total += 1
            self.consecutive_failures += 1
            self.last_error = str(error)
            consecutive = self.consecutive_failures

        logger.error("Process enumeration failed, keeping previous snapshot", error=str(error), consecutive_failures=consecutive, event_type="enumeration_error")
        if consecutive == self.config.failure_threshold:
            logger.error(
                "Process enumeration keeps failing, reporting unhealthy",
                consecutive_failures=consecutive,
                failure_threshold=self.config.failure_threshold,
                event_type="collector_unhealthy"
            )
        return CycleResult(started_at, self._clock(), success=False, error=str(error))
