"""Shared fixtures: a fake /proc tree and a config pointing at it"""
from pathlib import Path
from typing import Optional
import pytest

from config import Config


STATUS_TEMPLATE = """Name:\t{name}
Umask:\t0022
State:\tS (sleeping)
Tgid:\t{pid}
Pid:\t{pid}
PPid:\t1
Uid:\t{uid}\t{uid}\t{uid}\t{uid}
Gid:\t0\t0\t0\t0
{memory}Threads:\t1
"""


def make_status(pid: int, name: str, rss_kb: Optional[int] = None, size_kb: Optional[int] = None,
                file_kb: Optional[int] = None, shmem_kb: Optional[int] = None,
                swap_kb: Optional[int] = None, uid: int = 0) -> str:
    memory = ""
    for key, value in (("VmSize", size_kb), ("VmRSS", rss_kb), ("RssFile", file_kb),
                       ("RssShmem", shmem_kb), ("VmSwap", swap_kb)):
        if value is not None:
            memory += f"{key}:\t{value:>8} kB\n"
    return STATUS_TEMPLATE.format(name=name, pid=pid, uid=uid, memory=memory)


def make_stat(pid: int, name: str, start_time: int) -> str:
    # fields 3..21, then starttime (22), then a few more
    middle = " ".join(["S", "1"] + ["0"] * 17)
    return f"{pid} ({name}) {middle} {start_time} 1000 200 18446744073709551615\n"


class FakeProc:
    """Builds a /proc-like directory tree"""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / "self").mkdir(exist_ok=True)
        (self.root / "meminfo").write_text("MemTotal: 1 kB\n")

    def add(self, pid: int, name: str, rss_kb: Optional[int] = 4, size_kb: Optional[int] = 100,
            file_kb: Optional[int] = 1, shmem_kb: Optional[int] = 0, swap_kb: Optional[int] = 0,
            uid: int = 0, start_time: int = 1000, status: Optional[str] = None):
        proc_dir = self.root / str(pid)
        proc_dir.mkdir(exist_ok=True)
        if status is None:
            status = make_status(pid, name, rss_kb, size_kb, file_kb, shmem_kb, swap_kb, uid)
        (proc_dir / "status").write_text(status)
        (proc_dir / "stat").write_text(make_stat(pid, name, start_time))
        return proc_dir

    def remove(self, pid: int):
        proc_dir = self.root / str(pid)
        for child in proc_dir.iterdir():
            child.unlink()
        proc_dir.rmdir()


@pytest.fixture
def fake_proc(tmp_path) -> FakeProc:
    return FakeProc(tmp_path / "proc")


@pytest.fixture
def config(fake_proc) -> Config:
    return Config(
        proc_root=fake_proc.root,
        grace_cycles=1,
        max_snapshot_age=60.0,
        enable_request_logging=False,
    )


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: float = 1700000000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
