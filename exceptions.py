"""Error taxonomy for the process memory exporter"""
from typing import Optional


class ExporterError(Exception):
    """Base class for exporter errors"""


class TransientReadError(ExporterError):
    """Process metadata could not be read this cycle (permission denied, I/O error)"""

    def __init__(self, pid: int, reason: str):
        super().__init__(f"pid {pid}: {reason}")
        self.pid = pid
        self.reason = reason


class ParseError(ExporterError):
    """Process metadata is not a usable key/value blob"""

    def __init__(self, pid: int, reason: str):
        super().__init__(f"pid {pid}: {reason}")
        self.pid = pid
        self.reason = reason


class EnumerationError(ExporterError):
    """The process table itself could not be listed"""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.cause = cause


class RenderError(ExporterError):
    """A snapshot could not be rendered; indicates a registry invariant violation"""
