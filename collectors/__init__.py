"""Process table reading, parsing and collection"""
from .parser import ParsedStatus, StatusParser, parse_start_time
from .procfs import PidListing, ProcfsReader, RawProcessMetadata, UserNameCache
from .process_memory import CollectionStatus, CollectorState, CycleResult, ProcessMemoryCollector

__all__ = [
    'ParsedStatus',
    'StatusParser',
    'parse_start_time',
    'PidListing',
    'ProcfsReader',
    'RawProcessMetadata',
    'UserNameCache',
    'CollectionStatus',
    'CollectorState',
    'CycleResult',
    'ProcessMemoryCollector'
]
