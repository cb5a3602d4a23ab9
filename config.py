"""Configuration management for the process memory exporter"""
from pathlib import Path
from typing import Dict, Literal, Optional
from pydantic import AliasChoices, Field, validator
from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Configuration class with Pydantic validation and environment-based settings"""

    # Collection settings
    collection_interval: int = Field(default=15, ge=1, description="Background collection interval in seconds")
    grace_cycles: int = Field(default=2, ge=0, description="Missed cycles tolerated before a process is dropped")
    max_snapshot_age: float = Field(default=15.0, ge=0, description="Scrapes trigger a collection when the snapshot is older than this")
    scrape_collect_timeout: float = Field(default=5.0, gt=0, description="Max seconds a scrape waits for a triggered collection")
    failure_threshold: int = Field(default=3, ge=1, description="Consecutive enumeration failures before reporting unhealthy")

    # Process metadata source
    proc_root: Path = Field(default=Path("/proc"), description="Root of the per-process metadata tree")
    read_timeout: float = Field(default=1.0, gt=0, description="Max seconds to wait for one process's metadata")
    read_attempts: int = Field(default=2, ge=1, description="Attempts for interrupted metadata reads")
    read_workers: int = Field(default=4, ge=1, description="Metadata reader threads")

    # Server settings
    metrics_port: int = Field(default=9256, ge=1, le=65535, validation_alias=AliasChoices("metrics_port", "port"), description="Metrics server port")
    metrics_host: str = Field(default="0.0.0.0", description="Metrics server host")
    metrics_path: str = Field(default="/metrics", description="Path serving the exposition text")

    # Exposition settings
    hostgroup: str = Field(default="", validation_alias=AliasChoices("hostgroup", "group"), description="Host group label added to every process series")
    instance: str = Field(default="", description="Instance label added to every process series")
    enable_user_metrics: bool = Field(default=True, description="Export per-user aggregates")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", description="Log level")
    log_file: Optional[Path] = Field(default=None, description="Optional log file path")
    enable_request_logging: bool = Field(default=True, description="Enable HTTP request logging")

    # Service settings
    service_name: str = Field(default="proc-mem-exporter", description="Service name")
    service_version: str = Field(default="1.0.0", description="Service version")

    class Config:
        env_prefix = ""
        case_sensitive = False
        populate_by_name = True

    @validator('log_level', pre=True)
    def normalize_log_level(cls, v):
        """Accept lower-case level names from the environment"""
        if isinstance(v, str):
            return v.upper()
        return v

    @validator('metrics_path')
    def validate_metrics_path(cls, v):
        """The metrics path must be absolute"""
        if not v.startswith("/"):
            raise ValueError("METRICS_PATH must start with '/'")
        return v

    @validator('log_file')
    def ensure_parent_directories(cls, v):
        """Ensure the parent directory exists for the log file"""
        if isinstance(v, Path):
            v.parent.mkdir(parents=True, exist_ok=True)
        return v

    def get_static_labels(self) -> Dict[str, str]:
        """Labels appended to every per-process series"""
        labels = {}
        if self.hostgroup:
            labels["hostgroup"] = self.hostgroup
        if self.instance:
            labels["instance"] = self.instance
        return labels
