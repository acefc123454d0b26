"""Pydantic configuration models for cidcheck.

Provides validated configuration sections for probing, output files, the
export pipeline and logging.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ExportSelection(str, Enum):
    """Which probe results are handed to the export pipeline."""

    NOT_FOUND = "not_found"  # peer explicitly answered "don't have"
    ABSENT = "absent"  # found=False for any reason
    FOUND = "found"


class ProbeConfig(BaseModel):
    """Probe pipeline configuration."""

    batch_size: int = Field(
        default=500,
        ge=1,
        le=100000,
        description="CIDs per outbound want-have query",
    )
    concurrency: int = Field(
        default=5,
        ge=1,
        le=1024,
        description="Maximum batches in flight at once",
    )
    batch_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=3600.0,
        description="Seconds a batch waits for replies after sending",
    )
    send_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=600.0,
        description="Deadline in seconds for transmitting one query",
    )
    connect_timeout: float = Field(
        default=3.0,
        gt=0.0,
        le=600.0,
        description="Deadline in seconds for connecting to the peer",
    )
    stream_queue_size: int = Field(
        default=256,
        ge=1,
        le=100000,
        description="Bound on buffered reply events, per worker and inbound",
    )
    abort_on_mismatch: bool = Field(
        default=True,
        description="Abandon in-flight batches when a reply arrives from another peer",
    )
    session_backend: str | None = Field(
        default=None,
        description="Session backend entry-point name or 'module:callable'",
    )


class OutputConfig(BaseModel):
    """Output file configuration."""

    output_dir: str = Field(default=".", description="Directory for run output files")
    file_prefix: str = Field(
        default="cid-check",
        min_length=1,
        description="Prefix for run output file names",
    )
    debug_log: bool = Field(
        default=False,
        description="Write every ProbeResult as a JSON line",
    )

    @field_validator("file_prefix")
    @classmethod
    def validate_file_prefix(cls, v: str) -> str:
        """Reject prefixes that would escape the output directory."""
        if "/" in v or "\\" in v:
            msg = "file_prefix must not contain path separators"
            raise ValueError(msg)
        return v


class ExportConfig(BaseModel):
    """Archival export pipeline configuration."""

    enabled: bool = Field(default=False, description="Export selected CIDs")
    selection: ExportSelection = Field(
        default=ExportSelection.NOT_FOUND,
        description="Which results to export",
    )
    concurrency: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum concurrent export operations",
    )
    command: list[str] = Field(
        default_factory=lambda: ["ipfs", "dag", "export", "{cid}"],
        description="Export command argv; '{cid}' is replaced by the CID",
    )
    output_dir: str = Field(default=".", description="Directory for .car files")
    timeout: float = Field(
        default=300.0,
        gt=0.0,
        le=86400.0,
        description="Seconds allowed for one export",
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Require a non-empty argv that mentions the CID."""
        if not v:
            msg = "export command cannot be empty"
            raise ValueError(msg)
        if not any("{cid}" in part for part in v):
            msg = "export command must contain a '{cid}' placeholder"
            raise ValueError(msg)
        return v


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Use structured JSON logging",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include a per-run correlation ID",
    )


class Config(BaseModel):
    """Main configuration model."""

    probe: ProbeConfig = Field(
        default_factory=ProbeConfig,
        description="Probe configuration",
    )
    output: OutputConfig = Field(
        default_factory=OutputConfig,
        description="Output configuration",
    )
    export: ExportConfig = Field(
        default_factory=ExportConfig,
        description="Export configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )

    @model_validator(mode="after")
    def validate_pool_sizes(self) -> Config:
        """The export pool is a separate pool at least as large as the probe pool."""
        if self.export.enabled and self.export.concurrency < self.probe.concurrency:
            msg = (
                f"export.concurrency ({self.export.concurrency}) must not be smaller "
                f"than probe.concurrency ({self.probe.concurrency})"
            )
            raise ValueError(msg)
        return self
