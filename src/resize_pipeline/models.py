"""Pydantic models for configuration and validation."""

from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .resolutions import DEFAULT_RESOLUTIONS, ORIGINAL


class DatabaseConfig(BaseModel):
    """SQLite file shared by the queue, status and record stores."""

    path: str = Field(default="data/resize_pipeline.db", description="SQLite database path")
    busy_timeout_ms: int = Field(
        default=5000, ge=0, description="How long a writer waits on a locked database"
    )


class RedisConfig(BaseModel):
    """Redis connection used by the redis queue/status backends."""

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    socket_timeout_s: float = Field(default=5.0, gt=0.0, description="Socket timeout in seconds")


class QueueConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["sqlite", "redis", "memory"] = Field(
        default="sqlite", description="Queue implementation"
    )
    queue_key: str = Field(default="resize-queue", description="Redis list key")
    visibility_timeout_s: int = Field(
        default=600,
        gt=0,
        description="Seconds a claimed job stays invisible before it is redelivered",
    )


class StatusConfig(BaseModel):
    """Ephemeral job status settings."""

    backend: Literal["sqlite", "redis", "memory"] = Field(
        default="sqlite", description="Job status store implementation"
    )
    ttl_s: int = Field(default=86400, gt=0, description="Status TTL, reset on every transition")
    key_prefix: str = Field(default="job:", description="Redis key prefix for job status")


class RecordsConfig(BaseModel):
    """Durable image record settings."""

    backend: Literal["sqlite", "memory"] = Field(
        default="sqlite", description="Image record store implementation"
    )


class StorageConfig(BaseModel):
    """Object store settings."""

    backend: Literal["local", "gcs", "s3"] = Field(default="local", description="Object store backend")
    bucket: str = Field(default="images", min_length=1, description="Bucket holding all objects")
    local_root: str = Field(default="data/objects", description="Root directory for local backend")
    public_base_url: Optional[str] = Field(
        default=None, description="Base URL for returned object URLs (None = backend default)"
    )
    timeout_s: float = Field(default=30.0, gt=0.0, description="Bound on each get/put call")
    region: Optional[str] = Field(default=None, description="S3 region (None = boto3 default chain)")
    endpoint_url: Optional[str] = Field(
        default=None, description="S3-compatible endpoint, e.g. a local MinIO"
    )


class WorkerConfig(BaseModel):
    """Worker loop settings."""

    workers: int = Field(default=2, ge=1, description="Worker loops per process")
    poll_interval_s: float = Field(
        default=2.0, gt=0.0, description="Idle sleep between polls when the queue is empty"
    )
    transform_timeout_s: float = Field(default=60.0, gt=0.0, description="Bound on the transform")
    job_timeout_s: float = Field(
        default=300.0, gt=0.0, description="Bound on one job from dequeue to terminal state"
    )
    purge_interval_s: float = Field(
        default=3600.0, gt=0.0, description="How often a worker deletes expired job statuses"
    )


class LoggingConfig(BaseModel):
    """Log sinks."""

    level: str = Field(default="INFO", description="Minimum log level")
    file: Optional[str] = Field(default=None, description="Optional rotating log file")
    serialize: bool = Field(default=False, description="Emit JSON lines instead of text")

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


class ResolutionConfig(BaseModel):
    """Target box for one named resolution."""

    width: int = Field(gt=0, description="Target width in pixels")
    height: int = Field(gt=0, description="Target height in pixels")


def _default_resolutions() -> Dict[str, ResolutionConfig]:
    return {
        name: ResolutionConfig(width=w, height=h) for name, (w, h) in DEFAULT_RESOLUTIONS.items()
    }


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    records: RecordsConfig = Field(default_factory=RecordsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    resolutions: Dict[str, ResolutionConfig] = Field(default_factory=_default_resolutions)

    @field_validator("resolutions")
    @classmethod
    def original_is_implicit(cls, v: Dict[str, ResolutionConfig]) -> Dict[str, ResolutionConfig]:
        """Validate that 'original' is not configured and the table is not empty."""
        if ORIGINAL in v:
            raise ValueError(f"'{ORIGINAL}' is implicit and cannot be configured")
        if not v:
            raise ValueError("at least one resolution is required")
        return v

    @model_validator(mode="after")
    def visibility_outlasts_job(self) -> "PipelineConfig":
        """A claim must not be redelivered while its job can still be running."""
        if self.queue.visibility_timeout_s <= self.worker.job_timeout_s:
            raise ValueError(
                f"queue.visibility_timeout_s ({self.queue.visibility_timeout_s}) must be "
                f"greater than worker.job_timeout_s ({self.worker.job_timeout_s})"
            )
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def resolution_table(self) -> Dict[str, Tuple[int, int]]:
        """name -> (width, height) as consumed by the transformer."""
        return {name: (r.width, r.height) for name, r in self.resolutions.items()}

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("workers") is not None:
            config_dict["worker"]["workers"] = cli_args["workers"]
        if cli_args.get("poll_interval") is not None:
            config_dict["worker"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("db") is not None:
            config_dict["database"]["path"] = cli_args["db"]
        if cli_args.get("bucket") is not None:
            config_dict["storage"]["bucket"] = cli_args["bucket"]

        return PipelineConfig.from_dict(config_dict)
