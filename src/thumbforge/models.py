"""Pydantic models for configuration."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StorageConfig(BaseModel):
    """Where sources, thumbnails and databases live."""

    upload_dir: str = Field(default="data/uploads", description="Directory holding uploaded sources")
    output_dir: str = Field(default="data/thumbnails", description="Directory receiving thumbnails")
    jobs_db: str = Field(default="data/jobs.sqlite", description="Job Store database file")
    queue_db: str = Field(default="data/queue.sqlite", description="Task Queue database file")
    busy_timeout_s: float = Field(
        default=30.0, gt=0.0, description="SQLite busy timeout before a locked write fails"
    )


class QueueConfig(BaseModel):
    """Delivery policy applied to every submitted task."""

    priority: int = Field(default=1, ge=0, description="Default task priority (higher = first)")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before permanent failure")
    backoff_base_s: float = Field(
        default=2.0, gt=0.0, description="Base delay; attempt n waits base * 2**n"
    )
    visibility_timeout_s: float = Field(
        default=300.0, gt=0.0, description="Lease length before an active task counts as stalled"
    )
    event_poll_interval_s: float = Field(
        default=0.25, gt=0.0, description="How often the event tail checks for new events"
    )
    event_retention: int = Field(
        default=10000, ge=100, description="Queue events kept before trimming"
    )


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    workers: int = Field(default=2, ge=1, le=64, description="Concurrent executor threads")
    poll_interval_s: float = Field(default=0.5, gt=0.0, description="Idle sleep between dequeues")
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="Lease refresh period while a task runs"
    )
    stall_check_interval_s: float = Field(
        default=30.0, gt=0.0, description="Period of the stalled-task sweep"
    )


class ThumbnailConfig(BaseModel):
    """Thumbnail output contract."""

    width: int = Field(default=128, gt=0, le=4096)
    height: int = Field(default=128, gt=0, le=4096)
    jpeg_quality: int = Field(default=80, ge=1, le=95, description="Pillow JPEG quality")
    image_extensions: list[str] = Field(
        default_factory=lambda: [".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"]
    )
    video_extensions: list[str] = Field(
        default_factory=lambda: [".mp4", ".mov", ".avi", ".mkv", ".webm"]
    )

    @field_validator("image_extensions", "video_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        """Lower-case, with a leading dot."""
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)


class FfmpegConfig(BaseModel):
    """FFmpeg runner settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="FFmpeg executable (None = binary bundled by imageio-ffmpeg)"
    )
    timeout_s: int = Field(default=120, gt=0, description="Maximum duration of one FFmpeg call")
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=False, description="Save FFmpeg logs and commands on failure for debugging"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = TMPDIR)"
    )
    loglevel: str = Field(default="error", description="FFmpeg log level: error, warning, info")


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: Literal["text", "json"] = Field(default="text")
    file: Optional[str] = Field(default=None, description="Rotating log file (None = stderr only)")
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class ApiConfig(BaseModel):
    """HTTP/WebSocket adapter settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, gt=0, le=65535)
    embedded_workers: int = Field(
        default=0, ge=0, description="Worker threads started inside the API process (0 = none)"
    )
    cors_origins: list[str] = Field(default_factory=list)
    max_upload_bytes: int = Field(
        default=100 * 1024 * 1024, gt=0, description="Per-file upload limit"
    )
    max_files_per_upload: int = Field(default=10, ge=1)


class ThumbforgeConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    thumbnail: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ThumbforgeConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ThumbforgeConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("workers") is not None:
            config_dict["worker"]["workers"] = cli_args["workers"]
        if cli_args.get("data_dir") is not None:
            data_dir = cli_args["data_dir"].rstrip("/")
            config_dict["storage"].update(
                upload_dir=f"{data_dir}/uploads",
                output_dir=f"{data_dir}/thumbnails",
                jobs_db=f"{data_dir}/jobs.sqlite",
                queue_db=f"{data_dir}/queue.sqlite",
            )
        if cli_args.get("max_attempts") is not None:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("host") is not None:
            config_dict["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["api"]["port"] = cli_args["port"]

        return ThumbforgeConfig.from_dict(config_dict)
