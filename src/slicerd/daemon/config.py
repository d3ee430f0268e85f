"""Configuration models for the slicing worker.

Defines Pydantic v2 models for worker settings: queue endpoints and lease
timing, object storage, the document store, the slicer command, the HTTP
surface, privilege drop and concurrency. ``load_config`` reads them from
a YAML file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import jinja2
from pydantic import BaseModel, Field, field_validator, model_validator

from slicerd.core.constants import (
    QUEUE_IDLE_SLEEP_SECONDS,
    QUEUE_LEASE_SECONDS,
    QUEUE_POLL_WAIT_SECONDS,
    QUEUE_RENEW_INTERVAL_SECONDS,
)


class QueueConfig(BaseModel):
    """Two-priority message queue settings.

    ``queue_high`` and ``queue_low`` accept either a bare queue name,
    expanded against ``region`` and ``account``, or a full queue URL.
    """

    region: str = Field(default="us-east-1", description="AWS region of the queues")
    account: str = Field(default="", description="AWS account id owning the queues")
    queue_high: str = Field(default="slicing-high", description="High-priority queue name or URL")
    queue_low: str = Field(default="slicing-low", description="Low-priority queue name or URL")
    endpoint_url: str | None = Field(
        default=None,
        description="Override endpoint (e.g. a local SQS emulator)",
    )
    lease_seconds: int = Field(
        default=QUEUE_LEASE_SECONDS,
        ge=5,
        le=43200,
        description="Invisibility granted on claim and on each renewal",
    )
    renew_interval_seconds: float = Field(
        default=QUEUE_RENEW_INTERVAL_SECONDS,
        gt=0,
        description="Period of the lease-renewal sweep",
    )
    poll_wait_seconds: int = Field(
        default=QUEUE_POLL_WAIT_SECONDS,
        ge=0,
        le=20,
        description="Long-poll wait on the low-priority queue",
    )
    idle_sleep_seconds: float = Field(
        default=QUEUE_IDLE_SLEEP_SECONDS,
        ge=0,
        description="Pause between polls when both queues are empty",
    )
    requeue_delay_seconds: int = Field(
        default=0,
        ge=0,
        le=900,
        description="Invisibility left on a requeued message (0 = immediately visible)",
    )
    max_receive_count: int | None = Field(
        default=None,
        ge=1,
        description="Remove instead of requeue once a message was received this often. "
        "None keeps retrying indefinitely.",
    )

    @model_validator(mode="after")
    def _renewal_inside_lease(self) -> QueueConfig:
        if self.renew_interval_seconds >= self.lease_seconds:
            raise ValueError(
                f"renew_interval_seconds ({self.renew_interval_seconds}) must be "
                f"shorter than lease_seconds ({self.lease_seconds})"
            )
        return self

    def _url(self, name: str) -> str:
        if name.startswith(("http://", "https://")):
            return name
        return f"https://sqs.{self.region}.amazonaws.com/{self.account}/{name}"

    @property
    def high_priority_url(self) -> str:
        return self._url(self.queue_high)

    @property
    def low_priority_url(self) -> str:
        return self._url(self.queue_low)


class StorageConfig(BaseModel):
    """Object storage backend selection."""

    backend: Literal["s3", "local"] = Field(default="s3")
    region: str = Field(default="us-east-1")
    endpoint_url: str | None = Field(default=None)
    local_root: Path = Field(
        default=Path("./objects"),
        description="Root directory of the local backend; buckets are subdirectories",
    )


class DocumentStoreConfig(BaseModel):
    """Document store holding job status and stats documents."""

    path: Path = Field(
        default=Path("~/.slicerd/documents.db"),
        description="SQLite database path. Tilde is expanded at runtime.",
    )


class SlicerConfig(BaseModel):
    """External slicing engine invocation."""

    command: str = Field(
        default="{{ script_dir }}/cura.sh {{ config }} {{ stl }} {{ gcode }}",
        description="Jinja2 template rendered with the config, stl and gcode paths",
    )
    script_dir: Path = Field(
        default=Path("./scripts"),
        description="Directory of slicer helper scripts, exposed as script_dir",
    )
    work_dir: Path = Field(
        default=Path("./working"),
        description="Local workspace for downloaded and generated files",
    )
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Deadline for one slicer run. None means no deadline.",
    )

    @field_validator("command")
    @classmethod
    def _validate_template(cls, v: str) -> str:
        try:
            jinja2.Environment().parse(v)
        except jinja2.TemplateSyntaxError as exc:
            raise ValueError(f"invalid slicer command template: {exc}") from exc
        return v


class HttpConfig(BaseModel):
    """Liveness/stats HTTP endpoints."""

    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=0, le=65535)


class PermsConfig(BaseModel):
    """Unprivileged identity assumed once the HTTP socket is bound."""

    uid: int = Field(ge=0)
    gid: int = Field(ge=0)


class WorkerConfig(BaseModel):
    """Top-level configuration for the slicing worker."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    documents: DocumentStoreConfig = Field(default_factory=DocumentStoreConfig)
    slicer: SlicerConfig = Field(default_factory=SlicerConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    perms: PermsConfig | None = Field(
        default=None,
        description="uid/gid to switch to after binding. None leaves them unchanged.",
    )
    max_concurrent_jobs: int = Field(
        default=4,
        ge=1,
        le=256,
        description="Maximum jobs processed simultaneously. Consulted before "
        "every claim; the worker stops claiming while the bound is reached.",
    )
    shutdown_timeout_seconds: float = Field(
        default=120.0,
        ge=0,
        description="Seconds running jobs get to finish on SIGTERM before being "
        "cancelled and requeued",
    )
    log_level: Literal["debug", "info", "warning", "error"] = Field(default="info")
    log_format: Literal["console", "json"] = Field(default="console")
    log_file: Path | None = Field(default=None)
    config_file: Path | None = Field(
        default=None,
        description="Path of the YAML file this config was loaded from",
    )


def load_config(config_file: Path | None) -> WorkerConfig:
    """Load WorkerConfig from a YAML file, or return defaults.

    Raises:
        pydantic.ValidationError: If the file content is not a valid config.
    """
    if config_file and config_file.exists():
        import yaml

        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        config = WorkerConfig.model_validate(data)
        config.config_file = config_file.resolve()
        return config
    return WorkerConfig()


__all__ = [
    "DocumentStoreConfig",
    "HttpConfig",
    "PermsConfig",
    "QueueConfig",
    "SlicerConfig",
    "StorageConfig",
    "WorkerConfig",
    "load_config",
]
