from __future__ import annotations

import re
import shlex
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HMS = re.compile(r"^(?:(\d+)-)?(\d+):(\d{1,2}):(\d{1,2})$")
_SIZE = re.compile(r"^(\d+)\s*([bkmg]?)b?$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_duration(value: object) -> timedelta:
    """Parse seconds, a timedelta, or a ``[D-]HH:MM:SS`` string."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, str):
        text = value.strip()
        match = _HMS.match(text)
        if match:
            days, hours, minutes, seconds = (int(g or 0) for g in match.groups())
            return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
        try:
            return timedelta(seconds=float(text))
        except ValueError:
            pass
    raise ValueError(f"unrecognised duration: {value!r}")


def format_hms(value: timedelta) -> str:
    """Format as ``HH:MM:SS`` with unbounded hours (``48:00:00``)."""
    total = int(value.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def parse_size(value: object) -> int:
    """Parse a byte count or a docker-style size such as ``512m``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        match = _SIZE.match(value.strip())
        if match:
            return int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]
    raise ValueError(f"unrecognised size: {value!r}")


def format_size(value: int) -> str:
    for unit in ("g", "m", "k"):
        factor = _SIZE_UNITS[unit]
        if value >= factor and value % factor == 0:
            return f"{value // factor}{unit}"
    return str(value)


class SchedulerKind(str, Enum):
    grid_engine = "grid_engine"
    slurm = "slurm"


class RuntimeKind(str, Enum):
    docker = "docker"
    podman = "podman"


class FailureKind(str, Enum):
    RESOURCE_DENIED = "RESOURCE_DENIED"
    CONTAINER_LAUNCH_FAILED = "CONTAINER_LAUNCH_FAILED"
    SERVER_NOT_READY = "SERVER_NOT_READY"
    CLIENT_FAILED = "CLIENT_FAILED"


class LaunchState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    SERVER_STARTING = "SERVER_STARTING"
    SERVER_READY = "SERVER_READY"
    SERVER_TIMEOUT = "SERVER_TIMEOUT"
    CLIENT_RUNNING = "CLIENT_RUNNING"
    DONE = "DONE"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class ResourceRequest(BaseModel):
    """What the batch scheduler must grant before the job may start.

    Both ``accelerator_count`` and ``wall_clock_limit`` are required by the
    manifest builder; they are optional here so that an incomplete request
    can be expressed and rejected with a typed error.
    """

    model_config = ConfigDict(frozen=True)

    accelerator_count: int | None = None
    wall_clock_limit: timedelta | None = None
    merge_stdout_stderr: bool = True
    working_directory: Path = Path(".")

    @field_validator("wall_clock_limit", mode="before")
    @classmethod
    def _duration(cls, value: object) -> object:
        if value is None:
            return None
        return parse_duration(value)


class VolumeMount(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_path: Path
    container_path: str
    mode: Literal["rw", "ro"] = "rw"

    @field_validator("container_path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not PurePosixPath(value).is_absolute():
            raise ValueError(f"container path must be absolute: {value}")
        return value


class ContainerRunSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: str = Field(min_length=1)
    name: str | None = None
    volumes: list[VolumeMount] = Field(default_factory=list)
    shared_memory_bytes: int = Field(default=0, ge=0)
    environment: dict[str, str] = Field(default_factory=dict)
    entry_command: str = ""
    setup_command: str | None = None
    interactive: bool = False
    gpus: bool = False

    @field_validator("shared_memory_bytes", mode="before")
    @classmethod
    def _size(cls, value: object) -> object:
        return parse_size(value)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value


class ClientConfig(BaseModel):
    """Options the training client reads from its environment."""

    model_config = ConfigDict(frozen=True)

    asset_path: str | None = None
    asset_env_var: str = "ATARI_ROM"
    report_metrics: bool = False
    tracking_uri: str = "http://127.0.0.1:8080"
    metrics_flag: str = "--mlflow"

    def environment(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.asset_path:
            env[self.asset_env_var] = self.asset_path
        if self.report_metrics:
            env["MLFLOW_TRACKING_URI"] = self.tracking_uri
        return env


class ReadinessProbe(BaseModel):
    """Where and how long to wait for the tracking server.

    With ``port`` unset the launcher falls back to a flat grace period of
    ``timeout`` seconds.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int | None = Field(default=8080, ge=1, le=65535)
    timeout: float = Field(default=30.0, ge=0)
    interval: float = Field(default=0.5, gt=0)
    on_timeout: Literal["fail", "assume_ready"] = "fail"


class LaunchPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    tracking_server_command: str | None = None
    readiness_probe: ReadinessProbe = Field(default_factory=ReadinessProbe)
    client_command: str = Field(min_length=1)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    exit_code: int
    failure_kind: FailureKind | None = None
    job_id: str | None = None
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure_kind is None


class LaunchOutcome(BaseModel):
    state: LaunchState
    exit_code: int
    failure_kind: FailureKind | None = None
    detail: str | None = None
    history: list[LaunchState] = Field(default_factory=list)


class JobRecord(BaseModel):
    id: str
    status: JobStatus
    container_name: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: JobResult | None = None


class JobConfig(BaseModel):
    """A complete job file: resources, container and launch plan."""

    scheduler: SchedulerKind = SchedulerKind.grid_engine
    runtime: RuntimeKind = RuntimeKind.docker
    resources: ResourceRequest
    container: ContainerRunSpec
    client: ClientConfig = Field(default_factory=ClientConfig)
    plan: LaunchPlan
    submit_prologue: list[str] = Field(default_factory=list)

    def launch_plan(self) -> LaunchPlan:
        """The plan with metrics reporting switched on or off."""
        if not self.client.report_metrics:
            return self.plan.model_copy(update={"tracking_server_command": None})
        command = self.plan.client_command
        flag = self.client.metrics_flag
        if flag and flag not in shlex.split(command):
            command = f"{command} {flag}"
        return self.plan.model_copy(update={"client_command": command})
