"""Scheduler resource manifests.

A manifest is the block of directive comments at the top of a batch script,
e.g. for Grid Engine on ABCI::

    #$-l rt_G.small=1
    #$-l h_rt=48:00:00
    #$-j y
    #$-cwd
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path

import structlog
from pydantic import BaseModel

from train_launcher.errors import InvalidResourceRequest
from train_launcher.models import (
    ResourceRequest,
    SchedulerKind,
    format_hms,
    parse_duration,
)

logger = structlog.get_logger(__name__)

GRID_ENGINE_PREFIX = "#$"
SLURM_PREFIX = "#SBATCH"
DEFAULT_ACCELERATOR_RESOURCE = "rt_G.small"

_SLURM_TIME = re.compile(r"^(?:(\d+)-)?(\d+)(?::(\d+))?(?::(\d+))?$")


class Manifest(BaseModel):
    scheduler: SchedulerKind
    directives: list[str]

    def render(self) -> str:
        return "\n".join(self.directives) + "\n"


def _validate(request: ResourceRequest) -> tuple[int, timedelta]:
    count = request.accelerator_count
    limit = request.wall_clock_limit
    if count is None:
        raise InvalidResourceRequest("accelerator_count is required")
    if limit is None:
        raise InvalidResourceRequest("wall_clock_limit is required")
    if count < 0:
        raise InvalidResourceRequest(f"accelerator_count must be >= 0, got {count}")
    if limit <= timedelta(0):
        raise InvalidResourceRequest(f"wall_clock_limit must be positive, got {limit}")
    if int(limit.total_seconds()) == 0:
        raise InvalidResourceRequest("wall_clock_limit must be at least one second")
    return count, limit


def build_manifest(
    request: ResourceRequest,
    scheduler: SchedulerKind = SchedulerKind.grid_engine,
    accelerator_resource: str = DEFAULT_ACCELERATOR_RESOURCE,
) -> Manifest:
    count, limit = _validate(request)
    if scheduler is SchedulerKind.grid_engine:
        directives = _grid_engine(request, count, limit, accelerator_resource)
    else:
        directives = _slurm(request, count, limit)
    logger.debug(
        "manifest.built",
        scheduler=scheduler.value,
        accelerators=count,
        wall_clock=format_hms(limit),
    )
    return Manifest(scheduler=scheduler, directives=directives)


def _grid_engine(
    request: ResourceRequest, count: int, limit: timedelta, resource: str
) -> list[str]:
    p = GRID_ENGINE_PREFIX
    lines = []
    if count:
        lines.append(f"{p}-l {resource}={count}")
    lines.append(f"{p}-l h_rt={format_hms(limit)}")
    lines.append(f"{p}-j {'y' if request.merge_stdout_stderr else 'n'}")
    if request.working_directory == Path("."):
        lines.append(f"{p}-cwd")
    else:
        lines.append(f"{p}-wd {request.working_directory}")
    return lines


def _slurm_time(limit: timedelta) -> str:
    days, rest = divmod(int(limit.total_seconds()), 86400)
    hms = format_hms(timedelta(seconds=rest))
    return f"{days}-{hms}" if days else hms


def _slurm(request: ResourceRequest, count: int, limit: timedelta) -> list[str]:
    p = SLURM_PREFIX
    lines = []
    if count:
        lines.append(f"{p} --gres=gpu:{count}")
    lines.append(f"{p} --time={_slurm_time(limit)}")
    if not request.merge_stdout_stderr:
        lines.append(f"{p} --output=slurm-%j.out")
        lines.append(f"{p} --error=slurm-%j.err")
    if request.working_directory != Path("."):
        lines.append(f"{p} --chdir={request.working_directory}")
    return lines


def parse_manifest(
    text: str,
    scheduler: SchedulerKind = SchedulerKind.grid_engine,
    accelerator_resource: str = DEFAULT_ACCELERATOR_RESOURCE,
) -> ResourceRequest:
    """Recover the ResourceRequest a manifest was built from.

    Lines that are not directives for ``scheduler`` are ignored, so a whole
    batch script can be passed in.
    """
    try:
        if scheduler is SchedulerKind.grid_engine:
            fields = _parse_grid_engine(text, accelerator_resource)
        else:
            fields = _parse_slurm(text)
    except ValueError as exc:
        raise InvalidResourceRequest(f"malformed manifest: {exc}") from exc
    if "wall_clock_limit" not in fields:
        raise InvalidResourceRequest("manifest has no wall-clock limit")
    return ResourceRequest(**fields)


def _directive_args(text: str, prefix: str) -> list[str]:
    args = []
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(prefix):
            args.append(line[len(prefix):].strip())
    return args


def _parse_grid_engine(text: str, resource: str) -> dict:
    fields: dict = {
        "accelerator_count": 0,
        "merge_stdout_stderr": False,
        "working_directory": Path("."),
    }
    for arg in _directive_args(text, GRID_ENGINE_PREFIX):
        option, _, value = arg.partition(" ")
        value = value.strip()
        if option == "-l":
            for item in value.split(","):
                key, _, amount = item.partition("=")
                if key == "h_rt":
                    fields["wall_clock_limit"] = parse_duration(amount)
                elif key == resource:
                    fields["accelerator_count"] = int(amount)
        elif option == "-j":
            fields["merge_stdout_stderr"] = value.lower() in ("y", "yes", "true")
        elif option == "-cwd":
            fields["working_directory"] = Path(".")
        elif option == "-wd":
            fields["working_directory"] = Path(value)
    return fields


def _parse_slurm_time(value: str) -> timedelta:
    match = _SLURM_TIME.match(value)
    if not match:
        raise InvalidResourceRequest(f"unrecognised slurm time: {value}")
    days, first, second, third = match.groups()
    days = int(days or 0)
    if third is not None:
        h, m, s = int(first), int(second), int(third)
    elif days:
        # days-hours[:minutes]
        h, m, s = int(first), int(second or 0), 0
    elif second is not None:
        h, m, s = 0, int(first), int(second)
    else:
        h, m, s = 0, int(first), 0
    return timedelta(days=days, hours=h, minutes=m, seconds=s)


def _parse_slurm(text: str) -> dict:
    fields: dict = {
        "accelerator_count": 0,
        "merge_stdout_stderr": True,
        "working_directory": Path("."),
    }
    for arg in _directive_args(text, SLURM_PREFIX):
        option, _, value = arg.partition("=")
        if option == "--gres" and value.startswith("gpu:"):
            fields["accelerator_count"] = int(value.rsplit(":", 1)[1])
        elif option in ("--time", "-t"):
            fields["wall_clock_limit"] = _parse_slurm_time(value)
        elif option in ("--error", "-e"):
            fields["merge_stdout_stderr"] = False
        elif option in ("--chdir", "-D"):
            fields["working_directory"] = Path(value)
    return fields
