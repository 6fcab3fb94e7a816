from __future__ import annotations

import asyncio
import os
from pathlib import Path

import structlog

from train_launcher.errors import ResourceDenied
from train_launcher.manifest import Manifest, parse_manifest
from train_launcher.models import SchedulerKind

logger = structlog.get_logger(__name__)


def visible_accelerators(env: dict[str, str]) -> int | None:
    """Number of GPUs the allocation exposes, or None if it does not say."""
    devices = env.get("CUDA_VISIBLE_DEVICES")
    if devices is None:
        return None
    return len([d for d in devices.split(",") if d.strip() and d.strip() != "-1"])


class Scheduler:
    """A batch scheduler the job is submitted to or already running under."""

    kind: SchedulerKind
    submit_binary: str = ""
    job_id_env: str = ""

    def __init__(self, env: dict[str, str] | None = None) -> None:
        self.env = dict(os.environ) if env is None else env

    async def acquire(self, manifest: Manifest) -> str:
        """Confirm the manifest's resources are granted; return the job id.

        A batch scheduler grants resources by starting the job script, so
        here the check is that we run inside that allocation and that it
        matches what the manifest asked for.
        """
        job_id = self.env.get(self.job_id_env)
        if not job_id:
            raise ResourceDenied(
                f"{self.job_id_env} is not set; not running inside a {self.kind.value} allocation"
            )
        request = parse_manifest(manifest.render(), manifest.scheduler)
        visible = visible_accelerators(self.env)
        wanted = request.accelerator_count or 0
        if visible is not None and visible < wanted:
            raise ResourceDenied(
                f"allocation exposes {visible} accelerator(s), {wanted} requested"
            )
        logger.info("scheduler.granted", scheduler=self.kind.value, job_id=job_id)
        return job_id

    def render_script(
        self, manifest: Manifest, body: str, prologue: list[str] | None = None
    ) -> str:
        lines = ["#!/bin/bash", "", manifest.render().rstrip("\n"), ""]
        lines += list(prologue or [])
        lines.append(body)
        return "\n".join(lines) + "\n"

    async def submit(self, script_path: Path) -> str:
        """Hand the script to the scheduler and return what it printed."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.submit_binary,
                str(script_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as exc:
            raise ResourceDenied(f"{self.submit_binary} not available: {exc}") from exc
        out, _ = await process.communicate()
        text = out.decode(errors="replace").strip()
        if process.returncode != 0:
            raise ResourceDenied(
                f"{self.submit_binary} exited with code {process.returncode}: {text}"
            )
        logger.info("scheduler.submitted", scheduler=self.kind.value, response=text)
        return text


class GridEngineScheduler(Scheduler):
    kind = SchedulerKind.grid_engine
    submit_binary = "qsub"
    job_id_env = "JOB_ID"


class SlurmScheduler(Scheduler):
    kind = SchedulerKind.slurm
    submit_binary = "sbatch"
    job_id_env = "SLURM_JOB_ID"


class LocalScheduler(Scheduler):
    """Grants every request at once; for workstation runs."""

    def __init__(
        self,
        kind: SchedulerKind = SchedulerKind.grid_engine,
        env: dict[str, str] | None = None,
    ) -> None:
        super().__init__(env)
        self.kind = kind

    async def acquire(self, manifest: Manifest) -> str:
        logger.info("scheduler.granted", scheduler="local")
        return "local"

    async def submit(self, script_path: Path) -> str:
        raise ResourceDenied("the local scheduler does not accept batch submissions")


def get_scheduler(kind: SchedulerKind | str, local: bool = False) -> Scheduler:
    kind = SchedulerKind(kind)
    if local:
        return LocalScheduler(kind)
    if kind is SchedulerKind.slurm:
        return SlurmScheduler()
    return GridEngineScheduler()
