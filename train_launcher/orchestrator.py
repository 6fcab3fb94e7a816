from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from uuid import uuid4

import structlog

from train_launcher import config
from train_launcher.container import ContainerRuntime, Invocation, build_invocation
from train_launcher.errors import (
    ContainerNameConflict,
    InvalidResourceRequest,
    InvalidVolumeMount,
    ResourceDenied,
)
from train_launcher.job_store import JobStore
from train_launcher.launcher import (
    CONTAINER_STATUS_DIR,
    OUTCOME_FILENAME,
    entry_command,
    exit_status,
    read_outcome,
)
from train_launcher.manifest import build_manifest
from train_launcher.models import (
    ClientConfig,
    ContainerRunSpec,
    FailureKind,
    JobResult,
    LaunchPlan,
    ResourceRequest,
    VolumeMount,
)
from train_launcher.scheduler import Scheduler
from train_launcher.settings import get_settings

logger = structlog.get_logger(__name__)

Executor = Callable[[Invocation], Awaitable[int]]

RESOURCE_DENIED_EXIT = 1
LAUNCH_FAILED_EXIT = 125
RUNTIME_NOT_EXECUTABLE_EXIT = 126
RUNTIME_MISSING_EXIT = 127


async def run_invocation(invocation: Invocation) -> int:
    """Run the container in the foreground and return its exit code."""
    try:
        process = await asyncio.create_subprocess_exec(*invocation.argv)
    except FileNotFoundError as exc:
        logger.error("runtime.spawn_failed", argv0=invocation.argv[0], error=str(exc))
        return RUNTIME_MISSING_EXIT
    except OSError as exc:
        logger.error("runtime.spawn_failed", argv0=invocation.argv[0], error=str(exc))
        return RUNTIME_NOT_EXECUTABLE_EXIT
    return await process.wait()


class JobOrchestrator:
    """Drives one training job from resource grant to final result."""

    def __init__(
        self,
        scheduler: Scheduler,
        runtime: ContainerRuntime,
        *,
        client: ClientConfig | None = None,
        store: JobStore | None = None,
        status_dir: Path | None = None,
        executor: Executor | None = None,
        container_python: str | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.runtime = runtime
        self.client = client
        self.store = store
        self.status_dir = status_dir
        self.executor = executor or run_invocation
        self.container_python = container_python or get_settings().container_python

    async def run(
        self, request: ResourceRequest, spec: ContainerRunSpec, plan: LaunchPlan
    ) -> JobResult:
        job_id = uuid4().hex
        log = logger.bind(job_id=job_id)
        if self.store is not None:
            await self.store.create(job_id, spec.name)

        try:
            manifest = build_manifest(request, self.scheduler.kind)
            await self.scheduler.acquire(manifest)
        except (InvalidResourceRequest, ResourceDenied) as exc:
            log.warning("orchestrator.resource_denied", error=str(exc))
            return await self._finish(
                JobResult(
                    job_id=job_id,
                    exit_code=RESOURCE_DENIED_EXIT,
                    failure_kind=FailureKind.RESOURCE_DENIED,
                    detail=str(exc),
                )
            )

        job_dir = (self.status_dir or config.status_dir()) / job_id
        job_dir.mkdir(parents=True, exist_ok=True)
        run_spec = self._prepare_spec(spec, plan, job_dir)

        claimed = False
        try:
            invocation = build_invocation(
                run_spec,
                self.runtime,
                self.client,
                names_in_use=await self._names_in_use(run_spec.name),
            )
            if run_spec.name and self.store is not None:
                if not await self.store.claim_name(run_spec.name, job_id):
                    raise ContainerNameConflict(run_spec.name)
                claimed = True
        except (InvalidVolumeMount, ContainerNameConflict) as exc:
            log.warning("orchestrator.launch_rejected", error=str(exc))
            job_dir.rmdir()
            return await self._finish(
                JobResult(
                    job_id=job_id,
                    exit_code=LAUNCH_FAILED_EXIT,
                    failure_kind=FailureKind.CONTAINER_LAUNCH_FAILED,
                    detail=str(exc),
                )
            )

        if self.store is not None:
            await self.store.mark_running(job_id)
        log.info("orchestrator.invoking", command=invocation.command)
        try:
            exit_code = exit_status(await self.executor(invocation))
        finally:
            if claimed:
                await self.store.release_name(run_spec.name, job_id)

        outcome = read_outcome(job_dir / OUTCOME_FILENAME)
        if outcome is None:
            result = JobResult(
                job_id=job_id,
                exit_code=exit_code or LAUNCH_FAILED_EXIT,
                failure_kind=FailureKind.CONTAINER_LAUNCH_FAILED,
                detail=f"container exited with code {exit_code} without a launch outcome",
            )
        else:
            result = JobResult(
                job_id=job_id,
                exit_code=outcome.exit_code,
                failure_kind=outcome.failure_kind,
                detail=outcome.detail,
            )
        return await self._finish(result)

    def _prepare_spec(
        self, spec: ContainerRunSpec, plan: LaunchPlan, job_dir: Path
    ) -> ContainerRunSpec:
        volumes = [
            *spec.volumes,
            VolumeMount(host_path=job_dir, container_path=CONTAINER_STATUS_DIR, mode="rw"),
        ]
        # a caller-supplied command runs as a prologue ahead of the launcher
        setup = "; ".join(
            part for part in (spec.setup_command, spec.entry_command) if part
        )
        return spec.model_copy(
            update={
                "volumes": volumes,
                "setup_command": setup or None,
                "entry_command": entry_command(plan, self.container_python),
            }
        )

    async def _names_in_use(self, name: str | None) -> set[str]:
        if not name:
            return set()
        names = await self.runtime.running_names()
        if self.store is not None:
            names |= await self.store.claimed_names()
        return names

    async def _finish(self, result: JobResult) -> JobResult:
        if self.store is not None:
            await self.store.mark_finished(result.job_id, result)
        logger.info(
            "orchestrator.finished",
            job_id=result.job_id,
            exit_code=result.exit_code,
            failure_kind=result.failure_kind.value if result.failure_kind else None,
        )
        return result
