from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from train_launcher.container import build_invocation, get_runtime
from train_launcher.errors import (
    ContainerNameConflict,
    InvalidResourceRequest,
    InvalidVolumeMount,
)
from train_launcher.job_store import JobStore
from train_launcher.manifest import build_manifest
from train_launcher.models import (
    ClientConfig,
    ContainerRunSpec,
    JobConfig,
    JobRecord,
    JobResult,
    ResourceRequest,
    RuntimeKind,
    SchedulerKind,
)
from train_launcher.orchestrator import JobOrchestrator
from train_launcher.scheduler import LocalScheduler

API_DESCRIPTION = """
Training Launcher - compose scheduler manifests and container commands, and
run training jobs with a tracking server started ahead of the client.

## Job flow

1. `POST /manifest` renders the resource directives for the batch scheduler.
2. `POST /invocation` shows the container command a job would run.
3. `POST /run` runs a whole job on this host and returns its result.

A failed job is still a `200` response: the `failure_kind` field of the
result says which stage failed (`RESOURCE_DENIED`, `CONTAINER_LAUNCH_FAILED`,
`SERVER_NOT_READY` or `CLIENT_FAILED`) and `exit_code` carries the code.
"""

app = FastAPI(
    title="Training Launcher",
    version="0.1.0",
    description=API_DESCRIPTION,
)


class ManifestRequest(BaseModel):
    resources: ResourceRequest
    scheduler: SchedulerKind = SchedulerKind.grid_engine


class ManifestResponse(BaseModel):
    manifest: str


class InvocationRequest(BaseModel):
    container: ContainerRunSpec
    runtime: RuntimeKind = RuntimeKind.docker
    client: ClientConfig | None = None


class InvocationResponse(BaseModel):
    argv: list[str]
    command: str


_store: JobStore | None = None


def get_store() -> JobStore:
    global _store
    if _store is None:
        _store = JobStore()
    return _store


StoreDep = Annotated[JobStore, Depends(get_store)]


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/manifest", response_model=ManifestResponse)
async def manifest(body: ManifestRequest) -> ManifestResponse:
    try:
        rendered = build_manifest(body.resources, body.scheduler)
    except InvalidResourceRequest as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ManifestResponse(manifest=rendered.render())


@app.post("/invocation", response_model=InvocationResponse)
async def invocation(body: InvocationRequest, store: StoreDep) -> InvocationResponse:
    try:
        built = build_invocation(
            body.container,
            get_runtime(body.runtime),
            body.client,
            names_in_use=await store.claimed_names(),
        )
    except InvalidVolumeMount as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ContainerNameConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return InvocationResponse(argv=built.argv, command=built.command)


@app.post("/run", response_model=JobResult)
async def run(job: JobConfig, store: StoreDep) -> JobResult:
    orchestrator = JobOrchestrator(
        LocalScheduler(job.scheduler),
        get_runtime(job.runtime),
        client=job.client,
        store=store,
    )
    return await orchestrator.run(job.resources, job.container, job.launch_plan())


@app.get("/jobs/{job_id}", response_model=JobRecord)
async def get_job(job_id: str, store: StoreDep) -> JobRecord:
    try:
        return await store.get(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="job not found") from exc
