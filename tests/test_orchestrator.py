import asyncio
import shlex
from datetime import timedelta

import fakeredis.aioredis

from conftest import listening_server, python_command, touch_and_exit
from train_launcher.container import DockerRuntime, Invocation
from train_launcher.job_store import JobStore
from train_launcher.launcher import (
    CONTAINER_STATUS_DIR,
    OUTCOME_FILENAME,
    launch_in_place,
    read_outcome,
)
from train_launcher.models import (
    ContainerRunSpec,
    FailureKind,
    JobStatus,
    LaunchPlan,
    LaunchState,
    ReadinessProbe,
    ResourceRequest,
    VolumeMount,
)
from train_launcher.orchestrator import JobOrchestrator, run_invocation
from train_launcher.scheduler import GridEngineScheduler, LocalScheduler


class QuietRuntime(DockerRuntime):
    def __init__(self, running=()):
        self.running = set(running)

    async def running_names(self):
        return set(self.running)


class ContainerSimulator:
    """Stands in for the container runtime by running the launcher here."""

    def __init__(self):
        self.invocations = []

    async def __call__(self, invocation):
        self.invocations.append(invocation)
        status = next(
            v.host_path
            for v in invocation.spec.volumes
            if v.container_path == CONTAINER_STATUS_DIR
        )
        argv = shlex.split(invocation.spec.entry_command)
        plan = LaunchPlan.model_validate_json(argv[argv.index("--plan") + 1])
        return await launch_in_place(plan, status / OUTCOME_FILENAME)


def _request():
    return ResourceRequest(
        accelerator_count=1,
        wall_clock_limit=timedelta(hours=48),
        merge_stdout_stderr=True,
    )


def _spec(tmp_path, **overrides):
    fields = dict(
        image="border_headless",
        name="border_headless",
        volumes=[VolumeMount(host_path=tmp_path, container_path="/home/ubuntu/border")],
    )
    fields.update(overrides)
    return ContainerRunSpec(**fields)


def _plan(port, client_command, server_command=None):
    return LaunchPlan(
        tracking_server_command=server_command or listening_server(port),
        readiness_probe=ReadinessProbe(port=port, timeout=10, interval=0.05),
        client_command=client_command,
    )


def _orchestrator(tmp_path, executor, scheduler=None, store=None, runtime=None):
    return JobOrchestrator(
        scheduler or LocalScheduler(),
        runtime or QuietRuntime(),
        store=store,
        status_dir=tmp_path / "status",
        executor=executor,
    )


def test_successful_job(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(tmp_path, simulator)
    plan = _plan(free_port, python_command("pass"))

    result = asyncio.run(orchestrator.run(_request(), _spec(tmp_path), plan))

    assert result.failure_kind is None
    assert result.exit_code == 0
    assert result.succeeded
    outcome = read_outcome(tmp_path / "status" / result.job_id / OUTCOME_FILENAME)
    assert LaunchState.CLIENT_RUNNING in outcome.history

    (invocation,) = simulator.invocations
    assert invocation.argv[:3] == ["docker", "run", "--rm"]
    assert f"--volume={tmp_path.resolve()}:/home/ubuntu/border:rw" in invocation.argv
    assert invocation.argv[-3:-1] == ["-l", "-c"]


def test_client_exit_code_propagates(tmp_path, free_port):
    orchestrator = _orchestrator(tmp_path, ContainerSimulator())
    plan = _plan(free_port, python_command("import sys; sys.exit(42)"))

    result = asyncio.run(orchestrator.run(_request(), _spec(tmp_path), plan))

    assert result.failure_kind is FailureKind.CLIENT_FAILED
    assert result.exit_code == 42


def test_missing_volume_never_invokes_runtime(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(tmp_path, simulator)
    spec = _spec(
        tmp_path,
        volumes=[VolumeMount(host_path=tmp_path / "missing", container_path="/data")],
    )

    result = asyncio.run(
        orchestrator.run(_request(), spec, _plan(free_port, python_command("pass")))
    )

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert simulator.invocations == []


def test_server_death_skips_client(tmp_path, free_port):
    marker = tmp_path / "client-ran"
    orchestrator = _orchestrator(tmp_path, ContainerSimulator())
    plan = _plan(
        free_port,
        touch_and_exit(marker),
        server_command=python_command("import sys; sys.exit(1)"),
    )

    result = asyncio.run(orchestrator.run(_request(), _spec(tmp_path), plan))

    assert result.failure_kind is FailureKind.SERVER_NOT_READY
    assert not marker.exists()


def test_resource_denied_outside_allocation(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(
        tmp_path, simulator, scheduler=GridEngineScheduler(env={})
    )

    result = asyncio.run(
        orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
    )

    assert result.failure_kind is FailureKind.RESOURCE_DENIED
    assert result.exit_code == 1
    assert simulator.invocations == []


def test_incomplete_request_is_denied(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(tmp_path, simulator)
    request = ResourceRequest(accelerator_count=1)

    result = asyncio.run(
        orchestrator.run(request, _spec(tmp_path), _plan(free_port, python_command("pass")))
    )

    assert result.failure_kind is FailureKind.RESOURCE_DENIED
    assert simulator.invocations == []


def test_container_that_never_starts(tmp_path, free_port):
    async def refuse(invocation):
        return 125

    orchestrator = _orchestrator(tmp_path, refuse)
    result = asyncio.run(
        orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
    )

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert result.exit_code == 125


def test_running_container_name_conflicts(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(
        tmp_path, simulator, runtime=QuietRuntime(running={"border_headless"})
    )

    result = asyncio.run(
        orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
    )

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert "border_headless" in result.detail
    assert simulator.invocations == []


def test_caller_command_runs_before_launcher(tmp_path, free_port):
    simulator = ContainerSimulator()
    orchestrator = _orchestrator(tmp_path, simulator)
    spec = _spec(tmp_path, entry_command="echo hello", setup_command="cd /work")

    result = asyncio.run(
        orchestrator.run(_request(), spec, _plan(free_port, python_command("pass")))
    )

    assert result.succeeded
    assert result.failure_kind is None
    (invocation,) = simulator.invocations
    assert invocation.spec.setup_command == "cd /work; echo hello"
    assert invocation.argv[-1].startswith("cd /work; echo hello; ")
    assert "train_launcher launch" in invocation.argv[-1]


def test_store_records_job_and_releases_name(tmp_path, free_port):
    async def scenario():
        store = JobStore(fakeredis.aioredis.FakeRedis(decode_responses=True))
        orchestrator = _orchestrator(tmp_path, ContainerSimulator(), store=store)
        result = await orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
        record = await store.get(result.job_id)
        return result, record, await store.claimed_names()

    result, record, claimed = asyncio.run(scenario())

    assert record.status is JobStatus.succeeded
    assert record.container_name == "border_headless"
    assert record.result == result
    assert record.started_at is not None
    assert claimed == set()


def test_name_claimed_by_another_job(tmp_path, free_port):
    async def scenario():
        store = JobStore(fakeredis.aioredis.FakeRedis(decode_responses=True))
        await store.claim_name("border_headless", "other-job")
        simulator = ContainerSimulator()
        orchestrator = _orchestrator(tmp_path, simulator, store=store)
        result = await orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
        record = await store.get(result.job_id)
        return result, record, simulator

    result, record, simulator = asyncio.run(scenario())

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert record.status is JobStatus.failed
    assert simulator.invocations == []


def test_concurrent_runs_with_same_name(tmp_path, free_port):
    async def scenario():
        store = JobStore(fakeredis.aioredis.FakeRedis(decode_responses=True))
        spec = _spec(tmp_path, name="dup")
        plan = _plan(free_port, python_command("pass"))
        runs = [
            _orchestrator(tmp_path, ContainerSimulator(), store=store).run(
                _request(), spec, plan
            )
            for _ in range(2)
        ]
        return await asyncio.gather(*runs), await store.claimed_names()

    results, claimed = asyncio.run(scenario())

    kinds = sorted(str(result.failure_kind) for result in results)
    assert kinds == [str(FailureKind.CONTAINER_LAUNCH_FAILED), "None"]
    assert claimed == set()


def test_rejected_launch_leaves_no_status_dir(tmp_path, free_port):
    orchestrator = _orchestrator(
        tmp_path, ContainerSimulator(), runtime=QuietRuntime(running={"border_headless"})
    )

    result = asyncio.run(
        orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
    )

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert not (tmp_path / "status" / result.job_id).exists()


def test_unnamed_container_skips_runtime_listing(tmp_path, free_port):
    class ListingRuntime(QuietRuntime):
        async def running_names(self):
            raise AssertionError("runtime listing not needed")

    orchestrator = _orchestrator(
        tmp_path, ContainerSimulator(), runtime=ListingRuntime()
    )

    result = asyncio.run(
        orchestrator.run(
            _request(),
            _spec(tmp_path, name=None),
            _plan(free_port, python_command("pass")),
        )
    )

    assert result.succeeded


def test_runtime_not_executable(tmp_path):
    binary = tmp_path / "docker"
    binary.write_text("#!/bin/sh\nexit 0\n")
    binary.chmod(0o644)
    invocation = Invocation(argv=[str(binary), "run"], spec=_spec(tmp_path))

    assert asyncio.run(run_invocation(invocation)) == 126


def test_unrunnable_runtime_still_yields_result(tmp_path, free_port):
    binary = tmp_path / "docker"
    binary.write_text("#!/bin/sh\nexit 0\n")
    binary.chmod(0o644)
    runtime = QuietRuntime()
    runtime.binary = str(binary)

    async def scenario():
        store = JobStore(fakeredis.aioredis.FakeRedis(decode_responses=True))
        orchestrator = JobOrchestrator(
            LocalScheduler(),
            runtime,
            store=store,
            status_dir=tmp_path / "status",
        )
        result = await orchestrator.run(
            _request(), _spec(tmp_path), _plan(free_port, python_command("pass"))
        )
        return result, await store.get(result.job_id)

    result, record = asyncio.run(scenario())

    assert result.failure_kind is FailureKind.CONTAINER_LAUNCH_FAILED
    assert result.exit_code == 126
    assert record.status is JobStatus.failed
