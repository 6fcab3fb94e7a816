"""Two-stage startup: tracking server in the background, then the client.

The launcher runs wherever the training client runs, normally inside the
container as ``python -m train_launcher launch``. Its terminal state is
written to an outcome file so the orchestrator outside the container can
tell a dead tracking server apart from a failed client.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
from pathlib import Path

import structlog

from train_launcher.models import (
    FailureKind,
    LaunchOutcome,
    LaunchPlan,
    LaunchState,
)

logger = structlog.get_logger(__name__)

OUTCOME_FILENAME = "outcome.json"
CONTAINER_STATUS_DIR = "/run/train-launcher"

_TRANSITIONS: dict[LaunchState, frozenset[LaunchState]] = {
    LaunchState.NOT_STARTED: frozenset(
        {LaunchState.SERVER_STARTING, LaunchState.CLIENT_RUNNING}
    ),
    LaunchState.SERVER_STARTING: frozenset(
        {LaunchState.SERVER_READY, LaunchState.SERVER_TIMEOUT, LaunchState.DONE}
    ),
    LaunchState.SERVER_READY: frozenset({LaunchState.CLIENT_RUNNING}),
    LaunchState.SERVER_TIMEOUT: frozenset(
        {LaunchState.CLIENT_RUNNING, LaunchState.DONE}
    ),
    LaunchState.CLIENT_RUNNING: frozenset({LaunchState.DONE}),
    LaunchState.DONE: frozenset(),
}


def exit_status(returncode: int) -> int:
    """Map asyncio's negative signal codes to the shell convention."""
    return 128 - returncode if returncode < 0 else returncode


class _ServerExited(Exception):
    def __init__(self, returncode: int) -> None:
        self.returncode = returncode


async def _port_open(host: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class ReadinessGatedLauncher:
    """Start the tracking server, wait for it, then run the client.

    Each run is single-shot: a launcher instance is not reusable and never
    retries.
    """

    def __init__(
        self,
        plan: LaunchPlan,
        env: dict[str, str] | None = None,
        stop_timeout: float = 10.0,
    ) -> None:
        self.plan = plan
        self.env = env
        self.stop_timeout = stop_timeout
        self.state = LaunchState.NOT_STARTED
        self.history: list[LaunchState] = [LaunchState.NOT_STARTED]

    def _transition(self, target: LaunchState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid launcher transition {self.state.value} -> {target.value}")
        logger.info("launcher.transition", source=self.state.value, target=target.value)
        self.state = target
        self.history.append(target)

    def _finish(
        self,
        exit_code: int,
        failure_kind: FailureKind | None = None,
        detail: str | None = None,
    ) -> LaunchOutcome:
        self._transition(LaunchState.DONE)
        return LaunchOutcome(
            state=self.state,
            exit_code=exit_code,
            failure_kind=failure_kind,
            detail=detail,
            history=list(self.history),
        )

    async def run(self) -> LaunchOutcome:
        if self.state is not LaunchState.NOT_STARTED:
            raise RuntimeError("launcher has already run")

        if not self.plan.tracking_server_command:
            return await self._run_client()

        self._transition(LaunchState.SERVER_STARTING)
        server = await asyncio.create_subprocess_shell(
            self.plan.tracking_server_command,
            env=self.env,
            start_new_session=True,
        )
        logger.info("launcher.server_started", pid=server.pid)
        try:
            try:
                ready = await self._await_server(server)
            except _ServerExited as exc:
                code = exit_status(exc.returncode) or 1
                return self._finish(
                    code,
                    FailureKind.SERVER_NOT_READY,
                    f"tracking server exited with code {exc.returncode} before it was ready",
                )
            self._transition(ready)
            if ready is LaunchState.SERVER_TIMEOUT:
                probe = self.plan.readiness_probe
                if probe.on_timeout == "fail":
                    return self._finish(
                        1,
                        FailureKind.SERVER_NOT_READY,
                        f"tracking server not reachable at {probe.host}:{probe.port} "
                        f"after {probe.timeout}s",
                    )
                logger.warning("launcher.assume_ready", host=probe.host, port=probe.port)
            return await self._run_client()
        finally:
            await self._stop_server(server)

    async def _await_server(self, server: asyncio.subprocess.Process) -> LaunchState:
        """Wait until the server accepts connections or the window closes.

        Raises _ServerExited if the server process ends first.
        """
        probe = self.plan.readiness_probe
        loop = asyncio.get_running_loop()
        deadline = loop.time() + probe.timeout
        exited = asyncio.ensure_future(server.wait())
        try:
            while True:
                if exited.done():
                    raise _ServerExited(exited.result())
                if probe.port is not None and await _port_open(
                    probe.host, probe.port, probe.interval
                ):
                    return LaunchState.SERVER_READY
                remaining = deadline - loop.time()
                if remaining <= 0:
                    # a flat grace period has no probe to fail
                    if probe.port is None:
                        return LaunchState.SERVER_READY
                    return LaunchState.SERVER_TIMEOUT
                step = remaining if probe.port is None else min(probe.interval, remaining)
                await asyncio.wait({exited}, timeout=step)
        finally:
            if not exited.done():
                exited.cancel()

    async def _run_client(self) -> LaunchOutcome:
        self._transition(LaunchState.CLIENT_RUNNING)
        client = await asyncio.create_subprocess_shell(
            self.plan.client_command, env=self.env
        )
        logger.info("launcher.client_started", pid=client.pid)
        returncode = exit_status(await client.wait())
        if returncode == 0:
            return self._finish(0)
        return self._finish(
            returncode,
            FailureKind.CLIENT_FAILED,
            f"training client exited with code {returncode}",
        )

    async def _stop_server(self, server: asyncio.subprocess.Process) -> None:
        if server.returncode is not None:
            return
        try:
            os.killpg(server.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(server.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            try:
                os.killpg(server.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await server.wait()
        logger.info("launcher.server_stopped", exit_code=server.returncode)


def write_outcome(outcome: LaunchOutcome, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(outcome.model_dump_json(), encoding="utf-8")
    tmp.replace(path)


def read_outcome(path: Path) -> LaunchOutcome | None:
    if not path.is_file():
        return None
    return LaunchOutcome.model_validate_json(path.read_text(encoding="utf-8"))


async def launch_in_place(plan: LaunchPlan, outcome_path: Path) -> int:
    """Run the plan here, record its outcome and return the exit code."""
    outcome = await ReadinessGatedLauncher(plan).run()
    write_outcome(outcome, outcome_path)
    return outcome.exit_code


def entry_command(plan: LaunchPlan, python: str = "python") -> str:
    """Shell command that runs ``plan`` through the launcher in a container."""
    outcome = f"{CONTAINER_STATUS_DIR}/{OUTCOME_FILENAME}"
    return shlex.join(
        [
            python,
            "-m",
            "train_launcher",
            "launch",
            "--plan",
            plan.model_dump_json(),
            "--outcome",
            outcome,
        ]
    )
