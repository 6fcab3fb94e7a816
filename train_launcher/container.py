from __future__ import annotations

import asyncio
import shlex
from collections.abc import Collection

import structlog
from pydantic import BaseModel

from train_launcher.errors import ContainerNameConflict, InvalidVolumeMount
from train_launcher.models import (
    ClientConfig,
    ContainerRunSpec,
    RuntimeKind,
    format_size,
)

logger = structlog.get_logger(__name__)

ENTRY_SHELL = ("bash", "-l", "-c")


class Invocation(BaseModel):
    argv: list[str]
    spec: ContainerRunSpec

    @property
    def command(self) -> str:
        return shlex.join(self.argv)


class ContainerRuntime:
    """A container runtime that understands ``run`` the way docker does."""

    kind: RuntimeKind
    binary: str

    def gpu_flags(self) -> list[str]:
        raise NotImplementedError

    def build_argv(self, spec: ContainerRunSpec, environment: dict[str, str]) -> list[str]:
        argv = [self.binary, "run", "--rm"]
        if spec.interactive:
            argv.append("-it")
        if spec.name:
            argv += ["--name", spec.name]
        if spec.shared_memory_bytes:
            argv.append(f"--shm-size={format_size(spec.shared_memory_bytes)}")
        if spec.gpus:
            argv += self.gpu_flags()
        for volume in spec.volumes:
            host = volume.host_path.resolve()
            argv.append(f"--volume={host}:{volume.container_path}:{volume.mode}")
        for key, value in environment.items():
            argv += ["--env", f"{key}={value}"]
        argv.append(spec.image)

        script = "; ".join(
            part for part in (spec.setup_command, spec.entry_command) if part
        )
        if script:
            argv += [*ENTRY_SHELL, script]
        return argv

    async def running_names(self) -> set[str]:
        """Names of running containers, or an empty set if unknown."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                "ps",
                "--format",
                "{{.Names}}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.warning("runtime.unavailable", runtime=self.binary)
            return set()
        out, _ = await process.communicate()
        if process.returncode != 0:
            logger.warning(
                "runtime.ps_failed", runtime=self.binary, exit_code=process.returncode
            )
            return set()
        return {line.strip() for line in out.decode(errors="replace").splitlines() if line.strip()}


class DockerRuntime(ContainerRuntime):
    kind = RuntimeKind.docker
    binary = "docker"

    def gpu_flags(self) -> list[str]:
        return ["--gpus", "all"]


class PodmanRuntime(ContainerRuntime):
    kind = RuntimeKind.podman
    binary = "podman"

    def gpu_flags(self) -> list[str]:
        return ["--device", "nvidia.com/gpu=all"]


_RUNTIMES: dict[RuntimeKind, type[ContainerRuntime]] = {
    RuntimeKind.docker: DockerRuntime,
    RuntimeKind.podman: PodmanRuntime,
}


def get_runtime(kind: RuntimeKind | str) -> ContainerRuntime:
    return _RUNTIMES[RuntimeKind(kind)]()


def build_invocation(
    spec: ContainerRunSpec,
    runtime: ContainerRuntime,
    client: ClientConfig | None = None,
    names_in_use: Collection[str] = (),
) -> Invocation:
    """Turn a run spec into a runtime command line.

    Host paths and the container name are checked up front; the runtime
    performs the authoritative checks when the command is executed.
    """
    for volume in spec.volumes:
        if not volume.host_path.exists():
            raise InvalidVolumeMount(volume.host_path)
    if spec.name and spec.name in names_in_use:
        raise ContainerNameConflict(spec.name)

    environment = dict(spec.environment)
    if client is not None:
        environment.update(client.environment())

    argv = runtime.build_argv(spec, environment)
    return Invocation(argv=argv, spec=spec)
