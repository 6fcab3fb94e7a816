from __future__ import annotations

from pathlib import Path


class LaunchError(Exception):
    """Base class for errors raised while preparing a training launch."""


class InvalidResourceRequest(LaunchError):
    pass


class ResourceDenied(LaunchError):
    pass


class InvalidVolumeMount(LaunchError):
    def __init__(self, host_path: Path, message: str | None = None) -> None:
        self.host_path = host_path
        super().__init__(message or f"volume host path does not exist: {host_path}")


class ContainerNameConflict(LaunchError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"container name already in use: {name}")
