from __future__ import annotations

from pathlib import Path

import yaml

from train_launcher.models import JobConfig
from train_launcher.settings import get_settings


def status_dir() -> Path:
    """Root directory for launch status (per-job subdirs)."""
    root = Path(get_settings().status_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def load_job_config(path: str | Path) -> JobConfig:
    """Load a job file.

    Relative volume host paths are resolved against the directory holding
    the file, so a job file can point at ``../..`` the way a launch script
    run from its own directory would.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"job file not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raise ValueError(f"job file is empty: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"job file must contain a mapping: {path}")

    base = path.resolve().parent
    for volume in (raw.get("container") or {}).get("volumes") or []:
        host = Path(str(volume.get("host_path", "")))
        if not host.is_absolute():
            volume["host_path"] = str((base / host).resolve())

    return JobConfig.model_validate(raw)
