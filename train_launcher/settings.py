from __future__ import annotations

import os
from dataclasses import dataclass, field


def _flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    status_dir: str = field(
        default_factory=lambda: os.getenv("LAUNCHER_STATUS_DIR", "data/launches")
    )
    container_python: str = field(
        default_factory=lambda: os.getenv("CONTAINER_PYTHON", "python")
    )
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _flag("FAKE_REDIS"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "console"))


def get_settings() -> Settings:
    return Settings()
