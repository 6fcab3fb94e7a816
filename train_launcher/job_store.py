from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as redis

from train_launcher.models import JobRecord, JobResult, JobStatus
from train_launcher.settings import Settings, get_settings

try:
    import fakeredis.aioredis as fakeredis
except ImportError:  # pragma: no cover - optional
    fakeredis = None

FAKE_URL = "fake://"

_clients: dict[str, redis.Redis] = {}


def connect(settings: Settings | None = None) -> redis.Redis:
    """Shared client for the configured redis, one per URL.

    ``FAKE_REDIS`` swaps in an in-process fakeredis server so the store
    works without a redis daemon.
    """
    settings = settings or get_settings()
    url = FAKE_URL if settings.use_fake_redis else settings.redis_url
    if url not in _clients:
        if url == FAKE_URL:
            if fakeredis is None:
                raise RuntimeError("FAKE_REDIS is set but fakeredis is not installed")
            _clients[url] = fakeredis.FakeRedis(decode_responses=True)
        else:
            _clients[url] = redis.from_url(url, decode_responses=True)
    return _clients[url]


class JobStore:
    """Redis-backed job records and container-name claims.

    Claims let orchestrators on the same host agree on container names
    before the runtime is asked to start anything.
    """

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or connect()
        self.key_prefix = "job:"
        self.name_prefix = "container:"

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    def _name(self, name: str) -> str:
        return f"{self.name_prefix}{name}"

    async def create(self, job_id: str, container_name: str | None = None) -> JobRecord:
        record = JobRecord(
            id=job_id,
            status=JobStatus.queued,
            container_name=container_name,
            created_at=self._now(),
        )
        await self.redis.set(self._key(job_id), record.model_dump_json())
        return record

    async def get(self, job_id: str) -> JobRecord:
        raw = await self.redis.get(self._key(job_id))
        if raw is None:
            raise KeyError(job_id)
        return JobRecord.model_validate_json(raw)

    async def mark_running(self, job_id: str) -> JobRecord:
        return await self._update(
            job_id, status=JobStatus.running, started_at=self._now()
        )

    async def mark_finished(self, job_id: str, result: JobResult) -> JobRecord:
        status = JobStatus.succeeded if result.succeeded else JobStatus.failed
        return await self._update(
            job_id, status=status, finished_at=self._now(), result=result
        )

    async def claim_name(self, name: str, job_id: str) -> bool:
        """Claim a container name; False if another job holds it."""
        return bool(await self.redis.set(self._name(name), job_id, nx=True))

    async def release_name(self, name: str, job_id: str) -> None:
        holder = await self.redis.get(self._name(name))
        if holder == job_id:
            await self.redis.delete(self._name(name))

    async def claimed_names(self) -> set[str]:
        names = set()
        async for key in self.redis.scan_iter(match=f"{self.name_prefix}*"):
            names.add(key[len(self.name_prefix):])
        return names

    async def _update(self, job_id: str, **kwargs) -> JobRecord:
        record = await self.get(job_id)
        record = record.model_copy(update=kwargs)
        await self.redis.set(self._key(job_id), record.model_dump_json())
        return record

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
