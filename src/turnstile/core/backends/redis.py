from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from turnstile.core.backends.base import Pipeline, ScoreBound, StorageBackend
from turnstile.core.errors import BackendError


class RedisPipeline(Pipeline):
    """Non-transactional redis-py pipeline with per-command error reporting."""

    def __init__(self, redis: Redis):
        self._pipe = redis.pipeline(transaction=False)

    def incr(self, key: str) -> "RedisPipeline":
        self._pipe.incr(key)
        return self

    def pttl(self, key: str) -> "RedisPipeline":
        self._pipe.pttl(key)
        return self

    def pexpire(self, key: str, milliseconds: int) -> "RedisPipeline":
        self._pipe.pexpire(key, milliseconds)
        return self

    def zadd(self, key: str, score: float, member: str) -> "RedisPipeline":
        self._pipe.zadd(key, {member: score})
        return self

    def zremrangebyscore(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> "RedisPipeline":
        self._pipe.zremrangebyscore(key, min_score, max_score)
        return self

    def zcount(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> "RedisPipeline":
        self._pipe.zcount(key, min_score, max_score)
        return self

    async def execute(self) -> list[Any]:
        try:
            # raise_on_error=False leaves failed commands in place as exceptions
            results = await self._pipe.execute(raise_on_error=False)
        except RedisError as exc:
            raise BackendError(f"pipeline round trip failed: {exc}") from exc

        return [
            _wrap(result) if isinstance(result, Exception) else result
            for result in results
        ]


def _wrap(exc: Exception) -> BackendError:
    error = BackendError(str(exc))
    error.__cause__ = exc
    return error


class RedisBackend(StorageBackend):
    def __init__(self, redis: Redis):
        self._redis = redis

    async def incr(self, key: str) -> int:
        try:
            return await self._redis.incr(key)
        except RedisError as exc:
            raise BackendError(f"INCR failed: {exc}") from exc

    async def pttl(self, key: str) -> int:
        try:
            return await self._redis.pttl(key)
        except RedisError as exc:
            raise BackendError(f"PTTL failed: {exc}") from exc

    async def pexpire(self, key: str, milliseconds: int) -> bool:
        try:
            return bool(await self._redis.pexpire(key, milliseconds))
        except RedisError as exc:
            raise BackendError(f"PEXPIRE failed: {exc}") from exc

    async def zadd(self, key: str, score: float, member: str) -> int:
        try:
            return await self._redis.zadd(key, {member: score})
        except RedisError as exc:
            raise BackendError(f"ZADD failed: {exc}") from exc

    async def zremrangebyscore(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> int:
        try:
            return await self._redis.zremrangebyscore(key, min_score, max_score)
        except RedisError as exc:
            raise BackendError(f"ZREMRANGEBYSCORE failed: {exc}") from exc

    async def zcount(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> int:
        try:
            return await self._redis.zcount(key, min_score, max_score)
        except RedisError as exc:
            raise BackendError(f"ZCOUNT failed: {exc}") from exc

    def pipeline(self) -> RedisPipeline:
        return RedisPipeline(self._redis)
