"""Run trigger / result queues on Redis lists."""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from pydantic import ValidationError

from pipeline_runner.config import settings
from pipeline_runner.pipeline.schemas import RunRequested, RunResult

logger = logging.getLogger(__name__)


def connect(url: str | None = None) -> aioredis.Redis:
    return aioredis.from_url(url or settings.redis_url)


class RunQueue:
    """``RunRequested`` events in, ``RunResult`` events out."""

    def __init__(
        self,
        redis: aioredis.Redis,
        run_queue: str | None = None,
        result_queue: str | None = None,
    ) -> None:
        self.redis = redis
        self.run_queue = run_queue or settings.run_queue
        self.result_queue = result_queue or settings.result_queue

    async def request(self, event: RunRequested) -> None:
        await self.redis.rpush(self.run_queue, event.model_dump_json(by_alias=True))

    async def next_request(self, timeout: int | None = None) -> RunRequested | None:
        """Block up to *timeout* seconds for the next trigger.

        Returns ``None`` on timeout and for payloads that are not a valid
        ``RunRequested``; the latter are logged and dropped.
        """
        timeout = settings.queue_poll_timeout if timeout is None else timeout
        raw = await self.redis.blpop([self.run_queue], timeout=timeout)
        if raw is None:
            return None
        payload = raw[1]
        try:
            return RunRequested.model_validate_json(payload)
        except ValidationError as exc:
            logger.error("Dropping malformed run request %r: %s", payload[:200], exc)
            return None

    async def publish(self, result: RunResult) -> None:
        await self.redis.rpush(self.result_queue, result.model_dump_json())
        logger.info("Published result of run %s (%s).", result.run_id, result.status.value)
