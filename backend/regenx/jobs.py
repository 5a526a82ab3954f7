"""One-shot job queue kept in the record store.

Jobs live in the ``scheduler:jobs`` sorted set scored by their run time, with
payloads in the ``scheduler:payloads`` hash. A user has at most one pending job
per job name, so re-arming a timer replaces the previous run time. Due jobs are
leased rather than removed before dispatch; a job whose handler never finishes
becomes due again once the lease runs out, which gives at-least-once delivery.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from . import config
from .storage import StoreAdapter
from .timeutils import from_epoch, now_utc, to_epoch

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[None]]

DEFAULT_LEASE_SECONDS = 300.0


def job_member(name: str, user_id: str) -> str:
    return f"{name}:{user_id}"


class JobScheduler:
    def __init__(
        self,
        store: StoreAdapter,
        clock: Callable[[], datetime] = now_utc,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.lease_seconds = lease_seconds
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    @property
    def handlers(self) -> List[str]:
        return sorted(self._handlers)

    async def run_job(self, name: str, data: Dict[str, Any], run_at: datetime) -> str:
        member = job_member(name, str(data["user_id"]))
        await self.store.hset(config.JOB_PAYLOAD_KEY, {member: json.dumps({"name": name, "data": data})})
        await self.store.zadd(config.JOB_QUEUE_KEY, {member: to_epoch(run_at)})
        return member

    async def next_run(self, name: str, user_id: str) -> Optional[datetime]:
        score = await self.store.zscore(config.JOB_QUEUE_KEY, job_member(name, user_id))
        return from_epoch(score) if score is not None else None

    async def pending(self) -> List[Tuple[str, datetime]]:
        entries = await self.store.zrange_by_score(config.JOB_QUEUE_KEY, float("-inf"), float("inf"))
        return [(member, from_epoch(score)) for member, score in entries]

    async def cancel(self, name: str, user_id: str) -> bool:
        member = job_member(name, user_id)
        removed = await self.store.zrem(config.JOB_QUEUE_KEY, member)
        await self.store.hdel(config.JOB_PAYLOAD_KEY, member)
        return bool(removed)

    async def run_due(self) -> int:
        now = to_epoch(self.clock())
        due = await self.store.zrange_by_score(config.JOB_QUEUE_KEY, float("-inf"), now)
        dispatched = 0
        for member, _ in due:
            raw = await self.store.hget(config.JOB_PAYLOAD_KEY, member)
            if raw is None:
                await self.store.zrem(config.JOB_QUEUE_KEY, member)
                continue

            lease_until = now + self.lease_seconds
            await self.store.zadd(config.JOB_QUEUE_KEY, {member: lease_until})
            job = json.loads(raw)
            await self._dispatch(job["name"], job["data"])
            dispatched += 1

            # A handler that re-armed itself has moved the score past the lease.
            if await self.store.zscore(config.JOB_QUEUE_KEY, member) == lease_until:
                await self.store.zrem(config.JOB_QUEUE_KEY, member)
                await self.store.hdel(config.JOB_PAYLOAD_KEY, member)
        return dispatched

    async def _dispatch(self, name: str, data: Dict[str, Any]) -> None:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("No handler registered for job %s", name)
            return
        try:
            await handler(data)
        except Exception:
            logger.exception("Job %s failed for %s", name, data)

    async def run_forever(self, poll_seconds: float) -> None:
        logger.info("Job scheduler polling every %.1fs", poll_seconds)
        while True:
            try:
                await self.run_due()
            except Exception:
                logger.exception("Job scheduler pass failed")
            await asyncio.sleep(poll_seconds)
