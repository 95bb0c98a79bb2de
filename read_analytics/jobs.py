# read_analytics/jobs.py
import logging
import time
from datetime import date
from typing import Optional

from read_analytics.config import (
    QUEUE_NAME, TASK_MAX_ATTEMPTS, TASK_BACKOFF_SECONDS, TASK_TTL_SECONDS,
    TASK_VISIBILITY_SECONDS,
)
from read_analytics.logs import log_event, logger
from read_analytics.models import AggregationTask


class AggregationQueue:
    """
    Antrian tugas agregasi (at-least-once) di atas Redis.

    Key yang dipakai:
      {name}:wait          LIST  task_id siap diambil (FIFO)
      {name}:active        LIST  task_id yang sedang di-claim worker
      {name}:delayed       ZSET  task_id menunggu retry, score = waktu siap
      {name}:task:{id}     STR   JSON AggregationTask

    Dedup: key task dibuat dengan SET NX. Selama task pending, delayed,
    atau in-flight, enqueue dengan identitas sama tidak melakukan apa-apa.
    """

    def __init__(self, redis_client, name: str = QUEUE_NAME,
                 max_attempts: int = TASK_MAX_ATTEMPTS,
                 backoff: float = TASK_BACKOFF_SECONDS,
                 ttl: int = TASK_TTL_SECONDS,
                 visibility: float = TASK_VISIBILITY_SECONDS,
                 clock=time.time):
        self.r = redis_client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.ttl = ttl
        self.visibility = visibility
        self.clock = clock
        self._last_recovery = None
        self.wait_key = f"{name}:wait"
        self.active_key = f"{name}:active"
        self.delayed_key = f"{name}:delayed"

    def task_key(self, task_id: str) -> str:
        return f"{self.name}:task:{task_id}"

    async def enqueue(self, article_id: str, day: date) -> bool:
        task = AggregationTask.for_article(article_id, day)
        created = await self.r.set(
            self.task_key(task.task_id), task.model_dump_json(), nx=True, ex=self.ttl
        )
        if not created:
            logger.debug(f"[DEDUP] {task.task_id} already queued")
            return False
        await self.r.rpush(self.wait_key, task.task_id)
        return True

    async def claim(self, timeout: float = 0) -> Optional[AggregationTask]:
        """
        Ambil satu task. LMOVE wait -> active bersifat atomik, jadi satu task
        hanya dipegang satu worker. timeout > 0 memakai BLMOVE (blocking).
        """
        await self.maybe_recover_stalled()
        await self.promote_delayed()
        if timeout:
            task_id = await self.r.blmove(self.wait_key, self.active_key, timeout, "LEFT", "RIGHT")
        else:
            task_id = await self.r.lmove(self.wait_key, self.active_key, "LEFT", "RIGHT")
        if task_id is None:
            return None

        raw = await self.r.get(self.task_key(task_id))
        if raw is None:
            # Key sudah expire (TTL), tidak ada yang bisa diproses
            await self.r.lrem(self.active_key, 0, task_id)
            logger.warning(f"[ORPHAN DROPPED] {task_id}")
            return None

        task = AggregationTask.model_validate_json(raw)
        task.claimed_at = self.clock()
        await self.r.set(self.task_key(task_id), task.model_dump_json(), xx=True, ex=self.ttl)
        return task

    async def complete(self, task: AggregationTask) -> None:
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 0, task.task_id)
            pipe.delete(self.task_key(task.task_id))
            await pipe.execute()

    async def fail(self, task: AggregationTask, error) -> Optional[float]:
        """
        Catat kegagalan. Return delay retry (detik), atau None jika task
        sudah mencapai batas attempt dan di-drop.
        """
        task.attempts += 1
        task.claimed_at = None

        if task.attempts >= self.max_attempts:
            async with self.r.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 0, task.task_id)
                pipe.zrem(self.delayed_key, task.task_id)
                pipe.delete(self.task_key(task.task_id))
                await pipe.execute()
            log_event(
                "aggregation_task_exhausted", level=logging.ERROR,
                article_id=task.article_id, date=task.date,
                attempt=task.attempts, error=str(error),
            )
            return None

        delay = self.backoff * 2 ** (task.attempts - 1)
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.set(self.task_key(task.task_id), task.model_dump_json(), ex=self.ttl)
            pipe.zadd(self.delayed_key, {task.task_id: self.clock() + delay})
            pipe.lrem(self.active_key, 0, task.task_id)
            await pipe.execute()
        log_event(
            "aggregation_task_retry", level=logging.WARNING,
            article_id=task.article_id, date=task.date,
            attempt=task.attempts, delay=delay, error=str(error),
        )
        return delay

    async def promote_delayed(self) -> int:
        """Pindahkan task delayed yang sudah jatuh tempo ke wait."""
        due = await self.r.zrangebyscore(self.delayed_key, "-inf", self.clock())
        moved = 0
        for task_id in due:
            # ZREM hanya sukses di satu worker, jadi tidak ada push ganda
            if await self.r.zrem(self.delayed_key, task_id):
                await self.r.rpush(self.wait_key, task_id)
                moved += 1
        return moved

    async def maybe_recover_stalled(self) -> int:
        """Jalankan recover_stalled paling sering sekali per visibility window."""
        now = self.clock()
        if self._last_recovery is not None and now - self._last_recovery < self.visibility:
            return 0
        self._last_recovery = now
        return await self.recover_stalled()

    async def recover_stalled(self, visibility: Optional[float] = None) -> int:
        """
        Claim yang lebih tua dari visibility dianggap gagal (worker crash,
        hang, atau complete/fail yang putus di tengah jalan) dan masuk jalur
        retry biasa.

        Entry active tanpa claimed_at (crash antara LMOVE dan stamp) diberi
        stamp sekarang, lalu ikut aturan yang sama di putaran berikutnya.
        """
        visibility = self.visibility if visibility is None else visibility
        recovered = 0
        now = self.clock()
        for task_id in await self.r.lrange(self.active_key, 0, -1):
            raw = await self.r.get(self.task_key(task_id))
            if raw is None:
                await self.r.lrem(self.active_key, 0, task_id)
                continue
            task = AggregationTask.model_validate_json(raw)
            if task.claimed_at is None:
                task.claimed_at = now
                await self.r.set(self.task_key(task_id), task.model_dump_json(), xx=True, ex=self.ttl)
                continue
            if now - task.claimed_at < visibility:
                continue
            # LREM hanya sukses di satu instance, jadi attempt tidak dihitung ganda
            if await self.r.lrem(self.active_key, 0, task_id):
                await self.fail(task, "stalled: claim exceeded visibility timeout")
                recovered += 1
        return recovered

    async def stats(self) -> dict:
        async with self.r.pipeline(transaction=False) as pipe:
            pipe.llen(self.wait_key)
            pipe.llen(self.active_key)
            pipe.zcard(self.delayed_key)
            waiting, active, delayed = await pipe.execute()
        return {"waiting": waiting, "active": active, "delayed": delayed}
