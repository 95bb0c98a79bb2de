# read_analytics/recorder.py
import asyncio
import logging
from typing import Optional

from read_analytics.config import RECORDER_CONCURRENCY, RECORDER_QUEUE_SIZE
from read_analytics.dates import utc_now
from read_analytics.logs import log_event, logger


class EventRecorder:
    """
    Pencatat read event (best-effort).

    Handler HTTP hanya memanggil submit() yang tidak blocking; pekerjaan
    append + enqueue dijalankan oleh background task milik recorder sendiri.
    Kegagalan apa pun dicatat ke log dan tidak pernah sampai ke client.
    """

    def __init__(self, store, queue, concurrency: int = RECORDER_CONCURRENCY,
                 maxsize: int = RECORDER_QUEUE_SIZE, clock=utc_now):
        self.store = store
        self.queue = queue
        self.concurrency = concurrency
        self.clock = clock
        self._pending = asyncio.Queue(maxsize=maxsize)
        self._tasks = []

    def submit(self, article_id: str, reader_id: Optional[str] = None) -> bool:
        try:
            self._pending.put_nowait((article_id, reader_id))
        except asyncio.QueueFull:
            log_event("read_event_dropped", level=logging.WARNING, article_id=article_id)
            return False
        return True

    async def record(self, article_id: str, reader_id: Optional[str] = None) -> bool:
        try:
            occurred_at = self.clock()
            await self.store.append_read_event(article_id, reader_id, occurred_at)
            # Agregasi ulang untuk hari (UTC) event ini
            await self.queue.enqueue(article_id, occurred_at.date())
            return True
        except Exception as e:
            log_event("read_event_record_failed", level=logging.ERROR,
                      article_id=article_id, error=str(e))
            return False

    async def _consume(self):
        while True:
            article_id, reader_id = await self._pending.get()
            try:
                await self.record(article_id, reader_id)
            finally:
                self._pending.task_done()

    def start(self):
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"read-recorder-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("[RECORDER] Read event recorder started")

    async def drain(self):
        await self._pending.join()

    async def stop(self):
        if self._tasks:
            await self.drain()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
