# read_analytics/worker.py
import asyncio
from datetime import date

from read_analytics.config import (
    TASK_TIMEOUT_SECONDS, WORKER_CONCURRENCY, WORKER_POLL_SECONDS,
)
from read_analytics.dates import day_bounds
from read_analytics.logs import log_event, logger


class AggregationWorker:
    def __init__(self, store, queue, timeout: float = TASK_TIMEOUT_SECONDS):
        self.store = store
        self.queue = queue
        self.timeout = timeout

    async def process(self, article_id: str, day: date) -> int:
        """
        Hitung ulang view count satu artikel untuk satu hari UTC, lalu
        upsert (overwrite). Dijalankan berkali-kali pun hasilnya sama.
        """
        start, end = day_bounds(day)
        view_count = await self.store.count_read_events(article_id, start, end)
        await self.store.upsert_daily_aggregate(article_id, day, view_count)
        return view_count

    async def handle(self, task) -> bool:
        """Proses satu task yang sudah di-claim; retry diserahkan ke queue."""
        try:
            view_count = await asyncio.wait_for(
                self.process(task.article_id, task.date), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            await self.queue.fail(task, f"timeout after {self.timeout}s")
            return False
        except Exception as e:
            await self.queue.fail(task, e)
            return False

        await self.queue.complete(task)
        log_event("aggregation_done", article_id=task.article_id,
                  date=task.date, view_count=view_count)
        return True

    async def run_once(self, timeout: float = 0) -> bool:
        task = await self.queue.claim(timeout=timeout)
        if task is None:
            return False
        await self.handle(task)
        return True

    async def run(self, stop: asyncio.Event, poll: float = WORKER_POLL_SECONDS, idle: float = 0.05):
        """
        Looping mengambil task dari Redis sampai stop di-set.
        poll > 0 memakai BLMOVE; poll = 0 memakai LMOVE dan tidur `idle` saat kosong.
        """
        while not stop.is_set():
            try:
                claimed = await self.run_once(timeout=poll)
                if not claimed and not poll:
                    await asyncio.sleep(idle)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[WORKER] Consumer error: {e}")
                await asyncio.sleep(1)  # Backoff sederhana jika Redis down


class WorkerPool:
    """N consumer loop paralel di atas satu AggregationWorker."""

    def __init__(self, worker: AggregationWorker, concurrency: int = WORKER_CONCURRENCY,
                 poll: float = WORKER_POLL_SECONDS):
        self.worker = worker
        self.concurrency = concurrency
        self.poll = poll
        self._stop = asyncio.Event()
        self._tasks = []

    async def start(self):
        recovered = await self.worker.queue.recover_stalled()
        if recovered:
            logger.warning(f"[WORKER] Recovered {recovered} stalled task(s)")
        self._stop.clear()
        self._tasks = [
            asyncio.create_task(self.worker.run(self._stop, self.poll), name=f"aggregation-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[WORKER] {self.concurrency} aggregation worker(s) started")

    async def stop(self):
        # Graceful drain: task yang sedang diproses diselesaikan dulu
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[WORKER] Aggregation workers stopped")
