# read_analytics/runtime.py
import asyncio

import redis.asyncio as redis

from read_analytics.config import (
    BROKER_CONNECT_TIMEOUT, BROKER_SOCKET_TIMEOUT, BROKER_URL, DATABASE_URL,
    RATE_LIMIT_BACKEND, RECORDER_CONCURRENCY, SCHEDULER_ENABLED, WORKER_CONCURRENCY,
)
from read_analytics.database import create_tables, make_engine, make_session_factory
from read_analytics.jobs import AggregationQueue
from read_analytics.logs import logger
from read_analytics.ratelimit import MemoryRateLimiter, RedisRateLimiter
from read_analytics.recorder import EventRecorder
from read_analytics.scheduler import DailyScheduler
from read_analytics.store import AnalyticsStore
from read_analytics.worker import AggregationWorker, WorkerPool


class AnalyticsRuntime:
    """
    Komposisi semua komponen. Satu instance per proses; lifecycle
    (start saat startup, drain saat shutdown) dipegang oleh app.
    """

    def __init__(self, engine, redis_client, rate_limit_backend: str = RATE_LIMIT_BACKEND,
                 worker_concurrency: int = WORKER_CONCURRENCY,
                 recorder_concurrency: int = RECORDER_CONCURRENCY):
        self.engine = engine
        self.redis = redis_client
        self.store = AnalyticsStore(make_session_factory(engine))
        self.queue = AggregationQueue(redis_client)
        if rate_limit_backend == "redis":
            self.limiter = RedisRateLimiter(redis_client)
        else:
            self.limiter = MemoryRateLimiter()
        self.recorder = EventRecorder(self.store, self.queue, concurrency=recorder_concurrency)
        self.worker = AggregationWorker(self.store, self.queue)
        self.workers = WorkerPool(self.worker, concurrency=worker_concurrency)
        self.scheduler = DailyScheduler(self.store, self.queue)
        self._scheduler_stop = asyncio.Event()
        self._scheduler_task = None

    @classmethod
    def from_env(cls):
        client = redis.from_url(
            BROKER_URL,
            decode_responses=True,
            socket_connect_timeout=BROKER_CONNECT_TIMEOUT,
            socket_timeout=BROKER_SOCKET_TIMEOUT,
        )
        return cls(make_engine(DATABASE_URL), client)

    async def start(self, run_workers: bool = True, run_scheduler: bool = SCHEDULER_ENABLED):
        # Buat tabel di database saat startup
        await create_tables(self.engine)
        self.recorder.start()
        if run_workers:
            await self.workers.start()
        if run_scheduler:
            self._scheduler_stop.clear()
            self._scheduler_task = asyncio.create_task(
                self.scheduler.run(self._scheduler_stop), name="daily-scheduler"
            )

    async def stop(self):
        if self._scheduler_task is not None:
            self._scheduler_stop.set()
            await self._scheduler_task
            self._scheduler_task = None
        # Recorder dulu supaya enqueue terakhir masih bisa diproses
        await self.recorder.stop()
        await self.workers.stop()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("Analytics runtime stopped")
