# read_analytics/scheduler.py
import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from read_analytics.config import SCHEDULER_RUN_AT
from read_analytics.dates import day_bounds, parse_run_at, utc_now
from read_analytics.logs import log_event, logger


class DailyScheduler:
    """
    Sekali sehari (default 00:05 UTC) antrekan agregasi untuk semua artikel
    yang dibaca kemarin. Tick yang gagal hanya di-log; tidak ada backfill.
    """

    def __init__(self, store, queue, run_at: Optional[time] = None, clock=utc_now):
        self.store = store
        self.queue = queue
        self.run_at = run_at or parse_run_at(SCHEDULER_RUN_AT)
        self.clock = clock

    async def tick(self, today: Optional[date] = None) -> int:
        today = today or self.clock().date()
        yesterday = today - timedelta(days=1)
        start, end = day_bounds(yesterday)
        try:
            article_ids = await self.store.distinct_articles_with_events(start, end)
            for article_id in sorted(article_ids):
                await self.queue.enqueue(article_id, yesterday)
        except Exception as e:
            log_event("scheduler_tick_failed", level=logging.ERROR, date=yesterday, error=str(e))
            return 0

        log_event("scheduler_tick", date=yesterday, articles=len(article_ids))
        return len(article_ids)

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        target = datetime.combine(now.date(), self.run_at.replace(tzinfo=None), tzinfo=timezone.utc)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def run(self, stop: asyncio.Event):
        logger.info(f"[SCHEDULER] Daily aggregation scheduled at {self.run_at.strftime('%H:%M')} UTC")
        while not stop.is_set():
            delay = self.seconds_until_next_run()
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                await self.tick()
