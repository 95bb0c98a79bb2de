# read_analytics/store.py
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from read_analytics.dates import utc_now
from read_analytics.models import Article, ReadEvent, DailyAggregate

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class AnalyticsStore:
    """
    Akses data untuk pipeline analytics.
    Setiap operasi membuka sesi sendiri, jadi aman dipakai paralel oleh
    recorder, worker, dan scheduler.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def append_read_event(self, article_id: str, reader_id: Optional[str] = None,
                                occurred_at: Optional[datetime] = None) -> int:
        event = ReadEvent(
            article_id=article_id,
            reader_id=reader_id,
            occurred_at=occurred_at or utc_now(),
        )
        async with self.session_factory() as session:
            session.add(event)
            await session.commit()
            return event.id

    async def count_read_events(self, article_id: str, start: datetime, end: datetime) -> int:
        query = select(func.count(ReadEvent.id)).where(
            ReadEvent.article_id == article_id,
            ReadEvent.occurred_at >= start,
            ReadEvent.occurred_at < end,
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def upsert_daily_aggregate(self, article_id: str, day: date, view_count: int) -> None:
        """
        Upsert dengan semantik OVERWRITE (bukan increment).
        view_count selalu hasil hitung ulang penuh, jadi re-delivery aman.
        """
        async with self.session_factory() as session:
            insert = _INSERTS[session.bind.dialect.name]
            now = utc_now()
            stmt = insert(DailyAggregate).values(
                article_id=article_id,
                date=day,
                view_count=view_count,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['article_id', 'date'],
                set_={'view_count': stmt.excluded.view_count, 'updated_at': now}
            )
            await session.execute(stmt)
            await session.commit()

    async def distinct_articles_with_events(self, start: datetime, end: datetime) -> set:
        query = select(ReadEvent.article_id).where(
            ReadEvent.occurred_at >= start,
            ReadEvent.occurred_at < end,
        ).distinct()
        async with self.session_factory() as session:
            result = await session.execute(query)
            return set(result.scalars().all())

    async def get_article(self, article_id: str) -> Optional[Article]:
        async with self.session_factory() as session:
            return await session.get(Article, article_id)

    async def daily_aggregates(self, article_id: str) -> list:
        query = (
            select(DailyAggregate)
            .where(DailyAggregate.article_id == article_id)
            .order_by(DailyAggregate.date)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def total_views(self, article_id: str) -> int:
        query = select(func.coalesce(func.sum(DailyAggregate.view_count), 0)).where(
            DailyAggregate.article_id == article_id
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return int(result.scalar_one())
