# read_analytics/models.py
from datetime import date as date_type, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, String, Integer, Date, DateTime, Text, Index, UniqueConstraint
from sqlalchemy.sql import func

from read_analytics.database import Base


class Article(Base):
    """Read-only di sini; CRUD artikel ada di service lain."""
    __tablename__ = "articles"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    content = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # soft delete


class ReadEvent(Base):
    __tablename__ = "read_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(String, nullable=False)
    reader_id = Column(String, nullable=True)  # null = anonim
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    # Append-only. Query count & distinct selalu per (article, rentang waktu)
    __table_args__ = (
        Index('ix_read_events_article_occurred', 'article_id', 'occurred_at'),
        Index('ix_read_events_occurred', 'occurred_at'),
    )


class DailyAggregate(Base):
    __tablename__ = "daily_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(String, nullable=False, index=True)
    date = Column(Date, nullable=False)
    view_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True))

    # Satu rollup per artikel per hari (kunci upsert)
    __table_args__ = (
        UniqueConstraint('article_id', 'date', name='uq_article_date'),
    )


# --- SKEMA DATA ---

def task_id_for(article_id: str, day: date_type) -> str:
    return f"analytics:{article_id}:{day.isoformat()}"


class AggregationTask(BaseModel):
    task_id: str
    article_id: str
    date: date_type
    attempts: int = 0
    claimed_at: Optional[float] = None

    @classmethod
    def for_article(cls, article_id: str, day: date_type) -> "AggregationTask":
        return cls(task_id=task_id_for(article_id, day), article_id=article_id, date=day)


class ArticleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    content: Optional[str] = None
    created_at: Optional[datetime] = None


class DailyAggregateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date_type
    view_count: int
