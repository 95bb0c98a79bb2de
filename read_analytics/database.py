# read_analytics/database.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from read_analytics.config import DATABASE_URL

Base = declarative_base()


def make_engine(url: str = DATABASE_URL, **kwargs):
    return create_async_engine(url, echo=False, **kwargs)


def make_session_factory(engine):
    # Session factory untuk interaksi DB
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def create_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
