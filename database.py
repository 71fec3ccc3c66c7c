from typing import Optional

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from config import settings


def build_engine(database_url: Optional[str] = None, **engine_options) -> AsyncEngine:
    # Get the URL. If it's not found, raise an error to fail fast.
    url = database_url or settings.database_url
    if not url:
        raise ValueError("DATABASE_URL is not set. Please check your .env file.")

    engine_options.setdefault("echo", settings.sql_echo)
    return create_async_engine(url, future=True, **engine_options)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        # This creates the tables if they don't exist
        await conn.run_sync(SQLModel.metadata.create_all)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
