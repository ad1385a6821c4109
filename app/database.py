from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from fastapi import Request

from .settings.config import settings

DATABASE_URL = settings.async_database_url


def enable_sqlite_foreign_keys(async_engine) -> None:
    """SQLite ignores ON DELETE CASCADE unless the pragma is set per connection."""
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _fk_pragma(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_session_maker(async_engine):
    return sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = create_async_engine(DATABASE_URL, echo=False, future=True)
enable_sqlite_foreign_keys(engine)
async_session_maker = make_session_maker(engine)
Base = declarative_base()


async def get_db(request: Request):
    # the app may carry its own session factory (tests, alternate engines)
    maker = getattr(request.app.state, "session_maker", None) or async_session_maker
    async with maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(async_engine=None, create_all=None):
    # Only run create_all in dev, never in prod with Alembic
    if create_all is None:
        create_all = settings.RUN_DB_CREATE_ALL
    if create_all:
        async with (async_engine or engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
