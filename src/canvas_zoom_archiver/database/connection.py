import os
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from canvas_zoom_archiver.config.settings import settings
from canvas_zoom_archiver.database.models.session_state import Base


def create_engine_for(database_url: str = None, echo: bool = None) -> AsyncEngine:
    """Create an async engine, making sure the SQLite file's directory exists."""
    database_url = database_url or settings.effective_database_url
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

    engine = create_async_engine(
        database_url,
        echo=settings.debug if echo is None else echo,
        future=True,
        pool_pre_ping=True,     # Validate connections before use
    )

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine):
    """Initialize database tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
