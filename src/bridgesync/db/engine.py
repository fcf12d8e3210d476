from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# The local outbox, cursors and conflicts live in one SQLite file:
#   sqlite+aiosqlite:///bridgesync.db
# "sqlite+aiosqlite://" keeps them in memory for tests and throwaway clients.
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _on_connect(in_memory: bool):
    def _pragmas(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return _pragmas


def init_engine(database_url: str) -> AsyncEngine:
    global _engine, _session_factory

    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        _engine = create_async_engine(url)
    else:
        _engine = create_async_engine(url, connect_args={"timeout": 30})
        in_memory = url.database in (None, "", ":memory:")
        event.listen(_engine.sync_engine, "connect", _on_connect(in_memory))

    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("No local state database. Call init_engine() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("No local state database. Call init_engine() first.")
    return _session_factory


async def create_tables() -> None:
    from bridgesync.db.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
