from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from .config import settings
from .base import Base

def build_engine(dsn: str, **kwargs) -> AsyncEngine:
    if dsn.startswith("sqlite"):
        # SQLite: take the write lock at BEGIN so per-queue claims serialize instead of failing
        # with "database is locked" on lock upgrade.
        eng = create_async_engine(dsn, connect_args={"timeout": 30}, **kwargs)

        @event.listens_for(eng.sync_engine, "connect")
        def _no_implicit_begin(dbapi_conn, _record):
            dbapi_conn.isolation_level = None

        @event.listens_for(eng.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return eng
    return create_async_engine(dsn, pool_pre_ping=True, **kwargs)

engine = build_engine(settings.DATABASE_DSN)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def init_models(bind: AsyncEngine | None = None):
    ## In dev-only "create_all" mode, keep old behavior; otherwise, migrations own the schema.
    if settings.DB_MANAGE.lower() == "create_all":
        # register mappers before create_all
        from app.modules.queues import models as _queue_models  # noqa: F401
        from app.modules.events import outbox as _outbox  # noqa: F401
        async with (bind or engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
