from uuid import uuid4

from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings


def _is_postgres_url(database_url: str) -> bool:
    return database_url.startswith("postgresql") or database_url.startswith("postgres")


db_url = settings.DATABASE_URL
db_url_obj = make_url(db_url)
connect_args: dict = {}
engine_kwargs: dict = {
    "echo": False,
    "future": True,
}

if _is_postgres_url(db_url):
    # Prevent prepared statement collisions with asyncpg + PgBouncer transaction mode.
    connect_args["statement_cache_size"] = 0
    connect_args["prepared_statement_cache_size"] = 0
    connect_args["prepared_statement_name_func"] = lambda: f"__asyncpg_{uuid4()}__"

    # For Supabase pooler (6543), avoid SQLAlchemy connection reuse.
    if db_url_obj.port == 6543:
        engine_kwargs["poolclass"] = NullPool

    if settings.ENVIRONMENT == "production":
        connect_args.setdefault("ssl", "require")

engine = create_async_engine(
    db_url,
    connect_args=connect_args,
    **engine_kwargs,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

import time
import logging

logger = logging.getLogger(__name__)

async def get_session() -> AsyncSession:
    start_time = time.time()
    async with async_session_factory() as session:
        yield session

    duration = time.time() - start_time
    if duration > 0.2:
         logger.warning(f"Slow DB Session: {duration:.4f}s")

async def init_db(bind=None):
    from sqlmodel import SQLModel
    from app.models import user
    from app.models import order
    from app.models import subscription
    from app.models import webhook_event

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await conn.run_sync(_ensure_webhook_event_columns)
        await conn.run_sync(_ensure_user_subscription_columns)


def _ensure_webhook_event_columns(sync_conn):
    inspector = inspect(sync_conn)
    if "webhook_events" not in inspector.get_table_names():
        return

    existing = {col["name"] for col in inspector.get_columns("webhook_events")}
    additions = {
        "status": "VARCHAR DEFAULT 'processing'",
        "error_msg": "VARCHAR",
        "updated_at": "TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
    }

    for column_name, column_type in additions.items():
        if column_name in existing:
            continue
        sync_conn.execute(text(f"ALTER TABLE webhook_events ADD COLUMN {column_name} {column_type}"))


def _ensure_user_subscription_columns(sync_conn):
    inspector = inspect(sync_conn)
    if "user_subscriptions" not in inspector.get_table_names():
        return

    existing = {col["name"] for col in inspector.get_columns("user_subscriptions")}
    additions = {
        "last_event_at": "TIMESTAMP",
    }

    for column_name, column_type in additions.items():
        if column_name in existing:
            continue
        sync_conn.execute(
            text(f"ALTER TABLE user_subscriptions ADD COLUMN {column_name} {column_type}")
        )
