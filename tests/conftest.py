import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.db.engine import get_session, init_db
from app.main import app
from app.routers.webhooks import get_webhook_processor, get_webhook_secret
from app.services.order_ledger import OrderLedger
from app.services.signature_service import compute_signature
from app.services.subscription_service import UserSubscriptionService
from app.services.user_resolver import DatabaseUserDirectory, UserResolver
from app.services.webhook_ledger import WebhookEventLedger
from app.services.webhook_processor import WebhookProcessor


WEBHOOK_SECRET = "whsec_pytest_secret"


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        poolclass=NullPool,
    )
    asyncio.run(init_db(engine))
    try:
        yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        asyncio.run(engine.dispose())


@pytest.fixture
def processor(session_factory) -> WebhookProcessor:
    return WebhookProcessor(
        ledger=WebhookEventLedger(session_factory, provider="creem"),
        orders=OrderLedger(session_factory),
        subscriptions=UserSubscriptionService(session_factory),
        resolver=UserResolver(DatabaseUserDirectory(session_factory)),
        provider="creem",
    )


@pytest.fixture
def client(processor, session_factory):
    async def _get_test_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_webhook_processor] = lambda: processor
    app.dependency_overrides[get_webhook_secret] = lambda: WEBHOOK_SECRET
    app.dependency_overrides[get_session] = _get_test_session
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def post_event(client):
    def _post(event, secret: str = WEBHOOK_SECRET, signature: str | None = None, header: str = "creem-signature"):
        body = event if isinstance(event, bytes) else json.dumps(event).encode("utf-8")
        if signature is None:
            signature = compute_signature(body, secret)
        return client.post(
            "/webhooks/creem",
            content=body,
            headers={header: signature, "content-type": "application/json"},
        )

    return _post


@pytest.fixture
def fetch_all(session_factory):
    def _fetch(model, *conditions):
        async def _run():
            async with session_factory() as session:
                return list((await session.exec(select(model).where(*conditions))).all())

        return asyncio.run(_run())

    return _fetch


@pytest.fixture
def add_rows(session_factory):
    def _add(*rows):
        async def _run():
            async with session_factory() as session:
                for row in rows:
                    session.add(row)
                await session.commit()

        asyncio.run(_run())

    return _add
