import asyncio
import json
from datetime import timedelta

import pytest

from app.core.clock import utcnow
from app.core.exceptions import StoreFailure
from app.models.subscription import UserSubscription
from app.models.webhook_event import WebhookEvent, WebhookEventStatus

from replay_webhook_events import replay_events


def _paid_body(event_id: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "eventType": "subscription.paid",
            "object": {
                "metadata": {"userId": "user-replay", "planName": "Pro"},
                "last_transaction": {"id": "tran_replay", "amount": 900, "currency": "USD"},
            },
        }
    ).encode("utf-8")


def test_replay_completes_failed_events(processor, fetch_all, monkeypatch: pytest.MonkeyPatch):
    real_upsert = processor.subscriptions.upsert

    async def _broken_upsert(*_args, **_kwargs):
        raise StoreFailure("subscription write failed")

    monkeypatch.setattr(processor.subscriptions, "upsert", _broken_upsert)
    with pytest.raises(StoreFailure):
        asyncio.run(processor.process(_paid_body("evt_replay")))
    monkeypatch.setattr(processor.subscriptions, "upsert", real_upsert)

    summary = asyncio.run(replay_events(processor, statuses=["failed"], limit=10))

    assert summary["candidates"] == 1
    assert summary["claimed"] == 1
    assert summary["processed"] == 1
    (row,) = fetch_all(WebhookEvent)
    assert row.status == "processed"
    (subscription,) = fetch_all(UserSubscription)
    assert subscription.user_id == "user-replay"


def test_replay_dry_run_touches_nothing(processor, fetch_all):
    asyncio.run(
        processor.process(
            json.dumps({"id": "evt_orphan", "eventType": "subscription.trialing", "object": {}}).encode("utf-8")
        )
    )

    summary = asyncio.run(replay_events(processor, statuses=["unresolved"], limit=10, dry_run=True))

    assert summary["candidates"] == 1
    assert summary["claimed"] == 0
    assert summary["events"][0]["event_id"] == "evt_orphan"
    (row,) = fetch_all(WebhookEvent)
    assert row.status == "unresolved"


def test_replay_of_still_unresolvable_event_stays_unresolved(processor, fetch_all):
    asyncio.run(
        processor.process(
            json.dumps({"id": "evt_orphan", "eventType": "subscription.trialing", "object": {}}).encode("utf-8")
        )
    )

    summary = asyncio.run(replay_events(processor, statuses=["unresolved"], limit=10))

    assert summary["unprocessed"] == 1
    (row,) = fetch_all(WebhookEvent)
    assert row.status == "unresolved"


def test_replay_recovers_event_abandoned_mid_processing(processor, add_rows, fetch_all):
    add_rows(
        WebhookEvent(
            event_id="evt_abandoned",
            event_type="subscription.paid",
            raw_payload=_paid_body("evt_abandoned").decode("utf-8"),
            status=WebhookEventStatus.PROCESSING.value,
            updated_at=utcnow() - timedelta(hours=1),
        )
    )

    summary = asyncio.run(replay_events(processor, statuses=["processing"], limit=10))

    assert summary["claimed"] == 1
    assert summary["processed"] == 1
    (row,) = fetch_all(WebhookEvent)
    assert row.status == "processed"
    (subscription,) = fetch_all(UserSubscription)
    assert subscription.user_id == "user-replay"
