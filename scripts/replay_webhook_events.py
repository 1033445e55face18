#!/usr/bin/env python3
"""
Re-run stored Creem webhook events that did not complete.

Rows are claimed one at a time with a conditional status update, so running
this next to live traffic (or twice at once) never processes a row twice.

Examples:
    python3 scripts/replay_webhook_events.py
    python3 scripts/replay_webhook_events.py --status failed --status unresolved
    python3 scripts/replay_webhook_events.py --limit 20 --dry-run
    python3 scripts/replay_webhook_events.py --status processing
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.core.config import settings
from app.core.exceptions import WebhookError
from app.db.engine import async_session_factory
from app.models.webhook_event import WebhookEventStatus
from app.services.webhook_processor import WebhookProcessor


REPLAYABLE_STATUSES = (
    WebhookEventStatus.FAILED.value,
    WebhookEventStatus.UNRESOLVED.value,
    WebhookEventStatus.MALFORMED.value,
    # Only rows whose processing lease has expired.
    WebhookEventStatus.PROCESSING.value,
)


async def replay_events(
    processor: WebhookProcessor,
    statuses: list[str],
    limit: int,
    dry_run: bool = False,
) -> dict:
    summary = {
        "statuses": statuses,
        "limit": limit,
        "dry_run": dry_run,
        "candidates": 0,
        "claimed": 0,
        "processed": 0,
        "unprocessed": 0,
        "errors": 0,
        "events": [],
    }

    rows = await processor.ledger.list_by_status(statuses, limit=limit)
    summary["candidates"] = len(rows)

    for row in rows:
        item = {"row_id": row.id, "event_id": row.event_id, "event_type": row.event_type, "status": row.status}
        if dry_run:
            summary["events"].append(item)
            continue

        if not await processor.ledger.claim_for_replay(row.id, statuses):
            item["result"] = "skipped"
            summary["events"].append(item)
            continue
        summary["claimed"] += 1

        try:
            outcome = await processor.replay(row)
        except WebhookError as e:
            summary["errors"] += 1
            item["result"] = "error"
            item["error"] = e.message
        else:
            key = "processed" if outcome.processed else "unprocessed"
            summary[key] += 1
            item["result"] = outcome.status
        summary["events"].append(item)

    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay stored Creem webhook events.")
    parser.add_argument(
        "--status",
        action="append",
        choices=REPLAYABLE_STATUSES,
        help="Ledger status to replay (repeatable, default: failed)",
    )
    parser.add_argument("--limit", type=int, default=100, help="Max rows to replay")
    parser.add_argument("--dry-run", action="store_true", help="List candidates without replaying")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    processor = WebhookProcessor.from_settings(settings, async_session_factory)
    summary = asyncio.run(
        replay_events(
            processor,
            statuses=args.status or [WebhookEventStatus.FAILED.value],
            limit=max(1, args.limit),
            dry_run=args.dry_run,
        )
    )
    print(json.dumps(summary, ensure_ascii=True, indent=2))


if __name__ == "__main__":
    main()
