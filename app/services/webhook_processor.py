import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.core.config import Settings
from app.core.exceptions import MalformedPayload
from app.models.subscription import SubscriptionStatus
from app.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.schemas.creem_events import (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_PAID,
    SUBSCRIPTION_TRIALING,
    CheckoutCompletedEvent,
    CreemEvent,
    EventEnvelope,
    SubscriptionPaidEvent,
    SubscriptionTrialingEvent,
    parse_envelope,
    to_typed_event,
)
from app.services.order_ledger import OrderLedger
from app.services.subscription_service import UserSubscriptionService, minor_to_major
from app.services.user_resolver import UserResolver, build_user_directory
from app.services.webhook_ledger import WebhookEventLedger

logger = logging.getLogger(__name__)

DEFAULT_PLAN_NAME = "unknown"
DEFAULT_TRIAL_PLAN_NAME = "trial"
DEFAULT_CURRENCY = "USD"


@dataclass
class WebhookOutcome:
    processed: bool
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    duplicate: bool = False
    status: str = WebhookEventStatus.PROCESSED.value

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "received": True,
            "processed": self.processed,
            "eventType": self.event_type,
        }
        if self.duplicate:
            body["duplicate"] = True
            body["status"] = "duplicate"
        elif self.status == WebhookEventStatus.MALFORMED.value:
            body["status"] = self.status
        return body


class WebhookProcessor:
    """Turns a verified Creem webhook body into ledger, order and subscription writes.

    Every store interaction goes through the injected collaborators, so the
    processor holds no state between requests and can run on any number of
    instances against the same database.
    """

    def __init__(
        self,
        ledger: WebhookEventLedger,
        orders: OrderLedger,
        subscriptions: UserSubscriptionService,
        resolver: UserResolver,
        provider: str = "creem",
    ):
        self.ledger = ledger
        self.orders = orders
        self.subscriptions = subscriptions
        self.resolver = resolver
        self.provider = provider
        self.handlers: dict[str, Callable[[Any], Awaitable[bool]]] = {
            CHECKOUT_COMPLETED: self.handle_checkout_completed,
            SUBSCRIPTION_PAID: self.handle_subscription_paid,
            SUBSCRIPTION_TRIALING: self.handle_subscription_trialing,
        }

    @classmethod
    def from_settings(cls, settings: Settings, session_factory) -> "WebhookProcessor":
        provider = settings.CREEM_PROVIDER_NAME
        return cls(
            ledger=WebhookEventLedger(
                session_factory,
                provider=provider,
                processing_lease_seconds=settings.WEBHOOK_PROCESSING_LEASE_SECONDS,
            ),
            orders=OrderLedger(session_factory),
            subscriptions=UserSubscriptionService(
                session_factory,
                reject_stale_events=settings.SUBSCRIPTION_REJECT_STALE_EVENTS,
            ),
            resolver=UserResolver(build_user_directory(settings, session_factory)),
            provider=provider,
        )

    async def process(self, payload: bytes) -> WebhookOutcome:
        raw_payload = payload.decode("utf-8", errors="replace")

        try:
            envelope = parse_envelope(payload)
        except MalformedPayload as e:
            # Nothing to deduplicate on; keep the body for inspection and acknowledge it.
            logger.warning(f"Malformed webhook payload: {e.message}")
            await self.ledger.record_if_new(
                None,
                None,
                raw_payload,
                status=WebhookEventStatus.MALFORMED.value,
            )
            return WebhookOutcome(processed=False, status=WebhookEventStatus.MALFORMED.value)

        logger.info(f"Received webhook: {envelope.event_type} (id: {envelope.event_id})")

        entry = await self.ledger.record_if_new(envelope.event_id, envelope.event_type, raw_payload)
        if not entry.is_new:
            logger.info(f"Skipping duplicate event: {envelope.event_id}")
            return WebhookOutcome(
                processed=False,
                event_type=envelope.event_type,
                event_id=envelope.event_id,
                duplicate=True,
                status=entry.status or WebhookEventStatus.PROCESSED.value,
            )

        return await self._dispatch(entry.row_id, envelope)

    async def replay(self, row: WebhookEvent) -> WebhookOutcome:
        """Re-run a stored event. The caller must already hold the row's claim."""
        payload = row.raw_payload.encode("utf-8")
        try:
            envelope = parse_envelope(payload)
        except MalformedPayload as e:
            await self.ledger.mark(row.id, WebhookEventStatus.MALFORMED.value, False, e.message)
            return WebhookOutcome(processed=False, event_id=row.event_id, status=WebhookEventStatus.MALFORMED.value)
        return await self._dispatch(row.id, envelope)

    async def _dispatch(self, row_id: int, envelope: EventEnvelope) -> WebhookOutcome:
        try:
            event = to_typed_event(envelope)
        except MalformedPayload as e:
            logger.warning(f"Webhook {envelope.event_id} has a malformed {envelope.event_type} payload: {e.message}")
            await self.ledger.mark(row_id, WebhookEventStatus.MALFORMED.value, False, e.message)
            return WebhookOutcome(
                processed=False,
                event_type=envelope.event_type,
                event_id=envelope.event_id,
                status=WebhookEventStatus.MALFORMED.value,
            )

        handler = self.handlers.get(event.event_type or "")
        if handler is None:
            logger.info(f"Unhandled event type: {event.event_type}")
            await self.ledger.mark(row_id, WebhookEventStatus.IGNORED.value, False)
            return WebhookOutcome(
                processed=False,
                event_type=event.event_type,
                event_id=event.event_id,
                status=WebhookEventStatus.IGNORED.value,
            )

        try:
            processed = await handler(event)
        except Exception as e:
            logger.error(f"Error handling {event.event_type} event {event.event_id}: {e}")
            try:
                await self.ledger.mark(row_id, WebhookEventStatus.FAILED.value, False, str(e))
            except Exception as mark_error:
                logger.error(f"Could not mark webhook row {row_id} as failed: {mark_error}")
            raise

        status = WebhookEventStatus.PROCESSED if processed else WebhookEventStatus.UNRESOLVED
        await self.ledger.mark(row_id, status.value, processed)
        logger.info(f"Processed {event.event_type} (id: {event.event_id}, processed={processed})")
        return WebhookOutcome(
            processed=processed,
            event_type=event.event_type,
            event_id=event.event_id,
            status=status.value,
        )

    async def handle_checkout_completed(self, event: CheckoutCompletedEvent) -> bool:
        data = event.object
        user_id = await self._resolve_user(data.metadata.user_id, data.customer_email, event)

        order_id = data.order_id
        if order_id:
            await self.orders.record_once(
                self.provider,
                order_id,
                user_id=user_id,
                customer_email=data.customer_email,
                plan_name=data.metadata.plan_name or DEFAULT_PLAN_NAME,
                amount=minor_to_major(data.amount_minor),
                currency=data.order.currency or DEFAULT_CURRENCY,
                metadata=event.raw_object,
            )
        else:
            logger.warning(f"checkout.completed {event.event_id} carries no order id; order not recorded")

        if user_id:
            await self.subscriptions.upsert(
                user_id,
                data.metadata.plan_name,
                SubscriptionStatus.ACTIVE,
                period_start=data.subscription.current_period_start_date,
                period_end=data.subscription.current_period_end_date,
                event_at=event.created_at,
            )

        return bool(order_id or user_id)

    async def handle_subscription_paid(self, event: SubscriptionPaidEvent) -> bool:
        data = event.object
        user_id = await self._resolve_user(data.metadata.user_id, data.customer_email, event)

        order_id = data.order_id
        if order_id:
            await self.orders.record_once(
                self.provider,
                order_id,
                user_id=user_id,
                customer_email=data.customer_email,
                plan_name=data.metadata.plan_name or DEFAULT_PLAN_NAME,
                amount=minor_to_major(data.last_transaction.amount),
                currency=data.last_transaction.currency or DEFAULT_CURRENCY,
                metadata=event.raw_object,
            )
        else:
            logger.warning(f"subscription.paid {event.event_id} carries no transaction or order id; order not recorded")

        if user_id:
            await self.subscriptions.upsert(
                user_id,
                data.metadata.plan_name,
                SubscriptionStatus.ACTIVE,
                period_start=data.current_period_start_date,
                period_end=data.current_period_end_date,
                event_at=event.created_at,
            )

        return bool(order_id or user_id)

    async def handle_subscription_trialing(self, event: SubscriptionTrialingEvent) -> bool:
        data = event.object
        user_id = await self._resolve_user(data.metadata.user_id, data.customer_email, event)
        if not user_id:
            return False

        await self.subscriptions.upsert(
            user_id,
            data.metadata.plan_name or DEFAULT_TRIAL_PLAN_NAME,
            SubscriptionStatus.TRIALING,
            period_start=data.current_period_start_date,
            period_end=data.current_period_end_date,
            event_at=event.created_at,
        )
        return True

    async def _resolve_user(self, explicit_user_id: Optional[str], email: Optional[str], event: CreemEvent) -> Optional[str]:
        user_id = await self.resolver.resolve(explicit_user_id, email)
        if not user_id:
            logger.warning(
                "Could not resolve user for %s event %s (email=%s); subscription left unchanged",
                event.event_type,
                event.event_id,
                email,
            )
        return user_id
