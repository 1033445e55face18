"""Typed views over Creem webhook payloads.

Creem wraps every notification in an envelope (``id``, ``eventType``,
``created_at``, ``object``). Older deliveries and some test tooling use
``event_id``/``type``/``data`` instead, so the envelope is normalised first and
the object is then validated against the model registered for its event type.
Unknown event types fall through to :class:`UnknownEvent`.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator, model_validator

from app.core.exceptions import MalformedPayload


CHECKOUT_COMPLETED = "checkout.completed"
SUBSCRIPTION_PAID = "subscription.paid"
SUBSCRIPTION_TRIALING = "subscription.trialing"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _expand_reference(value: Any) -> Any:
    # Expandable fields arrive either as the nested object or as its bare id.
    if isinstance(value, (str, int)):
        return {"id": str(value)}
    return value


class _CreemModel(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Explicit nulls fall back to field defaults, so nested objects default to empty.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class EventMetadata(_CreemModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    plan_name: Optional[str] = Field(default=None, alias="planName")
    email: Optional[str] = None


class CustomerInfo(_CreemModel):
    id: Optional[str] = None
    email: Optional[str] = None


class OrderInfo(_CreemModel):
    id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


class TransactionInfo(_CreemModel):
    id: Optional[str] = None
    order: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None


class PeriodInfo(_CreemModel):
    current_period_start_date: Optional[datetime] = None
    current_period_end_date: Optional[datetime] = None

    @field_validator("current_period_start_date", "current_period_end_date")
    @classmethod
    def _to_naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class _CreemObject(_CreemModel):
    id: Optional[str] = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    customer: CustomerInfo = Field(default_factory=CustomerInfo)

    @field_validator("customer", mode="before")
    @classmethod
    def _expand_customer(cls, value: Any) -> Any:
        return _expand_reference(value)

    @property
    def customer_email(self) -> Optional[str]:
        return self.metadata.email or self.customer.email


class CheckoutObject(_CreemObject):
    order: OrderInfo = Field(default_factory=OrderInfo)
    amount: Optional[int] = None
    subscription: PeriodInfo = Field(default_factory=PeriodInfo)

    @field_validator("order", "subscription", mode="before")
    @classmethod
    def _expand_nested(cls, value: Any) -> Any:
        return _expand_reference(value)

    @property
    def order_id(self) -> Optional[str]:
        return self.order.id or self.id

    @property
    def amount_minor(self) -> int:
        if self.order.amount is not None:
            return self.order.amount
        return self.amount or 0


class SubscriptionObject(PeriodInfo, _CreemObject):
    last_transaction: TransactionInfo = Field(default_factory=TransactionInfo)

    @field_validator("last_transaction", mode="before")
    @classmethod
    def _expand_transaction(cls, value: Any) -> Any:
        return _expand_reference(value)

    @property
    def order_id(self) -> Optional[str]:
        return self.last_transaction.order or self.last_transaction.id or self.id


class EventEnvelope(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    created_at: Optional[datetime] = None
    object: dict = Field(default_factory=dict)


class _TypedEvent(BaseModel):
    event_id: Optional[str] = None
    created_at: Optional[datetime] = None
    _raw_object: dict = PrivateAttr(default_factory=dict)

    @property
    def raw_object(self) -> dict:
        """The event object exactly as delivered, before validation."""
        return self._raw_object

    @field_validator("created_at")
    @classmethod
    def _created_at_naive(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(value)


class CheckoutCompletedEvent(_TypedEvent):
    event_type: Literal["checkout.completed"] = CHECKOUT_COMPLETED
    object: CheckoutObject = Field(default_factory=CheckoutObject)


class SubscriptionPaidEvent(_TypedEvent):
    event_type: Literal["subscription.paid"] = SUBSCRIPTION_PAID
    object: SubscriptionObject = Field(default_factory=SubscriptionObject)


class SubscriptionTrialingEvent(_TypedEvent):
    event_type: Literal["subscription.trialing"] = SUBSCRIPTION_TRIALING
    object: SubscriptionObject = Field(default_factory=SubscriptionObject)


class UnknownEvent(_TypedEvent):
    event_type: Optional[str] = None
    object: dict = Field(default_factory=dict)


CreemEvent = Union[
    CheckoutCompletedEvent,
    SubscriptionPaidEvent,
    SubscriptionTrialingEvent,
    UnknownEvent,
]

EVENT_MODELS: dict[str, type[_TypedEvent]] = {
    CHECKOUT_COMPLETED: CheckoutCompletedEvent,
    SUBSCRIPTION_PAID: SubscriptionPaidEvent,
    SUBSCRIPTION_TRIALING: SubscriptionTrialingEvent,
}


def _first_present(data: dict, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_envelope(payload: bytes) -> EventEnvelope:
    """Decode the raw body into an envelope. Raises MalformedPayload."""
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayload("Body is not a JSON object")

    obj = _first_present(data, "object", "data")
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise MalformedPayload("Event object is not a JSON object")

    event_id = _first_present(data, "id", "event_id")
    event_type = _first_present(data, "eventType", "type")
    try:
        return EventEnvelope(
            event_id=str(event_id) if event_id is not None else None,
            event_type=str(event_type) if event_type is not None else None,
            created_at=data.get("created_at"),
            object=obj,
        )
    except ValidationError as e:
        raise MalformedPayload(f"Invalid event envelope: {e.error_count()} error(s)") from e


def to_typed_event(envelope: EventEnvelope) -> CreemEvent:
    """Validate the envelope's object against the model for its event type."""
    model = EVENT_MODELS.get(envelope.event_type or "")
    if model is None:
        event = UnknownEvent(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            created_at=envelope.created_at,
            object=envelope.object,
        )
    else:
        try:
            event = model(
                event_id=envelope.event_id,
                created_at=envelope.created_at,
                object=envelope.object,
            )
        except ValidationError as e:
            raise MalformedPayload(
                f"Invalid {envelope.event_type} payload: {e.error_count()} error(s)"
            ) from e
    event._raw_object = envelope.object
    return event
