"""Closed set of events the booking state machine understands.

Webhook and API payloads are translated into one of these dataclasses at the
boundary; nothing else reaches the state machine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Union


class EventType(str, Enum):
    SLOT_RESERVED = "SLOT_RESERVED"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    PAYMENT_RETRY_REQUESTED = "PAYMENT_RETRY_REQUESTED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"


@dataclass(frozen=True)
class SlotReserved:
    amount_cents: int
    event_type = EventType.SLOT_RESERVED

    def __post_init__(self) -> None:
        if self.amount_cents < 0:
            raise ValueError("amount_cents must not be negative")


@dataclass(frozen=True)
class CheckoutStarted:
    payment_ref: str
    replaces_ref: str | None = None
    event_type = EventType.CHECKOUT_STARTED

    def __post_init__(self) -> None:
        if not self.payment_ref:
            raise ValueError("payment_ref is required")


@dataclass(frozen=True)
class PaymentSucceeded:
    payment_ref: str
    payment_intent_ref: str | None = None
    event_type = EventType.PAYMENT_SUCCEEDED

    def __post_init__(self) -> None:
        if not self.payment_ref:
            raise ValueError("payment_ref is required")


@dataclass(frozen=True)
class PaymentFailed:
    payment_ref: str
    reason: str = "failed"
    event_type = EventType.PAYMENT_FAILED

    def __post_init__(self) -> None:
        if not self.payment_ref:
            raise ValueError("payment_ref is required")


@dataclass(frozen=True)
class BookingConfirmed:
    event_type = EventType.BOOKING_CONFIRMED


@dataclass(frozen=True)
class PaymentRetryRequested:
    event_type = EventType.PAYMENT_RETRY_REQUESTED


@dataclass(frozen=True)
class BookingCancelled:
    reason: str | None = None
    cancelled_by: str | None = None
    event_type = EventType.BOOKING_CANCELLED


BookingEvent = Union[
    SlotReserved,
    CheckoutStarted,
    PaymentSucceeded,
    PaymentFailed,
    BookingConfirmed,
    PaymentRetryRequested,
    BookingCancelled,
]

_EVENT_CLASSES: dict[EventType, type] = {
    EventType.SLOT_RESERVED: SlotReserved,
    EventType.CHECKOUT_STARTED: CheckoutStarted,
    EventType.PAYMENT_SUCCEEDED: PaymentSucceeded,
    EventType.PAYMENT_FAILED: PaymentFailed,
    EventType.BOOKING_CONFIRMED: BookingConfirmed,
    EventType.PAYMENT_RETRY_REQUESTED: PaymentRetryRequested,
    EventType.BOOKING_CANCELLED: BookingCancelled,
}


def external_ref(event: BookingEvent) -> str | None:
    return getattr(event, "payment_ref", None)


def event_to_payload(event: BookingEvent) -> dict[str, Any]:
    return {"event_type": event.event_type.value, **asdict(event)}


def event_from_payload(payload: dict[str, Any]) -> BookingEvent:
    data = dict(payload)
    try:
        event_type = EventType(data.pop("event_type"))
    except (KeyError, ValueError) as exc:
        raise ValueError("Unknown booking event type") from exc
    return _EVENT_CLASSES[event_type](**data)
