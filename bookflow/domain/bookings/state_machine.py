"""Pure booking lifecycle decisions.

``decide`` maps the persisted snapshot of a booking plus one incoming event to
exactly one of three outcomes:

* ``Transition``: move to ``next_state``, write ``fields``, then run
  ``side_effects`` once the write has committed;
* ``AlreadyApplied``: the event was seen before; nothing to write, but the
  listed side effects are still safe (and sometimes necessary) to re-run;
* ``Rejected``: the event is not an outgoing edge of the current state and is
  treated as stale.

No I/O happens here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from bookflow.domain.bookings.events import (
    BookingCancelled,
    BookingConfirmed,
    BookingEvent,
    CheckoutStarted,
    EventType,
    PaymentFailed,
    PaymentRetryRequested,
    PaymentSucceeded,
    SlotReserved,
)
from bookflow.domain.bookings.states import CANCELLABLE_STATES, BookingState


class SideEffectKind(str, Enum):
    CONFIRM_BOOKING = "confirm_booking"
    EXPIRE_CHECKOUT_SESSION = "expire_checkout_session"


@dataclass(frozen=True)
class SideEffect:
    kind: SideEffectKind
    payment_ref: str | None = None


@dataclass(frozen=True)
class BookingSnapshot:
    booking_id: str
    state: BookingState
    version: int
    payment_ref: str | None = None
    payment_intent_ref: str | None = None


@dataclass(frozen=True)
class Transition:
    next_state: BookingState
    fields: dict[str, Any] = field(default_factory=dict)
    side_effects: tuple[SideEffect, ...] = ()


@dataclass(frozen=True)
class AlreadyApplied:
    side_effects: tuple[SideEffect, ...] = ()


@dataclass(frozen=True)
class Rejected:
    reason: str


Decision = Union[Transition, AlreadyApplied, Rejected]

CONFIRM = SideEffect(SideEffectKind.CONFIRM_BOOKING)

# Documented edge list; ``decide`` is the authority and tests check they agree.
EDGES: dict[BookingState, set[BookingState]] = {
    BookingState.CREATED: {BookingState.PAYMENT_REQUIRED, BookingState.CONFIRMED, BookingState.CANCELLED},
    BookingState.PAYMENT_REQUIRED: {BookingState.PAYMENT_PENDING, BookingState.CANCELLED},
    BookingState.PAYMENT_PENDING: {
        BookingState.PAYMENT_PENDING,
        BookingState.PAYMENT_SUCCEEDED,
        BookingState.PAYMENT_FAILED,
        BookingState.CANCELLED,
    },
    BookingState.PAYMENT_SUCCEEDED: {BookingState.CONFIRMED, BookingState.CANCELLED},
    BookingState.PAYMENT_FAILED: {BookingState.PAYMENT_REQUIRED, BookingState.CANCELLED},
    BookingState.CONFIRMED: set(),
    BookingState.CANCELLED: set(),
}

# Events that move a booking out of (or along) each state.
ACCEPTED_EVENTS: dict[BookingState, tuple[EventType, ...]] = {
    BookingState.CREATED: (EventType.SLOT_RESERVED, EventType.BOOKING_CANCELLED),
    BookingState.PAYMENT_REQUIRED: (EventType.CHECKOUT_STARTED, EventType.BOOKING_CANCELLED),
    BookingState.PAYMENT_PENDING: (
        EventType.CHECKOUT_STARTED,
        EventType.PAYMENT_SUCCEEDED,
        EventType.PAYMENT_FAILED,
        EventType.BOOKING_CANCELLED,
    ),
    BookingState.PAYMENT_SUCCEEDED: (EventType.BOOKING_CONFIRMED, EventType.BOOKING_CANCELLED),
    BookingState.PAYMENT_FAILED: (EventType.PAYMENT_RETRY_REQUESTED, EventType.BOOKING_CANCELLED),
    BookingState.CONFIRMED: (),
    BookingState.CANCELLED: (),
}


def _stale(snapshot: BookingSnapshot, event: BookingEvent, why: str = "not_an_outgoing_edge") -> Rejected:
    return Rejected(reason=f"{why}: {event.event_type.value} from {snapshot.state.value}")


def _on_slot_reserved(snapshot: BookingSnapshot, event: SlotReserved) -> Decision:
    if snapshot.state != BookingState.CREATED:
        return AlreadyApplied()
    if event.amount_cents == 0:
        return Transition(BookingState.CONFIRMED)
    return Transition(BookingState.PAYMENT_REQUIRED)


def _on_checkout_started(snapshot: BookingSnapshot, event: CheckoutStarted) -> Decision:
    current = snapshot.payment_ref
    if snapshot.state == BookingState.PAYMENT_REQUIRED:
        # A reopened booking still carries the failed session's ref.
        if current is not None and event.replaces_ref != current:
            return _stale(snapshot, event, "payment_ref_mismatch")
        return Transition(BookingState.PAYMENT_PENDING, {"payment_ref": event.payment_ref})
    if event.payment_ref == current and snapshot.state in {
        BookingState.PAYMENT_PENDING,
        BookingState.PAYMENT_SUCCEEDED,
        BookingState.CONFIRMED,
    }:
        return AlreadyApplied()
    if snapshot.state == BookingState.PAYMENT_PENDING and current is not None and event.replaces_ref == current:
        return Transition(BookingState.PAYMENT_PENDING, {"payment_ref": event.payment_ref})
    return _stale(snapshot, event)


def _on_payment_succeeded(snapshot: BookingSnapshot, event: PaymentSucceeded) -> Decision:
    if event.payment_ref != snapshot.payment_ref:
        return _stale(snapshot, event, "payment_ref_mismatch")
    if snapshot.state == BookingState.PAYMENT_PENDING:
        fields: dict[str, Any] = {"last_error": None}
        if event.payment_intent_ref and snapshot.payment_intent_ref is None:
            fields["payment_intent_ref"] = event.payment_intent_ref
        return Transition(BookingState.PAYMENT_SUCCEEDED, fields, (CONFIRM,))
    if snapshot.state == BookingState.PAYMENT_SUCCEEDED:
        # The auto-confirm may have been lost between commit and dispatch.
        return AlreadyApplied((CONFIRM,))
    if snapshot.state == BookingState.CONFIRMED:
        return AlreadyApplied()
    return _stale(snapshot, event)


def _on_payment_failed(snapshot: BookingSnapshot, event: PaymentFailed) -> Decision:
    if event.payment_ref != snapshot.payment_ref:
        return _stale(snapshot, event, "payment_ref_mismatch")
    if snapshot.state == BookingState.PAYMENT_PENDING:
        return Transition(BookingState.PAYMENT_FAILED, {"last_error": f"payment_{event.reason}"})
    if snapshot.state == BookingState.PAYMENT_FAILED:
        return AlreadyApplied()
    return _stale(snapshot, event)


def _on_confirmed(snapshot: BookingSnapshot, event: BookingConfirmed) -> Decision:
    if snapshot.state == BookingState.PAYMENT_SUCCEEDED:
        return Transition(BookingState.CONFIRMED)
    if snapshot.state == BookingState.CONFIRMED:
        return AlreadyApplied()
    return _stale(snapshot, event)


def _on_retry_requested(snapshot: BookingSnapshot, event: PaymentRetryRequested) -> Decision:
    if snapshot.state == BookingState.PAYMENT_FAILED:
        return Transition(BookingState.PAYMENT_REQUIRED, {"last_error": None})
    if snapshot.state == BookingState.PAYMENT_REQUIRED:
        return AlreadyApplied()
    return _stale(snapshot, event)


def _on_cancelled(snapshot: BookingSnapshot, event: BookingCancelled) -> Decision:
    if snapshot.state == BookingState.CANCELLED:
        return AlreadyApplied()
    if snapshot.state not in CANCELLABLE_STATES:
        return _stale(snapshot, event)
    side_effects: tuple[SideEffect, ...] = ()
    if snapshot.state == BookingState.PAYMENT_PENDING and snapshot.payment_ref:
        side_effects = (SideEffect(SideEffectKind.EXPIRE_CHECKOUT_SESSION, snapshot.payment_ref),)
    return Transition(BookingState.CANCELLED, {}, side_effects)


_HANDLERS = {
    SlotReserved: _on_slot_reserved,
    CheckoutStarted: _on_checkout_started,
    PaymentSucceeded: _on_payment_succeeded,
    PaymentFailed: _on_payment_failed,
    BookingConfirmed: _on_confirmed,
    PaymentRetryRequested: _on_retry_requested,
    BookingCancelled: _on_cancelled,
}


def decide(snapshot: BookingSnapshot, event: BookingEvent) -> Decision:
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported booking event: {type(event).__name__}")
    decision = handler(snapshot, event)
    if isinstance(decision, Transition) and decision.next_state not in EDGES[snapshot.state]:
        raise AssertionError(f"Undeclared edge {snapshot.state.value} -> {decision.next_state.value}")
    return decision
