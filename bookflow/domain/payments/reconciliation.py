"""Folds Stripe webhook deliveries and status polls into booking events.

Webhook deliveries are written to ``payment_webhook_events`` before any
booking is touched, so a delivery that arrives before its booking is visible
(or that fails mid-way) can be replayed by the operator job.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import anyio
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import store
from bookflow.domain.bookings.db_models import PaymentWebhookEvent
from bookflow.domain.bookings.events import BookingEvent, PaymentFailed, PaymentSucceeded
from bookflow.domain.bookings.executor import TransitionExecutor, TransitionOutcome
from bookflow.domain.bookings.states import BookingState, payment_status_for
from bookflow.domain.errors import CollaboratorUnavailable, ConflictExceeded, NotFoundError, ValidationError
from bookflow.infra.metrics import metrics
from bookflow.infra.stripe_client import StripeNotConfigured, safe_get
from bookflow.settings import settings

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_APPLIED = "applied"
STATUS_STALE = "stale"
STATUS_IGNORED = "ignored"
STATUS_PENDING_RETRY = "pending_retry"
STATUS_DEAD_LETTER = "dead_letter"
STATUS_ERROR = "error"
REPLAYABLE_STATUSES = {STATUS_QUEUED, STATUS_PENDING_RETRY, STATUS_ERROR}

SUCCESS_EVENT_TYPES = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}
FAILURE_EVENT_TYPES = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
    "payment_intent.payment_failed",
}


@dataclass(frozen=True)
class MappedPaymentEvent:
    outcome: str
    booking_id: str | None
    payment_ref: str | None
    payment_intent_ref: str | None
    reason: str


def map_stripe_event(event: Any) -> MappedPaymentEvent | None:
    """Translate a Stripe event into a success/failure signal, or None to ignore it."""
    event_type = safe_get(event, "type")
    data = safe_get(event, "data", {}) or {}
    payload_object = safe_get(data, "object", {}) or {}
    metadata = safe_get(payload_object, "metadata", {}) or {}
    booking_id = safe_get(metadata, "booking_id")
    object_id = safe_get(payload_object, "id")

    if event_type in SUCCESS_EVENT_TYPES:
        outcome = "success"
    elif event_type in FAILURE_EVENT_TYPES:
        outcome = "failure"
    else:
        return None

    if event_type == "checkout.session.completed" and safe_get(payload_object, "payment_status") != "paid":
        # Delayed payment methods finish through async_payment_succeeded.
        return None

    if str(event_type).startswith("payment_intent."):
        return MappedPaymentEvent(
            outcome=outcome,
            booking_id=str(booking_id) if booking_id else None,
            payment_ref=None,
            payment_intent_ref=str(object_id) if object_id else None,
            reason="failed",
        )

    payment_intent = safe_get(payload_object, "payment_intent")
    reason = "expired" if event_type == "checkout.session.expired" else "failed"
    return MappedPaymentEvent(
        outcome=outcome,
        booking_id=str(booking_id) if booking_id else None,
        payment_ref=str(object_id) if object_id else None,
        payment_intent_ref=str(payment_intent) if isinstance(payment_intent, str) else None,
        reason=reason,
    )


def _to_booking_event(outcome: str, payment_ref: str, payment_intent_ref: str | None, reason: str) -> BookingEvent:
    if outcome == "success":
        return PaymentSucceeded(payment_ref=payment_ref, payment_intent_ref=payment_intent_ref)
    return PaymentFailed(payment_ref=payment_ref, reason=reason)


class PaymentReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: TransitionExecutor,
        stripe_client: Any,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor
        self.stripe_client = stripe_client

    async def handle_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        try:
            event = self.stripe_client.verify_webhook(payload, signature)
        except StripeNotConfigured as exc:
            raise CollaboratorUnavailable("Stripe webhook disabled", collaborator="stripe") from exc
        except Exception as exc:  # noqa: BLE001
            metrics.record_webhook("stripe", "invalid")
            logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
            raise ValidationError("Invalid Stripe webhook", title="Bad Request", status_code=400) from exc

        event_id = safe_get(event, "id")
        if not event_id:
            raise ValidationError("Missing event id", title="Bad Request", status_code=400)
        event_id = str(event_id)
        payload_hash = hashlib.sha256(payload or b"").hexdigest()

        duplicate_status = await self._enqueue(event_id, safe_get(event, "type"), payload, payload_hash)
        if duplicate_status is not None:
            metrics.record_webhook("stripe", "duplicate")
            return {"received": True, "processed": False, "status": duplicate_status}

        status = await self.process_event(event_id)
        return {"received": True, "processed": status == STATUS_APPLIED, "status": status}

    async def _enqueue(self, event_id: str, event_type: Any, payload: bytes, payload_hash: str) -> str | None:
        """Persist the delivery; returns the stored status when it is a duplicate."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(
                        select(PaymentWebhookEvent)
                        .where(PaymentWebhookEvent.event_id == event_id)
                        .with_for_update()
                    )
                    if existing is not None:
                        if existing.payload_hash != payload_hash:
                            logger.warning(
                                "stripe_webhook_replayed_mismatch",
                                extra={"extra": {"event_id": event_id}},
                            )
                            raise ValidationError("Event payload mismatch", title="Bad Request", status_code=400)
                        if existing.status in REPLAYABLE_STATUSES:
                            return None
                        logger.info(
                            "stripe_webhook_duplicate",
                            extra={"extra": {"event_id": event_id, "status": existing.status}},
                        )
                        return existing.status
                    session.add(
                        PaymentWebhookEvent(
                            event_id=event_id,
                            event_type=str(event_type or "unknown"),
                            status=STATUS_QUEUED,
                            payload_hash=payload_hash,
                            payload=json.loads(payload),
                        )
                    )
        except IntegrityError:
            logger.info("stripe_webhook_duplicate", extra={"extra": {"event_id": event_id, "status": "racing"}})
            return STATUS_QUEUED
        return None

    async def process_event(self, event_id: str) -> str:
        async with self.session_factory() as session:
            record = await session.get(PaymentWebhookEvent, event_id)
            if record is None:
                raise NotFoundError(f"Webhook event {event_id} not found")
            payload = record.payload
            event_type = record.event_type

        booking_id: str | None = None
        last_error: str | None = None
        mapped = map_stripe_event(payload)
        if mapped is None:
            status = STATUS_IGNORED
            logger.info(
                "stripe_webhook_ignored",
                extra={"extra": {"event_id": event_id, "event_type": event_type}},
            )
        else:
            try:
                outcome = await self._apply_with_backoff(mapped)
            except NotFoundError as exc:
                status = STATUS_PENDING_RETRY
                last_error = str(exc)
                logger.warning(
                    "stripe_webhook_booking_not_found",
                    extra={"extra": {"event_id": event_id, "event_type": event_type, "payment_ref": mapped.payment_ref}},
                )
            except ConflictExceeded as exc:
                status = STATUS_DEAD_LETTER
                booking_id = exc.booking_id
                last_error = "conflict_exceeded"
            except Exception as exc:  # noqa: BLE001
                status = STATUS_ERROR
                last_error = type(exc).__name__
                logger.exception(
                    "stripe_webhook_error",
                    extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
                )
            else:
                booking_id = outcome.booking_id
                status = STATUS_STALE if outcome.stale else STATUS_APPLIED

        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentWebhookEvent, event_id)
                record.status = status
                record.attempts = (record.attempts or 0) + 1
                record.booking_id = booking_id or record.booking_id
                record.last_error = last_error
                record.processed_at = datetime.now(tz=timezone.utc)

        metrics.record_webhook("stripe", status)
        logger.info(
            "stripe_webhook_processed",
            extra={
                "extra": {
                    "event_id": event_id,
                    "event_type": event_type,
                    "booking_id": booking_id,
                    "status": status,
                }
            },
        )
        return status

    async def _resolve(self, mapped: MappedPaymentEvent) -> tuple[str, BookingEvent]:
        async with self.session_factory() as session:
            booking = None
            if mapped.booking_id:
                booking = await store.get_booking(session, mapped.booking_id)
            elif mapped.payment_ref:
                booking = await store.get_booking_by_payment_ref(session, mapped.payment_ref)
            if booking is None:
                raise NotFoundError("Booking for payment event not found")
            payment_ref = mapped.payment_ref
            if payment_ref is None:
                # Payment-intent events only carry the booking id.
                payment_ref = booking.payment_ref
            if payment_ref is None:
                raise NotFoundError(f"Booking {booking.booking_id} has no checkout session yet")
            return booking.booking_id, _to_booking_event(
                mapped.outcome, payment_ref, mapped.payment_intent_ref, mapped.reason
            )

    async def _apply_with_backoff(self, mapped: MappedPaymentEvent) -> TransitionOutcome:
        attempts = settings.not_found_retry_attempts
        for attempt in range(attempts):
            try:
                booking_id, event = await self._resolve(mapped)
                return await self.executor.apply(booking_id, event)
            except NotFoundError:
                if attempt == attempts - 1:
                    raise
                await anyio.sleep(settings.not_found_backoff_seconds * (2**attempt))
        raise NotFoundError("Booking for payment event not found")

    async def poll(self, session_ref: str) -> dict[str, str]:
        try:
            checkout_session = await anyio.to_thread.run_sync(self.stripe_client.retrieve_session, session_ref)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "stripe_status_poll_failed",
                extra={"extra": {"session_ref": session_ref, "reason": type(exc).__name__}},
            )
            async with self.session_factory() as session:
                booking = await store.get_booking_by_payment_ref(session, session_ref)
            if booking is None:
                raise CollaboratorUnavailable(
                    "Payment provider is unavailable, try again shortly", collaborator="stripe"
                ) from exc
            return _status_view(booking.booking_id, BookingState(booking.state), booking.payment_ref)

        metadata = safe_get(checkout_session, "metadata", {}) or {}
        booking_id = safe_get(metadata, "booking_id")
        if not booking_id:
            async with self.session_factory() as session:
                booking = await store.get_booking_by_payment_ref(session, session_ref)
            if booking is None:
                raise NotFoundError("No booking for this checkout session")
            booking_id = booking.booking_id

        session_status = safe_get(checkout_session, "status")
        payment_status = safe_get(checkout_session, "payment_status")
        event: BookingEvent | None = None
        if session_status == "complete" and payment_status == "paid":
            payment_intent = safe_get(checkout_session, "payment_intent")
            event = PaymentSucceeded(
                payment_ref=session_ref,
                payment_intent_ref=payment_intent if isinstance(payment_intent, str) else None,
            )
        elif session_status == "expired":
            event = PaymentFailed(payment_ref=session_ref, reason="expired")
        if event is not None:
            await self.executor.apply(str(booking_id), event)

        async with self.session_factory() as session:
            booking = await store.get_booking(session, str(booking_id))
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            return _status_view(booking.booking_id, BookingState(booking.state), booking.payment_ref)


def _status_view(booking_id: str, state: BookingState, payment_ref: str | None) -> dict[str, str]:
    return {
        "bookingId": booking_id,
        "paymentStatus": payment_status_for(state, payment_ref).value,
        "bookingState": state.value,
    }
