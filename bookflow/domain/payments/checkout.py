from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode, urlsplit

import anyio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import store
from bookflow.domain.bookings.db_models import Booking
from bookflow.domain.bookings.events import CheckoutStarted, PaymentRetryRequested, SlotReserved
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.bookings.states import BookingState
from bookflow.domain.errors import CollaboratorUnavailable, NotFoundError, ValidationError
from bookflow.infra.metrics import metrics
from bookflow.infra.stripe_client import safe_get
from bookflow.settings import settings

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
OPEN = "open"
COMPLETE = "complete"
EXPIRED = "expired"


@dataclass(frozen=True)
class CheckoutResult:
    booking_id: str
    checkout_url: str
    payment_ref: str


def validate_return_url(return_url: str) -> str:
    parts = urlsplit(return_url)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        raise ValidationError(
            "Return URL must be an absolute http(s) URL",
            errors=[{"field": "returnUrl", "message": "invalid URL"}],
        )
    allowed = settings.checkout_return_allowed_hosts
    if allowed and parts.hostname.lower() not in allowed:
        raise ValidationError(
            "Return URL host is not allowed",
            errors=[{"field": "returnUrl", "message": f"{parts.hostname} is not an allowed host"}],
        )
    return return_url


def build_return_url(return_url: str, booking_id: str, status: str) -> str:
    separator = "&" if urlsplit(return_url).query else "?"
    query = urlencode({"bookingId": booking_id, "status": status})
    # The placeholder is substituted by Stripe and must stay unescaped.
    return f"{return_url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}&{query}"


def idempotency_key(booking_id: str, replaces_ref: str | None, return_url: str) -> str:
    url_hash = hashlib.sha256(return_url.encode()).hexdigest()[:16]
    return f"booking-checkout:{booking_id}:{replaces_ref or 'initial'}:{url_hash}"


class CheckoutInitiator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: TransitionExecutor,
        stripe_client: Any,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor
        self.stripe_client = stripe_client

    async def _load(self, booking_id: str) -> tuple[Booking, str]:
        async with self.session_factory() as session:
            booking = await store.get_booking(session, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            session_type = await store.get_session_type(session, booking.session_type_id)
            product_name = session_type.name if session_type else "Session"
            return booking, product_name

    async def _call_stripe(self, booking_id: str, operation: str, func, *args, **kwargs) -> Any:
        try:
            return await anyio.to_thread.run_sync(lambda: func(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            metrics.record_checkout("unavailable")
            logger.warning(
                "stripe_call_failed",
                extra={
                    "extra": {
                        "booking_id": booking_id,
                        "operation": operation,
                        "reason": type(exc).__name__,
                    }
                },
            )
            raise CollaboratorUnavailable(
                "Payment provider is unavailable, try again shortly",
                collaborator="stripe",
            ) from exc

    async def start(self, booking_id: str, return_url: str) -> CheckoutResult:
        validate_return_url(return_url)
        booking, product_name = await self._load(booking_id)
        state = BookingState(booking.state)

        if booking.amount_cents <= 0:
            raise ValidationError("Booking does not require payment", status_code=409)
        if state == BookingState.CREATED:
            await self.executor.apply(booking_id, SlotReserved(amount_cents=booking.amount_cents))
            booking, product_name = await self._load(booking_id)
        elif state == BookingState.PAYMENT_FAILED:
            await self.executor.apply(booking_id, PaymentRetryRequested())
            booking, product_name = await self._load(booking_id)
        state = BookingState(booking.state)

        replaces_ref: str | None = None
        if state == BookingState.PAYMENT_PENDING and booking.payment_ref:
            existing = await self._call_stripe(
                booking_id, "retrieve_session", self.stripe_client.retrieve_session, booking.payment_ref
            )
            existing_status = safe_get(existing, "status")
            if existing_status == OPEN:
                metrics.record_checkout("reused")
                logger.info(
                    "checkout_session_reused",
                    extra={"extra": {"booking_id": booking_id, "payment_ref": booking.payment_ref}},
                )
                return CheckoutResult(booking_id, safe_get(existing, "url"), booking.payment_ref)
            if existing_status != EXPIRED:
                raise ValidationError("Checkout for this booking is already completed", status_code=409)
            replaces_ref = booking.payment_ref
        elif state == BookingState.PAYMENT_REQUIRED:
            # Set when the booking was reopened after a failed payment.
            replaces_ref = booking.payment_ref
        else:
            raise ValidationError(
                f"Booking in state {state.value} cannot start a checkout",
                status_code=409,
            )

        checkout_session = await self._call_stripe(
            booking_id,
            "create_checkout_session",
            self.stripe_client.create_checkout_session,
            amount_cents=booking.amount_cents,
            currency=booking.currency or settings.default_currency,
            success_url=build_return_url(return_url, booking_id, "success"),
            cancel_url=build_return_url(return_url, booking_id, "canceled"),
            metadata={
                "booking_id": booking_id,
                "builder_id": booking.builder_id,
                "session_type_id": booking.session_type_id,
            },
            product_name=product_name,
            idempotency_key=idempotency_key(booking_id, replaces_ref, return_url),
            customer_email=booking.invitee_email,
        )
        payment_ref = str(safe_get(checkout_session, "id"))
        checkout_url = safe_get(checkout_session, "url")

        outcome = await self.executor.apply(
            booking_id, CheckoutStarted(payment_ref=payment_ref, replaces_ref=replaces_ref)
        )
        if not outcome.stale:
            metrics.record_checkout("replaced" if replaces_ref and outcome.applied else "created")
            logger.info(
                "checkout_session_started",
                extra={
                    "extra": {
                        "booking_id": booking_id,
                        "payment_ref": payment_ref,
                        "replaces_ref": replaces_ref,
                        "already_applied": outcome.already_applied,
                    }
                },
            )
            return CheckoutResult(booking_id, checkout_url, payment_ref)

        # Another request won the race; its session is the one the booking tracks.
        await self.executor.expire_checkout_session(booking_id, payment_ref)
        if outcome.state == BookingState.PAYMENT_PENDING and outcome.payment_ref:
            winner = await self._call_stripe(
                booking_id, "retrieve_session", self.stripe_client.retrieve_session, outcome.payment_ref
            )
            metrics.record_checkout("race_lost")
            return CheckoutResult(booking_id, safe_get(winner, "url"), outcome.payment_ref)
        raise ValidationError(
            f"Booking moved to {outcome.state.value} while starting checkout",
            status_code=409,
        )
