"""Applies booking events against persisted state with optimistic concurrency."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

import anyio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import store
from bookflow.domain.bookings.db_models import BookingEventDeadLetter
from bookflow.domain.bookings.events import BookingConfirmed, BookingEvent, event_to_payload, external_ref
from bookflow.domain.bookings.state_machine import (
    AlreadyApplied,
    Rejected,
    SideEffect,
    SideEffectKind,
    Transition,
    decide,
)
from bookflow.domain.bookings.states import BookingState
from bookflow.domain.errors import ConflictExceeded, NotFoundError, StaleEventWarning
from bookflow.infra.metrics import metrics
from bookflow.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionOutcome:
    booking_id: str
    state: BookingState
    version: int
    payment_ref: str | None = None
    applied: bool = False
    already_applied: bool = False
    warning: StaleEventWarning | None = None

    @property
    def stale(self) -> bool:
        return self.warning is not None


class TransitionExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        stripe_client: Any | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.stripe_client = stripe_client
        self.max_attempts = max_attempts or settings.transition_max_attempts

    async def apply(self, booking_id: str, event: BookingEvent, *, dead_letter: bool = True) -> TransitionOutcome:
        event_name = event.event_type.value
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                async with session.begin():
                    booking = await store.get_booking(session, booking_id)
                    if booking is None:
                        raise NotFoundError(f"Booking {booking_id} not found")
                    snapshot = store.snapshot_of(booking)
                    decision = decide(snapshot, event)

                    if isinstance(decision, Rejected):
                        warning = StaleEventWarning(
                            decision.reason,
                            booking_id=booking_id,
                            state=snapshot.state.value,
                            event_type=event_name,
                        )
                        metrics.record_stale_event(event_name)
                        logger.warning(
                            "booking_event_stale",
                            extra={
                                "extra": {
                                    "booking_id": booking_id,
                                    "state": snapshot.state.value,
                                    "event": event_name,
                                    "payment_ref": external_ref(event),
                                    "reason": decision.reason,
                                }
                            },
                        )
                        return TransitionOutcome(
                            booking_id=booking_id,
                            state=snapshot.state,
                            version=snapshot.version,
                            payment_ref=snapshot.payment_ref,
                            warning=warning,
                        )

                    if isinstance(decision, AlreadyApplied):
                        logger.info(
                            "booking_event_already_applied",
                            extra={
                                "extra": {
                                    "booking_id": booking_id,
                                    "state": snapshot.state.value,
                                    "event": event_name,
                                }
                            },
                        )
                        outcome = TransitionOutcome(
                            booking_id=booking_id,
                            state=snapshot.state,
                            version=snapshot.version,
                            payment_ref=snapshot.payment_ref,
                            already_applied=True,
                        )
                        side_effects = decision.side_effects
                    else:
                        assert isinstance(decision, Transition)
                        written = await store.update_booking_state(
                            session,
                            booking_id,
                            expected_state=snapshot.state,
                            expected_version=snapshot.version,
                            next_state=decision.next_state,
                            fields=decision.fields,
                        )
                        if not written:
                            logger.info(
                                "booking_transition_conflict",
                                extra={
                                    "extra": {
                                        "booking_id": booking_id,
                                        "event": event_name,
                                        "attempt": attempt,
                                    }
                                },
                            )
                            continue
                        store.record_transition(
                            session,
                            booking_id=booking_id,
                            from_state=snapshot.state,
                            to_state=decision.next_state,
                            event_type=event_name,
                            external_ref=external_ref(event),
                            version=snapshot.version + 1,
                            details=_transition_details(event),
                        )
                        outcome = TransitionOutcome(
                            booking_id=booking_id,
                            state=decision.next_state,
                            version=snapshot.version + 1,
                            payment_ref=decision.fields.get("payment_ref", snapshot.payment_ref),
                            applied=True,
                        )
                        side_effects = decision.side_effects

            if outcome.applied:
                metrics.record_transition(snapshot.state.value, outcome.state.value, event_name)
                logger.info(
                    "booking_transition_applied",
                    extra={
                        "extra": {
                            "booking_id": booking_id,
                            "from_state": snapshot.state.value,
                            "to_state": outcome.state.value,
                            "event": event_name,
                            "payment_ref": outcome.payment_ref,
                        }
                    },
                )
            return await self._dispatch(outcome, side_effects)

        if dead_letter:
            await self._dead_letter(booking_id, event)
        raise ConflictExceeded(
            f"Booking {booking_id} changed concurrently {self.max_attempts} times",
            booking_id=booking_id,
            attempts=self.max_attempts,
        )

    async def _dispatch(self, outcome: TransitionOutcome, side_effects: tuple[SideEffect, ...]) -> TransitionOutcome:
        for effect in side_effects:
            if effect.kind == SideEffectKind.CONFIRM_BOOKING:
                try:
                    confirmed = await self.apply(outcome.booking_id, BookingConfirmed())
                except ConflictExceeded:
                    # Dead-lettered; a replay of the payment event re-issues the confirm.
                    logger.warning(
                        "booking_auto_confirm_failed",
                        extra={"extra": {"booking_id": outcome.booking_id}},
                    )
                    continue
                if not confirmed.stale:
                    outcome = replace(outcome, state=confirmed.state, version=confirmed.version)
            elif effect.kind == SideEffectKind.EXPIRE_CHECKOUT_SESSION and effect.payment_ref:
                await self.expire_checkout_session(outcome.booking_id, effect.payment_ref)
        return outcome

    async def expire_checkout_session(self, booking_id: str, payment_ref: str) -> None:
        if self.stripe_client is None:
            return
        try:
            await anyio.to_thread.run_sync(self.stripe_client.expire_session, payment_ref)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "checkout_session_expire_failed",
                extra={
                    "extra": {
                        "booking_id": booking_id,
                        "payment_ref": payment_ref,
                        "reason": type(exc).__name__,
                    }
                },
            )
            return
        logger.info(
            "checkout_session_expired",
            extra={"extra": {"booking_id": booking_id, "payment_ref": payment_ref}},
        )

    async def _dead_letter(self, booking_id: str, event: BookingEvent) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    BookingEventDeadLetter(
                        booking_id=booking_id,
                        event_type=event.event_type.value,
                        payload=event_to_payload(event),
                        reason="conflict_exceeded",
                        attempts=self.max_attempts,
                    )
                )
        logger.error(
            "booking_event_dead_lettered",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "event": event.event_type.value,
                    "attempts": self.max_attempts,
                }
            },
        )


def _transition_details(event: BookingEvent) -> dict[str, Any]:
    payload = event_to_payload(event)
    payload.pop("event_type", None)
    return {key: value for key, value in payload.items() if value is not None}
