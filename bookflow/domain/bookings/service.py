from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import store
from bookflow.domain.bookings.db_models import Booking, SessionType
from bookflow.domain.bookings.events import BookingCancelled, SlotReserved
from bookflow.domain.bookings.executor import TransitionExecutor, TransitionOutcome
from bookflow.domain.bookings.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingTransitionItem,
    BookingTransitionsResponse,
)
from bookflow.domain.bookings.state_machine import ACCEPTED_EVENTS
from bookflow.domain.bookings.states import BookingState, payment_status_for
from bookflow.domain.errors import NotFoundError, ValidationError
from bookflow.infra.auth import Identity, issue_claim_token, verify_claim_token
from bookflow.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingCreationResult:
    booking_id: str
    state: BookingState
    created: bool
    claim_token: str | None = None


def _validate_session_type(session_type: SessionType | None, builder_id: str, session_type_id: str) -> SessionType:
    if session_type is None:
        raise ValidationError(
            "Unknown session type",
            errors=[{"field": "sessionTypeId", "message": f"{session_type_id} does not exist"}],
        )
    if not session_type.is_active:
        raise ValidationError(
            "Session type is not bookable",
            errors=[{"field": "sessionTypeId", "message": "session type is inactive"}],
        )
    if session_type.builder_id != builder_id:
        raise ValidationError(
            "Session type does not belong to this builder",
            errors=[{"field": "sessionTypeId", "message": "builder mismatch"}],
        )
    return session_type


def _claim_if_allowed(booking: Booking, identity: Identity, claim_token: str | None) -> None:
    if booking.client_id is not None or not identity.is_authenticated:
        return
    if not verify_claim_token(claim_token, booking.booking_id, booking.correlation_id, settings.auth_secret_key):
        return
    booking.client_id = identity.user_id
    logger.info(
        "booking_claimed",
        extra={"extra": {"booking_id": booking.booking_id, "client_id": identity.user_id}},
    )


async def _resolve_existing(
    session: AsyncSession, request: BookingCreateRequest, identity: Identity
) -> Booking | None:
    booking = await store.get_booking_by_external_key(session, request.builder_id, request.calendar_event_ref)
    if booking is not None:
        _claim_if_allowed(booking, identity, request.claim_token)
        return booking

    correlation_id = request.correlation_id
    if not correlation_id:
        return None
    shell = await store.get_anonymous_shell(
        session, request.builder_id, correlation_id, owner_id=identity.user_id
    )
    if shell is None:
        return None
    if identity.is_authenticated and verify_claim_token(
        request.claim_token, shell.booking_id, correlation_id, settings.auth_secret_key
    ):
        _claim_if_allowed(shell, identity, request.claim_token)
        return shell
    # A correlation id alone is guessable; it never hands over a booking.
    logger.warning(
        "booking_shell_claim_refused",
        extra={
            "extra": {
                "builder_id": request.builder_id,
                "shell_booking_id": shell.booking_id,
                "authenticated": identity.is_authenticated,
            }
        },
    )
    return None


async def create_booking(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    request: BookingCreateRequest,
    identity: Identity,
) -> BookingCreationResult:
    created = False
    try:
        async with session_factory() as session:
            async with session.begin():
                session_type = _validate_session_type(
                    await store.get_session_type(session, request.session_type_id),
                    request.builder_id,
                    request.session_type_id,
                )
                booking = await _resolve_existing(session, request, identity)
                if booking is None:
                    booking = await store.create_booking(
                        session,
                        builder_id=request.builder_id,
                        session_type_id=session_type.session_type_id,
                        client_id=identity.user_id,
                        correlation_id=request.correlation_id,
                        calendar_event_ref=request.calendar_event_ref,
                        invitee_ref=request.invitee_ref,
                        starts_at=request.starts_at,
                        ends_at=request.ends_at,
                        invitee_email=request.invitee_email,
                        invitee_name=request.invitee_name,
                        custom_question_responses=request.custom_question_responses,
                        amount_cents=session_type.price_cents,
                        currency=session_type.currency,
                    )
                    created = True
                booking_id = booking.booking_id
                amount_cents = booking.amount_cents
                correlation_id = booking.correlation_id
                client_id = booking.client_id
    except IntegrityError:
        # Lost the insert race on (builder_id, calendar_event_ref).
        async with session_factory() as session:
            booking = await store.get_booking_by_external_key(
                session, request.builder_id, request.calendar_event_ref
            )
            if booking is None:
                raise
            created = False
            booking_id = booking.booking_id
            amount_cents = booking.amount_cents
            correlation_id = booking.correlation_id
            client_id = booking.client_id
        logger.info("booking_create_race_resolved", extra={"extra": {"booking_id": booking_id}})

    if created:
        logger.info(
            "booking_created",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "builder_id": request.builder_id,
                    "session_type_id": request.session_type_id,
                    "amount_cents": amount_cents,
                    "anonymous": client_id is None,
                }
            },
        )

    # Re-drives the initial transition for records a previous attempt left in CREATED.
    outcome = await executor.apply(booking_id, SlotReserved(amount_cents=amount_cents))

    # Only the request that created an anonymous booking receives its claim token.
    claim_token = None
    if created and client_id is None:
        claim_token = issue_claim_token(
            booking_id, correlation_id, settings.claim_token_ttl_minutes, settings.auth_secret_key
        )
    return BookingCreationResult(
        booking_id=booking_id,
        state=outcome.state,
        created=created,
        claim_token=claim_token,
    )


async def claim_booking(
    session_factory: async_sessionmaker[AsyncSession],
    booking_id: str,
    identity: Identity,
    claim_token: str,
) -> Booking:
    if not identity.is_authenticated:
        raise ValidationError("Authentication required to claim a booking", title="Unauthorized", status_code=401)
    async with session_factory() as session:
        async with session.begin():
            booking = await store.get_booking(session, booking_id)
            if booking is None:
                raise NotFoundError(f"Booking {booking_id} not found")
            if booking.client_id == identity.user_id:
                return booking
            if booking.client_id is not None:
                raise ValidationError("Booking already claimed by another client", status_code=409)
            if not verify_claim_token(claim_token, booking_id, booking.correlation_id, settings.auth_secret_key):
                raise ValidationError("Invalid or expired claim token", title="Forbidden", status_code=403)
            result = await session.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.client_id.is_(None))
                .values(client_id=identity.user_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValidationError("Booking already claimed by another client", status_code=409)
        booking = await store.get_booking(session, booking_id)
    logger.info("booking_claimed", extra={"extra": {"booking_id": booking_id, "client_id": identity.user_id}})
    return booking


def can_manage(booking: Booking, identity: Identity) -> bool:
    if identity.has_any_role(settings.admin_roles):
        return True
    return identity.is_authenticated and booking.client_id == identity.user_id


async def get_booking_for(
    session: AsyncSession, booking_id: str, identity: Identity
) -> Booking:
    booking = await store.get_booking(session, booking_id)
    # Claimed bookings are hidden from everyone but their owner and admins.
    if booking is None or (booking.client_id is not None and not can_manage(booking, identity)):
        raise NotFoundError(f"Booking {booking_id} not found")
    return booking


async def transition_history(
    session: AsyncSession, booking_id: str, identity: Identity
) -> BookingTransitionsResponse:
    booking = await store.get_booking(session, booking_id)
    if booking is None or not can_manage(booking, identity):
        raise NotFoundError(f"Booking {booking_id} not found")
    state = BookingState(booking.state)
    rows = await store.list_transitions(session, booking_id)
    return BookingTransitionsResponse(
        booking_id=booking_id,
        state=state,
        allowed_events=[event.value for event in ACCEPTED_EVENTS[state]],
        transitions=[
            BookingTransitionItem(
                from_state=BookingState(row.from_state),
                to_state=BookingState(row.to_state),
                event_type=row.event_type,
                version=row.version,
                created_at=row.created_at,
            )
            for row in rows
        ],
    )


async def cancel_booking(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    booking_id: str,
    identity: Identity,
    reason: str | None = None,
) -> TransitionOutcome:
    async with session_factory() as session:
        booking = await store.get_booking(session, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if not can_manage(booking, identity):
            raise ValidationError("Not allowed to cancel this booking", title="Forbidden", status_code=403)

    outcome = await executor.apply(
        booking_id, BookingCancelled(reason=reason, cancelled_by=identity.user_id)
    )
    if outcome.stale:
        raise ValidationError(
            f"Booking in state {outcome.state.value} can no longer be cancelled",
            title="Conflict",
            status_code=409,
        )
    return outcome


def booking_response(booking: Booking) -> BookingResponse:
    state = BookingState(booking.state)
    return BookingResponse(
        booking_id=booking.booking_id,
        builder_id=booking.builder_id,
        session_type_id=booking.session_type_id,
        client_id=booking.client_id,
        state=state,
        payment_status=payment_status_for(state, booking.payment_ref),
        starts_at=booking.starts_at,
        ends_at=booking.ends_at,
        amount_cents=booking.amount_cents,
        currency=booking.currency,
        payment_ref=booking.payment_ref,
        last_transition_at=booking.last_transition_at,
    )
