from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookflow.domain.bookings.db_models import Booking, BookingEventDeadLetter, BookingTransition, SessionType
from bookflow.domain.bookings.state_machine import BookingSnapshot
from bookflow.domain.bookings.states import BookingState

# Columns the state machine is allowed to write alongside a state change.
TRANSITION_FIELDS = {"payment_ref", "payment_intent_ref", "last_error"}


def snapshot_of(booking: Booking) -> BookingSnapshot:
    return BookingSnapshot(
        booking_id=booking.booking_id,
        state=BookingState(booking.state),
        version=booking.version,
        payment_ref=booking.payment_ref,
        payment_intent_ref=booking.payment_intent_ref,
    )


async def get_booking(session: AsyncSession, booking_id: str) -> Booking | None:
    return await session.get(Booking, booking_id, populate_existing=True)


async def get_booking_by_external_key(
    session: AsyncSession, builder_id: str, calendar_event_ref: str
) -> Booking | None:
    stmt = select(Booking).where(
        Booking.builder_id == builder_id,
        Booking.calendar_event_ref == calendar_event_ref,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_booking_by_calendar_event_ref(session: AsyncSession, calendar_event_ref: str) -> Booking | None:
    stmt = select(Booking).where(Booking.calendar_event_ref == calendar_event_ref).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_booking_by_payment_ref(session: AsyncSession, payment_ref: str) -> Booking | None:
    stmt = select(Booking).where(Booking.payment_ref == payment_ref).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_anonymous_shell(
    session: AsyncSession, builder_id: str, correlation_id: str, owner_id: str | None = None
) -> Booking | None:
    """Most recent booking sharing a correlation id that is unclaimed or already owned by ``owner_id``."""
    owner_filter = Booking.client_id.is_(None)
    if owner_id is not None:
        owner_filter = or_(owner_filter, Booking.client_id == owner_id)
    stmt = (
        select(Booking)
        .where(
            Booking.builder_id == builder_id,
            Booking.correlation_id == correlation_id,
            owner_filter,
        )
        .order_by(Booking.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_session_type(session: AsyncSession, session_type_id: str) -> SessionType | None:
    return await session.get(SessionType, session_type_id)


async def get_session_type_by_calendly_uri(session: AsyncSession, event_type_uri: str) -> SessionType | None:
    stmt = select(SessionType).where(SessionType.calendly_event_type_uri == event_type_uri)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_booking(session: AsyncSession, **values: Any) -> Booking:
    """Insert a new booking in ``CREATED``; raises IntegrityError on a duplicate external key."""
    booking = Booking(state=BookingState.CREATED.value, version=1, **values)
    session.add(booking)
    await session.flush()
    return booking


async def update_booking_state(
    session: AsyncSession,
    booking_id: str,
    *,
    expected_state: BookingState,
    expected_version: int,
    next_state: BookingState,
    fields: dict[str, Any],
) -> bool:
    """Compare-and-set write of a state change.

    Returns False when another writer moved the booking first; the caller
    re-reads and decides again.
    """

    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")
    conditions = [
        Booking.booking_id == booking_id,
        Booking.state == expected_state.value,
        Booking.version == expected_version,
    ]
    if "payment_intent_ref" in fields:
        # Write-once; a second value would mean two payments for one booking.
        conditions.append(Booking.payment_intent_ref.is_(None))
    stmt = (
        update(Booking)
        .where(*conditions)
        .values(
            state=next_state.value,
            version=Booking.version + 1,
            last_transition_at=datetime.now(tz=timezone.utc),
            **fields,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


def record_transition(
    session: AsyncSession,
    *,
    booking_id: str,
    from_state: BookingState,
    to_state: BookingState,
    event_type: str,
    external_ref: str | None,
    version: int,
    details: dict[str, Any] | None = None,
) -> BookingTransition:
    row = BookingTransition(
        booking_id=booking_id,
        from_state=from_state.value,
        to_state=to_state.value,
        event_type=event_type,
        external_ref=external_ref,
        version=version,
        details=details or {},
    )
    session.add(row)
    return row


async def list_transitions(session: AsyncSession, booking_id: str) -> list[BookingTransition]:
    stmt = (
        select(BookingTransition)
        .where(BookingTransition.booking_id == booking_id)
        .order_by(BookingTransition.version.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_open_dead_letters(session: AsyncSession, limit: int = 100) -> list[BookingEventDeadLetter]:
    stmt = (
        select(BookingEventDeadLetter)
        .where(BookingEventDeadLetter.resolved_at.is_(None))
        .order_by(BookingEventDeadLetter.created_at.asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
