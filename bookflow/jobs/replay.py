import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings import store
from bookflow.domain.bookings.db_models import BookingEventDeadLetter, PaymentWebhookEvent
from bookflow.domain.bookings.events import event_from_payload
from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.errors import ConflictExceeded, NotFoundError
from bookflow.domain.payments.reconciliation import REPLAYABLE_STATUSES, PaymentReconciler

logger = logging.getLogger(__name__)


async def replay_payment_events(
    session_factory: async_sessionmaker[AsyncSession],
    reconciler: PaymentReconciler,
    limit: int = 100,
) -> dict[str, int]:
    """Re-run webhook deliveries that never reached a final status."""
    async with session_factory() as session:
        result = await session.execute(
            select(PaymentWebhookEvent.event_id)
            .where(PaymentWebhookEvent.status.in_(REPLAYABLE_STATUSES))
            .order_by(PaymentWebhookEvent.received_at.asc())
            .limit(limit)
        )
        event_ids = list(result.scalars().all())

    summary = {"replayed": 0, "applied": 0, "unresolved": 0}
    for event_id in event_ids:
        status = await reconciler.process_event(event_id)
        summary["replayed"] += 1
        if status in REPLAYABLE_STATUSES:
            summary["unresolved"] += 1
        else:
            summary["applied"] += 1
    return summary


async def replay_dead_letters(
    session_factory: async_sessionmaker[AsyncSession],
    executor: TransitionExecutor,
    limit: int = 100,
) -> dict[str, int]:
    async with session_factory() as session:
        letters = await store.list_open_dead_letters(session, limit=limit)
        pending = [(letter.dead_letter_id, letter.booking_id, dict(letter.payload)) for letter in letters]

    summary = {"replayed": 0, "resolved": 0, "failed": 0}
    for dead_letter_id, booking_id, payload in pending:
        summary["replayed"] += 1
        resolved = False
        try:
            outcome = await executor.apply(booking_id, event_from_payload(payload), dead_letter=False)
            resolved = True
            logger.info(
                "dead_letter_replayed",
                extra={
                    "extra": {
                        "dead_letter_id": dead_letter_id,
                        "booking_id": booking_id,
                        "state": outcome.state.value,
                        "stale": outcome.stale,
                    }
                },
            )
        except (ConflictExceeded, NotFoundError) as exc:
            logger.warning(
                "dead_letter_replay_failed",
                extra={
                    "extra": {
                        "dead_letter_id": dead_letter_id,
                        "booking_id": booking_id,
                        "reason": type(exc).__name__,
                    }
                },
            )

        async with session_factory() as session:
            async with session.begin():
                letter = await session.get(BookingEventDeadLetter, dead_letter_id)
                letter.attempts = (letter.attempts or 0) + 1
                if resolved:
                    letter.resolved_at = datetime.now(tz=timezone.utc)
        summary["resolved" if resolved else "failed"] += 1
    return summary
