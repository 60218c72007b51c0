import asyncio
import hashlib
import json

import pytest

from bookflow.domain.bookings.db_models import BookingEventDeadLetter, PaymentWebhookEvent
from bookflow.domain.bookings.events import CheckoutStarted, event_to_payload
from bookflow.domain.payments.reconciliation import PaymentReconciler
from bookflow.jobs import replay, run


def _queue_event(async_session_maker, event_id: str, payload: dict, status: str = "pending_retry") -> None:
    raw = json.dumps(payload).encode()

    async def _insert():
        async with async_session_maker() as session:
            async with session.begin():
                session.add(
                    PaymentWebhookEvent(
                        event_id=event_id,
                        event_type=payload["type"],
                        status=status,
                        payload_hash=hashlib.sha256(raw).hexdigest(),
                        payload=payload,
                    )
                )

    asyncio.run(_insert())


def _completed(event_id: str, payment_ref: str, booking_id: str) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": payment_ref,
                "payment_status": "paid",
                "payment_intent": "pi_replay",
                "metadata": {"booking_id": booking_id},
            }
        },
    }


def test_replay_payment_events(make_booking, executor, fake_stripe, async_session_maker, load_booking):
    booking_id = make_booking()
    asyncio.run(executor.apply(booking_id, CheckoutStarted(payment_ref="cs_replay")))
    _queue_event(async_session_maker, "evt_ready", _completed("evt_ready", "cs_replay", booking_id))
    _queue_event(async_session_maker, "evt_orphan", _completed("evt_orphan", "cs_none", "missing"))
    _queue_event(async_session_maker, "evt_done", _completed("evt_done", "cs_replay", booking_id), status="applied")
    reconciler = PaymentReconciler(async_session_maker, executor, fake_stripe)

    summary = asyncio.run(replay.replay_payment_events(async_session_maker, reconciler))

    assert summary == {"replayed": 2, "applied": 1, "unresolved": 1}
    assert load_booking(booking_id).state == "CONFIRMED"


def test_replay_dead_letters(make_booking, executor, async_session_maker, load_booking):
    booking_id = make_booking()

    async def _insert():
        async with async_session_maker() as session:
            async with session.begin():
                session.add(
                    BookingEventDeadLetter(
                        booking_id=booking_id,
                        event_type="CHECKOUT_STARTED",
                        payload=event_to_payload(CheckoutStarted(payment_ref="cs_dead")),
                        reason="conflict_exceeded",
                        attempts=3,
                    )
                )
                session.add(
                    BookingEventDeadLetter(
                        booking_id="missing",
                        event_type="BOOKING_CANCELLED",
                        payload={"event_type": "BOOKING_CANCELLED"},
                        reason="conflict_exceeded",
                        attempts=3,
                    )
                )

    asyncio.run(_insert())

    summary = asyncio.run(replay.replay_dead_letters(async_session_maker, executor))

    assert summary == {"replayed": 2, "resolved": 1, "failed": 1}
    assert load_booking(booking_id).payment_ref == "cs_dead"

    again = asyncio.run(replay.replay_dead_letters(async_session_maker, executor))
    assert again == {"replayed": 1, "resolved": 0, "failed": 1}


def test_job_runner_rejects_unknown_job(executor):
    with pytest.raises(ValueError, match="nightly-report"):
        run._job_runner("nightly-report", executor, limit=10)
