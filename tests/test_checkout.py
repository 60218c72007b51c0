import asyncio
from types import SimpleNamespace

from bookflow.domain.bookings.events import BookingCancelled, PaymentFailed
from bookflow.domain.payments.checkout import CheckoutInitiator, build_return_url, idempotency_key
from bookflow.settings import settings

RETURN_URL = "https://app.example.com/bookings/done"


def _start(client, booking_id: str, return_url: str = RETURN_URL):
    return client.post("/checkout-sessions", json={"bookingId": booking_id, "returnUrl": return_url})


def test_checkout_moves_booking_to_pending(client, make_booking, fake_stripe, load_booking):
    booking_id = make_booking()

    response = _start(client, booking_id)

    assert response.status_code == 201
    body = response.json()
    assert body["paymentRef"] == "cs_test_0001"
    assert body["checkoutUrl"] == "https://checkout.stripe.test/cs_test_0001"
    booking = load_booking(booking_id)
    assert booking.state == "PAYMENT_PENDING"
    assert booking.payment_ref == "cs_test_0001"

    call = fake_stripe.create_calls[0]
    assert call["amount_cents"] == 5000
    assert call["metadata"]["booking_id"] == booking_id
    assert call["idempotency_key"].startswith(f"booking-checkout:{booking_id}:initial:")
    assert f"session_id={{CHECKOUT_SESSION_ID}}&bookingId={booking_id}&status=success" in call["success_url"]
    assert call["cancel_url"].endswith("status=canceled")


def test_repeated_checkout_reuses_open_session(client, make_booking, fake_stripe, load_booking):
    booking_id = make_booking()

    first = _start(client, booking_id)
    second = _start(client, booking_id)

    assert second.status_code == 201
    assert second.json()["paymentRef"] == first.json()["paymentRef"]
    assert len(fake_stripe.create_calls) == 1
    assert load_booking(booking_id).version == 3


def test_stripe_outage_is_retryable_and_leaves_booking_untouched(client, make_booking, fake_stripe, load_booking):
    booking_id = make_booking()
    fake_stripe.unavailable = True

    response = _start(client, booking_id)

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["retryable"] is True
    booking = load_booking(booking_id)
    assert booking.state == "PAYMENT_REQUIRED"
    assert booking.payment_ref is None

    fake_stripe.unavailable = False
    assert _start(client, booking_id).status_code == 201


def test_expired_session_is_replaced(client, make_booking, fake_stripe, load_booking):
    booking_id = make_booking()
    first = _start(client, booking_id).json()
    fake_stripe.sessions[first["paymentRef"]].status = "expired"

    second = _start(client, booking_id)

    assert second.status_code == 201
    assert second.json()["paymentRef"] == "cs_test_0002"
    assert fake_stripe.create_calls[1]["idempotency_key"].startswith(
        f"booking-checkout:{booking_id}:{first['paymentRef']}:"
    )
    assert load_booking(booking_id).payment_ref == "cs_test_0002"


def test_completed_session_blocks_new_checkout(client, make_booking, fake_stripe):
    booking_id = make_booking()
    payment_ref = _start(client, booking_id).json()["paymentRef"]
    fake_stripe.complete(payment_ref)

    response = _start(client, booking_id)

    assert response.status_code == 409
    assert len(fake_stripe.create_calls) == 1


def test_failed_payment_can_be_retried(client, make_booking, fake_stripe, executor, load_booking):
    booking_id = make_booking()
    payment_ref = _start(client, booking_id).json()["paymentRef"]
    asyncio.run(executor.apply(booking_id, PaymentFailed(payment_ref=payment_ref, reason="expired")))
    assert load_booking(booking_id).state == "PAYMENT_FAILED"

    response = _start(client, booking_id)

    assert response.status_code == 201
    booking = load_booking(booking_id)
    assert booking.state == "PAYMENT_PENDING"
    assert booking.payment_ref == response.json()["paymentRef"] != payment_ref
    assert f":{payment_ref}:" in fake_stripe.create_calls[-1]["idempotency_key"]


def test_free_booking_cannot_start_checkout(client, make_booking, fake_stripe):
    booking_id = make_booking(price_cents=0)

    response = _start(client, booking_id)

    assert response.status_code == 409
    assert fake_stripe.create_calls == []


def test_checkout_for_unknown_booking(client, fake_stripe):
    response = _start(client, "does-not-exist")

    assert response.status_code == 404


def test_return_url_must_be_allowed(client, make_booking, fake_stripe):
    booking_id = make_booking()
    settings.checkout_return_allowed_hosts_raw = "app.example.com"

    foreign = _start(client, booking_id, "https://evil.example.net/done")
    scripted = _start(client, booking_id, "javascript:alert(1)")

    assert foreign.status_code == 422
    assert foreign.json()["errors"][0]["field"] == "returnUrl"
    assert scripted.status_code == 422
    assert fake_stripe.create_calls == []
    assert _start(client, booking_id).status_code == 201


def test_cancelled_booking_cannot_start_checkout(client, make_booking, fake_stripe, executor):
    booking_id = make_booking()
    asyncio.run(executor.apply(booking_id, BookingCancelled(cancelled_by="client")))

    response = _start(client, booking_id)

    assert response.status_code == 409


def test_losing_a_checkout_race_returns_winning_session(async_session_maker, make_booking, client, fake_stripe, executor):
    booking_id = make_booking()
    winner = _start(client, booking_id).json()["paymentRef"]
    initiator = CheckoutInitiator(async_session_maker, executor, fake_stripe)

    async def stale_load(_booking_id):
        booking = SimpleNamespace(
            booking_id=booking_id,
            state="PAYMENT_REQUIRED",
            amount_cents=5000,
            currency="usd",
            payment_ref=None,
            builder_id="builder-1",
            session_type_id="st-1",
            invitee_email=None,
        )
        return booking, "Discovery call"

    initiator._load = stale_load

    result = asyncio.run(initiator.start(booking_id, "https://app.example.com/other"))

    assert result.payment_ref == winner
    assert fake_stripe.expired == ["cs_test_0002"]


def test_return_url_helpers():
    assert build_return_url("https://a.test/x?lang=en", "b-1", "success") == (
        "https://a.test/x?lang=en&session_id={CHECKOUT_SESSION_ID}&bookingId=b-1&status=success"
    )
    assert idempotency_key("b-1", None, RETURN_URL) != idempotency_key("b-1", None, RETURN_URL + "?x=1")
    assert idempotency_key("b-1", "cs_1", RETURN_URL).startswith("booking-checkout:b-1:cs_1:")
