def _checkout(client, booking_id: str) -> str:
    response = client.post(
        "/checkout-sessions",
        json={"bookingId": booking_id, "returnUrl": "https://app.example.com/done"},
    )
    return response.json()["paymentRef"]


def test_poll_open_session_reports_processing(client, make_booking, fake_stripe):
    booking_id = make_booking()
    payment_ref = _checkout(client, booking_id)

    response = client.get("/checkout-sessions/status", params={"sessionId": payment_ref})

    assert response.status_code == 200
    assert response.json() == {
        "bookingId": booking_id,
        "paymentStatus": "processing",
        "bookingState": "PAYMENT_PENDING",
    }


def test_poll_completed_session_confirms_booking(client, make_booking, fake_stripe, load_booking):
    booking_id = make_booking()
    payment_ref = _checkout(client, booking_id)
    fake_stripe.complete(payment_ref, payment_intent="pi_poll")

    response = client.get("/checkout-sessions/status", params={"sessionId": payment_ref})

    assert response.json()["paymentStatus"] == "paid"
    assert response.json()["bookingState"] == "CONFIRMED"
    assert load_booking(booking_id).payment_intent_ref == "pi_poll"


def test_poll_expired_session_marks_failure(client, make_booking, fake_stripe):
    booking_id = make_booking()
    payment_ref = _checkout(client, booking_id)
    fake_stripe.sessions[payment_ref].status = "expired"

    response = client.get("/checkout-sessions/status", params={"sessionId": payment_ref})

    assert response.json()["paymentStatus"] == "failed"
    assert response.json()["bookingState"] == "PAYMENT_FAILED"


def test_poll_falls_back_to_local_state_when_stripe_is_down(client, make_booking, fake_stripe):
    booking_id = make_booking()
    payment_ref = _checkout(client, booking_id)
    fake_stripe.unavailable = True

    known = client.get("/checkout-sessions/status", params={"sessionId": payment_ref})
    unknown = client.get("/checkout-sessions/status", params={"sessionId": "cs_unknown"})

    assert known.status_code == 200
    assert known.json()["bookingState"] == "PAYMENT_PENDING"
    assert unknown.status_code == 503
    assert unknown.headers["Retry-After"] == "5"


def test_poll_requires_session_id(client, fake_stripe):
    response = client.get("/checkout-sessions/status")

    assert response.status_code == 422
