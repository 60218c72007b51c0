import json
import time

import pytest

from bookflow.infra import calendly
from bookflow.settings import settings

SIGNING_KEY = "calendly-signing-key"
EVENT_TYPE_URI = "https://api.calendly.com/event_types/ET-1"
SCHEDULED_EVENT_URI = "https://api.calendly.com/scheduled_events/SE-1"


def _invitee_payload(**overrides) -> dict:
    payload = {
        "uri": f"{SCHEDULED_EVENT_URI}/invitees/INV-1",
        "email": "invitee@example.com",
        "name": "Ada Client",
        "scheduled_event": {
            "uri": SCHEDULED_EVENT_URI,
            "start_time": "2030-06-01T10:00:00Z",
            "end_time": "2030-06-01T10:45:00Z",
            "event_type": EVENT_TYPE_URI,
        },
        "questions_and_answers": [
            {"question": "Booking reference", "answer": " corr-77 "},
            {"question": "Goals", "answer": "Ship faster"},
        ],
    }
    payload.update(overrides)
    return payload


def _post(client, event: str, payload: dict, signed: bool = True, header: str | None = None):
    body = json.dumps({"event": event, "payload": payload}).encode()
    headers = {"Content-Type": "application/json"}
    if header is not None:
        headers[calendly.SIGNATURE_HEADER] = header
    elif signed:
        headers[calendly.SIGNATURE_HEADER] = calendly.sign_payload(body, SIGNING_KEY, int(time.time()))
    return client.post("/calendly-webhook", content=body, headers=headers)


def test_invitee_created_opens_anonymous_booking(client, seed_session_type, load_booking):
    settings.calendly_webhook_signing_key = SIGNING_KEY
    seed_session_type(price_cents=7500, calendly_event_type_uri=EVENT_TYPE_URI)

    response = _post(client, "invitee.created", _invitee_payload())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "applied"
    booking = load_booking(body["bookingId"])
    assert booking.state == "PAYMENT_REQUIRED"
    assert booking.client_id is None
    assert booking.correlation_id == "corr-77"
    assert booking.calendar_event_ref == SCHEDULED_EVENT_URI
    assert booking.amount_cents == 7500
    assert booking.custom_question_responses["Goals"] == "Ship faster"


def test_redelivered_invitee_created_reuses_booking(client, seed_session_type):
    settings.calendly_webhook_signing_key = SIGNING_KEY
    seed_session_type(calendly_event_type_uri=EVENT_TYPE_URI)

    first = _post(client, "invitee.created", _invitee_payload()).json()
    second = _post(client, "invitee.created", _invitee_payload()).json()

    assert first["bookingId"] == second["bookingId"]


def test_invitee_canceled_cancels_booking(client, seed_session_type, load_booking):
    settings.calendly_webhook_signing_key = SIGNING_KEY
    seed_session_type(calendly_event_type_uri=EVENT_TYPE_URI)
    booking_id = _post(client, "invitee.created", _invitee_payload()).json()["bookingId"]

    response = _post(
        client,
        "invitee.canceled",
        _invitee_payload(cancellation={"canceled_by": "Ada Client", "reason": "Travel"}),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "applied"
    assert load_booking(booking_id).state == "CANCELLED"


def test_unknown_event_type_and_events_are_ignored(client):
    settings.calendly_webhook_signing_key = SIGNING_KEY

    unknown_type = _post(client, "invitee.created", _invitee_payload())
    other_event = _post(client, "routing_form_submission.created", {})

    assert unknown_type.json()["status"] == "ignored"
    assert other_event.json() == {"received": True, "processed": False, "status": "ignored"}


def test_signature_is_enforced(client, seed_session_type):
    settings.calendly_webhook_signing_key = SIGNING_KEY
    seed_session_type(calendly_event_type_uri=EVENT_TYPE_URI)

    missing = _post(client, "invitee.created", _invitee_payload(), signed=False)
    forged = _post(client, "invitee.created", _invitee_payload(), header=f"t={int(time.time())},v1=deadbeef")
    old = _post(
        client,
        "invitee.created",
        _invitee_payload(),
        header=calendly.sign_payload(b"{}", SIGNING_KEY, int(time.time()) - 3600),
    )

    assert missing.status_code == 401
    assert forged.status_code == 401
    assert old.status_code == 401


def test_missing_signing_key_outside_dev_is_unavailable(client):
    settings.app_env = "prod"

    response = _post(client, "invitee.created", _invitee_payload(), signed=False)

    assert response.status_code == 503


def test_malformed_bodies_are_rejected(client, seed_session_type):
    seed_session_type(calendly_event_type_uri=EVENT_TYPE_URI)

    not_json = client.post("/calendly-webhook", content=b"not json", headers={"Content-Type": "application/json"})
    no_event = _post(client, "invitee.created", {"uri": "x"}, signed=False)

    assert not_json.status_code == 400
    assert no_event.status_code == 422


def test_verify_signature_codes():
    body = b'{"event":"invitee.created"}'
    header = calendly.sign_payload(body, SIGNING_KEY, 1_000)

    calendly.verify_signature(body, header, SIGNING_KEY, tolerance_seconds=180, now=1_100)

    for bad_header, code in (
        (None, "missing_signature"),
        ("v1=abc", "invalid_signature"),
        (header, "expired_signature"),
    ):
        with pytest.raises(calendly.WebhookSignatureError) as excinfo:
            calendly.verify_signature(body, bad_header, SIGNING_KEY, tolerance_seconds=180, now=5_000)
        assert excinfo.value.code == code
