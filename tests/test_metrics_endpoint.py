from bookflow.infra.metrics import Metrics
from bookflow.settings import settings


def test_metrics_endpoint_requires_token_when_configured(client):
    settings.metrics_token = "secret-token"

    unauthorized = client.get("/metrics")
    assert unauthorized.status_code == 401

    wrong = client.get("/metrics", headers={"Authorization": "Bearer other-token"})
    assert wrong.status_code == 401

    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200


def test_metrics_expose_booking_counters(client, make_booking):
    settings.metrics_token = None
    make_booking(price_cents=0)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert 'booking_transitions_total{from_state="CREATED",to_state="CONFIRMED",event="SLOT_RESERVED"}' in response.text


def test_disabled_metrics_record_nothing():
    disabled = Metrics(enabled=False)

    disabled.record_transition("CREATED", "CONFIRMED", "SLOT_RESERVED")
    disabled.record_webhook("stripe", "applied")

    assert disabled.render()[0] == b"metrics_disabled 1\n"
