from __future__ import annotations

from typing import Any

from bookflow.settings import settings


class StripeNotConfigured(RuntimeError):
    pass


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _authenticate(self) -> None:
        if not self.secret_key:
            raise StripeNotConfigured("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        product_name: str,
        idempotency_key: str | None = None,
        customer_email: str | None = None,
    ) -> Any:
        self._authenticate()
        payload: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": {"booking_id": metadata["booking_id"]}},
        }
        if customer_email:
            payload["customer_email"] = customer_email
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        return self.stripe.checkout.Session.create(**payload)

    def retrieve_session(self, session_ref: str) -> Any:
        self._authenticate()
        return self.stripe.checkout.Session.retrieve(session_ref)

    def expire_session(self, session_ref: str) -> Any:
        self._authenticate()
        return self.stripe.checkout.Session.expire(session_ref)

    def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise StripeNotConfigured("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        return self.stripe.Webhook.construct_event(
            payload=payload, sig_header=signature, secret=self.webhook_secret
        )


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    """Read a field from a Stripe object or from a plain dict payload."""
    if isinstance(source, dict):
        return source.get(key, default)
    try:
        return getattr(source, key)
    except AttributeError:
        pass
    getter = getattr(source, "get", None)
    if callable(getter):
        return getter(key, default)
    return default


def resolve_client(app_state: Any) -> StripeClient:
    client = getattr(app_state, "stripe_client", None)
    if client is None:
        client = StripeClient(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
        app_state.stripe_client = client
    return client
