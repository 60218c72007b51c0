from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.payments.checkout import CheckoutInitiator
from bookflow.domain.payments.reconciliation import PaymentReconciler
from bookflow.infra import stripe_client as stripe_infra
from bookflow.infra.auth import Identity, resolve_request_identity
from bookflow.infra.db import get_session_factory
from bookflow.settings import settings


def get_app_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    return session_factory or get_session_factory()


def get_identity(request: Request) -> Identity:
    return resolve_request_identity(request, settings.auth_secret_key)


def get_stripe_client(request: Request):
    return stripe_infra.resolve_client(request.app.state)


def get_executor(request: Request) -> TransitionExecutor:
    return TransitionExecutor(
        get_app_session_factory(request),
        stripe_client=get_stripe_client(request),
        max_attempts=settings.transition_max_attempts,
    )


def get_checkout_initiator(request: Request) -> CheckoutInitiator:
    executor = get_executor(request)
    return CheckoutInitiator(executor.session_factory, executor, executor.stripe_client)


def get_reconciler(request: Request) -> PaymentReconciler:
    executor = get_executor(request)
    return PaymentReconciler(executor.session_factory, executor, executor.stripe_client)
