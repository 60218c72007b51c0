import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from bookflow.domain.bookings.executor import TransitionExecutor
from bookflow.domain.payments.reconciliation import PaymentReconciler
from bookflow.infra.db import get_session_factory
from bookflow.infra.logging import configure_logging
from bookflow.infra.metrics import configure_metrics
from bookflow.infra.stripe_client import StripeClient
from bookflow.jobs import replay
from bookflow.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("payment-events", "dead-letters")


def _job_runner(name: str, executor: TransitionExecutor, limit: int) -> Callable[[], Awaitable[dict[str, int]]]:
    if name == "payment-events":
        reconciler = PaymentReconciler(executor.session_factory, executor, executor.stripe_client)
        return lambda: replay.replay_payment_events(executor.session_factory, reconciler, limit=limit)
    if name == "dead-letters":
        return lambda: replay.replay_dead_letters(executor.session_factory, executor, limit=limit)
    raise ValueError(f"unknown_job:{name}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Replay queued booking work")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--limit", type=int, default=100, help="Maximum rows per job per loop")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    stripe_client = StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    executor = TransitionExecutor(
        get_session_factory(),
        stripe_client=stripe_client,
        max_attempts=settings.transition_max_attempts,
    )

    job_names = args.jobs or list(JOB_NAMES)
    runners = [_job_runner(name, executor, args.limit) for name in job_names]

    while True:
        for name, runner in zip(job_names, runners):
            try:
                result = await runner()
            except Exception as exc:  # noqa: BLE001
                logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
                continue
            logger.info("job_complete", extra={"extra": {"job": name, **result}})
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
