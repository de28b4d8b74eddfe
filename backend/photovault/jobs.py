"""Scheduled job entry points, triggered by an external scheduler (cron, EventBridge).

    photovault-jobs daily-usage       # daily, shortly after midnight UTC
    photovault-jobs monthly-billing   # 1st of the month
    photovault-jobs cleanup           # daily

Every job is safe to re-run. Exit status is 1 when any unit failed.
"""

import argparse
import asyncio
import logging
import sys

from sqlalchemy.ext.asyncio import AsyncSession

from photovault.config import settings
from photovault.services import billing_service, usage_service
from photovault.services.payments import PaymentProvider, build_payments
from photovault.services.storage import ArchiveStorage, build_storage

logger = logging.getLogger("photovault.jobs")


async def run_daily_usage(db: AsyncSession) -> int:
    report = await usage_service.record_daily_usage(db)
    await db.commit()
    logger.info("daily-usage date=%s users=%d", report.usage_date, report.users_recorded)
    return 0


async def run_monthly_billing(db: AsyncSession, payments: PaymentProvider) -> int:
    report = await usage_service.execute_monthly_billing(db, payments)
    await db.commit()
    for error in report.errors:
        logger.error("monthly-billing %s", error)
    return 1 if report.errors else 0


async def run_cleanup(
    db: AsyncSession, storage: ArchiveStorage, payments: PaymentProvider | None = None
) -> int:
    report = await billing_service.cleanup_scheduled_deletions(db, storage, payments=payments)
    await db.commit()
    for error in report.errors:
        logger.error("cleanup %s", error)
    return 0 if report.success else 1


def _payments() -> PaymentProvider:
    return build_payments(
        settings.payment_backend,
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_id=settings.stripe_price_id,
        currency=settings.currency,
    )


def _storage() -> ArchiveStorage:
    return build_storage(
        settings.storage_backend,
        bucket=settings.s3_bucket_name,
        region=settings.aws_region,
    )


async def _run(job: str) -> int:
    from photovault.dependencies import engine, session_factory

    try:
        async with session_factory() as db:
            if job == "daily-usage":
                return await run_daily_usage(db)
            if job == "monthly-billing":
                return await run_monthly_billing(db, _payments())
            return await run_cleanup(db, _storage(), _payments())
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="photovault-jobs", description=__doc__.splitlines()[0])
    parser.add_argument("job", choices=["daily-usage", "monthly-billing", "cleanup"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info("job start name=%s", args.job)
    status = asyncio.run(_run(args.job))
    logger.info("job end name=%s status=%d", args.job, status)
    return status


if __name__ == "__main__":
    sys.exit(main())
