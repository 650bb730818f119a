"""Periodic background sweeps."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from price_protect.claims import days_remaining
from price_protect.config import FilingConfig
from price_protect.models import NotificationKind, utcnow
from price_protect.notifications import notify

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from price_protect.filer import AutoFiler
    from price_protect.monitor import PriceMonitor
    from price_protect.repository import Repository

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(days=3)
REMINDER_DEDUPE = timedelta(hours=24)


class SweepJobs:
    """The scheduled jobs, callable directly or through a scheduler."""

    def __init__(
        self,
        repository: Repository,
        monitor: PriceMonitor,
        filer: AutoFiler,
        *,
        sync: Callable[[], Any] | None = None,
        config: FilingConfig | None = None,
    ) -> None:
        self.repository = repository
        self.monitor = monitor
        self.filer = filer
        self.sync = sync
        self.config = config or FilingConfig()

    def price_sweep(self) -> dict[str, int]:
        return self.monitor.check_all_eligible_purchases()

    def mailbox_sync(self) -> None:
        if self.sync is None:
            logger.info("Mailbox sync not configured, skipping")
            return
        self.sync()

    def expire_purchases(self, now: datetime | None = None) -> int:
        count = self.repository.expire_purchases(now or utcnow())
        logger.info("Marked %d purchases as expired", count)
        return count

    def expire_claims(self, now: datetime | None = None) -> int:
        before = (now or utcnow()) - timedelta(days=self.config.claim_stale_days)
        count = self.repository.expire_stale_claims(before)
        logger.info("Marked %d claims as expired", count)
        return count

    def send_reminders(self, now: datetime | None = None) -> int:
        """Warn about eligible purchases whose window closes within three days."""
        now = now or utcnow()
        sent = 0
        for purchase in self.repository.purchases_nearing_deadline(now, now + REMINDER_WINDOW):
            if self.repository.has_recent_notification(
                purchase.user_id,
                NotificationKind.CLAIM_ELIGIBLE,
                purchase.id,
                now - REMINDER_DEDUPE,
            ):
                continue
            days = days_remaining(purchase.protection_ends, now)
            notify(
                self.repository,
                purchase.user_id,
                NotificationKind.CLAIM_ELIGIBLE,
                "Claim Deadline Approaching!",
                f"Your price protection for {purchase.product_name} expires in "
                f"{days} days. File your claim now!",
                purchase_id=str(purchase.id),
            )
            sent += 1
        logger.info("Sent %d claim deadline reminders", sent)
        return sent

    def retry_auto_file(self) -> dict[str, int]:
        return self.filer.retry_failed()

    def catch_up(self) -> dict[str, int]:
        return self.filer.catch_up()


def _guarded(name: str, job: Callable[[], Any]) -> Callable[[], None]:
    def run() -> None:
        logger.info("Starting scheduled %s", name)
        try:
            result = job()
        except Exception:
            logger.exception("Scheduled %s failed", name)
            return
        logger.info("Scheduled %s completed: %s", name, result)

    return run


def build_scheduler(jobs: SweepJobs) -> BlockingScheduler:
    """Register every sweep on a UTC cron schedule.

    A single worker runs the jobs one at a time: the shared browser's
    Playwright objects must stay on one thread.
    """
    scheduler = BlockingScheduler(
        executors={"default": ThreadPoolExecutor(1)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
        timezone="UTC",
    )
    schedule = (
        ("price_sweep", jobs.price_sweep, CronTrigger(hour="*/6", minute=0)),
        ("mailbox_sync", jobs.mailbox_sync, CronTrigger(hour="*/4", minute=0)),
        ("purchase_expiry", jobs.expire_purchases, CronTrigger(hour=0, minute=0)),
        ("claim_expiry", jobs.expire_claims, CronTrigger(hour=1, minute=0)),
        ("deadline_reminders", jobs.send_reminders, CronTrigger(hour=10, minute=0)),
        ("auto_file_retry", jobs.retry_auto_file, CronTrigger(minute=30)),
        ("auto_file_catch_up", jobs.catch_up, CronTrigger(hour="3-23/6", minute=15)),
    )
    for job_id, func, trigger in schedule:
        scheduler.add_job(_guarded(job_id, func), trigger, id=job_id, replace_existing=True)
    logger.info("Scheduled %d jobs", len(schedule))
    return scheduler
