"""Background job scheduler for contract confirmation, referral expiry and notification delivery"""

import logging
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.auto_confirm_contracts import run_auto_confirm_contracts
from jobs.confirmation_reminders import run_confirmation_reminders
from jobs.notification_processor import run_notification_processor
from jobs.referral_discount_reset import run_referral_discount_reset
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class EscrowScheduler:
    """Recurring timers for the contract escrow core"""

    _instance: Optional["EscrowScheduler"] = None

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=4)
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed ticks into one run
            'max_instances': 1,  # A tick never overlaps the previous one
            'misfire_grace_time': 120
        }

        self.scheduler = scheduler or BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @classmethod
    def get_instance(cls) -> "EscrowScheduler":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def setup_jobs(self):
        """Register all recurring jobs (idempotent)"""

        # Auto-confirm overdue contracts (every 5 minutes)
        self.scheduler.add_job(
            run_auto_confirm_contracts,
            trigger=IntervalTrigger(
                minutes=Config.AUTO_CONFIRM_INTERVAL_MINUTES,
                start_date=get_naive_utc_now().replace(second=0, microsecond=0),
                timezone="UTC",
            ),
            id="auto_confirm_contracts",
            name="Auto-Confirm Overdue Contracts",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
        )
        logger.info(f"✅ Auto-confirm scheduled every {Config.AUTO_CONFIRM_INTERVAL_MINUTES} minutes")

        # End-of-job confirmation reminders (every 30 minutes, offset from auto-confirm)
        self.scheduler.add_job(
            run_confirmation_reminders,
            trigger=IntervalTrigger(
                minutes=Config.CONFIRMATION_REMINDER_INTERVAL_MINUTES,
                start_date=get_naive_utc_now().replace(second=30, microsecond=0),
                timezone="UTC",
            ),
            id="confirmation_reminders",
            name="Contract Confirmation Reminders",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True,
        )
        logger.info(f"✅ Confirmation reminders scheduled every {Config.CONFIRMATION_REMINDER_INTERVAL_MINUTES} minutes")

        # Notification outbox delivery (every 2 minutes)
        self.scheduler.add_job(
            run_notification_processor,
            trigger=IntervalTrigger(
                minutes=Config.NOTIFICATION_PROCESS_INTERVAL_MINUTES,
                start_date=get_naive_utc_now().replace(second=15, microsecond=0),
                timezone="UTC",
            ),
            id="notification_processor",
            name="Notification Queue Processor",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
        )
        logger.info(f"✅ Notification processor scheduled every {Config.NOTIFICATION_PROCESS_INTERVAL_MINUTES} minutes")

        # Referral discount expiry (daily)
        self.scheduler.add_job(
            run_referral_discount_reset,
            trigger=CronTrigger(hour=Config.REFERRAL_RESET_HOUR_UTC, minute=0, timezone="UTC"),
            id="referral_discount_reset",
            name="Referral Discount Reset",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        logger.info(f"✅ Referral discount reset scheduled daily at {Config.REFERRAL_RESET_HOUR_UTC:02d}:00 UTC")

    def start(self):
        """Start the scheduler"""
        if self.scheduler.running:
            logger.warning("Escrow scheduler already running")
            return

        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Registered scheduler jobs: {[job.id for job in self.scheduler.get_jobs()]}")

    def stop(self, wait: bool = True):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Background job scheduler stopped")
