"""
Background job scheduler - duel expiry, confirmation polling and credit redrive

Every job is idempotent and guarded at the row level, so several service
instances may run the same schedule without double refunds or credits.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.chain_feed_client import ChainFeedClient
from services.deposit_confirmation_service import DepositConfirmationService
from services.duel_expiry_service import DuelExpiryService

logger = logging.getLogger(__name__)


class DuelScheduler:
    """
    Scheduling strategy:
    - Duel expiry sweep: every EXPIRY_SWEEP_INTERVAL_MINUTES (5)
    - Confirmation poll: every CONFIRMATION_POLL_SECONDS (30)
    - Confirmed-credit redrive: every CREDIT_REDRIVE_INTERVAL_MINUTES (5)
    """

    def __init__(
        self,
        expiry_service: Optional[DuelExpiryService] = None,
        confirmation_service: Optional[DepositConfirmationService] = None,
        feed_client: Optional[ChainFeedClient] = None,
    ):
        self.expiry_service = expiry_service or DuelExpiryService()
        self.confirmation_service = confirmation_service or DepositConfirmationService()
        self.feed_client = feed_client or ChainFeedClient()

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Prevent job pileup
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone='UTC',
        )

    async def run_duel_expiry(self) -> Dict[str, Any]:
        # The sweep is blocking database work; keep it off the event loop
        return await asyncio.to_thread(self.expiry_service.expire_stale)

    async def run_confirmation_poll(self) -> Dict[str, Any]:
        if not self.feed_client.rpc_url:
            logger.debug("CONFIRMATION_POLL_SKIPPED: no CHAIN_RPC_URL configured")
            return {"processed": 0, "skipped": True}
        return await self.confirmation_service.poll_pending(self.feed_client)

    async def run_credit_redrive(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.confirmation_service.redrive_confirmed)

    def setup_jobs(self):
        self.scheduler.add_job(
            self.run_duel_expiry,
            trigger=IntervalTrigger(minutes=Config.EXPIRY_SWEEP_INTERVAL_MINUTES),
            id="duel_expiry_sweep",
            name="⏰ Duel Expiry Sweep",
            replace_existing=True,
        )
        logger.info(f"✅ Duel expiry sweep scheduled every {Config.EXPIRY_SWEEP_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            self.run_confirmation_poll,
            trigger=IntervalTrigger(seconds=Config.CONFIRMATION_POLL_SECONDS),
            id="deposit_confirmation_poll",
            name="⛓️ Deposit Confirmation Poll",
            misfire_grace_time=30,
            replace_existing=True,
        )
        logger.info(f"✅ Confirmation poll scheduled every {Config.CONFIRMATION_POLL_SECONDS} seconds")

        self.scheduler.add_job(
            self.run_credit_redrive,
            trigger=IntervalTrigger(minutes=Config.CREDIT_REDRIVE_INTERVAL_MINUTES),
            id="deposit_credit_redrive",
            name="🔄 Confirmed Deposit Redrive",
            replace_existing=True,
        )
        logger.info(f"✅ Credit redrive scheduled every {Config.CREDIT_REDRIVE_INTERVAL_MINUTES} minutes")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self):
        self.scheduler.shutdown(wait=False)
        logger.info("📴 Job scheduler stopped")
