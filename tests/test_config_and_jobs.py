"""
Configuration validation and scheduled job wiring
"""

from config import Config
from jobs.scheduler import DuelScheduler
from services.chain_feed_client import ChainFeedClient
from services.deposit_confirmation_service import DepositConfirmationService
from services.duel_expiry_service import DuelExpiryService


class TestConfigValidation:
    def test_test_environment_is_valid(self):
        assert Config.validate() == []

    def test_missing_secret_and_bad_policy_are_reported(self, monkeypatch):
        monkeypatch.setattr(Config, "BOT_SHARED_SECRET", None)
        monkeypatch.setattr(Config, "REQUIRED_CONFIRMATIONS", 0)
        monkeypatch.setattr(Config, "PLATFORM_FEE_BPS", 10000)

        missing = Config.validate()

        assert "BOT_SHARED_SECRET" in missing
        assert any(item.startswith("REQUIRED_CONFIRMATIONS") for item in missing)
        assert any(item.startswith("PLATFORM_FEE_BPS") for item in missing)

    def test_production_requires_external_endpoints(self, monkeypatch):
        monkeypatch.setattr(Config, "IS_PRODUCTION", True)
        monkeypatch.setattr(Config, "CHAIN_RPC_URL", None)
        monkeypatch.setattr(Config, "PAYOUT_SENDER_URL", None)

        assert {"CHAIN_RPC_URL", "PAYOUT_SENDER_URL"} <= set(Config.validate())


class TestScheduledJobs:
    def _scheduler(self, rpc_url=None):
        return DuelScheduler(
            expiry_service=DuelExpiryService(),
            confirmation_service=DepositConfirmationService(),
            feed_client=ChainFeedClient(rpc_url=rpc_url),
        )

    def test_jobs_are_registered(self):
        scheduler = self._scheduler()

        scheduler.setup_jobs()

        assert {job.id for job in scheduler.scheduler.get_jobs()} == {
            "duel_expiry_sweep", "deposit_confirmation_poll", "deposit_credit_redrive",
        }

    async def test_poll_is_skipped_without_a_node(self, monkeypatch):
        monkeypatch.setattr(Config, "CHAIN_RPC_URL", None)

        assert await self._scheduler().run_confirmation_poll() == {"processed": 0, "skipped": True}

    async def test_expiry_and_redrive_jobs_run_off_loop(self):
        scheduler = self._scheduler()

        expiry = await scheduler.run_duel_expiry()
        redrive = await scheduler.run_credit_redrive()

        assert expiry["processed"] == 0
        assert redrive == {"processed": 0, "credited": 0, "skipped": 0, "errors": []}
