#!/usr/bin/env python3
"""
Deterministic startup for the duel ledger service

Sequence: logging -> config validation -> tables -> address working set ->
redrive of confirmed-but-uncredited deposits -> scheduler -> HTTP server.
"""

import asyncio
import logging
import sys

import uvicorn

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class StartupManager:
    def __init__(self):
        self.scheduler = None
        self.startup_errors = []

    def initialize_database(self) -> bool:
        from database import create_tables, test_connection

        logger.info("🗄️ Initializing database...")
        if not test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        if not create_tables():
            self.startup_errors.append("Database: table creation failed")
            return False
        return True

    def recover_state(self) -> None:
        """Rebuild in-memory caches from the store and finish interrupted credits"""
        from services.address_monitor import address_monitor
        from services.deposit_confirmation_service import DepositConfirmationService

        address_monitor.load()
        results = DepositConfirmationService(monitor=address_monitor).redrive_confirmed()
        logger.info(f"🔄 STARTUP_REDRIVE: credited {results['credited']} of {results['processed']} confirmed deposits")

    async def serve(self) -> None:
        from jobs.scheduler import DuelScheduler
        from webhook_server import app

        self.scheduler = DuelScheduler()
        self.scheduler.start()

        server = uvicorn.Server(uvicorn.Config(app, host="0.0.0.0", port=Config.PORT, log_level="info"))
        try:
            await server.serve()
        finally:
            self.scheduler.stop()

    def run(self) -> int:
        Config.log_environment_config()

        missing = Config.validate()
        if missing:
            logger.error(f"❌ CONFIG_INVALID: {', '.join(missing)}")
            return 1

        if not self.initialize_database():
            logger.error(f"❌ STARTUP_FAILED: {self.startup_errors}")
            return 1

        self.recover_state()

        logger.info(f"🚀 Serving on port {Config.PORT}")
        asyncio.run(self.serve())
        return 0


def main() -> int:
    return StartupManager().run()


if __name__ == "__main__":
    sys.exit(main())
