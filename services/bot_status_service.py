"""
Bot Status Service - liveness of the regional judge bots

Process-local heartbeat cache. It only drives the online/offline display
and is never consulted for anything that moves money.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from config import Config
from utils.datetime_helpers import utcnow
from utils.ledger_exceptions import ValidationError

logger = logging.getLogger(__name__)


class BotStatusService:
    def __init__(self, regions: Optional[List[str]] = None, offline_threshold_seconds: Optional[int] = None):
        self.regions = list(regions or Config.BOT_REGIONS)
        self.offline_threshold_seconds = offline_threshold_seconds or Config.BOT_OFFLINE_THRESHOLD_SECONDS
        self._lock = threading.Lock()
        self._heartbeats: Dict[str, datetime] = {}

    def record_heartbeat(self, region: str, now: Optional[datetime] = None) -> datetime:
        if region not in self.regions:
            raise ValidationError(f"Unknown region {region!r}")
        seen_at = now or utcnow()
        with self._lock:
            self._heartbeats[region] = seen_at
        logger.debug(f"BOT_HEARTBEAT: {region} at {seen_at.isoformat()}")
        return seen_at

    def get_statuses(self, now: Optional[datetime] = None) -> List[Dict[str, str]]:
        """online/offline per configured region, in configured order"""
        now = now or utcnow()
        with self._lock:
            heartbeats = dict(self._heartbeats)

        statuses = []
        for region in self.regions:
            last_seen = heartbeats.get(region)
            online = last_seen is not None and (now - last_seen).total_seconds() < self.offline_threshold_seconds
            statuses.append({"region": region, "status": "online" if online else "offline"})
        return statuses


# Global heartbeat cache
bot_status_service = BotStatusService()
