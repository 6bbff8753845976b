"""
Duel Expiry Service - periodic sweep of stale duels

Unanswered challenges are cancelled (nothing was reserved). Duels stuck in
play past the active window are expired and both stakes refunded. Disputed
duels are left for admin arbitration. Each duel is handled in its own
guarded transaction, so the sweep is idempotent and safe to run on several
instances at once.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select

from config import Config
from models import Duel, DuelStatus
from services.ledger_service import LedgerService
from utils.atomic_transactions import atomic_transaction, guarded_update
from utils.datetime_helpers import minutes_ago, utcnow
from utils.duel_state_machine import IN_PLAY_STATUSES, PENDING_STATUSES, DuelStateValidator

logger = logging.getLogger(__name__)


class DuelExpiryService:
    """Timeout handling for the duel lifecycle"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.EXPIRY_BATCH_SIZE

    def expire_stale(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        results = {
            "processed": 0,
            "cancelled": [],
            "expired": [],
            "skipped": 0,
            "errors": [],
        }

        challenge_cutoff = minutes_ago(Config.CHALLENGE_EXPIRY_MINUTES, now)
        active_cutoff = minutes_ago(Config.ACTIVE_DUEL_EXPIRY_MINUTES, now)

        with atomic_transaction() as tx:
            stale_pending = tx.execute(
                select(Duel.id)
                .where(Duel.status.in_(PENDING_STATUSES), Duel.created_at < challenge_cutoff)
                .order_by(Duel.id)
                .limit(self.batch_size)
            ).scalars().all()

            stale_active = tx.execute(
                select(Duel.id)
                .where(Duel.status.in_(IN_PLAY_STATUSES), Duel.accepted_at < active_cutoff)
                .order_by(Duel.id)
                .limit(self.batch_size)
            ).scalars().all()

        for duel_id in stale_pending:
            results["processed"] += 1
            try:
                if self._cancel_pending(duel_id):
                    results["cancelled"].append(duel_id)
                else:
                    results["skipped"] += 1
            except Exception as e:
                logger.error(f"❌ DUEL_EXPIRY_ERROR: cancelling #{duel_id}: {e}")
                results["errors"].append(f"{duel_id}: {e}")

        for duel_id in stale_active:
            results["processed"] += 1
            try:
                if self._expire_active(duel_id):
                    results["expired"].append(duel_id)
                else:
                    results["skipped"] += 1
            except Exception as e:
                logger.error(f"❌ DUEL_EXPIRY_ERROR: expiring #{duel_id}: {e}")
                results["errors"].append(f"{duel_id}: {e}")

        if results["processed"]:
            logger.info(
                f"⏰ DUEL_EXPIRY_SWEEP: cancelled={len(results['cancelled'])} "
                f"expired={len(results['expired'])} skipped={results['skipped']} errors={len(results['errors'])}"
            )
        return results

    def _cancel_pending(self, duel_id: int) -> bool:
        with atomic_transaction() as tx:
            moved = guarded_update(
                tx, Duel, duel_id,
                DuelStateValidator.sources(DuelStatus.CANCELLED.value, PENDING_STATUSES),
                status=DuelStatus.CANCELLED.value,
            )
            if moved:
                logger.info(f"🚫 AUTO_CANCEL: duel #{duel_id} - challenge timed out unanswered")
            return moved

    def _expire_active(self, duel_id: int) -> bool:
        with atomic_transaction() as tx:
            # Status flip first; a duel settled or disputed meanwhile is skipped
            moved = guarded_update(
                tx, Duel, duel_id,
                DuelStateValidator.sources(DuelStatus.EXPIRED.value, IN_PLAY_STATUSES),
                status=DuelStatus.EXPIRED.value,
                settled_at=utcnow(),
            )
            if not moved:
                return False

            duel = tx.get(Duel, duel_id, populate_existing=True)
            LedgerService.refund_stakes(duel.participants, duel.stake_amount, duel_id, tx, reason="expired")

            logger.info(
                f"⏰ AUTO_EXPIRE: duel #{duel_id} - no result in time, "
                f"{duel.stake_amount} gems refunded to each player"
            )
            return True


# Global instance used by the scheduler
duel_expiry_service = DuelExpiryService()
