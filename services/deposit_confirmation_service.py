"""
Deposit Confirmation Service - detected -> confirming -> confirmed -> credited

Confirmation depth arrives either pushed by the listener or pulled by the
scheduled poll. Crediting flips the row to credited and writes the ledger
entry in the same transaction; a crash in between leaves the row confirmed
and the redrive job credits it later (the ledger is idempotent on tx_hash).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import DepositStatus, DepositTransaction
from services.address_monitor import AddressMonitor, address_monitor
from services.ledger_service import LedgerService
from utils.anomaly_logger import anomaly_logger
from utils.atomic_transactions import atomic_transaction, guarded_update
from utils.datetime_helpers import utcnow
from utils.ledger_exceptions import ExternalServiceFailure, NotFound, ReconciliationAnomaly

logger = logging.getLogger(__name__)

PRE_CREDIT_STATUSES = (
    DepositStatus.DETECTED.value,
    DepositStatus.CONFIRMING.value,
    DepositStatus.CONFIRMED.value,
)


@dataclass
class DepositProgress:
    """Where a deposit stands after an update"""
    tx_hash: str
    status: str
    confirmations: int
    credited: bool = False
    no_op: bool = False
    anomaly: Optional[ReconciliationAnomaly] = None


class DepositConfirmationService:
    """Per-deposit state machine driving the exactly-once credit"""

    def __init__(self, monitor: Optional[AddressMonitor] = None, required_confirmations: Optional[int] = None):
        self.monitor = monitor or address_monitor
        self._required_confirmations = required_confirmations

    @property
    def required_confirmations(self) -> int:
        return self._required_confirmations or Config.REQUIRED_CONFIRMATIONS

    def record_confirmations(self, tx_hash: str, confirmations: int, session: Optional[Session] = None) -> DepositProgress:
        """Apply a confirmation-depth observation; credits once the depth is reached"""
        with atomic_transaction(session) as tx:
            deposit = self._load(tx_hash, tx)

            if deposit.status not in PRE_CREDIT_STATUSES:
                logger.debug(f"DEPOSIT_UPDATE_IGNORED: {tx_hash} already {deposit.status}")
                return DepositProgress(tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

            # Out-of-order delivery never lowers the depth
            seen = max(deposit.confirmations_seen, int(confirmations or 0))

            if seen >= self.required_confirmations:
                moved = guarded_update(
                    tx, DepositTransaction, deposit.id,
                    [DepositStatus.DETECTED.value, DepositStatus.CONFIRMING.value],
                    status=DepositStatus.CONFIRMED.value,
                    confirmations_seen=seen,
                    confirmed_at=utcnow(),
                )
                if moved:
                    logger.info(f"🔐 DEPOSIT_CONFIRMED: {tx_hash} reached {seen}/{self.required_confirmations} confirmations")
                return self._credit_confirmed(deposit.id, tx)

            if seen > 0:
                guarded_update(
                    tx, DepositTransaction, deposit.id,
                    [DepositStatus.DETECTED.value, DepositStatus.CONFIRMING.value],
                    status=DepositStatus.CONFIRMING.value,
                    confirmations_seen=seen,
                )
                logger.info(f"⏳ DEPOSIT_CONFIRMING: {tx_hash} at {seen}/{self.required_confirmations}")
                return DepositProgress(tx_hash, DepositStatus.CONFIRMING.value, seen)

            return DepositProgress(tx_hash, deposit.status, seen)

    def mark_dropped(self, tx_hash: str, session: Optional[Session] = None) -> DepositProgress:
        """
        The chain no longer knows this transaction.

        Before credit the deposit is simply invalidated. After credit a
        compensating ledger entry is written, the account is flagged and the
        anomaly is logged for admin review.
        """
        with atomic_transaction(session) as tx:
            deposit = self._load(tx_hash, tx)

            if deposit.status in PRE_CREDIT_STATUSES:
                if guarded_update(tx, DepositTransaction, deposit.id, PRE_CREDIT_STATUSES,
                                  status=DepositStatus.INVALIDATED.value):
                    logger.warning(f"🚫 DEPOSIT_INVALIDATED: {tx_hash} dropped before credit ({deposit.status})")
                    return DepositProgress(tx_hash, DepositStatus.INVALIDATED.value, deposit.confirmations_seen)
                return DepositProgress(tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

            if deposit.status == DepositStatus.CREDITED.value:
                if not guarded_update(tx, DepositTransaction, deposit.id, DepositStatus.CREDITED.value,
                                      status=DepositStatus.INVALIDATED.value):
                    return DepositProgress(tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

                reversal = LedgerService.reverse_deposit(tx_hash, session=tx)
                user_id = reversal.user_id or deposit.credited_user_id
                reason = f"Credited deposit {tx_hash} was invalidated by the chain"
                if reversal.shortfall:
                    reason += f"; {reversal.shortfall} gems could not be recovered"
                if user_id is not None:
                    LedgerService.flag_for_review(user_id, reason, tx)

                anomaly = ReconciliationAnomaly(tx_hash, user_id, reason)
                anomaly_logger.record(
                    anomaly.code,
                    str(anomaly),
                    tx_hash=tx_hash,
                    user_id=user_id,
                    context={
                        "amount": deposit.amount,
                        "reversed": reversal.reversed_amount,
                        "shortfall": reversal.shortfall,
                    },
                )
                return DepositProgress(
                    tx_hash, DepositStatus.INVALIDATED.value, deposit.confirmations_seen, anomaly=anomaly
                )

            return DepositProgress(tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

    def redrive_confirmed(self, limit: int = 100) -> Dict[str, Any]:
        """Credit every confirmed-but-uncredited deposit (crash recovery)"""
        results = {"processed": 0, "credited": 0, "skipped": 0, "errors": []}

        with atomic_transaction() as tx:
            rows = tx.execute(
                select(DepositTransaction.id, DepositTransaction.tx_hash)
                .where(DepositTransaction.status == DepositStatus.CONFIRMED.value)
                .order_by(DepositTransaction.id)
                .limit(limit)
            ).all()

        for row in rows:
            results["processed"] += 1
            try:
                with atomic_transaction() as tx:
                    progress = self._credit_confirmed(row.id, tx)
                if progress.credited:
                    results["credited"] += 1
                else:
                    results["skipped"] += 1
            except Exception as e:
                logger.error(f"❌ DEPOSIT_REDRIVE_ERROR: {row.tx_hash}: {e}")
                results["errors"].append(f"{row.tx_hash}: {e}")

        if results["processed"]:
            logger.info(f"🔄 DEPOSIT_REDRIVE: {results}")
        return results

    async def poll_pending(self, feed_client, limit: int = 100) -> Dict[str, Any]:
        """Ask the chain feed for the depth of every uncredited deposit"""
        results = {"processed": 0, "confirmed": 0, "invalidated": 0, "errors": []}

        hashes = await asyncio.to_thread(self.unconfirmed_hashes, limit)

        for tx_hash in hashes:
            results["processed"] += 1
            try:
                confirmations = await feed_client.get_confirmations(tx_hash)
            except ExternalServiceFailure as e:
                # Polling is idempotent; the next run retries
                logger.warning(f"⚠️ CONFIRMATION_POLL_FAILED: {tx_hash}: {e}")
                results["errors"].append(f"{tx_hash}: {e}")
                continue

            if confirmations is None:
                await asyncio.to_thread(self.mark_dropped, tx_hash)
                results["invalidated"] += 1
                continue

            progress = await asyncio.to_thread(self.record_confirmations, tx_hash, confirmations)
            if progress.status in (DepositStatus.CONFIRMED.value, DepositStatus.CREDITED.value):
                results["confirmed"] += 1

        return results

    def unconfirmed_hashes(self, limit: int = 100) -> List[str]:
        with atomic_transaction() as tx:
            return list(tx.execute(
                select(DepositTransaction.tx_hash)
                .where(DepositTransaction.status.in_([
                    DepositStatus.DETECTED.value,
                    DepositStatus.CONFIRMING.value,
                ]))
                .order_by(DepositTransaction.id)
                .limit(limit)
            ).scalars().all())

    def _credit_confirmed(self, deposit_id: int, tx: Session) -> DepositProgress:
        deposit = tx.get(DepositTransaction, deposit_id, populate_existing=True)
        if deposit.status != DepositStatus.CONFIRMED.value:
            return DepositProgress(deposit.tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

        owner_id = self.monitor.owner_of(deposit.to_address, session=tx)

        if owner_id is None:
            anomaly_logger.record(
                "unattributed_deposit",
                f"Confirmed deposit to {deposit.to_address} has no owner; waiting for admin attribution",
                tx_hash=deposit.tx_hash,
                context={"amount": deposit.amount},
            )
            return DepositProgress(deposit.tx_hash, deposit.status, deposit.confirmations_seen)

        if not guarded_update(
            tx, DepositTransaction, deposit.id, DepositStatus.CONFIRMED.value,
            status=DepositStatus.CREDITED.value,
            credited_user_id=owner_id,
            credited_at=utcnow(),
        ):
            # Another worker credited it first
            return DepositProgress(deposit.tx_hash, deposit.status, deposit.confirmations_seen, no_op=True)

        credit = LedgerService.credit_deposit(deposit.tx_hash, owner_id, deposit.amount, session=tx)
        return DepositProgress(
            deposit.tx_hash,
            DepositStatus.CREDITED.value,
            deposit.confirmations_seen,
            credited=not credit.duplicate,
        )

    @staticmethod
    def _load(tx_hash: str, tx: Session) -> DepositTransaction:
        deposit = tx.execute(
            select(DepositTransaction).where(DepositTransaction.tx_hash == tx_hash)
        ).scalar_one_or_none()
        if deposit is None:
            raise NotFound(f"Deposit {tx_hash} not found")
        return deposit
