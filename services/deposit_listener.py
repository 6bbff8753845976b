"""
Deposit Listener - turns chain-feed transfer notifications into deposit rows

The feed may redeliver or reorder notifications. Rows are upserted on
tx_hash and confirmation depth is forwarded to the confirmation service,
which only ever moves a deposit forward.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from models import DepositStatus, DepositTransaction
from services.address_monitor import AddressMonitor, address_monitor, normalize_address
from services.deposit_confirmation_service import DepositConfirmationService, DepositProgress
from utils.atomic_transactions import atomic_transaction
from utils.ledger_exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class TransferEvent:
    """One transfer notification from the chain feed"""
    tx_hash: str
    to_address: str
    amount: int
    confirmations: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TransferEvent":
        try:
            tx_hash = str(payload["tx_hash"]).strip()
            to_address = str(payload["to_address"])
            amount = int(payload["amount"])
            confirmations = int(payload.get("confirmations") or 0)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed transfer event: {e}") from e

        if not tx_hash:
            raise ValidationError("Transfer event without tx_hash")
        return cls(tx_hash=tx_hash.lower(), to_address=to_address, amount=amount, confirmations=confirmations)


class DepositListener:
    def __init__(
        self,
        monitor: Optional[AddressMonitor] = None,
        confirmation_service: Optional[DepositConfirmationService] = None,
    ):
        self.monitor = monitor or address_monitor
        self.confirmation_service = confirmation_service or DepositConfirmationService(monitor=self.monitor)

    def on_transfer(self, event: TransferEvent) -> Optional[DepositProgress]:
        """Record a sighting; returns None when the address is not monitored"""
        address = normalize_address(event.to_address)

        if not self._known_deposit(event.tx_hash):
            if not self.monitor.is_watched(address):
                logger.debug(f"DEPOSIT_IGNORED: {event.tx_hash} to unmonitored {address}")
                return None
            if event.amount <= 0:
                logger.warning(f"⚠️ DEPOSIT_IGNORED: {event.tx_hash} has non-positive amount {event.amount}")
                return None
            self._insert_detected(event, address)

        return self.confirmation_service.record_confirmations(event.tx_hash, event.confirmations)

    def on_dropped(self, tx_hash: str) -> Optional[DepositProgress]:
        tx_hash = tx_hash.strip().lower()
        if not self._known_deposit(tx_hash):
            logger.debug(f"DEPOSIT_DROP_IGNORED: {tx_hash} was never recorded")
            return None
        return self.confirmation_service.mark_dropped(tx_hash)

    def _insert_detected(self, event: TransferEvent, address: str) -> None:
        try:
            with atomic_transaction() as tx:
                tx.add(DepositTransaction(
                    tx_hash=event.tx_hash,
                    to_address=address,
                    amount=event.amount,
                    status=DepositStatus.DETECTED.value,
                    confirmations_seen=0,
                ))
            logger.info(f"📥 DEPOSIT_DETECTED: {event.tx_hash} -> {address} ({event.amount} gems)")
        except IntegrityError:
            # Redelivered concurrently; the other insert won
            logger.info(f"🔁 DEPOSIT_REDELIVERED: {event.tx_hash} already recorded")

    @staticmethod
    def _known_deposit(tx_hash: str) -> bool:
        with atomic_transaction() as tx:
            return tx.execute(
                select(DepositTransaction.id).where(DepositTransaction.tx_hash == tx_hash)
            ).first() is not None


# Process-wide listener fed by the webhook route
deposit_listener = DepositListener()
