"""
Address Monitor - deposit addresses watched for incoming transfers

The in-memory working set is a cache over the monitored_addresses table and is
rebuilt from it on startup. Rows are never deleted: unwatching only
deactivates, so late or re-orged transfers to an old address still resolve to
their owner.
"""

import logging
import threading
from typing import Dict, List, Optional

from sqlalchemy import select, update

from models import MonitoredAddress, User
from utils.atomic_transactions import atomic_transaction
from utils.ledger_exceptions import NotFound, ValidationError

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    if not address or not address.strip():
        raise ValidationError("Address is required")
    return address.strip().lower()


def _require_user(tx, user_id: Optional[int]) -> None:
    if user_id is not None and tx.get(User, user_id) is None:
        raise NotFound(f"User {user_id} not found")


class AddressMonitor:
    """Working set of watched addresses mirrored from the store"""

    def __init__(self):
        self._lock = threading.Lock()
        self._watched: Dict[str, Optional[int]] = {}

    def load(self, session=None) -> int:
        """Replace the working set with every active address in the store"""
        with atomic_transaction(session) as tx:
            rows = tx.execute(
                select(MonitoredAddress.address, MonitoredAddress.owner_user_id)
                .where(MonitoredAddress.is_active.is_(True))
            ).all()

        with self._lock:
            self._watched = {row.address: row.owner_user_id for row in rows}
            count = len(self._watched)
        logger.info(f"👀 ADDRESS_MONITOR: Loaded {count} addresses to monitor")
        return count

    def watch(self, address: str, user_id: Optional[int] = None, session=None) -> MonitoredAddress:
        """Persist the address (upsert) and add it to the working set"""
        address = normalize_address(address)

        with atomic_transaction(session) as tx:
            _require_user(tx, user_id)
            row = tx.execute(
                select(MonitoredAddress).where(MonitoredAddress.address == address)
            ).scalar_one_or_none()
            if row is None:
                row = MonitoredAddress(address=address, owner_user_id=user_id, is_active=True)
                tx.add(row)
                logger.info(f"➕ ADDRESS_WATCHED: {address} (owner={user_id})")
            else:
                row.is_active = True
                if row.owner_user_id is None and user_id is not None:
                    row.owner_user_id = user_id
                logger.info(f"🔁 ADDRESS_REWATCHED: {address} already known (owner={row.owner_user_id})")
            tx.flush()
            owner = row.owner_user_id

        with self._lock:
            self._watched[address] = owner
        return row

    def unwatch(self, address: str, session=None) -> bool:
        """Stop watching; the row stays for historical attribution"""
        address = normalize_address(address)

        with atomic_transaction(session) as tx:
            result = tx.execute(
                update(MonitoredAddress)
                .where(MonitoredAddress.address == address)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            found = result.rowcount == 1

        with self._lock:
            self._watched.pop(address, None)
        if found:
            logger.info(f"➖ ADDRESS_UNWATCHED: {address}")
        return found

    def attribute(self, address: str, user_id: int, session=None) -> bool:
        """Assign an owner to a previously unattributed address"""
        address = normalize_address(address)

        with atomic_transaction(session) as tx:
            _require_user(tx, user_id)
            result = tx.execute(
                update(MonitoredAddress)
                .where(MonitoredAddress.address == address, MonitoredAddress.owner_user_id.is_(None))
                .values(owner_user_id=user_id)
                .execution_options(synchronize_session=False)
            )
            assigned = result.rowcount == 1

        if assigned:
            with self._lock:
                if address in self._watched:
                    self._watched[address] = user_id
            logger.info(f"🏷️ ADDRESS_ATTRIBUTED: {address} -> user {user_id}")
        return assigned

    def is_watched(self, address: str) -> bool:
        if not address:
            return False
        with self._lock:
            return address.strip().lower() in self._watched

    def owner_of(self, address: str, session=None) -> Optional[int]:
        """Owner of an address, from the store so inactive addresses still resolve"""
        address = normalize_address(address)
        with atomic_transaction(session) as tx:
            return tx.execute(
                select(MonitoredAddress.owner_user_id).where(MonitoredAddress.address == address)
            ).scalar_one_or_none()

    def addresses(self) -> List[str]:
        with self._lock:
            return sorted(self._watched)


# Process-wide working set
address_monitor = AddressMonitor()
