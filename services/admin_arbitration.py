"""
Admin Arbitration Service - privileged overrides for disputes, payouts and addresses

Every call checks the caller's admin flag first and every action, whether
it succeeded or not, is written to the admin log.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update

from models import AdminActionType, AdminLog, DisputeResolution, User
from services.address_monitor import AddressMonitor, address_monitor
from services.deposit_confirmation_service import DepositConfirmationService
from services.duel_service import DuelResult, DuelService
from services.onchain_sender import OnchainSender
from services.payout_service import PayoutResult, PayoutService
from utils.atomic_transactions import atomic_transaction
from utils.ledger_exceptions import NotFound, Unauthorized

logger = logging.getLogger(__name__)


class AdminArbitrationService:
    """Admin surface over the duel, payout and deposit cores"""

    def __init__(
        self,
        admin_id: int,
        monitor: Optional[AddressMonitor] = None,
        confirmation_service: Optional[DepositConfirmationService] = None,
        sender: Optional[OnchainSender] = None,
    ):
        self.admin_id = admin_id
        self.sender = sender or OnchainSender()
        self.monitor = monitor or address_monitor
        self.confirmation_service = confirmation_service or DepositConfirmationService(monitor=self.monitor)
        self._require_admin()

    def resolve_dispute(self, duel_id: int, resolution: DisputeResolution) -> DuelResult:
        self._require_admin()
        result = DuelService.resolve_dispute(duel_id, resolution, self.admin_id)
        duel_resolution = getattr(resolution, "value", resolution)
        self._log(
            AdminActionType.RESOLVE_DISPUTE,
            target_id=duel_id,
            target_user_id=result.winner_id,
            details={"resolution": duel_resolution, "success": result.success, "error": result.error},
        )
        return result

    async def approve_payout(self, request_id: int, sender=None) -> PayoutResult:
        await asyncio.to_thread(self._require_admin)
        result = await PayoutService.approve(request_id, self.admin_id, sender or self.sender)
        await asyncio.to_thread(
            self._log,
            AdminActionType.APPROVE_PAYOUT,
            target_id=request_id,
            details={
                "success": result.success,
                "status": result.status,
                "tx_hash": result.tx_hash,
                "error": result.error,
            },
        )
        return result

    def decline_payout(self, request_id: int, reason: Optional[str] = None) -> PayoutResult:
        self._require_admin()
        result = PayoutService.decline(request_id, self.admin_id, reason)
        self._log(
            AdminActionType.DECLINE_PAYOUT,
            target_id=request_id,
            details={"reason": reason, "success": result.success, "refunded": result.refunded},
        )
        return result

    def resolve_stuck_payout(self, request_id: int, tx_hash: Optional[str] = None) -> PayoutResult:
        """Close out a payout stuck in processing: completed with a hash, refunded without"""
        self._require_admin()
        result = PayoutService.resolve_processing(request_id, self.admin_id, tx_hash)
        self._log(
            AdminActionType.RESOLVE_STUCK_PAYOUT,
            target_id=request_id,
            details={
                "success": result.success,
                "status": result.status,
                "tx_hash": tx_hash,
                "refunded": result.refunded,
                "error": result.error,
            },
        )
        return result

    def add_address(self, address: str, user_id: Optional[int] = None) -> str:
        self._require_admin()
        row = self.monitor.watch(address, user_id)
        self._log(AdminActionType.ADD_ADDRESS, target_id=row.address, target_user_id=row.owner_user_id)
        return row.address

    def remove_address(self, address: str) -> bool:
        self._require_admin()
        removed = self.monitor.unwatch(address)
        self._log(AdminActionType.REMOVE_ADDRESS, target_id=address.strip().lower(), details={"found": removed})
        return removed

    def attribute_address(self, address: str, user_id: int) -> Dict[str, Any]:
        """Give an unowned address an owner and credit anything parked on it"""
        self._require_admin()
        assigned = self.monitor.attribute(address, user_id)
        redrive = self.confirmation_service.redrive_confirmed() if assigned else None
        self._log(
            AdminActionType.ATTRIBUTE_ADDRESS,
            target_id=address.strip().lower(),
            target_user_id=user_id,
            details={"assigned": assigned, "credited": redrive["credited"] if redrive else 0},
        )
        return {"assigned": assigned, "redrive": redrive}

    def clear_review_flag(self, user_id: int, note: Optional[str] = None) -> bool:
        self._require_admin()
        with atomic_transaction() as tx:
            result = tx.execute(
                update(User)
                .where(User.id == user_id, User.review_required.is_(True))
                .values(review_required=False, review_reason=None)
                .execution_options(synchronize_session=False)
            )
            cleared = result.rowcount == 1
        self._log(
            AdminActionType.CLEAR_REVIEW_FLAG,
            target_user_id=user_id,
            details={"cleared": cleared, "note": note},
        )
        return cleared

    def list_flagged_accounts(self) -> List[User]:
        self._require_admin()
        with atomic_transaction() as tx:
            return list(
                tx.execute(
                    select(User).where(User.review_required.is_(True)).order_by(User.id)
                ).scalars().all()
            )

    def _require_admin(self) -> None:
        with atomic_transaction() as tx:
            is_admin = tx.execute(select(User.is_admin).where(User.id == self.admin_id)).scalar_one_or_none()
        if is_admin is None:
            raise NotFound(f"User {self.admin_id} not found")
        if not is_admin:
            logger.warning(f"🚫 ADMIN_ACCESS_DENIED: user {self.admin_id}")
            raise Unauthorized(f"User {self.admin_id} is not an admin")

    def _log(
        self,
        action: AdminActionType,
        target_id: Optional[Any] = None,
        target_user_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with atomic_transaction() as tx:
            tx.add(AdminLog(
                admin_id=self.admin_id,
                action=action.value,
                target_id=str(target_id) if target_id is not None else None,
                target_user_id=target_user_id,
                details=details or {},
            ))
        logger.info(f"🛡️ ADMIN_ACTION: {action.value} by admin {self.admin_id} on {target_id or target_user_id}")
