"""
Payout Service - withdrawal requests escrowed against the ledger

Gems leave the balance when the request is made. Every path out of the
request either sends them on-chain or refunds them, and each refund is
keyed per request so it can be applied at most once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import PayoutRequest, PayoutStatus, TransactionType, User
from services.ledger_service import LedgerService
from utils.atomic_transactions import atomic_transaction, guarded_update
from utils.ledger_exceptions import (
    DuplicateEvent,
    InvalidTransition,
    LedgerError,
    NotFound,
    Unauthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)


PAYOUT_TRANSITIONS: Dict[str, Set[str]] = {
    PayoutStatus.PENDING.value: {
        PayoutStatus.APPROVED.value,
        PayoutStatus.DECLINED.value,
        PayoutStatus.CANCELLED.value,
    },
    PayoutStatus.APPROVED.value: {PayoutStatus.PROCESSING.value},
    PayoutStatus.PROCESSING.value: {
        PayoutStatus.COMPLETED.value,
        PayoutStatus.FAILED.value,
    },
    PayoutStatus.COMPLETED.value: set(),
    PayoutStatus.DECLINED.value: set(),
    PayoutStatus.CANCELLED.value: set(),
    PayoutStatus.FAILED.value: set(),
}


def transition_source(source: PayoutStatus, target: PayoutStatus) -> str:
    """Expected prior status for a guarded update, checked against the table"""
    if target.value not in PAYOUT_TRANSITIONS[source.value]:
        raise ValueError(f"Illegal payout transition {source.value} -> {target.value}")
    return source.value


def refund_key(request_id: int) -> str:
    return f"payout_{request_id}_refund"


@dataclass
class PayoutResult:
    """Outcome of a payout operation"""
    success: bool
    request_id: Optional[int] = None
    status: Optional[str] = None
    tx_hash: Optional[str] = None
    refunded: int = 0
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def failed(cls, error: LedgerError, request_id: Optional[int] = None) -> "PayoutResult":
        status = getattr(error, "current_status", None)
        return cls(success=False, request_id=request_id, status=status, error=error.code, message=str(error))


class PayoutService:
    """Request -> review -> on-chain send lifecycle"""

    @classmethod
    def request(cls, user_id: int, amount: int, address: str, token_type: str) -> PayoutResult:
        """Escrow the gems and open a pending request"""
        try:
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError(f"Payout amount must be a positive whole number of gems, got {amount!r}")
            token_type = (token_type or "").upper()
            if token_type not in Config.SUPPORTED_PAYOUT_TOKENS:
                raise ValidationError(f"Unsupported token {token_type!r}")
            address = (address or "").strip()
            if not address:
                raise ValidationError("Destination address is required")

            with atomic_transaction() as tx:
                if tx.get(User, user_id) is None:
                    raise NotFound(f"User {user_id} not found")
                payout = PayoutRequest(
                    user_id=user_id,
                    gem_amount=amount,
                    destination_address=address,
                    token_type=token_type,
                    status=PayoutStatus.PENDING.value,
                )
                tx.add(payout)
                tx.flush()

                LedgerService.adjust_balance(
                    user_id,
                    -amount,
                    TransactionType.PAYOUT_ESCROW,
                    description=f"Payout request #{payout.id} ({token_type})",
                    related_id=payout.id,
                    session=tx,
                )

                logger.info(f"💸 PAYOUT_REQUESTED: #{payout.id} user {user_id} {amount} gems as {token_type}")
                return PayoutResult(success=True, request_id=payout.id, status=PayoutStatus.PENDING.value)
        except LedgerError as e:
            logger.info(f"PAYOUT_REQUEST_REJECTED: user {user_id}: {e}")
            return PayoutResult.failed(e)

    @classmethod
    def cancel(cls, request_id: int, user_id: int) -> PayoutResult:
        """Owner withdraws a request still waiting for review"""
        try:
            with atomic_transaction() as tx:
                if not guarded_update(
                    tx, PayoutRequest, request_id, transition_source(PayoutStatus.PENDING, PayoutStatus.CANCELLED),
                    [PayoutRequest.user_id == user_id],
                    status=PayoutStatus.CANCELLED.value,
                ):
                    payout = cls._load(request_id, tx)
                    if payout.user_id != user_id:
                        raise Unauthorized(f"Payout #{request_id} belongs to another user")
                    raise InvalidTransition("PayoutRequest", request_id, payout.status, PayoutStatus.CANCELLED.value)

                refunded = cls._refund(tx, request_id, "cancelled by user")
                logger.info(f"🚫 PAYOUT_CANCELLED: #{request_id} by user {user_id}, {refunded} gems refunded")
                return PayoutResult(
                    success=True, request_id=request_id, status=PayoutStatus.CANCELLED.value, refunded=refunded
                )
        except LedgerError as e:
            logger.info(f"PAYOUT_CANCEL_REJECTED: #{request_id}: {e}")
            return PayoutResult.failed(e, request_id)

    @classmethod
    def decline(cls, request_id: int, admin_id: int, reason: Optional[str] = None) -> PayoutResult:
        try:
            with atomic_transaction() as tx:
                if not guarded_update(
                    tx, PayoutRequest, request_id, transition_source(PayoutStatus.PENDING, PayoutStatus.DECLINED),
                    status=PayoutStatus.DECLINED.value,
                    decline_reason=reason,
                    reviewed_by=admin_id,
                ):
                    raise cls._lost_race(request_id, tx, PayoutStatus.DECLINED.value)

                refunded = cls._refund(tx, request_id, f"declined: {reason or 'no reason given'}")
                logger.info(f"🙅 PAYOUT_DECLINED: #{request_id} by admin {admin_id}, {refunded} gems refunded")
                return PayoutResult(
                    success=True, request_id=request_id, status=PayoutStatus.DECLINED.value, refunded=refunded
                )
        except LedgerError as e:
            logger.info(f"PAYOUT_DECLINE_REJECTED: #{request_id}: {e}")
            return PayoutResult.failed(e, request_id)

    @classmethod
    async def approve(cls, request_id: int, admin_id: int, sender) -> PayoutResult:
        """
        Approve and send.

        The request is claimed (pending -> approved -> processing) in one
        transaction, the send runs with no transaction open, and the outcome
        is committed in a second transaction. A failed send is parked as
        failed with the escrow refunded; it is never retried automatically.
        Both transactions run in worker threads, off the event loop.
        """
        try:
            address, amount, token_type = await asyncio.to_thread(cls._claim, request_id, admin_id)
            logger.info(f"✅ PAYOUT_APPROVED: #{request_id} by admin {admin_id}, sending {amount} gems")
        except LedgerError as e:
            logger.info(f"PAYOUT_APPROVE_REJECTED: #{request_id}: {e}")
            return PayoutResult.failed(e, request_id)

        try:
            tx_hash = await sender.send(address, amount, token_type, reference=f"payout_{request_id}")
        except Exception as e:
            return await asyncio.to_thread(cls._mark_failed, request_id, str(e))

        return await asyncio.to_thread(cls._mark_completed, request_id, tx_hash)

    @classmethod
    def resolve_processing(cls, request_id: int, admin_id: int, tx_hash: Optional[str] = None) -> PayoutResult:
        """
        Settle a request left in processing by a crash or a lost completion.

        With a tx hash the send is known to have gone out and the request is
        completed. Without one it is failed and the escrow refunded under the
        same per-request refund key as every other refund path.
        """
        tx_hash = (tx_hash or "").strip() or None
        logger.warning(f"🛠️ PAYOUT_MANUAL_RESOLUTION: #{request_id} by admin {admin_id} (tx_hash={tx_hash})")
        if tx_hash is not None:
            return cls._mark_completed(request_id, tx_hash)

        result = cls._mark_failed(
            request_id,
            f"resolved manually by admin {admin_id} without a send",
            refund_reason="no send recorded, resolved by admin",
        )
        if result.error == "external_service_failure":
            result.success, result.error = True, None
        return result

    @classmethod
    def _claim(cls, request_id: int, admin_id: int):
        with atomic_transaction() as tx:
            if not guarded_update(
                tx, PayoutRequest, request_id, transition_source(PayoutStatus.PENDING, PayoutStatus.APPROVED),
                status=PayoutStatus.APPROVED.value,
                reviewed_by=admin_id,
            ):
                raise cls._lost_race(request_id, tx, PayoutStatus.APPROVED.value)
            guarded_update(
                tx, PayoutRequest, request_id, transition_source(PayoutStatus.APPROVED, PayoutStatus.PROCESSING),
                status=PayoutStatus.PROCESSING.value,
            )
            payout = cls._load(request_id, tx)
            return payout.destination_address, payout.gem_amount, payout.token_type

    @classmethod
    def _mark_completed(cls, request_id: int, tx_hash: str) -> PayoutResult:
        with atomic_transaction() as tx:
            if not guarded_update(
                tx, PayoutRequest, request_id, transition_source(PayoutStatus.PROCESSING, PayoutStatus.COMPLETED),
                status=PayoutStatus.COMPLETED.value,
                tx_hash=tx_hash,
            ):
                error = cls._lost_race(request_id, tx, PayoutStatus.COMPLETED.value)
                # Funds left the hot wallet; the row must be reconciled by hand
                logger.critical(f"🚨 PAYOUT_COMPLETION_LOST: #{request_id} sent as {tx_hash} but no longer processing")
                result = PayoutResult.failed(error, request_id)
                result.tx_hash = tx_hash
                return result

        logger.info(f"🎉 PAYOUT_COMPLETED: #{request_id} tx {tx_hash}")
        return PayoutResult(success=True, request_id=request_id, status=PayoutStatus.COMPLETED.value, tx_hash=tx_hash)

    @classmethod
    def list_pending(cls, session: Optional[Session] = None) -> List[PayoutRequest]:
        with atomic_transaction(session) as tx:
            return list(
                tx.execute(
                    select(PayoutRequest)
                    .where(PayoutRequest.status == PayoutStatus.PENDING.value)
                    .order_by(PayoutRequest.created_at, PayoutRequest.id)
                ).scalars().all()
            )

    @classmethod
    def get_request(cls, request_id: int, session: Optional[Session] = None) -> PayoutRequest:
        with atomic_transaction(session) as tx:
            return cls._load(request_id, tx)

    @classmethod
    def _mark_failed(
        cls, request_id: int, error_message: str, refund_reason: str = "on-chain send failed"
    ) -> PayoutResult:
        with atomic_transaction() as tx:
            if not guarded_update(
                tx, PayoutRequest, request_id, transition_source(PayoutStatus.PROCESSING, PayoutStatus.FAILED),
                status=PayoutStatus.FAILED.value,
                error_message=error_message[:1000],
            ):
                error = cls._lost_race(request_id, tx, PayoutStatus.FAILED.value)
                logger.error(f"❌ PAYOUT_FAIL_LOST: #{request_id}: {error}")
                return PayoutResult.failed(error, request_id)
            refunded = cls._refund(tx, request_id, refund_reason)

        logger.error(f"❌ PAYOUT_FAILED: #{request_id} {error_message}; {refunded} gems refunded")
        return PayoutResult(
            success=False,
            request_id=request_id,
            status=PayoutStatus.FAILED.value,
            refunded=refunded,
            error="external_service_failure",
            message=error_message,
        )

    @classmethod
    def _refund(cls, tx: Session, request_id: int, reason: str) -> int:
        payout = cls._load(request_id, tx)
        try:
            LedgerService.adjust_balance(
                payout.user_id,
                payout.gem_amount,
                TransactionType.PAYOUT_REFUND,
                description=f"Payout #{request_id} refunded ({reason})",
                related_id=request_id,
                session=tx,
                idempotency_key=refund_key(request_id),
            )
        except DuplicateEvent:
            logger.warning(f"⚠️ PAYOUT_REFUND_ALREADY_APPLIED: #{request_id}")
            return 0
        return payout.gem_amount

    @classmethod
    def _load(cls, request_id: int, tx: Session) -> PayoutRequest:
        payout = tx.get(PayoutRequest, request_id, populate_existing=True)
        if payout is None:
            raise NotFound(f"Payout request #{request_id} not found")
        return payout

    @classmethod
    def _lost_race(cls, request_id: int, tx: Session, target: str) -> LedgerError:
        current = tx.execute(
            select(PayoutRequest.status).where(PayoutRequest.id == request_id)
        ).scalar_one_or_none()
        if current is None:
            return NotFound(f"Payout request #{request_id} not found")
        return InvalidTransition("PayoutRequest", request_id, current, target)
