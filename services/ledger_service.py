"""
Ledger Service - single entry point for every balance mutation

Each adjustment is one guarded UPDATE on the account row plus one
TransactionHistory row, committed together. Nothing else in the codebase
writes users.balance or users.reserved.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import TransactionHistory, TransactionType, User
from utils.atomic_transactions import atomic_transaction
from utils.ledger_exceptions import DuplicateEvent, InsufficientFunds, NotFound, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CreditResult:
    """Outcome of an idempotent deposit credit"""
    user_id: int
    amount: int
    balance: int
    history_id: Optional[int]
    duplicate: bool = False


@dataclass
class ReversalResult:
    """Outcome of a compensating deposit reversal"""
    tx_hash: str
    user_id: Optional[int]
    reversed_amount: int
    shortfall: int = 0
    duplicate: bool = False
    nothing_to_reverse: bool = False


def reversal_key(tx_hash: str) -> str:
    return f"{tx_hash}_reversal"


class LedgerService:
    """Atomic balance adjustments with an append-only audit trail"""

    @classmethod
    def create_user(
        cls,
        username: str,
        balance: int = 0,
        is_admin: bool = False,
        session: Optional[Session] = None,
    ) -> User:
        """Create an account; an opening balance is recorded as an admin adjustment"""
        if balance < 0:
            raise ValidationError("Opening balance cannot be negative")

        with atomic_transaction(session) as tx:
            user = User(username=username, balance=0, reserved=0, is_admin=is_admin)
            tx.add(user)
            tx.flush()
            if balance:
                cls.adjust_balance(
                    user.id,
                    balance,
                    TransactionType.ADMIN_ADJUSTMENT,
                    description="Opening balance",
                    session=tx,
                )
                tx.refresh(user)
            logger.info(f"👤 ACCOUNT_CREATED: {username} (id={user.id}, balance={balance})")
            return user

    @classmethod
    def adjust_balance(
        cls,
        user_id: int,
        delta: int,
        tx_type: TransactionType,
        description: Optional[str] = None,
        related_id: Optional[Any] = None,
        session: Optional[Session] = None,
        idempotency_key: Optional[str] = None,
        reserved_delta: int = 0,
    ) -> int:
        """
        Apply a signed change to a user's balance and return the new balance.

        Debits are guarded in the UPDATE itself (balance >= -delta), so two
        concurrent debits can never both pass a stale check. reserved_delta
        moves the display/audit counter of locked stake in the same statement.

        Raises InsufficientFunds (no state change), NotFound, or DuplicateEvent
        when idempotency_key was already applied.
        """
        if not isinstance(delta, int) or isinstance(delta, bool):
            raise ValidationError(f"Gem amounts must be integers, got {delta!r}")

        with atomic_transaction(session) as tx:
            if idempotency_key is not None and cls._find_by_key(idempotency_key, tx) is not None:
                logger.info(f"🔁 DUPLICATE_LEDGER_EVENT: {idempotency_key} already applied, user {user_id} unchanged")
                raise DuplicateEvent(idempotency_key)

            conditions = [User.id == user_id]
            if delta < 0:
                conditions.append(User.balance >= -delta)
            if reserved_delta < 0:
                conditions.append(User.reserved >= -reserved_delta)

            stmt = (
                update(User)
                .where(*conditions)
                .values(
                    balance=User.balance + delta,
                    reserved=User.reserved + reserved_delta,
                )
                .execution_options(synchronize_session=False)
            )
            result = tx.execute(stmt)

            if result.rowcount != 1:
                available = tx.execute(select(User.balance).where(User.id == user_id)).scalar_one_or_none()
                if available is None:
                    raise NotFound(f"User {user_id} not found")
                logger.info(
                    f"💸 INSUFFICIENT_FUNDS: user {user_id} requested {-delta} gems, available {available}"
                )
                raise InsufficientFunds(user_id, -delta, available)

            new_balance = tx.execute(select(User.balance).where(User.id == user_id)).scalar_one()

            entry = TransactionHistory(
                user_id=user_id,
                type=tx_type.value,
                amount=delta,
                balance_after=new_balance,
                description=description,
                related_id=str(related_id) if related_id is not None else None,
                idempotency_key=idempotency_key,
            )
            tx.add(entry)
            tx.flush()

            logger.info(
                f"📒 LEDGER_ADJUST: user {user_id} {tx_type.value} {delta:+d} gems "
                f"(balance {new_balance}, related={related_id})"
            )
            return new_balance

    @classmethod
    def reserve_stake(cls, user_id: int, amount: int, duel_id: int, session: Session) -> int:
        """Debit a duel stake and count it as reserved"""
        return cls.adjust_balance(
            user_id,
            -amount,
            TransactionType.DUEL_STAKE,
            description=f"Stake reserved for duel #{duel_id}",
            related_id=duel_id,
            session=session,
            reserved_delta=amount,
        )

    @classmethod
    def refund_stake(cls, user_id: int, amount: int, duel_id: int, session: Session, reason: str = "refund") -> int:
        """Return a reserved stake to the player's balance"""
        return cls.adjust_balance(
            user_id,
            amount,
            TransactionType.DUEL_REFUND,
            description=f"Stake returned for duel #{duel_id} ({reason})",
            related_id=duel_id,
            session=session,
            reserved_delta=-amount,
        )

    @classmethod
    def clear_reservation(cls, user_id: int, amount: int, session: Session) -> None:
        """Drop a settled stake from the reserved counter; the balance is untouched"""
        stmt = (
            update(User)
            .where(User.id == user_id, User.reserved >= amount)
            .values(reserved=User.reserved - amount)
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount != 1:
            # Counter drift does not move money; surface it without failing settlement
            logger.warning(f"⚠️ RESERVED_COUNTER_DRIFT: user {user_id} could not clear {amount} reserved gems")

    @staticmethod
    def lock_order(user_ids: Iterable[int]) -> List[int]:
        """Accounts changed in one transaction are always updated in ascending id order"""
        return sorted(set(user_ids))

    @classmethod
    def reserve_stakes(cls, user_ids: Iterable[int], amount: int, duel_id: int, session: Session) -> None:
        for user_id in cls.lock_order(user_ids):
            cls.reserve_stake(user_id, amount, duel_id, session)

    @classmethod
    def refund_stakes(
        cls, user_ids: Iterable[int], amount: int, duel_id: int, session: Session, reason: str = "refund"
    ) -> None:
        for user_id in cls.lock_order(user_ids):
            cls.refund_stake(user_id, amount, duel_id, session, reason=reason)

    @classmethod
    def clear_reservations(cls, user_ids: Iterable[int], amount: int, session: Session) -> None:
        for user_id in cls.lock_order(user_ids):
            cls.clear_reservation(user_id, amount, session)

    @classmethod
    def record_platform_fee(cls, amount: int, duel_id: int, session: Session) -> None:
        """Platform revenue row; not attached to any player account"""
        session.add(
            TransactionHistory(
                user_id=None,
                type=TransactionType.PLATFORM_FEE.value,
                amount=amount,
                description=f"Platform fee for duel #{duel_id}",
                related_id=str(duel_id),
            )
        )
        session.flush()

    @classmethod
    def credit_deposit(
        cls,
        tx_hash: str,
        user_id: int,
        amount: int,
        session: Optional[Session] = None,
    ) -> CreditResult:
        """
        Credit an on-chain deposit exactly once per tx_hash.

        A repeated call returns the original credit with duplicate=True and
        changes nothing. The history row is written before the balance update
        so a racing duplicate fails on the unique key before any money moves.
        """
        if amount <= 0:
            raise ValidationError(f"Deposit amount must be positive, got {amount}")

        existing = cls._find_by_key(tx_hash, session)
        if existing is not None:
            logger.info(f"🔁 DUPLICATE_DEPOSIT_CREDIT: {tx_hash} already credited (history {existing.id})")
            return cls._duplicate_credit(existing)

        owns_transaction = session is None
        try:
            with atomic_transaction(session) as tx:
                entry = TransactionHistory(
                    user_id=user_id,
                    type=TransactionType.DEPOSIT.value,
                    amount=amount,
                    description=f"On-chain deposit {tx_hash}",
                    related_id=tx_hash,
                    idempotency_key=tx_hash,
                )
                tx.add(entry)
                tx.flush()

                result = tx.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(balance=User.balance + amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise NotFound(f"User {user_id} not found")

                new_balance = tx.execute(select(User.balance).where(User.id == user_id)).scalar_one()
                entry.balance_after = new_balance
                tx.flush()

                logger.info(f"✅ DEPOSIT_CREDITED: {tx_hash} -> user {user_id} +{amount} gems (balance {new_balance})")
                return CreditResult(user_id=user_id, amount=amount, balance=new_balance, history_id=entry.id)
        except IntegrityError:
            if not owns_transaction:
                raise
            existing = cls._find_by_key(tx_hash, None)
            if existing is None:
                raise
            logger.info(f"🔁 DUPLICATE_DEPOSIT_CREDIT: {tx_hash} lost credit race to history {existing.id}")
            return cls._duplicate_credit(existing)

    @classmethod
    def reverse_deposit(cls, tx_hash: str, session: Optional[Session] = None) -> ReversalResult:
        """
        Compensate a credited deposit that the chain later dropped.

        Writes a negative entry keyed "<tx_hash>_reversal". History is never
        deleted. If the player already spent the funds only the available part
        is debited and the remainder is reported as a shortfall.
        """
        key = reversal_key(tx_hash)

        with atomic_transaction(session) as tx:
            if cls._find_by_key(key, tx) is not None:
                return ReversalResult(tx_hash=tx_hash, user_id=None, reversed_amount=0, duplicate=True)

            original = cls._find_by_key(tx_hash, tx)
            if original is None:
                return ReversalResult(tx_hash=tx_hash, user_id=None, reversed_amount=0, nothing_to_reverse=True)

            entry = TransactionHistory(
                user_id=original.user_id,
                type=TransactionType.DEPOSIT_REVERSAL.value,
                amount=0,
                description=f"Reversal of invalidated deposit {tx_hash}",
                related_id=tx_hash,
                idempotency_key=key,
            )
            tx.add(entry)
            tx.flush()

            available = tx.execute(
                select(User.balance).where(User.id == original.user_id).with_for_update()
            ).scalar_one()
            debit = min(original.amount, available)

            if debit:
                tx.execute(
                    update(User)
                    .where(User.id == original.user_id, User.balance >= debit)
                    .values(balance=User.balance - debit)
                    .execution_options(synchronize_session=False)
                )
            entry.amount = -debit
            entry.balance_after = available - debit
            tx.flush()

            shortfall = original.amount - debit
            logger.warning(
                f"↩️ DEPOSIT_REVERSED: {tx_hash} user {original.user_id} -{debit} gems (shortfall {shortfall})"
            )
            return ReversalResult(
                tx_hash=tx_hash,
                user_id=original.user_id,
                reversed_amount=debit,
                shortfall=shortfall,
            )

    @classmethod
    def flag_for_review(cls, user_id: int, reason: str, session: Session) -> None:
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(review_required=True, review_reason=reason)
            .execution_options(synchronize_session=False)
        )

    @classmethod
    def get_account(cls, user_id: int, session: Optional[Session] = None) -> User:
        with atomic_transaction(session) as tx:
            user = tx.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            return user

    @classmethod
    def get_history(cls, user_id: int, limit: int = 50, session: Optional[Session] = None) -> List[TransactionHistory]:
        with atomic_transaction(session) as tx:
            stmt = (
                select(TransactionHistory)
                .where(TransactionHistory.user_id == user_id)
                .order_by(TransactionHistory.id.desc())
                .limit(limit)
            )
            return list(tx.execute(stmt).scalars().all())

    @classmethod
    def replay_balance(cls, user_id: int, session: Optional[Session] = None) -> int:
        """Reconstruct a balance from the history alone"""
        with atomic_transaction(session) as tx:
            total = tx.execute(
                select(func.coalesce(func.sum(TransactionHistory.amount), 0))
                .where(TransactionHistory.user_id == user_id)
            ).scalar_one()
            return int(total)

    @classmethod
    def verify_account(cls, user_id: int, session: Optional[Session] = None) -> Dict[str, Any]:
        """Compare the stored balance with the replayed history"""
        with atomic_transaction(session) as tx:
            stored = cls.get_account(user_id, session=tx).balance
            replayed = cls.replay_balance(user_id, session=tx)
            consistent = stored == replayed
            if not consistent:
                logger.error(f"❌ LEDGER_MISMATCH: user {user_id} stored={stored} replayed={replayed}")
            return {"user_id": user_id, "stored": stored, "replayed": replayed, "consistent": consistent}

    @classmethod
    def _find_by_key(cls, key: str, session: Optional[Session]) -> Optional[TransactionHistory]:
        with atomic_transaction(session) as tx:
            return tx.execute(
                select(TransactionHistory).where(TransactionHistory.idempotency_key == key)
            ).scalar_one_or_none()

    @classmethod
    def _duplicate_credit(cls, entry: TransactionHistory) -> CreditResult:
        return CreditResult(
            user_id=entry.user_id,
            amount=entry.amount,
            balance=entry.balance_after,
            history_id=entry.id,
            duplicate=True,
        )
