"""
Duel Service - lifecycle of a single wager

Every transition is one transaction: a guarded status update first, then
the ledger effects. If a ledger effect fails (e.g. InsufficientFunds on
acceptance) the whole transaction rolls back and the duel keeps its prior
status. Losing the status race is reported as invalid_transition and moves
nothing.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from config import Config
from models import DisputeResolution, Duel, DuelStatus, TransactionType, User
from services.ledger_service import LedgerService
from utils.atomic_transactions import atomic_transaction, guarded_update
from utils.datetime_helpers import utcnow
from utils.duel_state_machine import IN_PLAY_STATUSES, PENDING_STATUSES, DuelStateValidator
from utils.ledger_exceptions import (
    InsufficientFunds,
    InvalidTransition,
    LedgerError,
    NotFound,
    Unauthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class DuelResult:
    """Outcome of a duel operation returned to the caller"""
    success: bool
    duel_id: Optional[int] = None
    status: Optional[str] = None
    winner_id: Optional[int] = None
    payout: int = 0
    fee: int = 0
    no_op: bool = False
    error: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def failed(cls, error: LedgerError, duel_id: Optional[int] = None) -> "DuelResult":
        status = getattr(error, "current_status", None)
        return cls(success=False, duel_id=duel_id, status=status, error=error.code, message=str(error))


def calculate_platform_fee(pot: int) -> int:
    """Integer floor of pot * PLATFORM_FEE_BPS / 10000"""
    return pot * Config.PLATFORM_FEE_BPS // 10000


class DuelService:
    """Duel state machine operations"""

    @classmethod
    def create_challenge(
        cls,
        creator_id: int,
        stake: int,
        region: str,
        opponent_id: Optional[int] = None,
    ) -> DuelResult:
        """
        Open a challenge. Naming an opponent makes it pending_acceptance for
        that player only; otherwise anyone may accept. Nothing is reserved yet.
        """
        try:
            if not isinstance(stake, int) or isinstance(stake, bool) or stake <= 0:
                raise ValidationError(f"Stake must be a positive whole number of gems, got {stake!r}")
            if region not in Config.BOT_REGIONS:
                raise ValidationError(f"Unknown region {region!r}")
            if opponent_id is not None and opponent_id == creator_id:
                raise ValidationError("You cannot challenge yourself")

            initial = DuelStatus.PENDING_ACCEPTANCE.value if opponent_id else DuelStatus.PENDING_CHALLENGE.value
            with atomic_transaction() as tx:
                creator = tx.get(User, creator_id)
                if creator is None:
                    raise NotFound(f"User {creator_id} not found")
                if opponent_id is not None and tx.get(User, opponent_id) is None:
                    raise NotFound(f"User {opponent_id} not found")
                # Soft check only; the stake is reserved at acceptance
                if creator.balance < stake:
                    raise InsufficientFunds(creator_id, stake, creator.balance)

                duel = Duel(
                    creator_id=creator_id,
                    opponent_id=opponent_id,
                    stake_amount=stake,
                    status=initial,
                    region=region,
                )
                tx.add(duel)
                tx.flush()

                logger.info(
                    f"⚔️ DUEL_CREATED: #{duel.id} by user {creator_id} for {stake} gems "
                    f"in {region} ({initial}, opponent={opponent_id})"
                )
                return DuelResult(success=True, duel_id=duel.id, status=initial)
        except LedgerError as e:
            logger.info(f"DUEL_CREATE_REJECTED: user {creator_id}: {e}")
            return DuelResult.failed(e)

    @classmethod
    def accept(cls, duel_id: int, opponent_id: int) -> DuelResult:
        """Reserve both stakes and activate; exactly one concurrent acceptance wins"""
        try:
            with atomic_transaction() as tx:
                duel = cls._load(duel_id, tx)

                if duel.creator_id == opponent_id:
                    raise ValidationError("You cannot accept your own challenge")
                if tx.get(User, opponent_id) is None:
                    raise NotFound(f"User {opponent_id} not found")
                if duel.opponent_id is not None and duel.opponent_id != opponent_id:
                    raise Unauthorized(f"Duel #{duel_id} is addressed to another player")

                moved = guarded_update(
                    tx, Duel, duel_id,
                    DuelStateValidator.sources(DuelStatus.ACTIVE.value, PENDING_STATUSES),
                    [or_(Duel.opponent_id.is_(None), Duel.opponent_id == opponent_id)],
                    status=DuelStatus.ACTIVE.value,
                    opponent_id=opponent_id,
                    accepted_at=utcnow(),
                )
                if not moved:
                    raise cls._lost_race(duel_id, tx, DuelStatus.ACTIVE.value)

                # Either debit failing rolls back the status change as well
                LedgerService.reserve_stakes((duel.creator_id, opponent_id), duel.stake_amount, duel_id, tx)

                logger.info(
                    f"✅ DUEL_ACCEPTED: #{duel_id} user {opponent_id} vs {duel.creator_id}, "
                    f"{duel.stake_amount} gems each reserved"
                )
                return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.ACTIVE.value)
        except LedgerError as e:
            logger.info(f"DUEL_ACCEPT_REJECTED: #{duel_id} by user {opponent_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def decline(cls, duel_id: int, opponent_id: int) -> DuelResult:
        """The named opponent turns the challenge down; nothing was reserved"""
        try:
            with atomic_transaction() as tx:
                moved = guarded_update(
                    tx, Duel, duel_id,
                    DuelStatus.PENDING_ACCEPTANCE.value,
                    [Duel.opponent_id == opponent_id],
                    status=DuelStatus.CANCELLED.value,
                )
                if not moved:
                    duel = cls._load(duel_id, tx)
                    if duel.opponent_id != opponent_id:
                        raise Unauthorized(f"Duel #{duel_id} is not addressed to user {opponent_id}")
                    raise InvalidTransition("Duel", duel_id, duel.status, DuelStatus.CANCELLED.value)

                logger.info(f"🙅 DUEL_DECLINED: #{duel_id} by user {opponent_id}")
                return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.CANCELLED.value)
        except LedgerError as e:
            logger.info(f"DUEL_DECLINE_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def cancel(cls, duel_id: int, user_id: int) -> DuelResult:
        """Creator withdraws a challenge nobody accepted yet"""
        try:
            with atomic_transaction() as tx:
                moved = guarded_update(
                    tx, Duel, duel_id,
                    DuelStateValidator.sources(DuelStatus.CANCELLED.value, PENDING_STATUSES),
                    [Duel.creator_id == user_id],
                    status=DuelStatus.CANCELLED.value,
                )
                if not moved:
                    duel = cls._load(duel_id, tx)
                    if duel.creator_id != user_id:
                        raise Unauthorized(f"Only the creator can cancel duel #{duel_id}")
                    raise InvalidTransition("Duel", duel_id, duel.status, DuelStatus.CANCELLED.value)

                logger.info(f"🚫 DUEL_CANCELLED: #{duel_id} by creator {user_id}")
                return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.CANCELLED.value)
        except LedgerError as e:
            logger.info(f"DUEL_CANCEL_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def mark_match_started(cls, duel_id: int, match_data: Optional[Dict[str, Any]] = None) -> DuelResult:
        """Bot acknowledged the match; results are now expected"""
        try:
            with atomic_transaction() as tx:
                values = {"status": DuelStatus.AWAITING_RESULT.value}
                if match_data is not None:
                    values["match_data"] = match_data
                if not guarded_update(tx, Duel, duel_id, DuelStatus.ACTIVE.value, **values):
                    raise cls._lost_race(duel_id, tx, DuelStatus.AWAITING_RESULT.value)

                logger.info(f"🎮 DUEL_MATCH_STARTED: #{duel_id}")
                return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.AWAITING_RESULT.value)
        except LedgerError as e:
            logger.info(f"DUEL_MATCH_START_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def report_result(
        cls,
        duel_id: int,
        winner_id: int,
        match_data: Optional[Dict[str, Any]] = None,
    ) -> DuelResult:
        """
        Bot reports the winner. The pot is paid in the same transaction as the
        status change, so a retried or duplicated report settles nothing.
        """
        try:
            with atomic_transaction() as tx:
                duel = cls._load(duel_id, tx)
                if winner_id not in duel.participants or duel.opponent_id is None:
                    raise ValidationError(f"User {winner_id} is not a participant of duel #{duel_id}")
                return cls._settle_reported(tx, duel, winner_id, match_data, "winner reported")
        except LedgerError as e:
            logger.info(f"DUEL_RESULT_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def report_forfeit(
        cls,
        duel_id: int,
        forfeiting_player_id: int,
        match_data: Optional[Dict[str, Any]] = None,
    ) -> DuelResult:
        """The pot goes to whoever did not forfeit"""
        try:
            with atomic_transaction() as tx:
                duel = cls._load(duel_id, tx)
                if forfeiting_player_id not in duel.participants or duel.opponent_id is None:
                    raise ValidationError(f"User {forfeiting_player_id} is not a participant of duel #{duel_id}")
                winner_id = (
                    duel.opponent_id if forfeiting_player_id == duel.creator_id else duel.creator_id
                )
                return cls._settle_reported(
                    tx, duel, winner_id, match_data, f"user {forfeiting_player_id} forfeited"
                )
        except LedgerError as e:
            logger.info(f"DUEL_FORFEIT_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def file_dispute(cls, duel_id: int, user_id: int, reason: Optional[str] = None) -> DuelResult:
        """Freeze the duel for admin arbitration; stakes stay reserved"""
        try:
            with atomic_transaction() as tx:
                duel = cls._load(duel_id, tx)
                if user_id not in duel.participants:
                    raise Unauthorized(f"User {user_id} is not a participant of duel #{duel_id}")

                moved = guarded_update(
                    tx, Duel, duel_id,
                    DuelStateValidator.sources(DuelStatus.DISPUTED.value, IN_PLAY_STATUSES),
                    status=DuelStatus.DISPUTED.value,
                    disputed_by=user_id,
                    dispute_reason=(reason or "").strip() or None,
                )
                if not moved:
                    raise cls._lost_race(duel_id, tx, DuelStatus.DISPUTED.value)

                logger.warning(f"⚠️ DUEL_DISPUTED: #{duel_id} by user {user_id}: {reason}")
                return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.DISPUTED.value)
        except LedgerError as e:
            logger.info(f"DUEL_DISPUTE_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def resolve_dispute(
        cls,
        duel_id: int,
        resolution: Union[DisputeResolution, str],
        admin_id: int,
    ) -> DuelResult:
        """
        Admin decision on a disputed duel.

        creator_wins / opponent_wins settle the pot like a bot report; void
        refunds both stakes and cancels the duel.
        """
        try:
            try:
                resolution = DisputeResolution(resolution)
            except ValueError:
                raise ValidationError(f"Unknown resolution {resolution!r}")

            with atomic_transaction() as tx:
                duel = cls._load(duel_id, tx)

                if resolution == DisputeResolution.VOID:
                    if not guarded_update(
                        tx, Duel, duel_id, DuelStatus.DISPUTED.value,
                        status=DuelStatus.CANCELLED.value,
                        resolution=resolution.value,
                        settled_at=utcnow(),
                    ):
                        raise cls._lost_race(duel_id, tx, DuelStatus.CANCELLED.value)

                    LedgerService.refund_stakes(duel.participants, duel.stake_amount, duel_id, tx, reason="dispute voided")

                    logger.info(f"⚖️ DISPUTE_VOIDED: duel #{duel_id} by admin {admin_id}, both stakes refunded")
                    return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.CANCELLED.value)

                winner_id = duel.creator_id if resolution == DisputeResolution.CREATOR_WINS else duel.opponent_id
                if not guarded_update(
                    tx, Duel, duel_id, DuelStatus.DISPUTED.value,
                    status=DuelStatus.COMPLETED_UNSEEN.value,
                    winner_id=winner_id,
                    resolution=resolution.value,
                    settled_at=utcnow(),
                ):
                    raise cls._lost_race(duel_id, tx, DuelStatus.COMPLETED_UNSEEN.value)

                payout, fee = cls._pay_pot(tx, duel, winner_id)
                logger.info(
                    f"⚖️ DISPUTE_RESOLVED: duel #{duel_id} {resolution.value} by admin {admin_id}, "
                    f"user {winner_id} paid {payout} gems"
                )
                return DuelResult(
                    success=True,
                    duel_id=duel_id,
                    status=DuelStatus.COMPLETED_UNSEEN.value,
                    winner_id=winner_id,
                    payout=payout,
                    fee=fee,
                )
        except LedgerError as e:
            logger.info(f"DISPUTE_RESOLUTION_REJECTED: duel #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def confirm_result_seen(cls, duel_id: int, user_id: int) -> DuelResult:
        """Read receipt; either participant's confirmation completes the duel"""
        try:
            with atomic_transaction() as tx:
                moved = guarded_update(
                    tx, Duel, duel_id,
                    DuelStatus.COMPLETED_UNSEEN.value,
                    [or_(Duel.creator_id == user_id, Duel.opponent_id == user_id)],
                    status=DuelStatus.COMPLETED.value,
                )
                if moved:
                    logger.info(f"👁️ DUEL_RESULT_SEEN: #{duel_id} confirmed by user {user_id}")
                    return DuelResult(success=True, duel_id=duel_id, status=DuelStatus.COMPLETED.value)

                duel = cls._load(duel_id, tx)
                if user_id not in duel.participants:
                    raise Unauthorized(f"User {user_id} is not a participant of duel #{duel_id}")
                if duel.status == DuelStatus.COMPLETED.value:
                    return DuelResult(success=True, duel_id=duel_id, status=duel.status, no_op=True)
                raise InvalidTransition("Duel", duel_id, duel.status, DuelStatus.COMPLETED.value)
        except LedgerError as e:
            logger.info(f"DUEL_CONFIRM_REJECTED: #{duel_id}: {e}")
            return DuelResult.failed(e, duel_id)

    @classmethod
    def get_duel(cls, duel_id: int, session: Optional[Session] = None) -> Duel:
        with atomic_transaction(session) as tx:
            return cls._load(duel_id, tx)

    @classmethod
    def get_unseen_results(cls, user_id: int, session: Optional[Session] = None) -> List[Duel]:
        """Settled duels the player has not acknowledged yet"""
        with atomic_transaction(session) as tx:
            return list(
                tx.execute(
                    select(Duel)
                    .where(
                        Duel.status == DuelStatus.COMPLETED_UNSEEN.value,
                        or_(Duel.creator_id == user_id, Duel.opponent_id == user_id),
                    )
                    .order_by(Duel.settled_at.desc(), Duel.id.desc())
                ).scalars().all()
            )

    @classmethod
    def _settle_reported(
        cls,
        tx: Session,
        duel: Duel,
        winner_id: int,
        match_data: Optional[Dict[str, Any]],
        reason: str,
    ) -> DuelResult:
        values = {
            "status": DuelStatus.COMPLETED_UNSEEN.value,
            "winner_id": winner_id,
            "settled_at": utcnow(),
        }
        if match_data is not None:
            values["match_data"] = match_data

        if not guarded_update(
            tx, Duel, duel.id,
            DuelStateValidator.sources(DuelStatus.COMPLETED_UNSEEN.value, IN_PLAY_STATUSES),
            **values,
        ):
            raise cls._lost_race(duel.id, tx, DuelStatus.COMPLETED_UNSEEN.value)

        payout, fee = cls._pay_pot(tx, duel, winner_id)
        logger.info(f"🏆 DUEL_SETTLED: #{duel.id} {reason}, user {winner_id} paid {payout} gems (fee {fee})")
        return DuelResult(
            success=True,
            duel_id=duel.id,
            status=DuelStatus.COMPLETED_UNSEEN.value,
            winner_id=winner_id,
            payout=payout,
            fee=fee,
        )

    @classmethod
    def _pay_pot(cls, tx: Session, duel: Duel, winner_id: int) -> tuple:
        """Release both reservations and make the single settling credit"""
        pot = duel.stake_amount * 2
        fee = calculate_platform_fee(pot)
        payout = pot - fee

        LedgerService.clear_reservations(duel.participants, duel.stake_amount, tx)

        LedgerService.adjust_balance(
            winner_id,
            payout,
            TransactionType.DUEL_WIN,
            description=f"Won duel #{duel.id}",
            related_id=duel.id,
            session=tx,
        )
        if fee:
            LedgerService.record_platform_fee(fee, duel.id, tx)
        return payout, fee

    @classmethod
    def _load(cls, duel_id: int, tx: Session) -> Duel:
        duel = tx.get(Duel, duel_id, populate_existing=True)
        if duel is None:
            raise NotFound(f"Duel #{duel_id} not found")
        return duel

    @classmethod
    def _lost_race(cls, duel_id: int, tx: Session, target: str) -> LedgerError:
        current = tx.execute(select(Duel.status).where(Duel.id == duel_id)).scalar_one_or_none()
        if current is None:
            return NotFound(f"Duel #{duel_id} not found")
        return InvalidTransition("Duel", duel_id, current, target)
