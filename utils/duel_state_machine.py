"""
Duel State Machine
Legal duel status transitions; every guarded update in the duel services is
checked against this table.
"""

from typing import Dict, Iterable, List, Optional, Set

from models import DuelStatus

PENDING_STATUSES = (
    DuelStatus.PENDING_CHALLENGE.value,
    DuelStatus.PENDING_ACCEPTANCE.value,
)

IN_PLAY_STATUSES = (
    DuelStatus.ACTIVE.value,
    DuelStatus.AWAITING_RESULT.value,
)


class DuelStateValidator:
    """Validates duel transitions"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {
            DuelStatus.PENDING_CHALLENGE.value,
            DuelStatus.PENDING_ACCEPTANCE.value,
        },
        # No funds are reserved before acceptance
        DuelStatus.PENDING_CHALLENGE.value: {
            DuelStatus.ACTIVE.value,
            DuelStatus.CANCELLED.value,
        },
        DuelStatus.PENDING_ACCEPTANCE.value: {
            DuelStatus.ACTIVE.value,
            DuelStatus.CANCELLED.value,
        },
        DuelStatus.ACTIVE.value: {
            DuelStatus.AWAITING_RESULT.value,
            DuelStatus.COMPLETED_UNSEEN.value,
            DuelStatus.DISPUTED.value,
            DuelStatus.EXPIRED.value,
        },
        DuelStatus.AWAITING_RESULT.value: {
            DuelStatus.COMPLETED_UNSEEN.value,
            DuelStatus.DISPUTED.value,
            DuelStatus.EXPIRED.value,
        },
        # Admin only; never swept
        DuelStatus.DISPUTED.value: {
            DuelStatus.COMPLETED_UNSEEN.value,
            DuelStatus.CANCELLED.value,
        },
        DuelStatus.COMPLETED_UNSEEN.value: {
            DuelStatus.COMPLETED.value,
        },
        DuelStatus.COMPLETED.value: set(),
        DuelStatus.CANCELLED.value: set(),
        DuelStatus.EXPIRED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def sources(cls, new_status: str, candidates: Iterable[str]) -> List[str]:
        """
        The subset of candidate statuses that may legally move to new_status.

        Services build their guarded-update WHERE clauses from this so a
        status list can never name an edge the table does not allow.
        """
        allowed = [status for status in candidates if cls.is_valid_transition(status, new_status)]
        if not allowed:
            raise ValueError(f"No legal transition to {new_status} from {list(candidates)}")
        return allowed

