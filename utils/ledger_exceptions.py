"""Error taxonomy for the ledger, duel and payout core"""

from typing import Optional


class LedgerError(Exception):
    """Base class for expected failures of core operations"""

    code = "ledger_error"


class InsufficientFunds(LedgerError):
    """A debit would drive a balance below zero - no state was changed"""

    code = "insufficient_funds"

    def __init__(self, user_id: int, requested: int, available: Optional[int] = None):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        detail = f" (available {available})" if available is not None else ""
        super().__init__(f"User {user_id} cannot cover {requested} gems{detail}")


class InvalidTransition(LedgerError):
    """Entity not in an eligible status - usually a lost race or a stale action"""

    code = "invalid_transition"

    def __init__(self, entity: str, entity_id, current_status: Optional[str], target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status
        self.target = target
        super().__init__(f"{entity} {entity_id}: cannot move from {current_status} to {target}")


class DuplicateEvent(LedgerError):
    """Idempotency key already processed"""

    code = "duplicate_event"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Event {key} already processed")


class ExternalServiceFailure(LedgerError):
    """Chain feed or on-chain sender failure"""

    code = "external_service_failure"

    def __init__(self, service: str, message: str, retryable: bool = True):
        self.service = service
        self.retryable = retryable
        super().__init__(f"{service}: {message}")


class ReconciliationAnomaly(LedgerError):
    """A credited deposit was later invalidated - always escalated to admin review"""

    code = "reconciliation_anomaly"

    def __init__(self, tx_hash: str, user_id: Optional[int], message: str):
        self.tx_hash = tx_hash
        self.user_id = user_id
        super().__init__(f"{tx_hash}: {message}")


class NotFound(LedgerError):
    code = "not_found"


class Unauthorized(LedgerError):
    code = "unauthorized"


class ValidationError(LedgerError):
    code = "validation_error"
