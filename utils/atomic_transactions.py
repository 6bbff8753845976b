"""Atomic transaction utilities for ledger, duel and payout state changes"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Iterable, Optional, Sequence, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from database import SessionLocal
from utils.ledger_exceptions import LedgerError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Without a session a new one is opened, committed on success and closed.
    With a session, nested use is tracked and only the outermost block commits,
    so services can compose (e.g. a duel settlement calling the ledger).
    """
    if session is None:
        session = SessionLocal()
        # Calls that receive this session join the transaction instead of committing it
        setattr(session, '_atomic_transaction_depth', 1)
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except LedgerError as e:
            # Guard failures are expected outcomes, not database problems
            session.rollback()
            logger.debug(f"Atomic transaction rolled back: {type(e).__name__}: {e}")
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Atomic transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
            if not isinstance(e, LedgerError):
                logger.error(f"Transaction rolled back due to error: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def guarded_update(
    session: Session,
    model: Any,
    row_id: Any,
    expected_status: Union[str, Iterable[str]],
    extra_where: Sequence[Any] = (),
    **values,
) -> bool:
    """
    UPDATE model SET ... WHERE id = :row_id AND status IN (:expected) [AND extra_where].

    Returns False when no row matched - the caller lost a race or acted on a
    stale view. That is a no-op, never an error.
    """
    if isinstance(expected_status, str):
        expected = [expected_status]
    else:
        expected = list(expected_status)

    stmt = (
        update(model)
        .where(model.id == row_id, model.status.in_(expected), *extra_where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    matched = result.rowcount == 1
    if not matched:
        logger.debug(
            f"GUARDED_UPDATE_MISS: {model.__tablename__} id={row_id} expected={expected} -> {values.get('status')}"
        )
    return matched
