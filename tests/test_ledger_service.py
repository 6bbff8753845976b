"""
Ledger Store tests - guarded adjustments, idempotent deposit credits and
compensating reversals
"""

import threading

import pytest

from conftest import balance_of, history_rows
from database import managed_session
from models import TransactionType
from services.ledger_service import LedgerService, reversal_key
from utils.ledger_exceptions import DuplicateEvent, InsufficientFunds, NotFound, ValidationError


class TestAdjustBalance:
    def test_credit_and_debit_write_one_history_row_each(self, make_user):
        user_id = make_user(balance=100)

        assert LedgerService.adjust_balance(user_id, 25, TransactionType.ADMIN_ADJUSTMENT) == 125
        assert LedgerService.adjust_balance(user_id, -40, TransactionType.ADMIN_ADJUSTMENT) == 85

        rows = history_rows(user_id)
        assert [row.amount for row in rows] == [100, 25, -40]
        assert rows[-1].balance_after == 85

    def test_debit_past_zero_raises_and_changes_nothing(self, make_user):
        user_id = make_user(balance=30)
        before = len(history_rows(user_id))

        with pytest.raises(InsufficientFunds) as exc_info:
            LedgerService.adjust_balance(user_id, -31, TransactionType.ADMIN_ADJUSTMENT)

        assert exc_info.value.available == 30
        assert balance_of(user_id) == 30
        assert len(history_rows(user_id)) == before

    def test_debit_of_exact_balance_reaches_zero(self, make_user):
        user_id = make_user(balance=30)
        assert LedgerService.adjust_balance(user_id, -30, TransactionType.ADMIN_ADJUSTMENT) == 0

    def test_unknown_user(self):
        with pytest.raises(NotFound):
            LedgerService.adjust_balance(999, 10, TransactionType.ADMIN_ADJUSTMENT)

    def test_repeated_idempotency_key_raises_and_changes_nothing(self, make_user):
        user_id = make_user(balance=10)
        LedgerService.adjust_balance(user_id, 5, TransactionType.ADMIN_ADJUSTMENT, idempotency_key="goodwill_1")

        with pytest.raises(DuplicateEvent) as exc_info:
            LedgerService.adjust_balance(user_id, 5, TransactionType.ADMIN_ADJUSTMENT, idempotency_key="goodwill_1")

        assert exc_info.value.key == "goodwill_1"
        assert exc_info.value.code == "duplicate_event"
        assert balance_of(user_id) == 15
        assert len(history_rows(user_id)) == 2

    def test_fractional_amounts_rejected(self, make_user):
        user_id = make_user(balance=10)
        with pytest.raises(ValidationError):
            LedgerService.adjust_balance(user_id, 1.5, TransactionType.ADMIN_ADJUSTMENT)

    def test_stake_reservation_moves_reserved_counter(self, make_user):
        user_id = make_user(balance=100)
        assert LedgerService.get_account(user_id).reserved == 0

        with managed_session() as session:
            LedgerService.reserve_stake(user_id, 40, duel_id=7, session=session)
        account = LedgerService.get_account(user_id)
        assert (account.balance, account.reserved) == (60, 40)

        with managed_session() as session:
            LedgerService.refund_stake(user_id, 40, duel_id=7, session=session)
        account = LedgerService.get_account(user_id)
        assert (account.balance, account.reserved) == (100, 0)


class TestDepositCredit:
    def test_credit_is_idempotent_on_tx_hash(self, make_user):
        user_id = make_user()

        first = LedgerService.credit_deposit("0xabc", user_id, 20)
        second = LedgerService.credit_deposit("0xabc", user_id, 20)

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.history_id == first.history_id
        assert balance_of(user_id) == 20
        assert len(history_rows(user_id, TransactionType.DEPOSIT.value)) == 1

    def test_concurrent_credits_apply_once(self, make_user):
        user_id = make_user()
        barrier = threading.Barrier(6)
        results = []
        errors = []

        def credit():
            barrier.wait()
            try:
                results.append(LedgerService.credit_deposit("0xrace", user_id, 20))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=credit) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert sum(1 for result in results if not result.duplicate) == 1
        assert balance_of(user_id) == 20
        assert len(history_rows(user_id, TransactionType.DEPOSIT.value)) == 1

    def test_non_positive_deposit_rejected(self, make_user):
        user_id = make_user()
        with pytest.raises(ValidationError):
            LedgerService.credit_deposit("0xzero", user_id, 0)


class TestDepositReversal:
    def test_reversal_debits_the_original_amount(self, make_user):
        user_id = make_user(balance=5)
        LedgerService.credit_deposit("0xgone", user_id, 20)

        result = LedgerService.reverse_deposit("0xgone")

        assert (result.reversed_amount, result.shortfall) == (20, 0)
        assert balance_of(user_id) == 5
        reversal = history_rows(user_id, TransactionType.DEPOSIT_REVERSAL.value)
        assert len(reversal) == 1
        assert reversal[0].idempotency_key == reversal_key("0xgone")
        assert reversal[0].amount == -20

    def test_spent_funds_produce_a_shortfall_not_a_negative_balance(self, make_user):
        user_id = make_user()
        LedgerService.credit_deposit("0xspent", user_id, 20)
        LedgerService.adjust_balance(user_id, -15, TransactionType.ADMIN_ADJUSTMENT)

        result = LedgerService.reverse_deposit("0xspent")

        assert (result.reversed_amount, result.shortfall) == (5, 15)
        assert balance_of(user_id) == 0

    def test_second_reversal_is_a_no_op(self, make_user):
        user_id = make_user()
        LedgerService.credit_deposit("0xtwice", user_id, 20)

        LedgerService.reverse_deposit("0xtwice")
        again = LedgerService.reverse_deposit("0xtwice")

        assert again.duplicate is True
        assert balance_of(user_id) == 0
        assert len(history_rows(user_id, TransactionType.DEPOSIT_REVERSAL.value)) == 1

    def test_nothing_to_reverse_without_a_credit(self):
        assert LedgerService.reverse_deposit("0xnever").nothing_to_reverse is True


class TestReconciliation:
    def test_replayed_history_matches_stored_balance(self, make_user):
        user_id = make_user(balance=50)
        LedgerService.credit_deposit("0xreplay", user_id, 20)
        LedgerService.adjust_balance(user_id, -30, TransactionType.ADMIN_ADJUSTMENT)

        report = LedgerService.verify_account(user_id)

        assert report == {"user_id": user_id, "stored": 40, "replayed": 40, "consistent": True}

    def test_history_is_newest_first_and_limited(self, make_user):
        user_id = make_user(balance=1)
        for amount in (2, 3, 4):
            LedgerService.adjust_balance(user_id, amount, TransactionType.ADMIN_ADJUSTMENT)

        history = LedgerService.get_history(user_id, limit=2)

        assert [row.amount for row in history] == [4, 3]
