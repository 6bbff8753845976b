"""
Duel lifecycle tests - reservation at acceptance, single settlement,
disputes and read receipts
"""

from conftest import balance_of, history_rows, reserved_of, total_balance
from models import DuelStatus, TransactionType
from services.duel_service import DuelService, calculate_platform_fee
from services.ledger_service import LedgerService

REGION = "Europe"


def _active_duel(make_user, stake=50, balance=100):
    creator = make_user(balance=balance)
    opponent = make_user(balance=balance)
    created = DuelService.create_challenge(creator, stake, REGION)
    assert created.success is True
    accepted = DuelService.accept(created.duel_id, opponent)
    assert accepted.success is True
    return created.duel_id, creator, opponent


class TestCreateChallenge:
    def test_open_challenge_reserves_nothing(self, make_user):
        creator = make_user(balance=100)

        result = DuelService.create_challenge(creator, 50, REGION)

        assert result.success is True
        assert result.status == DuelStatus.PENDING_CHALLENGE.value
        assert balance_of(creator) == 100
        assert reserved_of(creator) == 0

    def test_named_opponent_makes_it_pending_acceptance(self, make_user):
        creator = make_user(balance=100)
        opponent = make_user()

        result = DuelService.create_challenge(creator, 50, REGION, opponent_id=opponent)

        assert result.status == DuelStatus.PENDING_ACCEPTANCE.value

    def test_rejects_bad_input(self, make_user):
        creator = make_user(balance=100)

        assert DuelService.create_challenge(creator, 0, REGION).error == "validation_error"
        assert DuelService.create_challenge(creator, 10, "Atlantis").error == "validation_error"
        assert DuelService.create_challenge(creator, 10, REGION, opponent_id=creator).error == "validation_error"
        assert DuelService.create_challenge(creator, 500, REGION).error == "insufficient_funds"
        assert DuelService.create_challenge(9999, 10, REGION).error == "not_found"


class TestAcceptance:
    def test_acceptance_reserves_both_stakes(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)

        assert DuelService.get_duel(duel_id).status == DuelStatus.ACTIVE.value
        assert (balance_of(creator), reserved_of(creator)) == (50, 50)
        assert (balance_of(opponent), reserved_of(opponent)) == (50, 50)
        assert len(history_rows(creator, TransactionType.DUEL_STAKE.value)) == 1

    def test_underfunded_acceptor_leaves_duel_pending(self, make_user):
        creator = make_user(balance=100)
        poor = make_user(balance=10)
        duel_id = DuelService.create_challenge(creator, 50, REGION).duel_id

        result = DuelService.accept(duel_id, poor)

        assert result.success is False
        assert result.error == "insufficient_funds"
        assert DuelService.get_duel(duel_id).status == DuelStatus.PENDING_CHALLENGE.value
        assert balance_of(creator) == 100
        assert reserved_of(creator) == 0
        assert balance_of(poor) == 10

    def test_creator_who_spent_funds_cannot_be_accepted(self, make_user):
        creator = make_user(balance=60)
        opponent = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 50, REGION).duel_id
        DuelService.accept(DuelService.create_challenge(creator, 50, REGION).duel_id, opponent)

        result = DuelService.accept(duel_id, make_user(balance=100))

        assert result.error == "insufficient_funds"
        assert balance_of(creator) == 10

    def test_cannot_accept_own_challenge(self, make_user):
        creator = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 50, REGION).duel_id

        result = DuelService.accept(duel_id, creator)

        assert result.error == "validation_error"
        assert DuelService.get_duel(duel_id).status == DuelStatus.PENDING_CHALLENGE.value

    def test_only_the_named_opponent_may_accept(self, make_user):
        creator = make_user(balance=100)
        named = make_user(balance=100)
        stranger = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 50, REGION, opponent_id=named).duel_id

        assert DuelService.accept(duel_id, stranger).error == "unauthorized"
        assert DuelService.accept(duel_id, named).success is True

    def test_second_acceptance_is_an_invalid_transition(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)
        late = make_user(balance=100)

        result = DuelService.accept(duel_id, late)

        assert result.error == "invalid_transition"
        assert result.status == DuelStatus.ACTIVE.value
        assert balance_of(late) == 100

    def test_unknown_duel(self, make_user):
        assert DuelService.accept(424242, make_user()).error == "not_found"

    def test_unknown_acceptor_is_not_found(self, make_user):
        creator = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 50, REGION).duel_id

        result = DuelService.accept(duel_id, 9999)

        assert result.error == "not_found"
        assert DuelService.get_duel(duel_id).status == DuelStatus.PENDING_CHALLENGE.value
        assert (balance_of(creator), reserved_of(creator)) == (100, 0)


class TestDeclineAndCancel:
    def test_named_opponent_declines(self, make_user):
        creator = make_user(balance=100)
        named = make_user()
        duel_id = DuelService.create_challenge(creator, 50, REGION, opponent_id=named).duel_id

        assert DuelService.decline(duel_id, make_user()).error == "unauthorized"
        result = DuelService.decline(duel_id, named)

        assert result.success is True
        assert result.status == DuelStatus.CANCELLED.value
        assert DuelService.decline(duel_id, named).error == "invalid_transition"

    def test_only_creator_cancels(self, make_user):
        creator = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 50, REGION).duel_id

        assert DuelService.cancel(duel_id, make_user()).error == "unauthorized"
        assert DuelService.cancel(duel_id, creator).success is True
        assert balance_of(creator) == 100

    def test_active_duel_cannot_be_cancelled(self, make_user):
        duel_id, creator, _ = _active_duel(make_user)

        result = DuelService.cancel(duel_id, creator)

        assert result.error == "invalid_transition"
        assert reserved_of(creator) == 50


class TestSettlement:
    def test_winner_takes_the_pot_and_gems_are_conserved(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)

        result = DuelService.report_result(duel_id, creator)

        assert result.success is True
        assert result.status == DuelStatus.COMPLETED_UNSEEN.value
        assert (result.payout, result.fee) == (100, 0)
        assert (balance_of(creator), reserved_of(creator)) == (150, 0)
        assert (balance_of(opponent), reserved_of(opponent)) == (50, 0)
        assert total_balance() == 200
        assert len(history_rows(creator, TransactionType.DUEL_WIN.value)) == 1

    def test_duplicate_report_settles_nothing(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)
        DuelService.report_result(duel_id, creator)

        again = DuelService.report_result(duel_id, opponent)

        assert again.success is False
        assert again.error == "invalid_transition"
        assert balance_of(creator) == 150
        assert balance_of(opponent) == 50

    def test_result_from_awaiting_result(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)

        started = DuelService.mark_match_started(duel_id, {"map": "arena"})
        assert started.status == DuelStatus.AWAITING_RESULT.value
        assert DuelService.mark_match_started(duel_id).error == "invalid_transition"

        result = DuelService.report_result(duel_id, opponent, {"score": "5-3"})

        assert result.winner_id == opponent
        duel = DuelService.get_duel(duel_id)
        assert duel.match_data == {"score": "5-3"}
        assert balance_of(opponent) == 150

    def test_non_participant_winner_rejected(self, make_user):
        duel_id, _, _ = _active_duel(make_user)

        result = DuelService.report_result(duel_id, make_user())

        assert result.error == "validation_error"
        assert DuelService.get_duel(duel_id).status == DuelStatus.ACTIVE.value

    def test_forfeit_pays_the_other_player(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)

        result = DuelService.report_forfeit(duel_id, opponent)

        assert result.winner_id == creator
        assert balance_of(creator) == 150

    def test_platform_fee_is_floored_and_recorded(self, make_user, fee_bps):
        fee_bps(500)
        duel_id, creator, opponent = _active_duel(make_user, stake=33)

        result = DuelService.report_result(duel_id, creator)

        assert calculate_platform_fee(66) == 3
        assert (result.payout, result.fee) == (63, 3)
        assert balance_of(creator) == 100 - 33 + 63
        fee_rows = history_rows(tx_type=TransactionType.PLATFORM_FEE.value)
        assert [(row.user_id, row.amount) for row in fee_rows] == [(None, 3)]
        assert total_balance() + 3 == 200


class TestDisputes:
    def test_dispute_then_winner_resolution(self, make_user, admin_id):
        duel_id, creator, opponent = _active_duel(make_user)

        assert DuelService.file_dispute(duel_id, make_user(), "cheating").error == "unauthorized"
        disputed = DuelService.file_dispute(duel_id, opponent, "lag abuse")
        assert disputed.status == DuelStatus.DISPUTED.value
        assert DuelService.report_result(duel_id, creator).error == "invalid_transition"

        result = DuelService.resolve_dispute(duel_id, "opponent_wins", admin_id)

        assert result.success is True
        assert result.winner_id == opponent
        assert balance_of(opponent) == 150
        assert reserved_of(creator) == 0
        assert DuelService.get_duel(duel_id).resolution == "opponent_wins"

    def test_void_refunds_both_stakes(self, make_user, admin_id):
        duel_id, creator, opponent = _active_duel(make_user)
        DuelService.file_dispute(duel_id, creator)

        result = DuelService.resolve_dispute(duel_id, "void", admin_id)

        assert result.status == DuelStatus.CANCELLED.value
        assert (balance_of(creator), reserved_of(creator)) == (100, 0)
        assert (balance_of(opponent), reserved_of(opponent)) == (100, 0)
        assert DuelService.resolve_dispute(duel_id, "void", admin_id).error == "invalid_transition"

    def test_unknown_resolution(self, make_user, admin_id):
        duel_id, creator, _ = _active_duel(make_user)
        DuelService.file_dispute(duel_id, creator)

        assert DuelService.resolve_dispute(duel_id, "coin_flip", admin_id).error == "validation_error"

    def test_resolution_requires_a_dispute(self, make_user, admin_id):
        duel_id, _, _ = _active_duel(make_user)

        assert DuelService.resolve_dispute(duel_id, "creator_wins", admin_id).error == "invalid_transition"


class TestResultReceipts:
    def test_first_confirmation_completes_second_is_a_no_op(self, make_user):
        duel_id, creator, opponent = _active_duel(make_user)
        DuelService.report_result(duel_id, creator)

        assert [duel.id for duel in DuelService.get_unseen_results(opponent)] == [duel_id]

        first = DuelService.confirm_result_seen(duel_id, opponent)
        second = DuelService.confirm_result_seen(duel_id, creator)

        assert first.status == DuelStatus.COMPLETED.value
        assert first.no_op is False
        assert second.success is True
        assert second.no_op is True
        assert DuelService.get_unseen_results(opponent) == []
        assert balance_of(creator) == 150

    def test_outsider_cannot_confirm(self, make_user):
        duel_id, creator, _ = _active_duel(make_user)
        DuelService.report_result(duel_id, creator)

        assert DuelService.confirm_result_seen(duel_id, make_user()).error == "unauthorized"

    def test_confirming_an_unsettled_duel_fails(self, make_user):
        duel_id, creator, _ = _active_duel(make_user)

        assert DuelService.confirm_result_seen(duel_id, creator).error == "invalid_transition"


class TestAccountLockOrder:
    """Two-account moves touch the lower user id first, whoever created the duel"""

    def _swapped_duel(self, make_user):
        opponent = make_user(balance=100)
        creator = make_user(balance=100)
        duel_id = DuelService.create_challenge(creator, 20, REGION).duel_id
        assert DuelService.accept(duel_id, opponent).success is True
        return duel_id, creator, opponent

    def test_lock_order_is_ascending_and_unique(self):
        assert LedgerService.lock_order([9, 4, 9, 1]) == [1, 4, 9]

    def test_stakes_are_reserved_in_id_order(self, make_user):
        _, creator, opponent = self._swapped_duel(make_user)

        stakes = history_rows(tx_type=TransactionType.DUEL_STAKE.value)

        assert [row.user_id for row in stakes] == [opponent, creator]

    def test_settlement_releases_reservations_in_id_order(self, make_user, monkeypatch):
        duel_id, creator, opponent = self._swapped_duel(make_user)
        cleared = []
        original = LedgerService.clear_reservation.__func__

        def recording_clear(cls, user_id, amount, session):
            cleared.append(user_id)
            return original(cls, user_id, amount, session)

        monkeypatch.setattr(LedgerService, "clear_reservation", classmethod(recording_clear))

        assert DuelService.report_result(duel_id, creator).success is True
        assert cleared == [opponent, creator]
        assert reserved_of(creator) == reserved_of(opponent) == 0

    def test_void_refunds_in_id_order(self, make_user, admin_id):
        duel_id, creator, opponent = self._swapped_duel(make_user)
        DuelService.file_dispute(duel_id, creator, "desync")

        assert DuelService.resolve_dispute(duel_id, "void", admin_id).success is True

        refunds = history_rows(tx_type=TransactionType.DUEL_REFUND.value)
        assert [row.user_id for row in refunds] == [opponent, creator]
