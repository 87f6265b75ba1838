"""
Tests for the scheduled hold release job.

The job opens its own sessions through ``session_factory``; they share the
test connection, so the test session must expire its state before reading
what the job wrote.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from earnings_kernel.domain.clock import DeterministicClock
from earnings_kernel.models.wallet import WalletBizType, WalletTransaction, WalletTxStatus
from earnings_kernel.services.wallet_ledger import LedgerRefs, WalletLedgerService
from earnings_services.hold_release import (
    HoldReleaseJob,
    HoldReleaseResult,
    release_due_holds_once,
)


@pytest.fixture
def later_clock(deterministic_clock):
    return DeterministicClock(deterministic_clock.now() + timedelta(days=8))


def _hold(ledger, user_id, amount, unlock_at):
    return ledger.freeze(
        user_id, amount, refs=LedgerRefs(order_id=uuid4()), unlock_at=unlock_at
    ).transaction_id


class TestReleaseDueHolds:

    def test_due_holds_released(
        self, session, session_factory, wallet_ledger, deterministic_clock, later_clock
    ):
        now = deterministic_clock.now()
        due = [_hold(wallet_ledger, 1, "10.00", now + timedelta(days=d)) for d in (3, 7)]
        not_due = _hold(wallet_ledger, 1, "5.00", now + timedelta(days=30))
        manual = _hold(wallet_ledger, 1, "2.00", None)
        session.flush()

        result = HoldReleaseJob(session_factory, later_clock).release_due_holds_once()
        session.expire_all()

        assert result == HoldReleaseResult(scanned=2, released=2, failed=0)
        for tx_id in due:
            assert session.get(WalletTransaction, tx_id).status is WalletTxStatus.AVAILABLE
        assert session.get(WalletTransaction, not_due).status is WalletTxStatus.FROZEN
        assert session.get(WalletTransaction, manual).status is WalletTxStatus.FROZEN

        account = wallet_ledger.get_account(1)
        assert account.available_balance == Decimal("20.00")
        assert account.frozen_balance == Decimal("7.00")

    def test_nothing_due(self, session, session_factory, wallet_ledger, deterministic_clock):
        _hold(wallet_ledger, 1, "10.00", deterministic_clock.now() + timedelta(days=7))
        session.flush()

        result = release_due_holds_once(
            batch_size=10, session_factory=session_factory, clock=deterministic_clock
        )

        assert result.scanned == 0
        assert result.released == 0

    def test_batches_until_drained(
        self, session, session_factory, wallet_ledger, deterministic_clock, later_clock
    ):
        unlock = deterministic_clock.now() + timedelta(days=1)
        holds = [_hold(wallet_ledger, user_id, "1.00", unlock) for user_id in range(1, 6)]
        session.flush()

        result = HoldReleaseJob(session_factory, later_clock, batch_size=2).release_due_holds_in_batches()
        session.expire_all()

        assert result.released == 5
        assert result.failed == 0
        assert result.batches == 3
        assert all(
            session.get(WalletTransaction, tx_id).status is WalletTxStatus.AVAILABLE
            for tx_id in holds
        )

    def test_max_batches_bounds_the_run(
        self, session, session_factory, wallet_ledger, deterministic_clock, later_clock
    ):
        unlock = deterministic_clock.now() + timedelta(days=1)
        for user_id in range(1, 6):
            _hold(wallet_ledger, user_id, "1.00", unlock)
        session.flush()

        result = HoldReleaseJob(session_factory, later_clock, batch_size=2).release_due_holds_in_batches(
            max_batches=1
        )

        assert result.batches == 1
        assert result.released == 2

    def test_one_failure_does_not_stop_the_batch(
        self,
        session,
        session_factory,
        wallet_ledger,
        deterministic_clock,
        later_clock,
        captured_logs,
        monkeypatch,
    ):
        unlock = deterministic_clock.now() + timedelta(days=1)
        bad = _hold(wallet_ledger, 1, "3.00", unlock)
        good = _hold(wallet_ledger, 2, "4.00", unlock)
        session.flush()

        original_release = WalletLedgerService.release

        def _release(self, frozen_tx_id, actor_id=0):
            if frozen_tx_id == bad:
                raise RuntimeError("lock timeout")
            return original_release(self, frozen_tx_id, actor_id)

        monkeypatch.setattr(WalletLedgerService, "release", _release)

        result = HoldReleaseJob(session_factory, later_clock).release_due_holds_once()
        session.expire_all()

        assert result.released == 1
        assert result.failed == 1
        assert session.get(WalletTransaction, bad).status is WalletTxStatus.FROZEN
        assert session.get(WalletTransaction, good).status is WalletTxStatus.AVAILABLE

        errors = [r for r in captured_logs() if r["message"] == "hold_release_failed"]
        assert len(errors) == 1
        assert errors[0]["level"] == "ERROR"
        assert errors[0]["transaction_id"] == str(bad)

    def test_reserves_are_not_holds(
        self, session, session_factory, wallet_ledger, later_clock
    ):
        wallet_ledger.credit(1, "50.00", refs=LedgerRefs(order_id=uuid4()))
        reserve = wallet_ledger.reserve(1, "20.00", refs=LedgerRefs(withdrawal_id=uuid4()))
        session.flush()

        result = HoldReleaseJob(session_factory, later_clock).release_due_holds_once()
        session.expire_all()

        assert result.scanned == 0
        tx = session.get(WalletTransaction, reserve.transaction_id)
        assert tx.biz_type is WalletBizType.WITHDRAW_RESERVE
        assert tx.status is WalletTxStatus.FROZEN

    def test_batch_size_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            HoldReleaseJob(session_factory, batch_size=0)
