"""
Unit tests for submission and result decoding.

Tests cover:
1. Result code decoding into the error taxonomy
2. Rebuilds after sequence conflicts
3. Timeout re-query outcomes
4. Failed ledger reads
"""

from decimal import Decimal

import pytest

from galerie.core.config import MarketConfig
from galerie.core.errors import (
    AccountNotFound,
    IndeterminateOutcomeError,
    InsufficientBalance,
    LedgerReadError,
    MarketError,
    MissingTrustline,
    SequenceConflict,
    StaleOffer,
    SubmissionError,
)
from galerie.core.ledger import (
    Asset,
    ManageData,
    Payment,
    SignedEnvelope,
    SimulatedSigner,
    TimeBounds,
    TransactionPlan,
)
from galerie.core.market import TransactionSubmitter, decode_result_codes
from galerie.crypto import random_address

XLM = Asset.native()


def payment_builder(destination, amount, calls=None):
    """Builder paying `amount` native to `destination` from fresh state."""

    def build(account, now):
        if calls is not None:
            calls.append(account.sequence)
        return TransactionPlan(
            source=account.address,
            sequence=account.sequence + 1,
            fee=100,
            time_bounds=TimeBounds(0, now + 180),
            operations=(Payment(destination, XLM, amount),),
            intent="payment",
        )

    return build


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def submitter(ledger, signer):
    return TransactionSubmitter(ledger, signer, MarketConfig())


@pytest.fixture
def two_op_plan():
    return TransactionPlan(
        source=random_address(),
        sequence=1,
        fee=200,
        time_bounds=TimeBounds(0, 0),
        operations=(ManageData("note", "x"), Payment(random_address(), XLM, "5")),
    )


# =============================================================================
# Decoding Tests
# =============================================================================


class TestDecodeResultCodes:
    """Tests for mapping ledger result codes to errors."""

    def test_underfunded(self, two_op_plan):
        """Operation failures name the operation and keep every code."""
        error = decode_result_codes(
            {"transaction": "tx_failed", "operations": ["op_success", "op_underfunded"]}, two_op_plan
        )
        assert isinstance(error, InsufficientBalance)
        assert error.code == "op_underfunded"
        assert error.operation_index == 1
        assert error.operation_type == "payment"
        assert error.transaction_code == "tx_failed"
        assert error.operation_codes == ["op_success", "op_underfunded"]
        assert "tx_failed" in str(error)
        assert "op_underfunded" in str(error)
        assert "operation 1 (payment)" in str(error)

    def test_resource_codes(self):
        assert isinstance(
            decode_result_codes({"transaction": "tx_failed", "operations": ["op_buy_no_trust"]}), MissingTrustline
        )
        assert isinstance(
            decode_result_codes({"transaction": "tx_failed", "operations": ["op_not_found"]}), StaleOffer
        )
        assert isinstance(
            decode_result_codes({"transaction": "tx_failed", "operations": ["op_no_destination"]}), AccountNotFound
        )

    def test_unmapped_operation_code(self, two_op_plan):
        error = decode_result_codes({"transaction": "tx_failed", "operations": ["op_malformed"]}, two_op_plan)
        assert type(error) is SubmissionError
        assert error.operation_index == 0
        assert error.operation_type == "manage_data"

    def test_transaction_codes(self):
        assert isinstance(decode_result_codes({"transaction": "tx_bad_seq", "operations": []}), SequenceConflict)
        too_late = decode_result_codes({"transaction": "tx_too_late"})
        assert type(too_late) is SubmissionError
        assert too_late.transaction_code == "tx_too_late"
        assert "validity window" in str(too_late)


# =============================================================================
# Submitter Tests
# =============================================================================


class TestSubmitter:
    """Tests for TransactionSubmitter."""

    def test_settles(self, submitter, ledger, accounts):
        settlement = submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert settlement.reference == ledger.history[-1].transaction_hash
        assert settlement.plan.intent == "payment"
        assert ledger.load_account(accounts.rival).native_balance == Decimal("1010")

    def test_rejection_decoded(self, submitter, accounts):
        with pytest.raises(InsufficientBalance) as exc:
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "5000"))
        assert exc.value.operation_type == "payment"

    def test_missing_account(self, submitter):
        with pytest.raises(AccountNotFound):
            submitter.submit(random_address(), payment_builder(random_address(), "1"))

    def test_builder_declines(self, submitter, ledger, accounts):
        assert submitter.submit(accounts.collector, lambda account, now: None) is None
        assert ledger.history == []

    def test_rebuild_after_sequence_conflict(self, submitter, ledger, signer, accounts):
        """A concurrent transaction from the same account forces one rebuild."""

        def concurrent(plan):
            other = TransactionPlan(
                source=plan.source,
                sequence=plan.sequence,
                fee=100,
                time_bounds=TimeBounds(0, 0),
                operations=(ManageData("concurrent", "1"),),
            )
            ledger.submit(SignedEnvelope(plan=other, signer=other.source))

        signer.before_submit = concurrent
        calls = []
        settlement = submitter.submit(accounts.collector, payment_builder(accounts.rival, "10", calls))

        assert len(calls) == 2
        assert calls[1] == calls[0] + 1
        assert settlement.plan.sequence == calls[1] + 1
        assert len(ledger.history) == 2

    def test_conflict_after_last_rebuild(self, ledger, accounts):
        """Conflicts beyond max_rebuilds surface as SequenceConflict."""
        signer = SimulatedSigner(ledger)
        submitter = TransactionSubmitter(ledger, signer, MarketConfig(max_rebuilds=0))

        def concurrent(plan):
            other = TransactionPlan(
                source=plan.source,
                sequence=plan.sequence,
                fee=100,
                time_bounds=TimeBounds(0, 0),
                operations=(ManageData("concurrent", "1"),),
            )
            ledger.submit(SignedEnvelope(plan=other, signer=other.source))

        signer.before_submit = concurrent
        with pytest.raises(SequenceConflict):
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))


# =============================================================================
# Timeout Tests
# =============================================================================


class TestTimeouts:
    """Tests for the single re-query after a submission timeout."""

    def test_applied_despite_timeout(self, submitter, ledger, signer, accounts):
        signer.timeout_next(apply=True)
        settlement = submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert settlement.reference == ledger.history[-1].transaction_hash
        assert settlement.operation_results[0].code == "op_success"

    def test_failed_despite_timeout(self, submitter, signer, accounts):
        """A transaction that landed but failed reports its decoded error."""
        signer.timeout_next(apply=True)
        with pytest.raises(InsufficientBalance):
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "5000"))

    def test_not_found_within_window(self, submitter, signer, accounts, clock):
        """Unknown outcome tells the caller when a re-query becomes definitive."""
        signer.timeout_next(apply=False)
        with pytest.raises(IndeterminateOutcomeError) as exc:
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert exc.value.valid_until == clock.now + 180
        assert exc.value.source == accounts.collector

    def test_not_found_after_window(self, submitter, signer, accounts, clock):
        """Past the validity window the transaction can no longer land."""
        signer.timeout_next(apply=False)
        signer.before_submit = lambda plan: clock.advance(600)
        with pytest.raises(SubmissionError) as exc:
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert exc.value.transaction_code == "tx_too_late"

    def test_sequence_taken_by_other_transaction(self, submitter, ledger, signer, accounts):
        """If another transaction holds the sequence the plan is rebuilt."""

        def concurrent(plan):
            other = TransactionPlan(
                source=plan.source,
                sequence=plan.sequence,
                fee=100,
                time_bounds=TimeBounds(0, 0),
                operations=(ManageData("concurrent", "1"),),
            )
            ledger.submit(SignedEnvelope(plan=other, signer=other.source))

        signer.timeout_next(apply=False)
        signer.before_submit = concurrent
        calls = []
        settlement = submitter.submit(accounts.collector, payment_builder(accounts.rival, "10", calls))
        assert len(calls) == 2
        assert settlement.reference == ledger.history[-1].transaction_hash


# =============================================================================
# Ledger Read Tests
# =============================================================================


class TestLedgerReads:
    """Tests for reads that fail before or after a submission."""

    def test_failed_read_before_build(self, submitter, ledger, signer, accounts):
        """An unreachable ledger is reported in the market taxonomy and nothing is sent."""
        ledger.unavailable = True
        with pytest.raises(LedgerReadError) as exc:
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert isinstance(exc.value, MarketError)
        assert exc.value.request == "load_account"
        assert signer.submitted == []

    def test_failed_requery_is_indeterminate(self, submitter, ledger, signer, accounts, clock):
        """A timeout whose re-query cannot be answered leaves the outcome open."""
        signer.timeout_next(apply=False)
        signer.before_submit = lambda plan: setattr(ledger, "unavailable", True)
        with pytest.raises(IndeterminateOutcomeError) as exc:
            submitter.submit(accounts.collector, payment_builder(accounts.rival, "10"))
        assert isinstance(exc.value.__cause__, LedgerReadError)
        assert exc.value.__cause__.request == "get_transaction"
        assert exc.value.valid_until == clock.now + 180

    def test_marketplace_reads(self, market, token, accounts, ledger):
        """Service reads surface LedgerReadError naming the failed request."""
        ledger.unavailable = True
        with pytest.raises(LedgerReadError) as exc:
            market.get_bids(token)
        assert exc.value.request == "offers"
        with pytest.raises(LedgerReadError) as exc:
            market.is_sold(token, accounts.creator)
        assert exc.value.request == "load_account"
