"""
Submission - sign, submit and decode ledger outcomes.

Conceptual Background:
---------------------
The acting account's sequence number is a single-writer resource. A
plan is always built against fresh account state; if another
transaction consumed the sequence first (tx_bad_seq) the plan is
rebuilt, never resubmitted stale.

Outcome Handling:
----------------
1. Settled: the signer returns a SettlementResult
2. Rejected: ledger result codes are decoded into one combined error
   (transaction code + per-operation codes + failing operation)
3. Timed out: the ledger is re-queried exactly once by
   (source, sequence). Only a definitive answer is returned; otherwise
   IndeterminateOutcomeError tells the caller when a re-query becomes
   definitive (the end of the validity window).

Ledger reads go through CheckedLedger, which turns the client's
LedgerUnavailable into LedgerReadError. A failed re-query after a
timeout leaves the outcome unknown (IndeterminateOutcomeError).
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from galerie.core.config import MarketConfig
from galerie.core.errors import (
    AccountNotFound,
    IndeterminateOutcomeError,
    InsufficientBalance,
    LedgerReadError,
    MarketError,
    MissingTrustline,
    ResourceStateError,
    SequenceConflict,
    StaleOffer,
    SubmissionError,
    format_result_codes,
)
from galerie.core.ledger.client import (
    AccountState,
    ClaimedOffer,
    LedgerClient,
    LedgerRejection,
    LedgerUnavailable,
    OfferFilter,
    OfferRecord,
    SigningCapability,
    SubmissionTimeout,
    TransactionRecord,
)
from galerie.core.ledger.operations import TransactionPlan
from galerie.utils.logger import get_logger

logger = get_logger("market.submission")

PlanBuilder = Callable[[AccountState, int], Optional[TransactionPlan]]


# =============================================================================
# Result Code Decoding
# =============================================================================

OPERATION_DESCRIPTIONS: Dict[str, str] = {
    "op_underfunded": "insufficient funds",
    "op_low_reserve": "balance would fall below the minimum reserve",
    "op_no_trust": "destination has no trustline for the asset",
    "op_buy_no_trust": "missing trustline for the asset being bought",
    "op_sell_no_trust": "missing trustline for the asset being sold",
    "op_src_no_trust": "source has no trustline for the asset",
    "op_not_found": "offer not found (withdrawn or already filled)",
    "op_name_not_found": "annotation not found",
    "op_no_destination": "destination account does not exist",
    "op_no_issuer": "asset issuer does not exist",
    "op_malformed": "malformed operation",
    "op_cross_self": "offer would cross an offer from the same account",
    "op_line_full": "supply or trustline limit reached",
    "op_invalid_limit": "trustline still holds a balance",
}

TRANSACTION_DESCRIPTIONS: Dict[str, str] = {
    "tx_bad_seq": "sequence number already used",
    "tx_too_late": "validity window expired before inclusion",
    "tx_too_early": "validity window not yet open",
    "tx_bad_auth": "missing or invalid signature",
    "tx_insufficient_balance": "fee would exceed the available balance",
    "tx_insufficient_fee": "fee below the network minimum",
    "tx_no_source_account": "source account does not exist",
}

_RESOURCE_ERRORS: Dict[str, Type[ResourceStateError]] = {
    "op_underfunded": InsufficientBalance,
    "op_low_reserve": InsufficientBalance,
    "tx_insufficient_balance": InsufficientBalance,
    "op_no_trust": MissingTrustline,
    "op_buy_no_trust": MissingTrustline,
    "op_sell_no_trust": MissingTrustline,
    "op_src_no_trust": MissingTrustline,
    "op_not_found": StaleOffer,
    "op_name_not_found": StaleOffer,
    "op_no_destination": AccountNotFound,
    "tx_no_source_account": AccountNotFound,
}


def decode_result_codes(result_codes: dict, plan: Optional[TransactionPlan] = None) -> MarketError:
    """
    Turn ledger result codes into one actionable error.
    
    Args:
        result_codes: {"transaction": "tx_...", "operations": [...]}
        plan: The submitted plan, used to name the failing operation
        
    Returns:
        ResourceStateError subclass, SequenceConflict or SubmissionError
    """
    tx_code = result_codes.get("transaction")
    op_codes: List[str] = list(result_codes.get("operations") or [])
    message = format_result_codes(tx_code, op_codes)

    for index, code in enumerate(op_codes):
        if code == "op_success":
            continue
        op_type = None
        if plan is not None and index < len(plan.operations):
            op_type = plan.operations[index].type
        message += f"; operation {index} ({op_type or 'unknown'}): {OPERATION_DESCRIPTIONS.get(code, code)}"
        error_class = _RESOURCE_ERRORS.get(code)
        if error_class is not None:
            return error_class(
                message,
                code=code,
                operation_index=index,
                operation_type=op_type,
                transaction_code=tx_code,
                operation_codes=op_codes,
            )
        return SubmissionError(message, tx_code, op_codes, index, op_type)

    if tx_code in TRANSACTION_DESCRIPTIONS:
        message += f"; {TRANSACTION_DESCRIPTIONS[tx_code]}"
    if tx_code == "tx_bad_seq":
        return SequenceConflict(message, tx_code, op_codes)
    error_class = _RESOURCE_ERRORS.get(tx_code)
    if error_class is not None:
        return error_class(message, code=tx_code, transaction_code=tx_code, operation_codes=op_codes)
    return SubmissionError(message, tx_code, op_codes)


# =============================================================================
# Settlement
# =============================================================================


@dataclass(frozen=True)
class Settlement:
    """
    A transaction the ledger confirmed as applied.
    
    Attributes:
        reference: Transaction hash
        ledger: Ledger it was included in
        plan: The plan that was submitted
        operation_results: Per-operation results (claimed offers etc.)
    """
    reference: str
    ledger: int
    plan: TransactionPlan
    operation_results: tuple = ()

    def claimed_offers(self) -> List[ClaimedOffer]:
        claimed = []
        for result in self.operation_results:
            claimed.extend(result.offers_claimed)
        return claimed

    def resting_offer_id(self) -> Optional[int]:
        """Offer left on the book by the plan's offer operation, if any."""
        for op, result in zip(self.plan.operations, self.operation_results):
            if op.type in ("manage_sell_offer", "manage_buy_offer") and result.offer_id:
                return result.offer_id
        return None


# =============================================================================
# Ledger Reads
# =============================================================================


class CheckedLedger:
    """
    LedgerClient wrapper raising LedgerReadError for failed reads.
    
    Submission passes straight through; the signer path has its own
    wire-level exceptions.
    """

    def __init__(self, ledger: LedgerClient):
        self.inner = ledger

    @classmethod
    def wrap(cls, ledger: LedgerClient) -> "CheckedLedger":
        return ledger if isinstance(ledger, cls) else cls(ledger)

    def _read(self, request: str, *args):
        try:
            return getattr(self.inner, request)(*args)
        except LedgerUnavailable as e:
            raise LedgerReadError(request, str(e)) from e

    def load_account(self, address: str) -> Optional[AccountState]:
        return self._read("load_account", address)

    def offers(self, query: OfferFilter) -> List[OfferRecord]:
        return self._read("offers", query)

    def get_transaction(self, source: str, sequence: int) -> Optional[TransactionRecord]:
        return self._read("get_transaction", source, sequence)

    def ledger_time(self) -> int:
        return self._read("ledger_time")

    def submit(self, envelope, timeout: Optional[float] = None):
        return self.inner.submit(envelope, timeout=timeout)


# =============================================================================
# Submitter
# =============================================================================


class TransactionSubmitter:
    """
    Drives one marketplace transaction to a definitive outcome.
    
    Args:
        ledger: Read interface (account state, transaction lookup)
        signer: Injected signing capability
        config: max_rebuilds and submit_timeout are used
    """

    def __init__(self, ledger: LedgerClient, signer: SigningCapability, config: MarketConfig):
        self.ledger = CheckedLedger.wrap(ledger)
        self.signer = signer
        self.config = config

    def submit(self, source: str, build: PlanBuilder, timeout: Optional[float] = None) -> Optional[Settlement]:
        """
        Build against fresh state and submit, rebuilding on sequence conflicts.
        
        Args:
            source: Acting account
            build: (account_state, ledger_time) -> plan, or None when
                fresh state shows there is nothing left to do
            timeout: Seconds to wait for the signer (config default)
            
        Returns:
            Settlement, or None if `build` declined
        """
        if timeout is None:
            timeout = self.config.submit_timeout
        attempts = 1 + max(0, self.config.max_rebuilds)

        for attempt in range(attempts):
            account = self.ledger.load_account(source)
            if account is None:
                raise AccountNotFound(f"Account {source[:8]}... does not exist", code="tx_no_source_account")

            plan = build(account, self.ledger.ledger_time())
            if plan is None:
                return None

            try:
                return self._submit_once(plan, timeout)
            except SequenceConflict as e:
                if attempt + 1 >= attempts:
                    raise
                logger.warning(f"Sequence conflict on {plan.intent or 'plan'} for {source[:8]}..., rebuilding: {e}")

        raise AssertionError("unreachable")

    def _submit_once(self, plan: TransactionPlan, timeout: Optional[float]) -> Settlement:
        try:
            result = self.signer.sign_and_submit(plan, timeout=timeout)
        except LedgerRejection as e:
            error = decode_result_codes(e.result_codes, plan)
            logger.debug(f"{plan.intent or 'plan'} rejected: {error}")
            raise error from e
        except SubmissionTimeout:
            logger.warning(f"Submission of {plan} timed out, re-querying ledger")
            return self._resolve_timeout(plan)

        settlement = Settlement(
            reference=result.transaction_hash,
            ledger=result.ledger,
            plan=plan,
            operation_results=tuple(result.operation_results),
        )
        logger.info(f"Settled {plan.intent or 'plan'} {settlement.reference[:10]}... in ledger {settlement.ledger}")
        return settlement

    def _resolve_timeout(self, plan: TransactionPlan) -> Settlement:
        """Single re-query by (source, sequence) after a timeout."""
        try:
            record = self.ledger.get_transaction(plan.source, plan.sequence)
        except LedgerReadError as e:
            logger.warning(f"Re-query of {plan} failed: {e}")
            raise IndeterminateOutcomeError(
                plan.source, plan.sequence, plan.time_bounds.max_time, plan.plan_id
            ) from e

        if record is None:
            if self.ledger.ledger_time() > plan.time_bounds.max_time:
                raise SubmissionError(
                    format_result_codes("tx_too_late", []) + f"; {TRANSACTION_DESCRIPTIONS['tx_too_late']}",
                    transaction_code="tx_too_late",
                )
            raise IndeterminateOutcomeError(plan.source, plan.sequence, plan.time_bounds.max_time, plan.plan_id)

        if record.transaction_hash != plan.plan_id:
            raise SequenceConflict(
                format_result_codes("tx_bad_seq", []) + "; sequence consumed by another transaction",
                transaction_code="tx_bad_seq",
            )

        if not record.successful:
            raise decode_result_codes(record.result_codes, plan)

        logger.info(f"Re-query confirmed {plan.intent or 'plan'} {record.transaction_hash[:10]}... in ledger {record.ledger}")
        return Settlement(
            reference=record.transaction_hash,
            ledger=record.ledger,
            plan=plan,
            operation_results=tuple(record.operation_results),
        )
