"""
Ledger contracts - what the core expects from the outside world.

Two collaborators are injected into the marketplace engine:

1. LedgerClient: read access to accounts, the order book and applied
   transactions, plus raw submission of signed envelopes.
2. SigningCapability: turns a TransactionPlan into a signed envelope and
   submits it. Key custody lives entirely behind this interface.

Wire-level failures are reported with three exceptions:
- LedgerRejection: the ledger answered and refused (result codes attached)
- SubmissionTimeout: no answer within the caller's timeout; outcome unknown
- LedgerUnavailable: a read request failed

The marketplace submitter and its CheckedLedger convert them into the
error taxonomy of galerie.core.errors; they never reach marketplace
callers directly.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from galerie.core.ledger.operations import Asset, TransactionPlan


# =============================================================================
# Account State
# =============================================================================


@dataclass(frozen=True)
class AccountState:
    """
    Snapshot of one ledger account.
    
    Attributes:
        address: Account id
        sequence: Last consumed sequence number
        native_balance: Native currency balance
        native_liabilities: Native currency locked in open buy offers
        balances: Non-native balances keyed by Asset.key (trustlines)
        selling_liabilities: Non-native amounts locked in open sell offers
        data: Account annotations (name -> value)
    """
    address: str
    sequence: int
    native_balance: Decimal
    native_liabilities: Decimal = Decimal("0")
    balances: Dict[str, Decimal] = field(default_factory=dict)
    selling_liabilities: Dict[str, Decimal] = field(default_factory=dict)
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def available_native(self) -> Decimal:
        return self.native_balance - self.native_liabilities

    def has_trustline(self, asset: Asset) -> bool:
        if asset.is_native or asset.issuer == self.address:
            return True
        return asset.key in self.balances

    def balance_of(self, asset: Asset) -> Decimal:
        if asset.is_native:
            return self.native_balance
        return self.balances.get(asset.key, Decimal("0"))

    def data_value(self, name: str) -> Optional[str]:
        return self.data.get(name)


# =============================================================================
# Order Book
# =============================================================================


@dataclass(frozen=True)
class OfferFilter:
    """
    Order-book query.
    
    Attributes:
        token: Non-native asset traded against the native currency
        side: "buy" (offers buying the token) or "sell" (offers selling it)
        account: Restrict to offers owned by this account
    """
    token: Asset
    side: Optional[str] = None
    account: Optional[str] = None


@dataclass(frozen=True)
class OfferRecord:
    """
    A live order-book entry for a token/native pair.
    
    Attributes:
        offer_id: Ledger-assigned id
        account: Offer owner (the bidder for buy offers)
        token: The non-native asset
        side: "buy" or "sell"
        amount: Token units still on offer
        price: Native units per token, canonical decimal string
        last_modified_time: Ledger time of last change (epoch seconds)
    """
    offer_id: int
    account: str
    token: Asset
    side: str
    amount: Decimal
    price: str
    last_modified_time: int


# =============================================================================
# Submission Results
# =============================================================================


@dataclass(frozen=True)
class ClaimedOffer:
    """An existing offer crossed (filled) by an operation."""
    offer_id: int
    account: str
    amount: Decimal
    price: str


@dataclass(frozen=True)
class OperationResult:
    """
    Per-operation outcome.
    
    Attributes:
        code: "op_success" or a failure code
        offers_claimed: Offers crossed by an offer operation
        offer_id: Id of the offer left resting on the book, if any
    """
    code: str
    offers_claimed: tuple = ()
    offer_id: Optional[int] = None


@dataclass(frozen=True)
class SettlementResult:
    """Ledger confirmation that a transaction was included and applied."""
    transaction_hash: str
    ledger: int
    operation_results: tuple = ()


@dataclass(frozen=True)
class TransactionRecord:
    """
    An applied (successful or failed) transaction as stored by the ledger.
    
    Failed transactions still consume their sequence number.
    """
    transaction_hash: str
    source: str
    sequence: int
    ledger: int
    successful: bool
    result_codes: Dict[str, object] = field(default_factory=dict)
    operation_results: tuple = ()


@dataclass(frozen=True)
class SignedEnvelope:
    """A plan plus the signer's attestation."""
    plan: TransactionPlan
    signer: str
    signature: bytes = b""


# =============================================================================
# Wire-Level Exceptions
# =============================================================================


class LedgerRejection(Exception):
    """
    The ledger refused a transaction.
    
    Attributes:
        result_codes: {"transaction": "tx_...", "operations": ["op_...", ...]}
        transaction_hash: Hash of the rejected transaction, if known
    """

    def __init__(self, result_codes: dict, transaction_hash: Optional[str] = None):
        self.result_codes = result_codes
        self.transaction_hash = transaction_hash
        super().__init__(f"ledger rejected transaction: {result_codes}")


class LedgerUnavailable(Exception):
    """A read request failed (network, server error)."""


class SubmissionTimeout(TimeoutError):
    """No definitive answer within the timeout; the outcome is unknown."""


# =============================================================================
# Contracts
# =============================================================================


class LedgerClient(Protocol):
    """Read and submit interface of the ledger network."""

    def load_account(self, address: str) -> Optional[AccountState]:
        """Return account state, or None if the account does not exist."""
        ...

    def offers(self, query: OfferFilter) -> List[OfferRecord]:
        ...

    def submit(self, envelope: SignedEnvelope, timeout: Optional[float] = None) -> SettlementResult:
        """Submit a signed envelope. Raises LedgerRejection or SubmissionTimeout."""
        ...

    def get_transaction(self, source: str, sequence: int) -> Optional[TransactionRecord]:
        """Look up what the ledger applied at (source, sequence)."""
        ...

    def ledger_time(self) -> int:
        """Close time of the latest ledger (epoch seconds)."""
        ...


class SigningCapability(Protocol):
    """Injected signer: signs a plan and submits it."""

    def sign_and_submit(self, plan: TransactionPlan, timeout: Optional[float] = None) -> SettlementResult:
        """Raises LedgerRejection or SubmissionTimeout."""
        ...


__all__ = [
    "AccountState",
    "OfferFilter",
    "OfferRecord",
    "ClaimedOffer",
    "OperationResult",
    "SettlementResult",
    "TransactionRecord",
    "SignedEnvelope",
    "LedgerRejection",
    "LedgerUnavailable",
    "SubmissionTimeout",
    "LedgerClient",
    "SigningCapability",
]
