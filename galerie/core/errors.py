"""
Error taxonomy for the marketplace engine.

Every public operation either returns a definitive settlement or raises
one of these. The classes map to how a caller should react:

- InputValidationError: caught before any network call; never retry.
- ResourceStateError: account/offer state prevents the operation
  (insufficient funds, missing trustline, stale offer). Fix and retry.
- SubmissionError: the ledger rejected the transaction. Carries the
  transaction code and the per-operation code list.
- IndeterminateOutcomeError: submission timed out and a re-query could
  not establish the outcome yet.
- LedgerReadError: a ledger read failed before an outcome was known.
- OffchainStoreError: the content store failed. Best-effort writes
  degrade; reads with no ledger fallback fail.
"""

from typing import List, Optional


class MarketError(Exception):
    """Base class for all marketplace errors."""


class ConfigurationError(MarketError):
    """Required configuration is missing or malformed."""


# =============================================================================
# Input Validation
# =============================================================================


class InputValidationError(MarketError, ValueError):
    """
    Malformed input detected before any network call.
    
    Attributes:
        field: Name of the offending input
        reason: Human readable failure reason
    """

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class InvalidAssetCode(InputValidationError):
    def __init__(self, reason: str):
        super().__init__("asset_code", reason)


class InvalidPrice(InputValidationError):
    def __init__(self, reason: str, field: str = "price"):
        super().__init__(field, reason)


class InvalidAddress(InputValidationError):
    pass


class InvalidSchedule(InputValidationError):
    def __init__(self, reason: str):
        super().__init__("end_time", reason)


class ValidationFailed(InputValidationError):
    """Raised by the assembler when an intent carries invalid input."""

    def __init__(self, intent: str, cause: InputValidationError):
        self.intent = intent
        self.cause = cause
        MarketError.__init__(self, f"{intent} rejected: {cause}")
        self.field = cause.field
        self.reason = cause.reason


# =============================================================================
# Ledger Outcomes
# =============================================================================


def format_result_codes(transaction_code: Optional[str], operation_codes: List[str]) -> str:
    """Render ledger result codes the way operators read them."""
    message = f"Transaction failed: {transaction_code or 'unknown'}"
    if operation_codes:
        message += f" - Operations: [{', '.join(operation_codes)}]"
    return message


class ResourceStateError(MarketError):
    """
    Account or order-book state prevents the operation.
    
    Attributes:
        code: Ledger (or pre-flight) code, e.g. "op_underfunded"
        operation_index: Index of the failing operation, if known
        operation_type: Type of the failing operation, if known
        transaction_code: Transaction-level code, if the ledger answered
        operation_codes: Full per-operation code list, if the ledger answered
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        operation_index: Optional[int] = None,
        operation_type: Optional[str] = None,
        transaction_code: Optional[str] = None,
        operation_codes: Optional[List[str]] = None,
    ):
        self.code = code
        self.operation_index = operation_index
        self.operation_type = operation_type
        self.transaction_code = transaction_code
        self.operation_codes = list(operation_codes or [])
        super().__init__(message)


class InsufficientBalance(ResourceStateError):
    pass


class MissingTrustline(ResourceStateError):
    pass


class StaleOffer(ResourceStateError):
    """The referenced offer or data entry no longer exists."""


class AccountNotFound(ResourceStateError):
    pass


class ListingNotFound(ResourceStateError):
    pass


class SubmissionError(MarketError):
    """
    Ledger rejection with transaction + per-operation codes.
    
    Attributes:
        transaction_code: e.g. "tx_failed", "tx_too_late"
        operation_codes: e.g. ["op_success", "op_malformed"]
        operation_index: First failing operation, if any
    """

    def __init__(
        self,
        message: str,
        transaction_code: Optional[str] = None,
        operation_codes: Optional[List[str]] = None,
        operation_index: Optional[int] = None,
        operation_type: Optional[str] = None,
    ):
        self.transaction_code = transaction_code
        self.operation_codes = list(operation_codes or [])
        self.operation_index = operation_index
        self.operation_type = operation_type
        super().__init__(message)


class SequenceConflict(SubmissionError):
    """Another transaction consumed the account sequence first."""


class IndeterminateOutcomeError(MarketError):
    """
    Submission timed out and the re-query did not find the transaction.
    
    The transaction can still be applied until `valid_until` (ledger time).
    After that, a lookup by (source, sequence) is definitive.
    """

    def __init__(self, source: str, sequence: int, valid_until: int, transaction_hash: str):
        self.source = source
        self.sequence = sequence
        self.valid_until = valid_until
        self.transaction_hash = transaction_hash
        super().__init__(
            f"Outcome unknown for {transaction_hash[:12]}... "
            f"(source={source[:8]}..., sequence={sequence}); "
            f"re-query after ledger time {valid_until}"
        )


class LedgerReadError(MarketError):
    """
    A ledger read request failed (network, server error).
    
    Attributes:
        request: Name of the failed read (load_account, offers, ...)
    """

    def __init__(self, request: str, message: str):
        self.request = request
        super().__init__(f"Ledger {request} failed: {message}")


class OffchainStoreError(MarketError):
    """Content store request failed."""


__all__ = [
    "MarketError",
    "ConfigurationError",
    "InputValidationError",
    "InvalidAssetCode",
    "InvalidPrice",
    "InvalidAddress",
    "InvalidSchedule",
    "ValidationFailed",
    "format_result_codes",
    "ResourceStateError",
    "InsufficientBalance",
    "MissingTrustline",
    "StaleOffer",
    "AccountNotFound",
    "ListingNotFound",
    "SubmissionError",
    "SequenceConflict",
    "IndeterminateOutcomeError",
    "LedgerReadError",
    "OffchainStoreError",
]
