"""
Input Validation - normalization of marketplace inputs.

Pure functions, no I/O. Every marketplace intent passes through here
before a single ledger operation is built.

Two calling styles are offered:
- normalize_* / validate_*: return the normalized value or raise a
  typed InputValidationError subclass.
- check_*: return a ValidationResult (value or failure reason), for
  callers that collect errors instead of raising.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from galerie.crypto import is_valid_address
from galerie.core.errors import (
    InputValidationError,
    InvalidAddress,
    InvalidAssetCode,
    InvalidPrice,
    InvalidSchedule,
)

# =============================================================================
# Constants
# =============================================================================

MAX_ASSET_CODE_LENGTH = 12
SHORT_ASSET_CODE_LENGTH = 4
PRICE_DECIMALS = 7

# Largest amount representable by the ledger: int64 stroops / 10^7
MAX_PRICE = Decimal("922337203685.4775807")

# Ledger data entries hold at most 64 bytes
MAX_DATA_VALUE_SIZE = 64

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")
_SHORT_CODE = re.compile(r"^[A-Z][A-Z0-9]{0,3}$")
_LONG_CODE = re.compile(r"^[A-Z][A-Z0-9]{4,11}$")


# =============================================================================
# Result Type
# =============================================================================


@dataclass(frozen=True)
class ValidationResult:
    """Normalized value or typed failure reason."""
    value: Optional[Any] = None
    error: Optional[InputValidationError] = None

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str:
        return self.error.reason if self.error else ""

    def unwrap(self) -> Any:
        """Return the value or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value


# =============================================================================
# Asset Codes
# =============================================================================


def normalize_asset_code(raw: Any, native_code: str = "XLM") -> str:
    """
    Normalize a user-supplied asset code.
    
    Strips everything but ASCII letters and digits, uppercases, then
    enforces the ledger's code classes:
    - short (1-4 chars) and long (5-12 chars) codes
    - both must start with a letter
    - must not contain the native currency ticker
    
    Args:
        raw: Raw user input, e.g. "myNFT-23"
        native_code: Ticker of the native currency
        
    Returns:
        Normalized code, e.g. "MYNFT23"
        
    Raises:
        InvalidAssetCode
    """
    if not isinstance(raw, str) or not raw:
        raise InvalidAssetCode("asset code must be a non-empty string")

    code = _NON_ALPHANUMERIC.sub("", raw).upper()
    if not code:
        raise InvalidAssetCode(f"asset code {raw!r} has no alphanumeric characters")

    if len(code) > MAX_ASSET_CODE_LENGTH:
        raise InvalidAssetCode(
            f"asset code length invalid: {len(code)} (must be 1-{MAX_ASSET_CODE_LENGTH} characters)"
        )

    if native_code and native_code.upper() in code:
        raise InvalidAssetCode(f"asset code cannot contain {native_code.upper()!r}")

    if len(code) <= SHORT_ASSET_CODE_LENGTH:
        if not _SHORT_CODE.match(code):
            raise InvalidAssetCode("short asset codes (1-4 characters) must start with a letter")
    elif not _LONG_CODE.match(code):
        raise InvalidAssetCode("long asset codes (5-12 characters) must start with a letter")

    return code


def asset_code_class(code: str) -> str:
    """Return the ledger code class of a normalized code."""
    return "alphanum4" if len(code) <= SHORT_ASSET_CODE_LENGTH else "alphanum12"


# =============================================================================
# Prices
# =============================================================================


def format_amount(value: Decimal) -> str:
    """Canonical decimal string: no exponent, no trailing zeros."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _strip_trailing_zeros(value: Decimal) -> Decimal:
    """Drop fractional trailing zeros without touching context precision."""
    sign, digits, exponent = value.as_tuple()
    while exponent < 0 and len(digits) > 1 and digits[-1] == 0:
        digits = digits[:-1]
        exponent += 1
    return Decimal((sign, digits, exponent))


def normalize_price(raw: Any, field: str = "price") -> str:
    """
    Validate and canonicalize a price.
    
    Validation happens on the exact input; nothing is rounded. Inputs
    with more than 7 significant fractional digits are rejected, which
    also rejects anything below the ledger's smallest unit (1e-7).
    
    Args:
        raw: str, int or Decimal price
        field: Field name for error messages
        
    Returns:
        Canonical decimal string, e.g. "5.5" for "5.50"
        
    Raises:
        InvalidPrice
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidPrice("price is required", field)
    if isinstance(raw, float):
        # repr gives the shortest round-tripping form
        raw = repr(raw)

    text = str(raw).strip()
    if not text:
        raise InvalidPrice("price is required", field)

    try:
        value = Decimal(text)
    except InvalidOperation:
        raise InvalidPrice(f"price {text!r} is not a number", field)

    if not value.is_finite():
        raise InvalidPrice(f"price {text!r} is not a finite number", field)
    if value <= 0:
        raise InvalidPrice(f"price {text!r} must be positive", field)

    normalized = _strip_trailing_zeros(value)
    if normalized.as_tuple().exponent < -PRICE_DECIMALS:
        raise InvalidPrice(
            f"price {text!r} has too many decimal places (max {PRICE_DECIMALS})", field
        )
    if normalized > MAX_PRICE:
        raise InvalidPrice(f"price {text!r} exceeds ledger maximum {MAX_PRICE}", field)

    return format_amount(normalized)


# =============================================================================
# Addresses, Schedules, Metadata
# =============================================================================


def validate_address(address: Any, name: str = "address") -> str:
    """Validate a ledger account address."""
    if not isinstance(address, str) or not address:
        raise InvalidAddress(name, "address is required")
    if not is_valid_address(address):
        raise InvalidAddress(name, f"invalid account address: {address[:12]}...")
    return address


def validate_end_time(end_time: Any, start_time: int, now: int) -> int:
    """
    Validate an auction end time (epoch seconds).
    
    Rules: end > start, and end in the future at creation.
    """
    if isinstance(end_time, bool) or not isinstance(end_time, int):
        raise InvalidSchedule(f"end time must be epoch seconds, got {type(end_time).__name__}")
    if end_time <= start_time:
        raise InvalidSchedule(f"end time {end_time} must be after start time {start_time}")
    if end_time <= now:
        raise InvalidSchedule(f"end time {end_time} must be in the future (now={now})")
    return end_time


def fits_data_entry(value: Optional[str]) -> bool:
    """Whether a string fits the ledger's fixed-size data slot."""
    return value is not None and len(value.encode("utf-8")) <= MAX_DATA_VALUE_SIZE


# =============================================================================
# Result-Returning Variants
# =============================================================================


def check_asset_code(raw: Any, native_code: str = "XLM") -> ValidationResult:
    try:
        return ValidationResult(value=normalize_asset_code(raw, native_code))
    except InputValidationError as exc:
        return ValidationResult(error=exc)


def check_price(raw: Any) -> ValidationResult:
    try:
        return ValidationResult(value=normalize_price(raw))
    except InputValidationError as exc:
        return ValidationResult(error=exc)


__all__ = [
    "ValidationResult",
    "normalize_asset_code",
    "asset_code_class",
    "format_amount",
    "normalize_price",
    "validate_address",
    "validate_end_time",
    "fits_data_entry",
    "check_asset_code",
    "check_price",
    "MAX_ASSET_CODE_LENGTH",
    "MAX_PRICE",
    "MAX_DATA_VALUE_SIZE",
    "PRICE_DECIMALS",
]
