"""
Operations - ledger operation values and transaction plans.

Conceptual Background:
---------------------
A TransactionPlan is the unsigned description of one ledger
transaction: an ordered list of operations applied atomically, a
source account and the sequence number it consumes, a fee and a
validity window.

Operation Types:
---------------
1. ChangeTrust: authorize holding a non-native asset (trustline)
2. Payment: move an amount of an asset to another account
3. ManageSellOffer: create/update/delete a sell offer on the order book
4. ManageBuyOffer: create/update/delete a buy offer on the order book
5. ManageData: set or delete a small named annotation on the account

Offer Semantics:
---------------
For both offer kinds, `price` is the amount of the counter asset paid
for one unit of the token (native units per token). An amount of 0
together with an offer_id deletes that offer; offer_id 0 creates a
new one.

Plan Identity:
-------------
plan_id = SHA-256 of the canonical JSON of the plan. Two plans for the
same source and sequence with different contents get different ids,
which lets a timed-out submission be matched against what the ledger
actually applied.
"""

import json
from dataclasses import dataclass
from typing import List, Optional, Union

from galerie.crypto import sha256, bytes_to_hex
from galerie.utils.validation import MAX_DATA_VALUE_SIZE


# =============================================================================
# Constants
# =============================================================================

MAX_DATA_NAME_SIZE = 64
MAX_OPERATIONS = 100


# =============================================================================
# Assets
# =============================================================================


@dataclass(frozen=True)
class Asset:
    """
    A ledger asset: the native currency, or (code, issuer).
    
    Attributes:
        code: Asset code (native ticker for the native asset)
        issuer: Issuing account, None for native
    """
    code: str
    issuer: Optional[str] = None

    @classmethod
    def native(cls, code: str = "XLM") -> "Asset":
        return cls(code=code, issuer=None)

    @property
    def is_native(self) -> bool:
        return self.issuer is None

    @property
    def key(self) -> str:
        """Stable string key: 'native' or 'CODE:ISSUER'."""
        return "native" if self.is_native else f"{self.code}:{self.issuer}"

    def to_dict(self) -> dict:
        if self.is_native:
            return {"type": "native"}
        return {"code": self.code, "issuer": self.issuer}

    def __str__(self) -> str:
        return self.code if self.is_native else f"{self.code}:{self.issuer[:6]}..."


# =============================================================================
# Operations
# =============================================================================


@dataclass(frozen=True)
class ChangeTrust:
    asset: Asset
    limit: Optional[str] = None

    type = "change_trust"

    def to_dict(self) -> dict:
        return {"type": self.type, "asset": self.asset.to_dict(), "limit": self.limit}


@dataclass(frozen=True)
class Payment:
    destination: str
    asset: Asset
    amount: str

    type = "payment"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "destination": self.destination,
            "asset": self.asset.to_dict(),
            "amount": self.amount,
        }


@dataclass(frozen=True)
class ManageSellOffer:
    """Sell `amount` of `selling` for `buying` at `price` (buying per selling unit)."""
    selling: Asset
    buying: Asset
    amount: str
    price: str
    offer_id: int = 0

    type = "manage_sell_offer"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "selling": self.selling.to_dict(),
            "buying": self.buying.to_dict(),
            "amount": self.amount,
            "price": self.price,
            "offer_id": self.offer_id,
        }


@dataclass(frozen=True)
class ManageBuyOffer:
    """Buy `buy_amount` of `buying` paying `selling` at `price` (selling per buying unit)."""
    selling: Asset
    buying: Asset
    buy_amount: str
    price: str
    offer_id: int = 0

    type = "manage_buy_offer"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "selling": self.selling.to_dict(),
            "buying": self.buying.to_dict(),
            "buy_amount": self.buy_amount,
            "price": self.price,
            "offer_id": self.offer_id,
        }


@dataclass(frozen=True)
class ManageData:
    """Set (value) or delete (value=None) a named account annotation."""
    name: str
    value: Optional[str] = None

    type = "manage_data"

    def __post_init__(self):
        if not self.name or len(self.name.encode("utf-8")) > MAX_DATA_NAME_SIZE:
            raise ValueError(f"data name must be 1-{MAX_DATA_NAME_SIZE} bytes: {self.name!r}")
        if self.value is not None and len(self.value.encode("utf-8")) > MAX_DATA_VALUE_SIZE:
            raise ValueError(f"data value for {self.name!r} exceeds {MAX_DATA_VALUE_SIZE} bytes")

    @property
    def is_delete(self) -> bool:
        return self.value is None

    def to_dict(self) -> dict:
        return {"type": self.type, "name": self.name, "value": self.value}


Operation = Union[ChangeTrust, Payment, ManageSellOffer, ManageBuyOffer, ManageData]


# =============================================================================
# Transaction Plan
# =============================================================================


@dataclass(frozen=True)
class TimeBounds:
    """Validity window in ledger time (epoch seconds); 0 = unbounded."""
    min_time: int
    max_time: int

    def contains(self, now: int) -> bool:
        if self.min_time and now < self.min_time:
            return False
        if self.max_time and now > self.max_time:
            return False
        return True


@dataclass(frozen=True)
class TransactionPlan:
    """
    Unsigned, ordered operation sequence for one ledger transaction.
    
    Invariants:
    - At least one and at most MAX_OPERATIONS operations
    - fee = base_fee * len(operations)
    - sequence = source account sequence + 1 at build time
    
    Attributes:
        source: Account that signs and pays the fee
        sequence: Sequence number this transaction consumes
        fee: Total fee in stroops
        time_bounds: Validity window
        operations: Ordered operations
        intent: Label of the marketplace intent that produced the plan
        memo: Optional short text memo
    """
    source: str
    sequence: int
    fee: int
    time_bounds: TimeBounds
    operations: tuple
    intent: str = ""
    memo: Optional[str] = None

    def __post_init__(self):
        if len(self.operations) == 0:
            raise ValueError("Transaction plan must have at least one operation")
        if len(self.operations) > MAX_OPERATIONS:
            raise ValueError(f"Transaction plan exceeds {MAX_OPERATIONS} operations")
        if self.fee < 0:
            raise ValueError("Fee cannot be negative")

    # =========================================================================
    # Identity
    # =========================================================================

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "sequence": self.sequence,
            "fee": self.fee,
            "time_bounds": [self.time_bounds.min_time, self.time_bounds.max_time],
            "memo": self.memo,
            "operations": [op.to_dict() for op in self.operations],
        }

    def compute_content_bytes(self) -> bytes:
        """Canonical byte representation for hashing."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @property
    def plan_id(self) -> str:
        """Hex transaction hash of this plan."""
        return bytes_to_hex(sha256(self.compute_content_bytes()))

    # =========================================================================
    # Utility
    # =========================================================================

    def operation_types(self) -> List[str]:
        return [op.type for op in self.operations]

    def __repr__(self) -> str:
        return (
            f"TransactionPlan(id={self.plan_id[:10]}..., intent={self.intent or '-'}, "
            f"seq={self.sequence}, ops={len(self.operations)}, fee={self.fee})"
        )


__all__ = [
    "Asset",
    "ChangeTrust",
    "Payment",
    "ManageSellOffer",
    "ManageBuyOffer",
    "ManageData",
    "Operation",
    "TimeBounds",
    "TransactionPlan",
    "MAX_DATA_NAME_SIZE",
    "MAX_OPERATIONS",
]
