"""Ledger layer: operation values, client contracts and a simulated ledger"""

from galerie.core.ledger.operations import (
    Asset,
    ChangeTrust,
    ManageBuyOffer,
    ManageData,
    ManageSellOffer,
    Payment,
    TimeBounds,
    TransactionPlan,
)
from galerie.core.ledger.client import (
    AccountState,
    ClaimedOffer,
    LedgerClient,
    LedgerRejection,
    LedgerUnavailable,
    OfferFilter,
    OfferRecord,
    OperationResult,
    SettlementResult,
    SignedEnvelope,
    SigningCapability,
    SubmissionTimeout,
    TransactionRecord,
)
from galerie.core.ledger.memory import InMemoryLedger, SimulatedSigner

__all__ = [
    "Asset",
    "ChangeTrust",
    "ManageBuyOffer",
    "ManageData",
    "ManageSellOffer",
    "Payment",
    "TimeBounds",
    "TransactionPlan",
    "AccountState",
    "ClaimedOffer",
    "LedgerClient",
    "LedgerRejection",
    "LedgerUnavailable",
    "OfferFilter",
    "OfferRecord",
    "OperationResult",
    "SettlementResult",
    "SignedEnvelope",
    "SigningCapability",
    "SubmissionTimeout",
    "TransactionRecord",
    "InMemoryLedger",
    "SimulatedSigner",
]
