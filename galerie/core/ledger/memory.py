"""
In-memory ledger - a simulated network with a native order book.

Conceptual Background:
---------------------
This ledger implements the LedgerClient contract against local state so
the marketplace engine can be exercised end to end without a network:

1. **Accounts**: sequence number, native balance, token balances
   (trustlines) and data annotations
2. **Order Book**: buy/sell offers for token/native pairs
3. **Transaction Log**: every applied transaction keyed by
   (source, sequence), successful or failed

Transaction Processing:
----------------------
1. Envelope checks: source exists, signer matches, validity window,
   sequence = account sequence + 1, fee sufficient
2. Operations are applied in order; the first failing operation rolls
   the whole transaction back (atomicity)
3. The sequence number and fee are consumed even when operations fail

Offer Crossing:
--------------
A new sell offer crosses resting buy offers priced at or above its ask
(best price first); a new buy offer crosses resting sell offers priced
at or below its bid. Trades execute at the resting offer's price.
Issuers may hold units of their own asset; a self-payment by the
issuer mints.
"""

import copy
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from galerie.core.ledger.client import (
    AccountState,
    ClaimedOffer,
    LedgerRejection,
    LedgerUnavailable,
    OfferFilter,
    OfferRecord,
    OperationResult,
    SettlementResult,
    SignedEnvelope,
    SubmissionTimeout,
    TransactionRecord,
)
from galerie.core.ledger.operations import (
    Asset,
    ChangeTrust,
    ManageBuyOffer,
    ManageData,
    ManageSellOffer,
    Payment,
    TransactionPlan,
)
from galerie.crypto import bytes_to_hex, sha256
from galerie.utils.logger import get_logger
from galerie.utils.validation import format_amount

logger = get_logger("ledger")

ZERO = Decimal("0")
STROOPS_PER_UNIT = Decimal("10000000")


# =============================================================================
# Internal State
# =============================================================================


@dataclass
class _Account:
    address: str
    sequence: int
    native: Decimal
    balances: Dict[str, Decimal] = field(default_factory=dict)
    data: Dict[str, str] = field(default_factory=dict)


@dataclass
class _Offer:
    offer_id: int
    account: str
    token: Asset
    side: str
    amount: Decimal
    price: Decimal
    last_modified: int


class _OperationFailed(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


# =============================================================================
# Ledger
# =============================================================================


class InMemoryLedger:
    """
    Simulated ledger with accounts, order book and transaction log.
    
    Attributes:
        accounts: address -> account state
        book: offer_id -> open offer
        history: All applied transactions in order
        ledger_sequence: Number of the next ledger to close
        unavailable: When set, account, offer and transaction reads
            raise LedgerUnavailable (failure injection for tests)
    """

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        native_code: str = "XLM",
        base_fee: int = 100,
    ):
        self.accounts: Dict[str, _Account] = {}
        self.book: Dict[int, _Offer] = {}
        self.history: List[TransactionRecord] = []
        self._by_sequence: Dict[Tuple[str, int], TransactionRecord] = {}
        self._supply: Dict[str, Decimal] = {}
        self._next_offer_id = 1
        self.ledger_sequence = 2
        self.base_fee = base_fee
        self.native = Asset.native(native_code)
        self._clock = clock or (lambda: int(time.time()))
        self.unavailable = False

    # =========================================================================
    # Setup
    # =========================================================================

    def create_account(self, address: str, native_balance: Decimal = Decimal("100")) -> None:
        """Create and fund an account (genesis-style, outside any transaction)."""
        if address in self.accounts:
            raise RuntimeError(f"Account {address[:8]}... already exists")
        self.accounts[address] = _Account(
            address=address,
            sequence=self.ledger_sequence << 32,
            native=Decimal(native_balance),
        )
        logger.debug(f"Funded account {address[:8]}... with {native_balance} {self.native.code}")

    # =========================================================================
    # Read Interface
    # =========================================================================

    def ledger_time(self) -> int:
        return int(self._clock())

    def _check_available(self, request: str) -> None:
        if self.unavailable:
            raise LedgerUnavailable(f"{request}: ledger unreachable")

    def load_account(self, address: str) -> Optional[AccountState]:
        self._check_available("load_account")
        account = self.accounts.get(address)
        if account is None:
            return None

        selling: Dict[str, Decimal] = {}
        for offer in self.book.values():
            if offer.account == address and offer.side == "sell":
                selling[offer.token.key] = selling.get(offer.token.key, ZERO) + offer.amount

        return AccountState(
            address=address,
            sequence=account.sequence,
            native_balance=account.native,
            native_liabilities=self._native_liabilities(address),
            balances=dict(account.balances),
            selling_liabilities=selling,
            data=dict(account.data),
        )

    def offers(self, query: OfferFilter) -> List[OfferRecord]:
        self._check_available("offers")
        records = []
        for offer in sorted(self.book.values(), key=lambda o: o.offer_id):
            if offer.token != query.token:
                continue
            if query.side and offer.side != query.side:
                continue
            if query.account and offer.account != query.account:
                continue
            records.append(OfferRecord(
                offer_id=offer.offer_id,
                account=offer.account,
                token=offer.token,
                side=offer.side,
                amount=offer.amount,
                price=format_amount(offer.price),
                last_modified_time=offer.last_modified,
            ))
        return records

    def get_transaction(self, source: str, sequence: int) -> Optional[TransactionRecord]:
        self._check_available("get_transaction")
        return self._by_sequence.get((source, sequence))

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, envelope: SignedEnvelope, timeout: Optional[float] = None) -> SettlementResult:
        """
        Apply a signed transaction.
        
        Raises:
            LedgerRejection: with {"transaction": code, "operations": [...]}
        """
        plan = envelope.plan
        tx_hash = plan.plan_id

        tx_code = self._check_envelope(envelope)
        if tx_code:
            logger.debug(f"Rejected {tx_hash[:10]}...: {tx_code}")
            raise LedgerRejection({"transaction": tx_code, "operations": []}, tx_hash)

        source = self.accounts[plan.source]
        snapshot = copy.deepcopy((self.accounts, self.book, self._supply, self._next_offer_id))

        results: List[OperationResult] = []
        failure: Optional[str] = None
        for op in plan.operations:
            try:
                results.append(self._apply_operation(source.address, op))
            except _OperationFailed as exc:
                failure = exc.code
                results.append(OperationResult(code=exc.code))
                break

        if failure:
            self.accounts, self.book, self._supply, self._next_offer_id = snapshot
            source = self.accounts[plan.source]

        # Sequence and fee are consumed either way
        source.sequence = plan.sequence
        source.native -= Decimal(plan.fee) / STROOPS_PER_UNIT

        ledger = self.ledger_sequence
        self.ledger_sequence += 1
        op_codes = [r.code for r in results]
        record = TransactionRecord(
            transaction_hash=tx_hash,
            source=plan.source,
            sequence=plan.sequence,
            ledger=ledger,
            successful=failure is None,
            result_codes={
                "transaction": "tx_success" if failure is None else "tx_failed",
                "operations": op_codes,
            },
            operation_results=tuple(results),
        )
        self.history.append(record)
        self._by_sequence[(plan.source, plan.sequence)] = record

        if failure:
            logger.debug(f"Failed {tx_hash[:10]}... in ledger {ledger}: {op_codes}")
            raise LedgerRejection(dict(record.result_codes), tx_hash)

        logger.debug(f"Applied {tx_hash[:10]}... in ledger {ledger} ({len(results)} ops)")
        return SettlementResult(
            transaction_hash=tx_hash,
            ledger=ledger,
            operation_results=tuple(results),
        )

    def _check_envelope(self, envelope: SignedEnvelope) -> Optional[str]:
        plan = envelope.plan
        source = self.accounts.get(plan.source)
        if source is None:
            return "tx_no_source_account"
        if envelope.signer != plan.source:
            return "tx_bad_auth"

        now = self.ledger_time()
        if plan.time_bounds.max_time and now > plan.time_bounds.max_time:
            return "tx_too_late"
        if plan.time_bounds.min_time and now < plan.time_bounds.min_time:
            return "tx_too_early"

        if plan.sequence != source.sequence + 1:
            return "tx_bad_seq"
        if plan.fee < self.base_fee * len(plan.operations):
            return "tx_insufficient_fee"
        if source.native < Decimal(plan.fee) / STROOPS_PER_UNIT:
            return "tx_insufficient_balance"
        return None

    # =========================================================================
    # Operations
    # =========================================================================

    def _apply_operation(self, source: str, op) -> OperationResult:
        if isinstance(op, ChangeTrust):
            return self._change_trust(source, op)
        if isinstance(op, Payment):
            return self._payment(source, op)
        if isinstance(op, ManageSellOffer):
            return self._manage_sell_offer(source, op)
        if isinstance(op, ManageBuyOffer):
            return self._manage_buy_offer(source, op)
        if isinstance(op, ManageData):
            return self._manage_data(source, op)
        raise _OperationFailed("op_not_supported")

    def _change_trust(self, source: str, op: ChangeTrust) -> OperationResult:
        asset = op.asset
        if asset.is_native or asset.issuer == source:
            raise _OperationFailed("op_malformed")
        if asset.issuer not in self.accounts:
            raise _OperationFailed("op_no_issuer")

        account = self.accounts[source]
        if op.limit is not None and Decimal(op.limit) == 0:
            if account.balances.get(asset.key, ZERO) > 0:
                raise _OperationFailed("op_invalid_limit")
            account.balances.pop(asset.key, None)
        else:
            account.balances.setdefault(asset.key, ZERO)
        return OperationResult(code="op_success")

    def _payment(self, source: str, op: Payment) -> OperationResult:
        amount = _parse_amount(op.amount)
        if amount <= 0:
            raise _OperationFailed("op_malformed")
        destination = self.accounts.get(op.destination)
        if destination is None:
            raise _OperationFailed("op_no_destination")
        sender = self.accounts[source]
        asset = op.asset

        if asset.is_native:
            if sender.native - self._native_liabilities(source) < amount:
                raise _OperationFailed("op_underfunded")
            sender.native -= amount
            destination.native += amount
            return OperationResult(code="op_success")

        if source == asset.issuer and op.destination == source:
            # Issuer self-payment mints; single-unit tokens have a fixed supply
            if self._supply.get(asset.key, ZERO) > 0:
                raise _OperationFailed("op_line_full")
            self._supply[asset.key] = amount
            sender.balances[asset.key] = sender.balances.get(asset.key, ZERO) + amount
            return OperationResult(code="op_success")

        if asset.key not in sender.balances:
            raise _OperationFailed("op_src_no_trust")
        if sender.balances[asset.key] - self._selling_liabilities(source, asset) < amount:
            raise _OperationFailed("op_underfunded")
        if op.destination != asset.issuer and asset.key not in destination.balances:
            raise _OperationFailed("op_no_trust")

        sender.balances[asset.key] -= amount
        destination.balances[asset.key] = destination.balances.get(asset.key, ZERO) + amount
        return OperationResult(code="op_success")

    def _manage_sell_offer(self, source: str, op: ManageSellOffer) -> OperationResult:
        if op.selling.is_native or not op.buying.is_native:
            raise _OperationFailed("op_malformed")
        token = op.selling
        amount = _parse_amount(op.amount)
        price = _parse_amount(op.price)
        if amount < 0 or price <= 0:
            raise _OperationFailed("op_malformed")

        self._take_existing_offer(source, token, "sell", op.offer_id)
        if amount == 0:
            if not op.offer_id:
                raise _OperationFailed("op_malformed")
            return OperationResult(code="op_success")

        account = self.accounts[source]
        if token.key not in account.balances:
            raise _OperationFailed("op_sell_no_trust")
        if account.balances[token.key] - self._selling_liabilities(source, token) < amount:
            raise _OperationFailed("op_underfunded")

        candidates = [
            o for o in self.book.values()
            if o.token == token and o.side == "buy" and o.price >= price
        ]
        if any(o.account == source for o in candidates):
            raise _OperationFailed("op_cross_self")
        candidates.sort(key=lambda o: (-o.price, o.offer_id))

        remaining = amount
        claimed = []
        for offer in candidates:
            if remaining <= 0:
                break
            quantity = min(remaining, offer.amount)
            payment = offer.price * quantity
            buyer = self.accounts[offer.account]
            account.balances[token.key] -= quantity
            buyer.balances[token.key] = buyer.balances.get(token.key, ZERO) + quantity
            buyer.native -= payment
            account.native += payment
            claimed.append(self._consume(offer, quantity))
            remaining -= quantity

        return OperationResult(
            code="op_success",
            offers_claimed=tuple(claimed),
            offer_id=self._rest(source, token, "sell", remaining, price, op.offer_id),
        )

    def _manage_buy_offer(self, source: str, op: ManageBuyOffer) -> OperationResult:
        if not op.selling.is_native or op.buying.is_native:
            raise _OperationFailed("op_malformed")
        token = op.buying
        amount = _parse_amount(op.buy_amount)
        price = _parse_amount(op.price)
        if amount < 0 or price <= 0:
            raise _OperationFailed("op_malformed")

        self._take_existing_offer(source, token, "buy", op.offer_id)
        if amount == 0:
            if not op.offer_id:
                raise _OperationFailed("op_malformed")
            return OperationResult(code="op_success")

        account = self.accounts[source]
        if token.key not in account.balances and source != token.issuer:
            raise _OperationFailed("op_buy_no_trust")
        if account.native - self._native_liabilities(source) < amount * price:
            raise _OperationFailed("op_underfunded")

        candidates = [
            o for o in self.book.values()
            if o.token == token and o.side == "sell" and o.price <= price
        ]
        if any(o.account == source for o in candidates):
            raise _OperationFailed("op_cross_self")
        candidates.sort(key=lambda o: (o.price, o.offer_id))

        remaining = amount
        claimed = []
        for offer in candidates:
            if remaining <= 0:
                break
            quantity = min(remaining, offer.amount)
            payment = offer.price * quantity
            seller = self.accounts[offer.account]
            seller.balances[token.key] -= quantity
            account.balances[token.key] = account.balances.get(token.key, ZERO) + quantity
            account.native -= payment
            seller.native += payment
            claimed.append(self._consume(offer, quantity))
            remaining -= quantity

        return OperationResult(
            code="op_success",
            offers_claimed=tuple(claimed),
            offer_id=self._rest(source, token, "buy", remaining, price, op.offer_id),
        )

    def _manage_data(self, source: str, op: ManageData) -> OperationResult:
        account = self.accounts[source]
        if op.value is None:
            if op.name not in account.data:
                raise _OperationFailed("op_name_not_found")
            del account.data[op.name]
        else:
            account.data[op.name] = op.value
        return OperationResult(code="op_success")

    # =========================================================================
    # Order Book Helpers
    # =========================================================================

    def _take_existing_offer(self, source: str, token: Asset, side: str, offer_id: int) -> None:
        """Remove the offer being updated/deleted so it does not count against the source."""
        if not offer_id:
            return
        offer = self.book.get(offer_id)
        if offer is None or offer.account != source or offer.token != token or offer.side != side:
            raise _OperationFailed("op_not_found")
        del self.book[offer_id]

    def _consume(self, offer: _Offer, quantity: Decimal) -> ClaimedOffer:
        offer.amount -= quantity
        offer.last_modified = self.ledger_time()
        if offer.amount <= 0:
            del self.book[offer.offer_id]
        return ClaimedOffer(
            offer_id=offer.offer_id,
            account=offer.account,
            amount=quantity,
            price=format_amount(offer.price),
        )

    def _rest(
        self,
        source: str,
        token: Asset,
        side: str,
        remaining: Decimal,
        price: Decimal,
        offer_id: int,
    ) -> Optional[int]:
        if remaining <= 0:
            return None
        if not offer_id:
            offer_id = self._next_offer_id
            self._next_offer_id += 1
        self.book[offer_id] = _Offer(
            offer_id=offer_id,
            account=source,
            token=token,
            side=side,
            amount=remaining,
            price=price,
            last_modified=self.ledger_time(),
        )
        return offer_id

    def _native_liabilities(self, address: str) -> Decimal:
        return sum(
            (o.price * o.amount for o in self.book.values() if o.account == address and o.side == "buy"),
            ZERO,
        )

    def _selling_liabilities(self, address: str, token: Asset) -> Decimal:
        return sum(
            (o.amount for o in self.book.values()
             if o.account == address and o.side == "sell" and o.token == token),
            ZERO,
        )

    # =========================================================================
    # Utility
    # =========================================================================

    def __repr__(self) -> str:
        return (
            f"InMemoryLedger(ledger={self.ledger_sequence}, accounts={len(self.accounts)}, "
            f"offers={len(self.book)}, txs={len(self.history)})"
        )

    def stats(self) -> dict:
        return {
            "ledger": self.ledger_sequence,
            "accounts": len(self.accounts),
            "open_offers": len(self.book),
            "transactions": len(self.history),
            "failed_transactions": sum(1 for r in self.history if not r.successful),
        }


def _parse_amount(text: str) -> Decimal:
    try:
        return Decimal(text)
    except ArithmeticError:
        raise _OperationFailed("op_malformed")


# =============================================================================
# Simulated Signer
# =============================================================================


class SimulatedSigner:
    """
    Signing capability backed by an InMemoryLedger.
    
    Signs for any account in `custody` (all accounts when None). Failure
    injection for tests:
    - timeout_next(apply=True): the transaction reaches the ledger but
      the response is lost
    - timeout_next(apply=False): the transaction never reaches the ledger
    - before_submit: hook called with the plan right before submission
    """

    def __init__(self, ledger: InMemoryLedger, custody: Optional[List[str]] = None):
        self.ledger = ledger
        self.custody = set(custody) if custody is not None else None
        self.before_submit: Optional[Callable[[TransactionPlan], None]] = None
        self.submitted: List[TransactionPlan] = []
        self._timeouts: List[bool] = []

    def timeout_next(self, apply: bool = True) -> None:
        self._timeouts.append(apply)

    def sign_and_submit(self, plan: TransactionPlan, timeout: Optional[float] = None) -> SettlementResult:
        if self.custody is not None and plan.source not in self.custody:
            raise LedgerRejection({"transaction": "tx_bad_auth", "operations": []}, plan.plan_id)

        if self.before_submit is not None:
            hook, self.before_submit = self.before_submit, None
            hook(plan)

        envelope = SignedEnvelope(
            plan=plan,
            signer=plan.source,
            signature=sha256(plan.source.encode() + plan.compute_content_bytes()),
        )
        self.submitted.append(plan)

        if self._timeouts:
            apply = self._timeouts.pop(0)
            if apply:
                try:
                    self.ledger.submit(envelope, timeout=timeout)
                except LedgerRejection:
                    # Response lost either way
                    pass
            raise SubmissionTimeout(f"no response for {bytes_to_hex(envelope.signature)[:10]}...")

        return self.ledger.submit(envelope, timeout=timeout)
