"""
Transaction Assembler - marketplace intents to ledger operation plans.

Conceptual Background:
---------------------
Every marketplace action is one atomic ledger transaction built from a
small set of primitives (trustlines, payments, offers, annotations).
The assembler is a pure function of (intent, account state, ledger
time): it validates the intent, runs pre-flight checks against the
account snapshot and returns an unsigned TransactionPlan. Signing and
submission happen elsewhere.

Operation Sequences:
-------------------
Issue:       [nft_<C>] + nft_<C>_issued + mint 1 unit to the issuer
List:        [delete standing offer | sell offer] + annotations
Bid:         [trustline] + buy offer (qty 1) + bid timestamp
Buy:         [trustline] + payment to escrow + buy offer (qty 1)
AcceptBid:   sell offer (qty 1, bid price) + clear listing marker + outcome
Cancel:      [delete sell offer] + clear listing + outcome
Reopen:      [delete resting offer] + clear outcome + listing marker

An accepted bid keeps the listing terms (price_, auction_) on the
account: the sale is only confirmed once the owner no longer holds
the unit, and a Reopen restores the listing from those terms.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import List

from galerie.core.config import MarketConfig
from galerie.core.errors import (
    ConfigurationError,
    InputValidationError,
    InsufficientBalance,
    InvalidSchedule,
    ResourceStateError,
    ValidationFailed,
)
from galerie.core.ledger.client import AccountState
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
from galerie.core.market import annotations as keys
from galerie.core.market.intents import (
    AcceptBidIntent,
    BidIntent,
    BuyIntent,
    CancelIntent,
    IssueIntent,
    ListIntent,
    MarketplaceIntent,
    ReopenIntent,
)
from galerie.core.market.models import AuctionStatus, ListingKind, Token
from galerie.utils.logger import get_logger
from galerie.utils.validation import (
    fits_data_entry,
    normalize_asset_code,
    normalize_price,
    validate_address,
    validate_end_time,
)

logger = get_logger("market.assembler")

ONE_UNIT = "1"


class TransactionAssembler:
    """
    Builds TransactionPlans for marketplace intents.
    
    Args:
        config: Marketplace configuration (fees, validity window,
            escrow account, reserve margin)
    """

    def __init__(self, config: MarketConfig):
        self.config = config
        self.native = Asset.native(config.native_code)
        self._builders = {
            IssueIntent: self._build_issue,
            ListIntent: self._build_list,
            BidIntent: self._build_bid,
            BuyIntent: self._build_buy,
            AcceptBidIntent: self._build_accept_bid,
            CancelIntent: self._build_cancel,
            ReopenIntent: self._build_reopen,
        }

    def build(self, intent: MarketplaceIntent, account: AccountState, now: int) -> TransactionPlan:
        """
        Validate an intent and assemble its plan.
        
        Args:
            intent: Marketplace intent with raw inputs
            account: Current state of the acting account
            now: Ledger time (epoch seconds)
            
        Returns:
            Unsigned plan with sequence = account.sequence + 1
            
        Raises:
            ValidationFailed: Input rejected before any operation is built
            ResourceStateError: Pre-flight check against the account failed
            ConfigurationError: Required configuration missing
        """
        builder = self._builders.get(type(intent))
        if builder is None:
            raise TypeError(f"Unsupported intent: {type(intent).__name__}")

        intent = self.normalize(intent, now)
        if account.address != intent.actor:
            raise ValueError(
                f"Account {account.address[:8]}... cannot act for {intent.actor[:8]}... ({intent.label})"
            )

        operations = builder(intent, account, now)
        plan = TransactionPlan(
            source=account.address,
            sequence=account.sequence + 1,
            fee=self.config.base_fee * len(operations),
            time_bounds=TimeBounds(min_time=0, max_time=now + self.config.tx_timeout),
            operations=tuple(operations),
            intent=intent.label,
        )
        logger.debug(f"Assembled {plan}: {', '.join(plan.operation_types())}")
        return plan

    # =========================================================================
    # Validation
    # =========================================================================

    def normalize(self, intent: MarketplaceIntent, now: int) -> MarketplaceIntent:
        """Return a copy of the intent with every input normalized."""
        try:
            token = self._normalize_token(intent.token)

            if isinstance(intent, IssueIntent):
                if not isinstance(intent.metadata_ref, str) or not intent.metadata_ref.strip():
                    raise InputValidationError("metadata_ref", "metadata pointer is required")
                return replace(intent, token=token)

            if isinstance(intent, ListIntent):
                return self._normalize_listing(intent, token, now)

            if isinstance(intent, BidIntent):
                return replace(
                    intent,
                    token=token,
                    bidder=validate_address(intent.bidder, "bidder"),
                    amount=normalize_price(intent.amount, "amount"),
                )

            if isinstance(intent, BuyIntent):
                return replace(
                    intent,
                    token=token,
                    buyer=validate_address(intent.buyer, "buyer"),
                    price=normalize_price(intent.price),
                )

            if isinstance(intent, AcceptBidIntent):
                owner = validate_address(intent.owner, "owner")
                bid = intent.bid
                validate_address(bid.bidder, "bidder")
                normalize_price(bid.price, "amount")
                if self._normalize_token(bid.token) != token:
                    raise InputValidationError("bid", "bid is for a different token")
                if bid.bidder == owner:
                    raise InputValidationError("bid", "owner cannot accept their own bid")
                return replace(intent, token=token, owner=owner)

            if isinstance(intent, (CancelIntent, ReopenIntent)):
                return replace(intent, token=token, owner=validate_address(intent.owner, "owner"))

        except InputValidationError as e:
            raise ValidationFailed(intent.label, e) from e

        raise TypeError(f"Unsupported intent: {type(intent).__name__}")

    def normalize_token(self, token: Token, label: str) -> Token:
        """Normalized token, raising ValidationFailed for `label`."""
        try:
            return self._normalize_token(token)
        except InputValidationError as e:
            raise ValidationFailed(label, e) from e

    def _normalize_token(self, token: Token) -> Token:
        return Token(
            code=normalize_asset_code(token.code, self.config.native_code),
            issuer=validate_address(token.issuer, "issuer"),
        )

    def _normalize_listing(self, intent: ListIntent, token: Token, now: int) -> ListIntent:
        seller = validate_address(intent.seller, "seller")
        try:
            kind = ListingKind(intent.kind)
        except ValueError:
            raise InputValidationError("kind", f"unknown listing kind {intent.kind!r}")
        price = normalize_price(intent.price)

        start_time, end_time = None, None
        if kind == ListingKind.TIMED_AUCTION:
            start_time = intent.start_time if intent.start_time is not None else now
            end_time = validate_end_time(intent.end_time, start_time, now)
        elif intent.end_time is not None:
            raise InvalidSchedule("end time only applies to timed auctions")

        return replace(
            intent,
            kind=kind,
            token=token,
            seller=seller,
            price=price,
            start_time=start_time,
            end_time=end_time,
        )

    # =========================================================================
    # Pre-flight Checks
    # =========================================================================

    def _require_holding(self, account: AccountState, token: Token) -> None:
        if account.balance_of(token.as_asset()) < 1:
            raise ResourceStateError(
                f"{account.address[:8]}... does not hold {token}",
                code="token_not_held",
            )

    def _require_native(self, account: AccountState, amount: Decimal, released: Decimal = Decimal("0")) -> None:
        needed = amount + self.config.reserve_margin
        available = account.available_native + released
        if available < needed:
            raise InsufficientBalance(
                f"Insufficient {self.native.code}: available {available}, "
                f"need {needed} (incl. reserve margin {self.config.reserve_margin})",
                code="op_underfunded",
            )

    def _clear(self, account: AccountState, *names: str) -> List[ManageData]:
        """Delete annotations that exist; deleting a missing key fails on the ledger."""
        return [ManageData(name) for name in names if name in account.data]

    # =========================================================================
    # Builders
    # =========================================================================

    def _build_issue(self, intent: IssueIntent, account: AccountState, now: int) -> list:
        code = intent.token.code
        if keys.issued_key(code) in account.data:
            raise ResourceStateError(f"{intent.token} is already issued", code="already_issued")

        operations = []
        if fits_data_entry(intent.metadata_ref):
            operations.append(ManageData(keys.metadata_key(code), intent.metadata_ref))
        else:
            logger.info(f"Metadata pointer for {code} exceeds the data slot, kept off-ledger")
        operations.append(ManageData(keys.issued_key(code), keys.ISSUED_FLAG))
        operations.append(Payment(destination=intent.token.issuer, asset=intent.token.as_asset(), amount=ONE_UNIT))
        return operations

    def _build_list(self, intent: ListIntent, account: AccountState, now: int) -> list:
        code = intent.token.code
        asset = intent.token.as_asset()
        self._require_holding(account, intent.token)

        operations: list = []
        if intent.kind == ListingKind.FIXED_PRICE:
            operations.append(ManageSellOffer(
                selling=asset, buying=self.native, amount=ONE_UNIT, price=intent.price, offer_id=intent.offer_id,
            ))
        elif intent.offer_id:
            # Bid listings do not rest an ask; drop the superseded one
            operations.append(ManageSellOffer(
                selling=asset, buying=self.native, amount="0", price=ONE_UNIT, offer_id=intent.offer_id,
            ))

        operations += self._clear(account, keys.outcome_key(code), keys.winner_key(code))

        if intent.metadata_ref and fits_data_entry(intent.metadata_ref):
            operations.append(ManageData(keys.listing_meta_key(code), intent.metadata_ref))

        if intent.kind == ListingKind.FIXED_PRICE:
            operations += self._clear(account, *keys.listing_keys(code))
        else:
            operations.append(ManageData(keys.listing_key(code), intent.kind.value))
            operations.append(ManageData(keys.price_key(code), intent.price))
            if intent.kind == ListingKind.TIMED_AUCTION:
                operations.append(ManageData(
                    keys.auction_key(code), keys.encode_schedule(intent.start_time, intent.end_time),
                ))
            else:
                operations += self._clear(account, keys.auction_key(code))
        return operations

    def _build_bid(self, intent: BidIntent, account: AccountState, now: int) -> list:
        amount = Decimal(intent.amount)
        self._require_native(account, amount, released=Decimal(intent.offer_amount or 0))

        asset = intent.token.as_asset()
        operations: list = []
        if not account.has_trustline(asset):
            operations.append(ChangeTrust(asset=asset))
        operations.append(ManageBuyOffer(
            selling=self.native, buying=asset, buy_amount=ONE_UNIT, price=intent.amount, offer_id=intent.offer_id,
        ))
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        operations.append(ManageData(keys.bid_key(intent.token.code, intent.bidder), stamp))
        return operations

    def _build_buy(self, intent: BuyIntent, account: AccountState, now: int) -> list:
        escrow = self.config.escrow_account
        if not escrow:
            raise ConfigurationError("escrow_account is not configured")
        try:
            validate_address(escrow, "escrow_account")
        except InputValidationError as e:
            raise ConfigurationError(f"escrow_account is invalid: {e.reason}") from e

        price = Decimal(intent.price)
        # Escrow payment and the crossing buy offer are both funded up front
        self._require_native(account, price * 2)

        asset = intent.token.as_asset()
        operations: list = []
        if not account.has_trustline(asset):
            operations.append(ChangeTrust(asset=asset))
        operations.append(Payment(destination=escrow, asset=self.native, amount=intent.price))
        operations.append(ManageBuyOffer(
            selling=self.native, buying=asset, buy_amount=ONE_UNIT, price=intent.price,
        ))
        return operations

    def _build_accept_bid(self, intent: AcceptBidIntent, account: AccountState, now: int) -> list:
        code = intent.token.code
        self._require_holding(account, intent.token)
        price = intent.bid.price

        operations: list = [ManageSellOffer(
            selling=intent.token.as_asset(),
            buying=self.native,
            amount=ONE_UNIT,
            price=price,
            offer_id=intent.offer_id,
        )]
        operations += self._clear(account, keys.listing_key(code))
        operations.append(ManageData(keys.outcome_key(code), keys.encode_outcome(AuctionStatus.COMPLETED, price)))
        operations.append(ManageData(keys.winner_key(code), intent.bid.bidder))
        return operations

    def _build_cancel(self, intent: CancelIntent, account: AccountState, now: int) -> list:
        code = intent.token.code
        operations: list = []
        if intent.offer_id:
            operations.append(ManageSellOffer(
                selling=intent.token.as_asset(),
                buying=self.native,
                amount="0",
                price=ONE_UNIT,
                offer_id=intent.offer_id,
            ))
        operations += self._clear(account, *keys.listing_keys(code))
        operations.append(ManageData(keys.outcome_key(code), keys.encode_outcome(AuctionStatus.CANCELLED)))
        operations += self._clear(account, keys.winner_key(code))
        return operations

    def _build_reopen(self, intent: ReopenIntent, account: AccountState, now: int) -> list:
        code = intent.token.code
        marker = keys.decode_outcome(account.data_value(keys.outcome_key(code)))
        if marker is None or marker[0] != AuctionStatus.COMPLETED:
            raise ResourceStateError(f"No accepted bid on {intent.token} to undo", code="nothing_to_reopen")
        self._require_holding(account, intent.token)

        operations: list = []
        if intent.offer_id:
            operations.append(ManageSellOffer(
                selling=intent.token.as_asset(),
                buying=self.native,
                amount="0",
                price=ONE_UNIT,
                offer_id=intent.offer_id,
            ))
        operations += self._clear(account, keys.outcome_key(code), keys.winner_key(code))
        if keys.auction_key(code) in account.data:
            operations.append(ManageData(keys.listing_key(code), ListingKind.TIMED_AUCTION.value))
        elif keys.price_key(code) in account.data:
            operations.append(ManageData(keys.listing_key(code), ListingKind.OPEN_BID.value))
        return operations
