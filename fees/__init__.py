"""Fee module for the marketplace fee schedule and platform revenue.

This module handles:
- Fee rates in basis points (platform fee and offer fee)
- Seller/platform payment splits
- Collecting payments into escrow, refunds and payouts
- Accumulated platform revenue per payment token and admin withdrawal
- The payment token allowlist
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from events import (
    EventLog,
    FEE_UPDATED,
    OFFER_FEE_UPDATED,
    FEES_WITHDRAWN,
    PAYMENT_TOKEN_UPDATED
)
from ledger import (
    Ledger,
    CallContext,
    PaymentMethod,
    NATIVE,
    AuthorizationError,
    PaymentError,
    ValidationError,
    to_address,
    payment_method,
    require_positive
)

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


@dataclass(frozen=True)
class LimitsConfig:
    """Bounds applied to every create call and fee change."""
    min_listing_duration: int = 86400       # 1 day
    max_listing_duration: int = 31536000    # 365 days
    min_auction_duration: int = 3600        # 1 hour
    max_auction_duration: int = 604800      # 7 days
    max_fee_bps: int = 1000                 # 10%
    max_bulk_entries: int = 50


@dataclass
class FeeAccount:
    """Fee rates and accumulated platform revenue."""
    platform_fee_bps: int = 100
    offer_fee_bps: int = 100
    accumulated: Dict[str, int] = field(default_factory=dict)
    payment_tokens: Set[str] = field(default_factory=set)


def compute_split(amount: int, fee_bps: int) -> Tuple[int, int]:
    """Split an amount into (payout, fee).

    The payout rounds down and the platform keeps the remainder, so
    ``payout + fee == amount`` always holds and 60 at 100 bps pays 59 and 1.
    """
    if amount < 0:
        raise ValidationError(f"Cannot split negative amount {amount}")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValidationError(f"Invalid fee rate {fee_bps} bps")
    payout = amount * (BPS_DENOMINATOR - fee_bps) // BPS_DENOMINATOR
    return payout, amount - payout


class FeeLedger:
    """Fee schedule, payment routing and platform revenue."""

    def __init__(self, ledger: Ledger, events: EventLog, admin: str,
                 limits: Optional[LimitsConfig] = None,
                 platform_fee_bps: int = 100, offer_fee_bps: int = 100,
                 payment_tokens=()):
        """Initialize the fee ledger.

        Args:
            ledger: Underlying ledger
            events: Event log to emit to
            admin: Address holding the administrative capability
            limits: Duration and fee bounds
            platform_fee_bps: Fee on listings, auctions and signature trades
            offer_fee_bps: Fee on accepted offers
            payment_tokens: Fungible tokens accepted besides native value
        """
        self.ledger = ledger
        self.events = events
        self.admin = to_address(admin, 'admin address')
        self.limits = limits or LimitsConfig()
        self._check_fee(platform_fee_bps)
        self._check_fee(offer_fee_bps)
        tokens = {payment_method(token).key for token in payment_tokens}
        tokens.discard(NATIVE.key)
        self._defaults = (platform_fee_bps, offer_fee_bps, tokens)

    def _new_account(self) -> FeeAccount:
        platform_fee_bps, offer_fee_bps, tokens = self._defaults
        return FeeAccount(
            platform_fee_bps=platform_fee_bps,
            offer_fee_bps=offer_fee_bps,
            payment_tokens=set(tokens)
        )

    def account(self) -> FeeAccount:
        return self.ledger.store('fees', self._new_account)

    def _update_account(self) -> FeeAccount:
        return self.ledger.update_store('fees', self._new_account)

    @property
    def platform_fee_bps(self) -> int:
        return self.account().platform_fee_bps

    @property
    def offer_fee_bps(self) -> int:
        return self.account().offer_fee_bps

    def balance(self, method: PaymentMethod = NATIVE) -> int:
        return self.account().accumulated.get(method.key, 0)

    def require_admin(self, caller: str) -> None:
        if to_address(caller, 'caller') != self.admin:
            raise AuthorizationError(f"{caller} is not the marketplace admin")

    def _check_fee(self, bps) -> int:
        if isinstance(bps, bool) or not isinstance(bps, int) or bps < 0:
            raise ValidationError(f"Fee must be a non-negative integer, got {bps!r}")
        if bps > self.limits.max_fee_bps:
            raise ValidationError(
                f"Fee {bps} bps exceeds maximum of {self.limits.max_fee_bps} bps"
            )
        return bps

    # ------------------------------------------------------------------
    # Payment tokens
    # ------------------------------------------------------------------

    def supported_payment_tokens(self) -> Set[str]:
        """Fungible tokens accepted besides native value."""
        return set(self.account().payment_tokens)

    def is_supported(self, method: PaymentMethod) -> bool:
        return method.is_native or method.key in self.account().payment_tokens

    def require_payment_method(self, method) -> PaymentMethod:
        """Parse a payment method and check it is accepted.

        Raises:
            ValidationError: If the token is not on the allowlist
        """
        method = payment_method(method)
        if not self.is_supported(method):
            raise ValidationError(f"Payment token {method} is not supported")
        return method

    # ------------------------------------------------------------------
    # Payment routing (used inside an open call)
    # ------------------------------------------------------------------

    def collect(self, ctx: CallContext, method: PaymentMethod, amount: int) -> None:
        """Take exactly ``amount`` from the caller into escrow.

        Native payments must arrive as the call's attached value. Token
        payments are pulled from the caller and must not carry native value.

        Raises:
            PaymentError: On amount mismatch or insufficient token balance
        """
        if method.is_native:
            if ctx.value != amount:
                raise PaymentError(
                    f"Payment mismatch: expected {amount}, received {ctx.value}",
                    expected=amount,
                    received=ctx.value
                )
            return
        if ctx.value:
            raise PaymentError(
                f"Native value {ctx.value} sent for a {method} payment",
                expected=0,
                received=ctx.value
            )
        self.ledger.transfer_payment(method, ctx.caller, self.ledger.escrow, amount)

    def refund(self, method: PaymentMethod, recipient: str, amount: int) -> None:
        """Return escrowed funds to an account."""
        self.ledger.transfer_payment(method, self.ledger.escrow, recipient, amount)
        logger.debug(f"Refunded {amount} {method} to {recipient}")

    def accrue(self, method: PaymentMethod, fee: int) -> None:
        """Add collected fees to platform revenue. The funds stay in escrow."""
        if fee < 0:
            raise ValidationError(f"Negative fee {fee}")
        accumulated = self._update_account().accumulated
        accumulated[method.key] = accumulated.get(method.key, 0) + fee

    def settle_payment(self, method: PaymentMethod, amount: int, fee_bps: int,
                       seller: str) -> Tuple[int, int]:
        """Split an escrowed amount, pay the seller and accrue the fee."""
        payout, fee = compute_split(amount, fee_bps)
        self.ledger.transfer_payment(method, self.ledger.escrow, seller, payout)
        self.accrue(method, fee)
        logger.info(f"Paid {payout} {method} to {seller}, fee {fee}")
        return payout, fee

    # ------------------------------------------------------------------
    # Admin calls
    # ------------------------------------------------------------------

    async def set_fee(self, caller: str, bps: int) -> int:
        """Set the platform fee used by listings, auctions and signature trades."""
        async with self.ledger.call(caller):
            self.require_admin(caller)
            account = self._update_account()
            previous = account.platform_fee_bps
            account.platform_fee_bps = self._check_fee(bps)
            self.events.emit(FEE_UPDATED, previous_bps=previous, fee_bps=bps)
        logger.info(f"Platform fee changed from {previous} to {bps} bps")
        return bps

    async def set_offer_fee(self, caller: str, bps: int) -> int:
        """Set the fee charged on accepted offers."""
        async with self.ledger.call(caller):
            self.require_admin(caller)
            account = self._update_account()
            previous = account.offer_fee_bps
            account.offer_fee_bps = self._check_fee(bps)
            self.events.emit(OFFER_FEE_UPDATED, previous_bps=previous, fee_bps=bps)
        logger.info(f"Offer fee changed from {previous} to {bps} bps")
        return bps

    async def withdraw(self, caller: str, token=None, amount: int = 0,
                       recipient: Optional[str] = None) -> int:
        """Withdraw accumulated platform revenue.

        Raises:
            AuthorizationError: If the caller is not the admin
            PaymentError: If ``amount`` exceeds the accumulated balance
        """
        async with self.ledger.call(caller) as ctx:
            self.require_admin(ctx.caller)
            method = payment_method(token)
            require_positive(amount, 'amount')
            recipient = to_address(recipient or ctx.caller, 'recipient')
            accumulated = self._update_account().accumulated
            available = accumulated.get(method.key, 0)
            if amount > available:
                raise PaymentError(
                    f"Withdrawal of {amount} {method} exceeds fee balance {available}",
                    expected=available,
                    received=amount
                )
            accumulated[method.key] = available - amount
            self.ledger.transfer_payment(method, self.ledger.escrow, recipient, amount)
            self.events.emit(FEES_WITHDRAWN, token=str(method), amount=amount, recipient=recipient)
        logger.info(f"Withdrew {amount} {method} of fees to {recipient}")
        return amount

    async def set_payment_token(self, caller: str, token: str, allowed: bool) -> None:
        """Add or remove a fungible token from the payment allowlist."""
        async with self.ledger.call(caller):
            self.require_admin(caller)
            method = payment_method(token)
            if method.is_native:
                raise ValidationError("Native payment is always accepted")
            tokens = self._update_account().payment_tokens
            if allowed:
                tokens.add(method.key)
            else:
                tokens.discard(method.key)
            self.events.emit(PAYMENT_TOKEN_UPDATED, token=method.key, allowed=bool(allowed))
        logger.info(f"Payment token {method} {'enabled' if allowed else 'disabled'}")
