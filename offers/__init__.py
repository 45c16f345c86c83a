"""Offers module for buyer-initiated offers on assets the buyer does not hold.

The offer maker deposits the full price when making an offer. The asset stays
with its owner until the owner accepts. A deposit leaves escrow exactly once:
paid to the owner on acceptance, or refunded when the offer is superseded,
rejected, or reclaimed after expiry. The terminal flags (``settled`` and
``cancelled``) guard every one of those paths.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from custody import AssetCustodian
from events import EventLog, OFFER_MADE, OFFER_ACCEPTED, OFFER_CANCELLED
from fees import FeeLedger
from ledger import (
    Ledger,
    AssetRef,
    PaymentMethod,
    NATIVE,
    StateError,
    AuthorizationError,
    ValidationError,
    normalize_asset,
    paginate,
    require_positive,
    to_address
)

logger = logging.getLogger(__name__)

# Cancel reasons
REASON_SUPERSEDED = 'superseded'
REASON_REJECTED = 'rejected by owner'
REASON_EXPIRED = 'expired'


class OfferNotFoundError(StateError):
    """Raised when an offer id does not exist."""
    pass


@dataclass
class Offer:
    """A buyer's funded offer for an asset held by someone else."""
    id: int
    asset_owner: str
    offer_maker: str
    asset: AssetRef
    price: int
    payment: PaymentMethod
    created_at: int
    expires_at: int
    name: str = ''
    cancelled: bool = False
    cancel_reason: Optional[str] = None
    settled: bool = False
    settled_at: int = 0

    @property
    def terminal(self) -> bool:
        return self.cancelled or self.settled

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'asset_owner': self.asset_owner,
            'offer_maker': self.offer_maker,
            'asset': self.asset.to_dict(),
            'price': self.price,
            'payment': self.payment.to_dict(),
            'created_at': self.created_at,
            'expires_at': self.expires_at,
            'name': self.name,
            'cancelled': self.cancelled,
            'cancel_reason': self.cancel_reason,
            'settled': self.settled,
            'settled_at': self.settled_at
        }


class OfferManager:
    """Manages offers: make, accept (with supersede), reject, reclaim."""

    def __init__(self, ledger: Ledger, custodian: AssetCustodian,
                 fees: FeeLedger, events: EventLog):
        self.ledger = ledger
        self.custodian = custodian
        self.fees = fees
        self.events = events

    def _table(self) -> Dict[int, Offer]:
        return self.ledger.store('offers')

    def _load(self, offer_id: int, update: bool = False) -> Offer:
        table = self._table()
        offer = self.ledger.touch(table, offer_id) if update else table.get(offer_id)
        if offer is None:
            raise OfferNotFoundError(f"Offer {offer_id} not found", offer_id)
        return offer

    def _load_open(self, offer_id: int) -> Offer:
        offer = self._load(offer_id, update=True)
        if offer.terminal:
            raise StateError(f"Offer {offer_id} is already closed", offer_id)
        return offer

    def _cancel(self, offer: Offer, reason: str) -> None:
        """Close an open offer and refund its deposit."""
        offer.cancelled = True
        offer.cancel_reason = reason
        self.fees.refund(offer.payment, offer.offer_maker, offer.price)
        self.events.emit(
            OFFER_CANCELLED,
            offer_id=offer.id,
            offer_maker=offer.offer_maker,
            refund=offer.price,
            reason=reason
        )

    @staticmethod
    def _check_ids(ids: Any, field: str) -> List[int]:
        if not isinstance(ids, (list, tuple)):
            raise ValidationError(f"{field} must be a list of offer ids")
        if len(set(ids)) != len(ids):
            raise ValidationError(f"{field} contains duplicate offer ids")
        return list(ids)

    async def make_offer(self, caller: str, asset_owner: str, asset: AssetRef,
                         price: int, expires_at: int, value: int = 0,
                         payment=NATIVE, name: str = '') -> Offer:
        """Make a funded offer for an asset.

        Args:
            caller: Offer maker; deposits ``price``
            asset_owner: Current holder of the asset
            asset: Asset wanted
            price: Offered price
            expires_at: Timestamp after which the offer can no longer be
                accepted and the maker can reclaim the deposit
            value: Native value attached for native offers
            payment: Native value or an allowlisted token
            name: Optional display name

        Raises:
            ValidationError: Zero price, past expiry, unsupported contract or
                payment token
            AuthorizationError: If the maker already holds the asset
            StateError: If ``asset_owner`` does not hold the asset
            PaymentError: On payment mismatch
        """
        async with self.ledger.call(caller, value) as ctx:
            require_positive(price, 'price')
            if isinstance(expires_at, bool) or not isinstance(expires_at, int) \
                    or expires_at <= ctx.timestamp:
                raise ValidationError(f"Offer expiry {expires_at!r} is not in the future")
            asset_owner = to_address(asset_owner, 'asset owner')
            asset = self.custodian.require_supported(asset)
            method = self.fees.require_payment_method(payment)
            if ctx.caller == asset_owner:
                raise AuthorizationError("Cannot make an offer on your own asset")
            if self.ledger.owner_of(asset) != asset_owner:
                raise StateError(f"{asset_owner} does not hold asset {asset}")

            self.fees.collect(ctx, method, price)
            offer = Offer(
                id=self.ledger.next_id('offers'),
                asset_owner=asset_owner,
                offer_maker=ctx.caller,
                asset=asset,
                price=price,
                payment=method,
                created_at=ctx.timestamp,
                expires_at=expires_at,
                name=name
            )
            self.ledger.assign(self._table(), offer.id, offer)
            self.events.emit(
                OFFER_MADE,
                offer_id=offer.id,
                asset_owner=asset_owner,
                offer_maker=ctx.caller,
                asset=asset.to_dict(),
                price=price,
                payment=str(method),
                expires_at=expires_at
            )
        logger.info(f"Offer {offer.id} of {price} {method} on {asset} by {offer.offer_maker}")
        return copy.deepcopy(offer)

    async def accept_offer(self, caller: str, offer_id: int,
                           supersede_ids: Sequence[int] = ()) -> Dict[str, Any]:
        """Accept an offer and cancel competing ones in the same call.

        Every superseded offer is cancelled with reason ``superseded`` and its
        maker refunded in full. Offers not listed are left untouched.

        Args:
            caller: Asset owner named in the offer
            offer_id: Offer to accept
            supersede_ids: Other open offers of the caller to cancel

        Returns:
            Dict with offer_id, buyer, owner, price, payout, fee and superseded

        Raises:
            AuthorizationError: If the caller is not the owner of every offer
            StateError: If any offer is closed, the accepted offer has expired,
                or the caller no longer holds the asset
            ValidationError: If the supersede list is malformed
            SettlementError: If the asset cannot be delivered
        """
        supersede_ids = self._check_ids(supersede_ids, 'supersede_ids')
        if offer_id in supersede_ids:
            raise ValidationError(f"Offer {offer_id} cannot supersede itself", offer_id)

        async with self.ledger.call(caller) as ctx:
            offer = self._load_open(offer_id)
            if ctx.caller != offer.asset_owner:
                raise AuthorizationError(f"Only the asset owner can accept offer {offer_id}", offer_id)
            if ctx.timestamp >= offer.expires_at:
                raise StateError(f"Offer {offer_id} has expired", offer_id)
            if self.ledger.owner_of(offer.asset) != ctx.caller:
                raise StateError(f"{ctx.caller} no longer holds asset {offer.asset}", offer_id)

            superseded = []
            for other_id in supersede_ids:
                other = self._load_open(other_id)
                if other.asset_owner != ctx.caller:
                    raise AuthorizationError(
                        f"Offer {other_id} is not addressed to {ctx.caller}", other_id
                    )
                superseded.append(other)

            with self.ledger.exclusive(('offer', offer_id)):
                offer.settled = True
                offer.settled_at = ctx.timestamp
                for other in superseded:
                    self._cancel(other, REASON_SUPERSEDED)
                payout, fee = self.fees.settle_payment(
                    offer.payment, offer.price, self.fees.offer_fee_bps, offer.asset_owner
                )
                receipt = {
                    'offer_id': offer_id,
                    'buyer': offer.offer_maker,
                    'owner': offer.asset_owner,
                    'price': offer.price,
                    'payout': payout,
                    'fee': fee,
                    'superseded': [o.id for o in superseded]
                }
                self.events.emit(OFFER_ACCEPTED, asset=offer.asset.to_dict(), **receipt)
                await self.custodian.deliver(offer.asset_owner, offer.asset, offer.offer_maker)

        logger.info(
            f"Offer {offer_id} accepted, {len(receipt['superseded'])} competing offers cancelled"
        )
        return receipt

    async def reject_offers(self, caller: str, offer_ids: Sequence[int]) -> List[int]:
        """Reject open offers addressed to the caller and refund their makers.

        All-or-nothing: one invalid id fails the whole call.

        Raises:
            AuthorizationError: If the caller is not the owner of every offer
            StateError: If any offer is already closed
        """
        offer_ids = self._check_ids(offer_ids, 'offer_ids')
        if not offer_ids:
            raise ValidationError("No offers to reject")

        async with self.ledger.call(caller) as ctx:
            for offer_id in offer_ids:
                offer = self._load_open(offer_id)
                if ctx.caller != offer.asset_owner:
                    raise AuthorizationError(
                        f"Only the asset owner can reject offer {offer_id}", offer_id
                    )
                self._cancel(offer, REASON_REJECTED)

        logger.info(f"Rejected offers {offer_ids}")
        return offer_ids

    async def reclaim_expired(self, caller: str, offer_id: int) -> int:
        """Let the maker recover the deposit of an expired, unanswered offer.

        Returns:
            The refunded amount

        Raises:
            AuthorizationError: If the caller is not the offer maker
            StateError: If the offer is closed or has not expired yet
        """
        async with self.ledger.call(caller) as ctx:
            offer = self._load_open(offer_id)
            if ctx.caller != offer.offer_maker:
                raise AuthorizationError(f"Only the offer maker can reclaim offer {offer_id}", offer_id)
            if ctx.timestamp < offer.expires_at:
                raise StateError(f"Offer {offer_id} has not expired", offer_id)
            self._cancel(offer, REASON_EXPIRED)
            refund = offer.price

        logger.info(f"Offer {offer_id} reclaimed after expiry, refunded {refund}")
        return refund

    def get_offer(self, offer_id: int) -> Offer:
        """Get a snapshot of an offer.

        Raises:
            OfferNotFoundError: If the offer does not exist
        """
        return copy.deepcopy(self._load(offer_id))

    def get_active_offers(self, limit: int = 50, offset: int = 0) -> List[Offer]:
        """Open offers that can still be accepted, in id order."""
        now = self.ledger.now()
        active = (o for o in self._table().values() if not o.terminal and now < o.expires_at)
        return [copy.deepcopy(o) for o in paginate(active, limit, offset)]

    def get_offers_for_asset(self, asset: AssetRef, include_closed: bool = False) -> List[Offer]:
        asset = normalize_asset(asset)
        return [
            copy.deepcopy(o) for o in self._table().values()
            if o.asset == asset and (include_closed or not o.terminal)
        ]

    def get_offers_by_maker(self, maker: str) -> List[Offer]:
        maker = to_address(maker, 'offer maker')
        return [copy.deepcopy(o) for o in self._table().values() if o.offer_maker == maker]

    def count(self) -> int:
        return len(self._table())

    def stats(self) -> Dict[str, Any]:
        """Offer counts by state and accepted volume per payment method."""
        counts = {'open': 0, 'accepted': 0, 'cancelled': 0}
        volume: Dict[str, int] = {}
        for offer in self._table().values():
            if offer.settled:
                counts['accepted'] += 1
                key = offer.payment.key
                volume[key] = volume.get(key, 0) + offer.price
            elif offer.cancelled:
                counts['cancelled'] += 1
            else:
                counts['open'] += 1
        return {'counts': counts, 'volume': volume}


__all__ = [
    'Offer',
    'OfferManager',
    'OfferNotFoundError',
    'REASON_SUPERSEDED',
    'REASON_REJECTED',
    'REASON_EXPIRED'
]
