"""Listings module for fixed-price marketplace listings.

This module provides functionality for:
- Creating listings (single and bulk) with the asset held in escrow
- Updating price and duration
- Cancelling listings and returning the asset
- Buying listings with fee-split payment routing
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from custody import AssetCustodian
from events import (
    EventLog,
    LISTING_CREATED,
    LISTING_UPDATED,
    LISTING_CANCELLED,
    ITEM_SOLD
)
from fees import FeeLedger
from ledger import (
    Ledger,
    CallContext,
    AssetRef,
    BulkEntryResult,
    PaymentMethod,
    NATIVE,
    StateError,
    AuthorizationError,
    ValidationError,
    paginate,
    require_positive,
    to_address,
    validate_model
)
from .models import ListingEntry

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_METADATA_LENGTH = 10000


class ListingNotFoundError(StateError):
    """Raised when a listing id does not exist."""
    pass


@dataclass
class Listing:
    """A seller's fixed-price offer to sell a held asset."""
    id: int
    seller: str
    asset: AssetRef
    price: int
    payment: PaymentMethod
    created_at: int
    expires_at: int
    active: bool = True
    metadata: str = ''
    name: str = ''
    cancelled: bool = False
    buyer: Optional[str] = None
    sold_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'seller': self.seller,
            'asset': self.asset.to_dict(),
            'price': self.price,
            'payment': self.payment.to_dict(),
            'created_at': self.created_at,
            'expires_at': self.expires_at,
            'active': self.active,
            'metadata': self.metadata,
            'name': self.name,
            'cancelled': self.cancelled,
            'buyer': self.buyer,
            'sold_at': self.sold_at
        }


class ListingManager:
    """Manager class for the fixed-price listing lifecycle."""

    def __init__(self, ledger: Ledger, custodian: AssetCustodian,
                 fees: FeeLedger, events: EventLog):
        self.ledger = ledger
        self.custodian = custodian
        self.fees = fees
        self.events = events

    def _table(self) -> Dict[int, Listing]:
        return self.ledger.store('listings')

    def _load(self, listing_id: int, update: bool = False) -> Listing:
        table = self._table()
        listing = self.ledger.touch(table, listing_id) if update else table.get(listing_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found", listing_id)
        return listing

    def _load_active(self, listing_id: int) -> Listing:
        listing = self._load(listing_id, update=True)
        if not listing.active:
            raise StateError(f"Listing {listing_id} is not active", listing_id)
        return listing

    def _check_duration(self, duration) -> int:
        limits = self.fees.limits
        require_positive(duration, 'duration')
        if not limits.min_listing_duration <= duration <= limits.max_listing_duration:
            raise ValidationError(
                f"Listing duration {duration}s outside "
                f"[{limits.min_listing_duration}, {limits.max_listing_duration}]"
            )
        return duration

    async def _create(self, ctx: CallContext, asset: AssetRef, price: int,
                      duration: int, payment: PaymentMethod,
                      metadata: str, name: str) -> Listing:
        require_positive(price, 'price')
        self._check_duration(duration)
        if len(metadata) > MAX_METADATA_LENGTH:
            raise ValidationError(f"Metadata longer than {MAX_METADATA_LENGTH} characters")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Listing name longer than {MAX_NAME_LENGTH} characters")
        asset = self.custodian.require_supported(asset)

        asset = await self.custodian.hold(ctx.caller, asset)

        listing = Listing(
            id=self.ledger.next_id('listings'),
            seller=ctx.caller,
            asset=asset,
            price=price,
            payment=payment,
            created_at=ctx.timestamp,
            expires_at=ctx.timestamp + duration,
            metadata=metadata,
            name=name
        )
        self.ledger.assign(self._table(), listing.id, listing)
        self.events.emit(
            LISTING_CREATED,
            listing_id=listing.id,
            seller=listing.seller,
            asset=asset.to_dict(),
            price=price,
            payment=str(payment),
            expires_at=listing.expires_at
        )
        return listing

    async def create_listing(self, caller: str, asset: AssetRef, price: int,
                             duration: int, payment=NATIVE, metadata: str = '',
                             name: str = '') -> Listing:
        """Create a listing and take the asset into escrow.

        Args:
            caller: Seller address; must hold the asset
            asset: Asset to sell
            price: Price in the smallest unit of the payment method
            duration: Seconds until the listing expires
            payment: Native value or an allowlisted token
            metadata: Free-form listing metadata
            name: Optional display name

        Returns:
            The created Listing

        Raises:
            ValidationError: Zero price, duration out of bounds, unsupported
                contract or payment token
            SettlementError: If the caller does not hold the asset
        """
        async with self.ledger.call(caller) as ctx:
            method = self.fees.require_payment_method(payment)
            listing = await self._create(ctx, asset, price, duration, method, metadata, name)
        logger.info(f"Created listing {listing.id} for {listing.asset} at {price} {method}")
        return copy.deepcopy(listing)

    async def create_bulk_listing(self, caller: str, contract: str,
                                  entries: Sequence[Any],
                                  payment=NATIVE) -> List[BulkEntryResult]:
        """Create several listings on one contract in a single call.

        Each entry is its own atomic unit: a failing entry is reported in its
        result and does not undo the entries before it. Callers must inspect
        every result to detect partial completion.

        Args:
            caller: Seller address
            contract: Asset contract shared by all entries
            entries: ListingEntry models or dicts with token_id, price,
                duration and optional name and metadata
            payment: Payment method shared by all entries

        Returns:
            One BulkEntryResult per entry, with the listing id on success
        """
        if not isinstance(entries, (list, tuple)) or not entries:
            raise ValidationError("Bulk listing requires a non-empty list of entries")
        if len(entries) > self.fees.limits.max_bulk_entries:
            raise ValidationError(
                f"Bulk listing accepts at most {self.fees.limits.max_bulk_entries} entries"
            )

        async with self.ledger.call(caller) as ctx:
            contract = to_address(contract, 'token contract')
            method = self.fees.require_payment_method(payment)
            results = []
            for index, raw in enumerate(entries):

                async def create_entry(raw=raw) -> int:
                    entry = validate_model(ListingEntry, raw)
                    listing = await self._create(
                        ctx,
                        AssetRef(contract, entry.token_id),
                        entry.price,
                        entry.duration,
                        method,
                        entry.metadata,
                        entry.name
                    )
                    return listing.id

                results.append(await self.ledger.bulk_entry(index, create_entry))

        created = sum(1 for r in results if r.ok)
        logger.info(f"Bulk listing by {caller}: {created}/{len(results)} entries created")
        return results

    async def update_listing(self, caller: str, listing_id: int, price: int,
                             duration: int) -> Listing:
        """Change price and reset expiry relative to now.

        Raises:
            AuthorizationError: If the caller is not the seller
            StateError: If the listing is not active
        """
        async with self.ledger.call(caller) as ctx:
            listing = self._load_active(listing_id)
            if ctx.caller != listing.seller:
                raise AuthorizationError(f"Only the seller can update listing {listing_id}", listing_id)
            require_positive(price, 'price')
            self._check_duration(duration)
            listing.price = price
            listing.expires_at = ctx.timestamp + duration
            self.events.emit(
                LISTING_UPDATED,
                listing_id=listing_id,
                price=price,
                expires_at=listing.expires_at
            )
        logger.info(f"Updated listing {listing_id}: price {price}, expires {listing.expires_at}")
        return copy.deepcopy(listing)

    async def cancel_listing(self, caller: str, listing_id: int) -> None:
        """Cancel a listing and return the asset to the seller.

        Raises:
            AuthorizationError: If the caller is not the seller
            StateError: If the listing is not active
        """
        async with self.ledger.call(caller) as ctx:
            listing = self._load_active(listing_id)
            if ctx.caller != listing.seller:
                raise AuthorizationError(f"Only the seller can cancel listing {listing_id}", listing_id)
            with self.ledger.exclusive(('listing', listing_id)):
                listing.active = False
                listing.cancelled = True
                self.events.emit(LISTING_CANCELLED, listing_id=listing_id, seller=listing.seller)
                await self.custodian.release(listing.asset, listing.seller)
        logger.info(f"Cancelled listing {listing_id}")

    async def buy_listing(self, caller: str, listing_id: int, value: int = 0) -> Dict[str, Any]:
        """Buy a listed asset for exactly its price.

        The listing is marked inactive and the payment routed before the asset
        is released, so a call re-entering from the buyer's receiver hook sees
        a finished sale.

        Args:
            caller: Buyer address
            listing_id: Listing to buy
            value: Native value attached; must equal the price for native
                listings and be zero for token listings

        Returns:
            Dict with listing_id, buyer, seller, price, payout and fee

        Raises:
            StateError: If the listing is inactive or expired
            AuthorizationError: If the seller tries to buy
            PaymentError: On payment mismatch
            SettlementError: If the buyer cannot receive the asset
        """
        async with self.ledger.call(caller, value) as ctx:
            listing = self._load_active(listing_id)
            if ctx.timestamp >= listing.expires_at:
                raise StateError(f"Listing {listing_id} has expired", listing_id)
            if ctx.caller == listing.seller:
                raise AuthorizationError(f"Seller cannot buy own listing {listing_id}", listing_id)
            self.fees.collect(ctx, listing.payment, listing.price)

            with self.ledger.exclusive(('listing', listing_id)):
                listing.active = False
                listing.buyer = ctx.caller
                listing.sold_at = ctx.timestamp
                payout, fee = self.fees.settle_payment(
                    listing.payment, listing.price, self.fees.platform_fee_bps, listing.seller
                )
                receipt = {
                    'listing_id': listing_id,
                    'buyer': ctx.caller,
                    'seller': listing.seller,
                    'price': listing.price,
                    'payout': payout,
                    'fee': fee
                }
                self.events.emit(ITEM_SOLD, asset=listing.asset.to_dict(),
                                 payment=str(listing.payment), **receipt)
                await self.custodian.release(listing.asset, ctx.caller)

        logger.info(f"Listing {listing_id} sold to {receipt['buyer']} for {receipt['price']}")
        return receipt

    def get_listing(self, listing_id: int) -> Listing:
        """Get a snapshot of a listing.

        Raises:
            ListingNotFoundError: If the listing does not exist
        """
        return copy.deepcopy(self._load(listing_id))

    def get_active_listings(self, limit: int = 50, offset: int = 0) -> List[Listing]:
        """Active, unexpired listings in id order, one page at a time."""
        now = self.ledger.now()
        active = (l for l in self._table().values() if l.active and now < l.expires_at)
        return [copy.deepcopy(l) for l in paginate(active, limit, offset)]

    def get_listings_by_seller(self, seller: str) -> List[Listing]:
        seller = to_address(seller, 'seller')
        return [copy.deepcopy(l) for l in self._table().values() if l.seller == seller]

    def stats(self) -> Dict[str, Any]:
        """Listing counts by state and sales volume per payment method."""
        now = self.ledger.now()
        counts = {'active': 0, 'expired': 0, 'sold': 0, 'cancelled': 0}
        volume: Dict[str, int] = {}
        for listing in self._table().values():
            if listing.buyer is not None:
                counts['sold'] += 1
                key = listing.payment.key
                volume[key] = volume.get(key, 0) + listing.price
            elif listing.cancelled:
                counts['cancelled'] += 1
            elif now < listing.expires_at:
                counts['active'] += 1
            else:
                counts['expired'] += 1
        return {'counts': counts, 'volume': volume}

    def count(self) -> int:
        return len(self._table())


__all__ = [
    'Listing',
    'ListingEntry',
    'ListingManager',
    'ListingNotFoundError'
]
