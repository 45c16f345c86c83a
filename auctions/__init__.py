"""Auctions module for time-boxed auctions with a reserve price.

The auctioned asset is held in escrow from creation until the auction is
ended. Each new highest bid refunds the previous highest bidder in full before
it is recorded. Ending the auction either sells to the highest bidder (reserve
met) or returns the asset to the seller and refunds the highest bidder.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from custody import AssetCustodian
from events import EventLog, AUCTION_CREATED, BID_PLACED, AUCTION_ENDED
from fees import FeeLedger
from listings import MAX_METADATA_LENGTH
from ledger import (
    Ledger,
    AssetRef,
    PaymentMethod,
    NATIVE,
    StateError,
    AuthorizationError,
    ValidationError,
    paginate,
    require_positive
)

logger = logging.getLogger(__name__)


class AuctionNotFoundError(StateError):
    """Raised when an auction id does not exist."""
    pass


class BidTooLowError(ValidationError):
    """Raised when a bid does not beat the highest bid or the starting price."""
    pass


@dataclass
class Auction:
    """A timed auction of one held asset."""
    id: int
    seller: str
    asset: AssetRef
    starting_price: int
    reserve_price: int
    payment: PaymentMethod
    start_time: int
    end_time: int
    active: bool = True
    highest_bidder: Optional[str] = None
    highest_bid: int = 0
    metadata: str = ''
    winner: Optional[str] = None
    ended_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'seller': self.seller,
            'asset': self.asset.to_dict(),
            'starting_price': self.starting_price,
            'reserve_price': self.reserve_price,
            'payment': self.payment.to_dict(),
            'start_time': self.start_time,
            'end_time': self.end_time,
            'active': self.active,
            'highest_bidder': self.highest_bidder,
            'highest_bid': self.highest_bid,
            'metadata': self.metadata,
            'winner': self.winner,
            'ended_at': self.ended_at
        }


@dataclass
class Bid:
    """Latest bid of one bidder on one auction."""
    auction_id: int
    bidder: str
    amount: int
    timestamp: int
    refunded: bool = False


class AuctionManager:
    """Manages the auction lifecycle: create, bid, end."""

    def __init__(self, ledger: Ledger, custodian: AssetCustodian,
                 fees: FeeLedger, events: EventLog):
        self.ledger = ledger
        self.custodian = custodian
        self.fees = fees
        self.events = events

    def _table(self) -> Dict[int, Auction]:
        return self.ledger.store('auctions')

    def _bids(self, auction_id: int) -> Dict[str, Bid]:
        """Bids of one auction, journaled for changes."""
        all_bids = self.ledger.store('bids')
        bids = self.ledger.touch(all_bids, auction_id)
        if bids is None:
            bids = all_bids[auction_id] = {}
        return bids

    def _load(self, auction_id: int, update: bool = False) -> Auction:
        table = self._table()
        auction = self.ledger.touch(table, auction_id) if update else table.get(auction_id)
        if auction is None:
            raise AuctionNotFoundError(f"Auction {auction_id} not found", auction_id)
        return auction

    def _load_active(self, auction_id: int) -> Auction:
        auction = self._load(auction_id, update=True)
        if not auction.active:
            raise StateError(f"Auction {auction_id} is not active", auction_id)
        return auction

    async def create_auction(self, caller: str, asset: AssetRef, starting_price: int,
                             reserve_price: int, duration: int, payment=NATIVE,
                             metadata: str = '') -> Auction:
        """Create an auction and take the asset into escrow.

        Raises:
            ValidationError: Bad prices, duration outside the auction bounds,
                oversized metadata, unsupported contract or payment token
            SettlementError: If the caller does not hold the asset
        """
        async with self.ledger.call(caller) as ctx:
            require_positive(starting_price, 'starting price')
            require_positive(reserve_price, 'reserve price')
            if reserve_price < starting_price:
                raise ValidationError(
                    f"Reserve price {reserve_price} below starting price {starting_price}"
                )
            limits = self.fees.limits
            require_positive(duration, 'duration')
            if not limits.min_auction_duration <= duration <= limits.max_auction_duration:
                raise ValidationError(
                    f"Auction duration {duration}s outside "
                    f"[{limits.min_auction_duration}, {limits.max_auction_duration}]"
                )
            if len(metadata) > MAX_METADATA_LENGTH:
                raise ValidationError(f"Metadata longer than {MAX_METADATA_LENGTH} characters")
            method = self.fees.require_payment_method(payment)
            asset = self.custodian.require_supported(asset)

            asset = await self.custodian.hold(ctx.caller, asset)

            auction = Auction(
                id=self.ledger.next_id('auctions'),
                seller=ctx.caller,
                asset=asset,
                starting_price=starting_price,
                reserve_price=reserve_price,
                payment=method,
                start_time=ctx.timestamp,
                end_time=ctx.timestamp + duration,
                metadata=metadata
            )
            self.ledger.assign(self._table(), auction.id, auction)
            self.events.emit(
                AUCTION_CREATED,
                auction_id=auction.id,
                seller=auction.seller,
                asset=asset.to_dict(),
                starting_price=starting_price,
                reserve_price=reserve_price,
                payment=str(method),
                end_time=auction.end_time
            )
        logger.info(f"Created auction {auction.id} for {asset}, ends at {auction.end_time}")
        return copy.deepcopy(auction)

    async def place_bid(self, caller: str, auction_id: int, amount: int,
                        value: int = 0) -> Bid:
        """Place a bid, refunding the previous highest bidder first.

        Args:
            caller: Bidder address
            auction_id: Auction to bid on
            amount: Bid amount; must exceed the highest bid and reach the
                starting price
            value: Native value attached; must equal ``amount`` for native
                auctions and be zero for token auctions

        Raises:
            StateError: If the auction is inactive or past its end time
            AuthorizationError: If the seller bids
            BidTooLowError: If the bid is not high enough
            PaymentError: On payment mismatch
        """
        async with self.ledger.call(caller, value) as ctx:
            auction = self._load_active(auction_id)
            if ctx.timestamp >= auction.end_time:
                raise StateError(f"Auction {auction_id} has ended", auction_id)
            if ctx.caller == auction.seller:
                raise AuthorizationError(f"Seller cannot bid on auction {auction_id}", auction_id)
            require_positive(amount, 'bid amount')
            if amount <= auction.highest_bid:
                raise BidTooLowError(
                    f"Bid {amount} does not exceed highest bid {auction.highest_bid}", auction_id
                )
            if amount < auction.starting_price:
                raise BidTooLowError(
                    f"Bid {amount} below starting price {auction.starting_price}", auction_id
                )
            self.fees.collect(ctx, auction.payment, amount)

            with self.ledger.exclusive(('auction', auction_id)):
                bids = self._bids(auction_id)
                previous_bidder = auction.highest_bidder
                if previous_bidder is not None:
                    self.fees.refund(auction.payment, previous_bidder, auction.highest_bid)
                    bids[previous_bidder].refunded = True
                    logger.debug(
                        f"Refunded {auction.highest_bid} to outbid bidder {previous_bidder}"
                    )

                auction.highest_bidder = ctx.caller
                auction.highest_bid = amount
                bid = Bid(
                    auction_id=auction_id,
                    bidder=ctx.caller,
                    amount=amount,
                    timestamp=ctx.timestamp
                )
                bids[ctx.caller] = bid
                self.events.emit(
                    BID_PLACED,
                    auction_id=auction_id,
                    bidder=ctx.caller,
                    amount=amount,
                    previous_bidder=previous_bidder
                )

        logger.info(f"Bid of {amount} on auction {auction_id} by {bid.bidder}")
        return copy.deepcopy(bid)

    async def end_auction(self, caller: str, auction_id: int) -> Dict[str, Any]:
        """End an auction after its end time. Anyone may call.

        If there is a highest bid at or above the reserve price, the seller is
        paid and the asset goes to the highest bidder. Otherwise the asset
        returns to the seller and the highest bidder, if any, is refunded.

        The whole call rolls back if the recipient's receiver hook rejects
        the asset, so a winner (or, when unsold, a seller) that always rejects
        keeps the asset and the winning bid in escrow. The auction stays
        active and can be ended once the recipient accepts.

        Returns:
            Dict with auction_id, winner (None when unsold), amount, payout,
            fee and reserve_met

        Raises:
            StateError: If the auction is inactive or has not reached its end
            SettlementError: If the recipient rejects the asset
        """
        async with self.ledger.call(caller) as ctx:
            auction = self._load_active(auction_id)
            if ctx.timestamp < auction.end_time:
                raise StateError(
                    f"Auction {auction_id} cannot end before {auction.end_time}", auction_id
                )

            with self.ledger.exclusive(('auction', auction_id)):
                auction.active = False
                auction.ended_at = ctx.timestamp
                bidder = auction.highest_bidder
                amount = auction.highest_bid
                reserve_met = bidder is not None and amount >= auction.reserve_price

                if reserve_met:
                    payout, fee = self.fees.settle_payment(
                        auction.payment, amount, self.fees.platform_fee_bps, auction.seller
                    )
                    auction.winner = bidder
                    recipient = bidder
                else:
                    payout, fee = 0, 0
                    if bidder is not None:
                        self.fees.refund(auction.payment, bidder, amount)
                        self._bids(auction_id)[bidder].refunded = True
                    recipient = auction.seller

                result = {
                    'auction_id': auction_id,
                    'winner': auction.winner,
                    'amount': amount,
                    'payout': payout,
                    'fee': fee,
                    'reserve_met': reserve_met
                }
                self.events.emit(AUCTION_ENDED, seller=auction.seller, **result)
                await self.custodian.release(auction.asset, recipient)

        if result['reserve_met']:
            logger.info(f"Auction {auction_id} won by {result['winner']} for {result['amount']}")
        else:
            logger.info(f"Auction {auction_id} ended without a sale")
        return result

    def get_auction(self, auction_id: int) -> Auction:
        """Get a snapshot of an auction.

        Raises:
            AuctionNotFoundError: If the auction does not exist
        """
        return copy.deepcopy(self._load(auction_id))

    def get_bids(self, auction_id: int) -> List[Bid]:
        self._load(auction_id)
        return [copy.deepcopy(b) for b in self.ledger.store('bids').get(auction_id, {}).values()]

    def get_active_auctions(self, limit: int = 50, offset: int = 0) -> List[Auction]:
        """Auctions not yet ended, in id order."""
        active = (a for a in self._table().values() if a.active)
        return [copy.deepcopy(a) for a in paginate(active, limit, offset)]

    def count(self) -> int:
        return len(self._table())

    def stats(self) -> Dict[str, Any]:
        """Auction counts by state and winning-bid volume per payment method."""
        counts = {'active': 0, 'sold': 0, 'unsold': 0}
        volume: Dict[str, int] = {}
        for auction in self._table().values():
            if auction.active:
                counts['active'] += 1
            elif auction.winner is not None:
                counts['sold'] += 1
                key = auction.payment.key
                volume[key] = volume.get(key, 0) + auction.highest_bid
            else:
                counts['unsold'] += 1
        return {'counts': counts, 'volume': volume}


__all__ = [
    'Auction',
    'Bid',
    'AuctionManager',
    'AuctionNotFoundError',
    'BidTooLowError'
]
