"""Tests for the auctions module."""

import pytest
import pytest_asyncio

from conftest import BUYER, BIDDER, SELLER, STRANGER, ESCROW, TOKEN, FUNDS, asset
from events import AUCTION_CREATED, BID_PLACED, AUCTION_ENDED
from ledger import (
    NATIVE,
    Token,
    AuthorizationError,
    PaymentError,
    SettlementError,
    StateError,
    ValidationError
)
from auctions import AuctionNotFoundError, BidTooLowError

HOUR = 3600


@pytest_asyncio.fixture
async def auction(market):
    """Asset 2 auctioned from 10 with a reserve of 50 for one hour."""
    return await market.auctions.create_auction(SELLER, asset(2), 10, 50, HOUR)


@pytest.mark.asyncio
async def test_create_auction(market, ledger, auction):
    assert auction.id == 1
    assert auction.end_time == auction.start_time + HOUR
    assert auction.highest_bidder is None
    assert ledger.owner_of(asset(2)) == ESCROW
    assert market.events.last(AUCTION_CREATED).data['reserve_price'] == 50


@pytest.mark.asyncio
async def test_create_auction_validation(market):
    auctions = market.auctions
    with pytest.raises(ValidationError):
        await auctions.create_auction(SELLER, asset(3), 0, 50, HOUR)
    with pytest.raises(ValidationError):
        await auctions.create_auction(SELLER, asset(3), 60, 50, HOUR)
    with pytest.raises(ValidationError):
        await auctions.create_auction(SELLER, asset(3), 10, 50, HOUR - 1)
    with pytest.raises(ValidationError):
        await auctions.create_auction(SELLER, asset(3), 10, 50, 7 * 24 * HOUR + 1)
    assert auctions.count() == 0


@pytest.mark.asyncio
async def test_auction_sold_above_reserve(market, ledger, clock, auction):
    """Bids 10, 20, 15 (rejected), 60; the seller receives 59 and the fee is 1."""
    auctions = market.auctions
    await auctions.place_bid(BUYER, auction.id, 10, value=10)
    await auctions.place_bid(BIDDER, auction.id, 20, value=20)
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS

    with pytest.raises(BidTooLowError):
        await auctions.place_bid(BUYER, auction.id, 15, value=15)

    await auctions.place_bid(BUYER, auction.id, 60, value=60)
    assert ledger.balance_of(NATIVE, BIDDER) == FUNDS
    assert market.events.last(BID_PLACED).data['previous_bidder'] == BIDDER

    clock.advance(HOUR)
    result = await auctions.end_auction(STRANGER, auction.id)

    assert result == {
        'auction_id': auction.id,
        'winner': BUYER,
        'amount': 60,
        'payout': 59,
        'fee': 1,
        'reserve_met': True
    }
    assert ledger.owner_of(asset(2)) == BUYER
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS + 59
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 60
    assert market.fee_balance() == 1
    assert market.events.last(AUCTION_ENDED).data['winner'] == BUYER


@pytest.mark.asyncio
async def test_auction_below_reserve_returns_asset(market, ledger, clock, auction):
    await market.auctions.place_bid(BUYER, auction.id, 30, value=30)
    clock.advance(HOUR)

    result = await market.auctions.end_auction(SELLER, auction.id)

    assert result['winner'] is None
    assert not result['reserve_met']
    assert (result['payout'], result['fee']) == (0, 0)
    assert ledger.owner_of(asset(2)) == SELLER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS
    assert market.fee_balance() == 0
    assert all(bid.refunded for bid in market.auctions.get_bids(auction.id))


@pytest.mark.asyncio
async def test_auction_without_bids(market, ledger, clock, auction):
    clock.advance(HOUR)
    result = await market.auctions.end_auction(STRANGER, auction.id)
    assert result['winner'] is None
    assert ledger.owner_of(asset(2)) == SELLER


@pytest.mark.asyncio
async def test_end_auction_timing_and_idempotence(market, ledger, clock, auction):
    with pytest.raises(StateError):
        await market.auctions.end_auction(SELLER, auction.id)

    clock.advance(HOUR)
    await market.auctions.end_auction(SELLER, auction.id)
    with pytest.raises(StateError):
        await market.auctions.end_auction(SELLER, auction.id)
    assert ledger.owner_of(asset(2)) == SELLER


@pytest.mark.asyncio
async def test_bid_rejections(market, ledger, clock, auction):
    auctions = market.auctions
    with pytest.raises(AuthorizationError):
        await auctions.place_bid(SELLER, auction.id, 20, value=20)
    with pytest.raises(BidTooLowError):
        await auctions.place_bid(BUYER, auction.id, 9, value=9)
    with pytest.raises(PaymentError):
        await auctions.place_bid(BUYER, auction.id, 20, value=19)
    with pytest.raises(AuctionNotFoundError):
        await auctions.place_bid(BUYER, 42, 20, value=20)

    clock.advance(HOUR)
    with pytest.raises(StateError):
        await auctions.place_bid(BUYER, auction.id, 20, value=20)
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS


@pytest.mark.asyncio
async def test_token_auction(market, ledger, clock):
    auction = await market.auctions.create_auction(SELLER, asset(3), 100, 100, HOUR, payment=TOKEN)
    await market.auctions.place_bid(BUYER, auction.id, 100)
    await market.auctions.place_bid(BIDDER, auction.id, 200)
    assert ledger.balance_of(Token(TOKEN), BUYER) == FUNDS

    clock.advance(HOUR)
    result = await market.auctions.end_auction(STRANGER, auction.id)
    assert result['winner'] == BIDDER
    assert ledger.balance_of(Token(TOKEN), SELLER) == FUNDS + 198
    assert market.fee_balance(TOKEN) == 2


@pytest.mark.asyncio
async def test_auction_queries(market, clock, auction):
    await market.auctions.place_bid(BUYER, auction.id, 10, value=10)
    assert [a.id for a in market.auctions.get_active_auctions()] == [auction.id]
    bids = market.auctions.get_bids(auction.id)
    assert [(b.bidder, b.amount) for b in bids] == [(BUYER, 10)]

    clock.advance(HOUR)
    await market.auctions.end_auction(SELLER, auction.id)
    assert market.auctions.get_active_auctions() == []
    assert market.auctions.get_auction(auction.id).ended_at == clock.now


@pytest.mark.asyncio
async def test_winner_reentering_end_sees_finished_auction(market, ledger, clock, auction):
    seen = []

    async def end_again(operator, sender, received):
        seen.append(ledger.balance_of(NATIVE, SELLER))
        for attempt in (
            market.auctions.end_auction(BUYER, auction.id),
            market.auctions.place_bid(BUYER, auction.id, 100, value=100),
        ):
            try:
                await attempt
            except StateError as e:
                seen.append(type(e))
        return True

    await market.auctions.place_bid(BUYER, auction.id, 60, value=60)
    ledger.set_receiver(BUYER, end_again)
    clock.advance(HOUR)
    await market.auctions.end_auction(STRANGER, auction.id)

    assert seen == [FUNDS + 59, StateError, StateError]
    assert ledger.owner_of(asset(2)) == BUYER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 60
    assert market.fee_balance() == 1


@pytest.mark.asyncio
async def test_seller_reentering_unsold_end_sees_refund(market, ledger, clock, auction):
    seen = []

    async def end_again(operator, sender, received):
        seen.append(ledger.balance_of(NATIVE, BUYER))
        try:
            await market.auctions.end_auction(SELLER, auction.id)
        except StateError as e:
            seen.append(type(e))
        return True

    await market.auctions.place_bid(BUYER, auction.id, 30, value=30)
    ledger.set_receiver(SELLER, end_again)
    clock.advance(HOUR)
    await market.auctions.end_auction(STRANGER, auction.id)

    assert seen == [FUNDS, StateError]
    assert ledger.owner_of(asset(2)) == SELLER
    assert ledger.balance_of(NATIVE, ESCROW) == 0


@pytest.mark.asyncio
async def test_create_auction_limits_metadata(market):
    with pytest.raises(ValidationError):
        await market.auctions.create_auction(SELLER, asset(3), 10, 50, HOUR, metadata='x' * 10001)
    auction = await market.auctions.create_auction(
        SELLER, asset(3), 10, 50, HOUR, metadata='x' * 10000
    )
    assert len(auction.metadata) == 10000


@pytest.mark.asyncio
async def test_active_auctions_are_paged(market):
    for token_id in (1, 2, 3):
        await market.auctions.create_auction(SELLER, asset(token_id), 10, 10, HOUR)

    assert [a.id for a in market.auctions.get_active_auctions(limit=2)] == [1, 2]
    assert [a.id for a in market.auctions.get_active_auctions(limit=2, offset=2)] == [3]
    with pytest.raises(ValidationError):
        market.auctions.get_active_auctions(limit=-1)


@pytest.mark.asyncio
async def test_rejecting_winner_keeps_auction_open(market, ledger, clock, auction):
    async def reject(operator, sender, received):
        return False

    await market.auctions.place_bid(BUYER, auction.id, 60, value=60)
    ledger.set_receiver(BUYER, reject)
    clock.advance(HOUR)

    with pytest.raises(SettlementError):
        await market.auctions.end_auction(STRANGER, auction.id)
    assert market.auctions.get_auction(auction.id).active
    assert ledger.owner_of(asset(2)) == ESCROW
    assert ledger.balance_of(NATIVE, ESCROW) == 60
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS

    ledger.set_receiver(BUYER, None)
    result = await market.auctions.end_auction(STRANGER, auction.id)
    assert result['winner'] == BUYER
    assert ledger.owner_of(asset(2)) == BUYER
