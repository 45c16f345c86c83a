"""Tests for the event log."""

import pytest

from conftest import ADMIN, SELLER, BUYER, DAY, asset
from events import LISTING_CREATED, ITEM_SOLD, FEE_UPDATED
from ledger import AuthorizationError


@pytest.mark.asyncio
async def test_events_are_sequenced_and_filterable(market, clock):
    listing = await market.listings.create_listing(SELLER, asset(1), 100, DAY)
    clock.advance(10)
    await market.listings.buy_listing(BUYER, listing.id, value=100)

    events = market.events.events()
    assert [e.seq for e in events] == list(range(1, len(events) + 1))
    assert [e.name for e in market.events.events(ITEM_SOLD)] == [ITEM_SOLD]

    created = market.events.last(LISTING_CREATED)
    sold = market.events.last(ITEM_SOLD)
    assert created.data['listing_id'] == listing.id
    assert sold.timestamp == created.timestamp + 10
    assert market.events.events(since=created.seq)[0].seq == created.seq + 1


@pytest.mark.asyncio
async def test_failed_call_emits_nothing(market):
    before = len(market.events)
    with pytest.raises(AuthorizationError):
        await market.set_fee(SELLER, 200)
    assert len(market.events) == before
    assert market.events.last(FEE_UPDATED) is None

    await market.set_fee(ADMIN, 200)
    assert len(market.events) == before + 1


def test_event_to_dict(market):
    event = market.events.emit('Custom', value=1)
    assert event.to_dict() == {
        'seq': event.seq,
        'name': 'Custom',
        'timestamp': market.ledger.now(),
        'data': {'value': 1}
    }
