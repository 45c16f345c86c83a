"""Event log module.

Append-only record of every lifecycle transition. Events live in the ledger
state, so the events of a rolled-back call disappear with the rest of its
changes. Off-ledger indexers read them through ``events()`` or through the
database event store.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Event names
LISTING_CREATED = 'ListingCreated'
LISTING_UPDATED = 'ListingUpdated'
LISTING_CANCELLED = 'ListingCancelled'
ITEM_SOLD = 'ItemSold'
AUCTION_CREATED = 'AuctionCreated'
BID_PLACED = 'BidPlaced'
AUCTION_ENDED = 'AuctionEnded'
OFFER_MADE = 'OfferMade'
OFFER_ACCEPTED = 'OfferAccepted'
OFFER_CANCELLED = 'OfferCancelled'
SOLD = 'Sold'
FEE_UPDATED = 'FeeUpdated'
OFFER_FEE_UPDATED = 'OfferFeeUpdated'
FEES_WITHDRAWN = 'FeesWithdrawn'
SIGNER_UPDATED = 'SignerUpdated'
PAYMENT_TOKEN_UPDATED = 'PaymentTokenUpdated'
TOKEN_CONTRACT_UPDATED = 'TokenContractUpdated'


@dataclass(frozen=True)
class MarketplaceEvent:
    """A single immutable event record."""
    seq: int
    name: str
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'name': self.name,
            'timestamp': self.timestamp,
            'data': dict(self.data)
        }


class EventLog:
    """Append-only event log stored in the ledger state.

    Sequence numbers start at 1 in every log. ``log_id`` tells logs apart in
    the database journal, so a restarted marketplace gets a fresh id.
    """

    def __init__(self, ledger, log_id: Optional[str] = None):
        self.ledger = ledger
        self.log_id = log_id or uuid.uuid4().hex

    def _records(self) -> List[MarketplaceEvent]:
        return self.ledger.store('events', list)

    def emit(self, name: str, **data: Any) -> MarketplaceEvent:
        """Append an event stamped with the current ledger time."""
        records = self._records()
        event = MarketplaceEvent(
            seq=len(records) + 1,
            name=name,
            timestamp=self.ledger.now(),
            data=data
        )
        self.ledger.append(records, event)
        logger.debug(f"Event #{event.seq} {name}: {data}")
        return event

    def events(self, name: Optional[str] = None, since: int = 0) -> List[MarketplaceEvent]:
        """Events with ``seq > since``, optionally filtered by name."""
        return [
            e for e in self._records()
            if e.seq > since and (name is None or e.name == name)
        ]

    def last(self, name: Optional[str] = None) -> Optional[MarketplaceEvent]:
        matching = self.events(name)
        return matching[-1] if matching else None

    def __len__(self) -> int:
        return len(self._records())
