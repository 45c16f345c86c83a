"""Marketplace module wiring the escrow engine together.

This module provides:
- Construction of every component from validated settings
- The administrative surface (fees, revenue, signer, allowlists)
- Aggregate statistics across listings, auctions, offers and signature trades
- Flushing the event log to the database journal
"""

import logging
from typing import Any, Callable, Dict, Optional

from auctions import AuctionManager
from custody import AssetCustodian
from events import EventLog, TOKEN_CONTRACT_UPDATED
from fees import FeeLedger, LimitsConfig
from ledger import Ledger, MarketplaceError, NATIVE, payment_method
from listings import ListingManager
from offers import OfferManager
from settlement import SignatureSettlement, SignatureVerifier

logger = logging.getLogger(__name__)


class Marketplace:
    """Facade over the marketplace components sharing one ledger."""

    def __init__(self, ledger: Ledger, admin: str, limits: Optional[LimitsConfig] = None,
                 platform_fee_bps: int = 100, offer_fee_bps: int = 100,
                 payment_tokens=(), token_contracts=(), signer: Optional[str] = None,
                 verifier: Optional[SignatureVerifier] = None,
                 log_id: Optional[str] = None):
        """Initialize the marketplace.

        Args:
            ledger: Underlying ledger
            admin: Address holding the administrative capability
            limits: Duration and fee bounds
            platform_fee_bps: Fee on listings, auctions and signature trades
            offer_fee_bps: Fee on accepted offers
            payment_tokens: Fungible tokens accepted besides native value
            token_contracts: Asset contracts traded on the marketplace
            signer: Trusted signer for off-ledger trades
            verifier: Signature verification capability
            log_id: Event log id in the database journal; a new one when omitted
        """
        self.ledger = ledger
        self.events = EventLog(ledger, log_id)
        self.custodian = AssetCustodian(ledger, token_contracts)
        self.fees = FeeLedger(
            ledger,
            self.events,
            admin,
            limits=limits,
            platform_fee_bps=platform_fee_bps,
            offer_fee_bps=offer_fee_bps,
            payment_tokens=payment_tokens
        )
        self.listings = ListingManager(ledger, self.custodian, self.fees, self.events)
        self.auctions = AuctionManager(ledger, self.custodian, self.fees, self.events)
        self.offers = OfferManager(ledger, self.custodian, self.fees, self.events)
        self.settlement = SignatureSettlement(
            ledger, self.custodian, self.fees, self.events,
            signer=signer, verifier=verifier
        )

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], ledger: Optional[Ledger] = None,
                      verifier: Optional[SignatureVerifier] = None,
                      clock: Optional[Callable[[], int]] = None) -> 'Marketplace':
        """Build a marketplace from validated settings (see ``config.get_settings``)."""
        if ledger is None:
            ledger = Ledger(settings['escrow_address'], clock=clock)
        limits = LimitsConfig(
            min_listing_duration=settings['min_listing_duration'],
            max_listing_duration=settings['max_listing_duration'],
            min_auction_duration=settings['min_auction_duration'],
            max_auction_duration=settings['max_auction_duration'],
            max_fee_bps=settings['max_fee_bps'],
            max_bulk_entries=settings['max_bulk_entries']
        )
        market = cls(
            ledger,
            settings['admin_address'],
            limits=limits,
            platform_fee_bps=settings['platform_fee_bps'],
            offer_fee_bps=settings['offer_fee_bps'],
            payment_tokens=settings['payment_tokens'],
            token_contracts=settings['token_contracts'],
            signer=settings.get('signer_address'),
            verifier=verifier
        )
        logger.info(
            f"Marketplace ready: escrow {ledger.escrow}, admin {market.fees.admin}, "
            f"{len(settings['token_contracts'])} token contracts"
        )
        return market

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def _admin(self, action: str, operation, *args, **kwargs):
        try:
            return await operation(*args, **kwargs)
        except MarketplaceError as e:
            logger.error(f"Admin {action} failed: {e}")
            raise

    async def set_fee(self, caller: str, bps: int) -> int:
        return await self._admin('set_fee', self.fees.set_fee, caller, bps)

    async def set_offer_fee(self, caller: str, bps: int) -> int:
        return await self._admin('set_offer_fee', self.fees.set_offer_fee, caller, bps)

    async def withdraw_fees(self, caller: str, token=None, amount: int = 0,
                            recipient: Optional[str] = None) -> int:
        """Withdraw accumulated fees of one payment method to ``recipient``."""
        return await self._admin(
            'withdraw_fees', self.fees.withdraw, caller,
            token=token, amount=amount, recipient=recipient
        )

    async def set_signer(self, caller: str, signer: str) -> str:
        return await self._admin('set_signer', self.settlement.set_signer, caller, signer)

    async def set_payment_token(self, caller: str, token: str, allowed: bool) -> None:
        await self._admin('set_payment_token', self.fees.set_payment_token, caller, token, allowed)

    async def set_token_contract(self, caller: str, contract: str, allowed: bool) -> str:
        """Add or remove an asset contract from the trading allowlist.

        Existing listings, auctions and offers on a removed contract stay
        valid; only new ones are refused.
        """
        async def update() -> str:
            async with self.ledger.call(caller):
                self.fees.require_admin(caller)
                address = self.custodian.allow_contract(contract, allowed)
                self.events.emit(TOKEN_CONTRACT_UPDATED, contract=address, allowed=bool(allowed))
            logger.info(f"Token contract {address} {'enabled' if allowed else 'disabled'}")
            return address

        return await self._admin('set_token_contract', update)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Aggregate marketplace statistics.

        Returns:
            Dict with per-component counts, total sales, sales volume per
            payment method and accumulated fees per payment method
        """
        sections = {
            'listings': self.listings.stats(),
            'auctions': self.auctions.stats(),
            'offers': self.offers.stats(),
            'signature_sales': self.settlement.stats()
        }
        volume: Dict[str, int] = {}
        for section in sections.values():
            for key, amount in section['volume'].items():
                volume[key] = volume.get(key, 0) + amount

        total_sales = (
            sections['listings']['counts']['sold']
            + sections['auctions']['counts']['sold']
            + sections['offers']['counts']['accepted']
            + sections['signature_sales']['counts']['sold']
        )
        return {
            'listings': sections['listings']['counts'],
            'auctions': sections['auctions']['counts'],
            'offers': sections['offers']['counts'],
            'signature_sales': sections['signature_sales']['counts']['sold'],
            'total_sales': total_sales,
            'volume': volume,
            'fees': dict(self.fees.account().accumulated),
            'platform_fee_bps': self.fees.platform_fee_bps,
            'offer_fee_bps': self.fees.offer_fee_bps,
            'events': len(self.events)
        }

    def fee_balance(self, token=None) -> int:
        return self.fees.balance(payment_method(token) if token else NATIVE)

    async def persist_events(self, store=None) -> int:
        """Flush new events to the database journal.

        Args:
            store: EventStore to write to; one on the shared pool when omitted

        Returns:
            Number of events written
        """
        if store is None:
            from database.events import EventStore
            store = EventStore()
        return await store.flush(self.events)


__all__ = ['Marketplace']
