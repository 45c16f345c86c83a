"""Signature settlement module for off-ledger authorized trades.

A trusted signer authorizes a trade of one asset from a seller to a buyer at a
price. The buyer redeems the authorization with a single call that pays the
seller, accrues the platform fee and moves the asset directly from the seller.
Nothing is escrowed beforehand; the seller's ownership is checked when the
asset moves, which also stops an authorization from being redeemed twice.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from custody import AssetCustodian
from events import EventLog, SOLD, SIGNER_UPDATED
from fees import FeeLedger
from ledger import (
    Ledger,
    CallContext,
    AssetRef,
    BulkEntryResult,
    NATIVE,
    AuthorizationError,
    PaymentError,
    ValidationError,
    require_positive,
    to_address,
    validate_model
)
from .models import SettlementEntry
from .signatures import (
    EthSignatureVerifier,
    authorization_digest,
    sign_authorization
)

logger = logging.getLogger(__name__)


class SignatureVerifier(Protocol):
    """Capability recovering the signer of a trade authorization."""

    def recover_signer(self, seller: str, buyer: str, asset: AssetRef,
                       price: int, signature: Union[str, bytes]) -> str:
        ...


class SignatureSettlement:
    """Executes signature-authorized trades, singly or in bulk."""

    def __init__(self, ledger: Ledger, custodian: AssetCustodian, fees: FeeLedger,
                 events: EventLog, signer: Optional[str] = None,
                 verifier: Optional[SignatureVerifier] = None):
        """Initialize signature settlement.

        Args:
            ledger: Underlying ledger
            custodian: Asset custodian moving the traded assets
            fees: Fee ledger routing payments
            events: Event log to emit to
            signer: Address whose signatures authorize trades
            verifier: Signature verification capability
        """
        self.ledger = ledger
        self.custodian = custodian
        self.fees = fees
        self.events = events
        self.verifier = verifier or EthSignatureVerifier()
        self._default_signer = to_address(signer, 'signer address') if signer else None

    def _new_config(self) -> Dict[str, Any]:
        return {'signer': self._default_signer}

    def _config(self) -> Dict[str, Any]:
        return self.ledger.store('settlement', self._new_config)

    @property
    def signer(self) -> Optional[str]:
        return self._config()['signer']

    async def set_signer(self, caller: str, signer: str) -> str:
        """Replace the trusted signer. Admin only."""
        async with self.ledger.call(caller):
            self.fees.require_admin(caller)
            signer = to_address(signer, 'signer address')
            config = self.ledger.update_store('settlement', self._new_config)
            previous = config['signer']
            config['signer'] = signer
            self.events.emit(SIGNER_UPDATED, previous_signer=previous, signer=signer)
        logger.info(f"Trusted signer changed from {previous} to {signer}")
        return signer

    def _verify(self, seller: str, buyer: str, asset: AssetRef, price: int,
                signature: Union[str, bytes]) -> None:
        signer = self.signer
        if signer is None:
            raise AuthorizationError("Marketplace signer not configured")
        recovered = self.verifier.recover_signer(seller, buyer, asset, price, signature)
        if to_address(recovered, 'recovered signer') != signer:
            raise AuthorizationError(
                f"Invalid signature for {asset} from {seller} to {buyer} at {price}"
            )

    async def _settle(self, ctx: CallContext, asset: AssetRef, seller: str,
                      price: int, signature: Union[str, bytes]) -> Dict[str, Any]:
        """Verify, pay and deliver one trade. The price is already in escrow."""
        require_positive(price, 'price')
        seller = to_address(seller, 'seller')
        asset = self.custodian.require_supported(asset)
        buyer = ctx.caller
        if seller == buyer:
            raise AuthorizationError("Seller and buyer must differ")
        self._verify(seller, buyer, asset, price, signature)

        with self.ledger.exclusive(('asset', asset)):
            payout, fee = self.fees.settle_payment(
                NATIVE, price, self.fees.platform_fee_bps, seller
            )
            receipt = {
                'seller': seller,
                'buyer': buyer,
                'price': price,
                'payout': payout,
                'fee': fee
            }
            self.events.emit(SOLD, asset=asset.to_dict(), offledger=True, **receipt)
            await self.custodian.deliver(seller, asset, buyer)
        return receipt

    async def settle(self, caller: str, asset: AssetRef, seller: str, price: int,
                     signature: Union[str, bytes], value: int = 0) -> Dict[str, Any]:
        """Buy an asset with a signer-issued authorization.

        Args:
            caller: Buyer address; must be the buyer bound by the signature
            asset: Traded asset
            seller: Current holder of the asset
            price: Authorized price
            signature: Signer's signature over the trade
            value: Native value attached; must equal ``price``

        Returns:
            Dict with seller, buyer, price, payout and fee

        Raises:
            AuthorizationError: If the signature does not verify
            PaymentError: If the attached value differs from the price
            SettlementError: If the seller no longer holds the asset
        """
        async with self.ledger.call(caller, value) as ctx:
            if ctx.value != price:
                raise PaymentError(
                    f"Payment mismatch: expected {price}, received {ctx.value}",
                    expected=price,
                    received=ctx.value
                )
            receipt = await self._settle(ctx, asset, seller, price, signature)
        logger.info(f"Off-ledger sale of {asset} from {receipt['seller']} to {receipt['buyer']}")
        return receipt

    async def settle_bulk(self, caller: str, entries: Sequence[Any],
                          signatures: Sequence[Union[str, bytes]],
                          value: int = 0) -> List[BulkEntryResult]:
        """Redeem several authorizations in one call.

        The attached value must equal the sum of all prices. Each trade is then
        its own atomic unit: a trade that fails keeps earlier trades in place,
        is reported in its result, and its price is refunded to the buyer at
        the end of the call.

        Args:
            caller: Buyer address
            entries: SettlementEntry models or dicts with contract, token_id,
                seller and price
            signatures: One signature per entry
            value: Native value attached

        Returns:
            One BulkEntryResult per entry

        Raises:
            ValidationError: Empty or mismatched arrays, malformed entries
            PaymentError: If the attached value differs from the total price
        """
        if not isinstance(entries, (list, tuple)) or not entries:
            raise ValidationError("Bulk settlement requires a non-empty list of entries")
        if not isinstance(signatures, (list, tuple)) or len(signatures) != len(entries):
            raise ValidationError(
                f"Expected {len(entries)} signatures, got "
                f"{len(signatures) if isinstance(signatures, (list, tuple)) else signatures!r}"
            )
        if len(entries) > self.fees.limits.max_bulk_entries:
            raise ValidationError(
                f"Bulk settlement accepts at most {self.fees.limits.max_bulk_entries} entries"
            )
        parsed = [validate_model(SettlementEntry, entry) for entry in entries]
        total = sum(entry.price for entry in parsed)

        async with self.ledger.call(caller, value) as ctx:
            if ctx.value != total:
                raise PaymentError(
                    f"Payment mismatch: expected {total}, received {ctx.value}",
                    expected=total,
                    received=ctx.value
                )
            results = []
            unspent = 0
            for index, (entry, signature) in enumerate(zip(parsed, signatures)):

                async def settle_entry(entry=entry, signature=signature) -> None:
                    await self._settle(
                        ctx,
                        AssetRef(entry.contract, entry.token_id),
                        entry.seller,
                        entry.price,
                        signature
                    )

                result = await self.ledger.bulk_entry(index, settle_entry)
                if not result.ok:
                    unspent += entry.price
                results.append(result)

            if unspent:
                self.fees.refund(NATIVE, ctx.caller, unspent)

        settled = sum(1 for r in results if r.ok)
        logger.info(f"Bulk settlement by {caller}: {settled}/{len(results)} trades settled")
        return results

    def stats(self) -> Dict[str, Any]:
        """Number and native volume of settled off-ledger trades."""
        sales = [e for e in self.events.events(SOLD) if e.data.get('offledger')]
        return {
            'counts': {'sold': len(sales)},
            'volume': {NATIVE.key: sum(e.data['price'] for e in sales)} if sales else {}
        }


__all__ = [
    'SignatureSettlement',
    'SignatureVerifier',
    'SettlementEntry',
    'EthSignatureVerifier',
    'authorization_digest',
    'sign_authorization'
]
