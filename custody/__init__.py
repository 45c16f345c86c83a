"""Asset custody module.

The custodian is the only component that moves assets. ``hold`` takes an asset
into escrow and ``release`` hands it out again. ``release`` runs recipient code,
so every caller must finish its own state changes and payments first.
"""

import logging
from typing import Dict, Iterable, Optional, Set

from ledger import (
    Ledger,
    AssetRef,
    StateError,
    ValidationError,
    to_address,
    normalize_asset
)

logger = logging.getLogger(__name__)


class AssetCustodian:
    """Holds assets between deposit and release."""

    def __init__(self, ledger: Ledger, token_contracts: Iterable[str] = ()):
        """Initialize the custodian.

        Args:
            ledger: Underlying ledger
            token_contracts: Asset contracts the marketplace trades
        """
        self.ledger = ledger
        self._default_contracts = {to_address(c, 'token contract') for c in token_contracts}

    def _custody(self) -> Dict[AssetRef, str]:
        # asset -> depositor
        return self.ledger.store('custody')

    def _new_contracts(self) -> Set[str]:
        return set(self._default_contracts)

    def _contracts(self) -> Set[str]:
        return self.ledger.store('token_contracts', self._new_contracts)

    def supported_contracts(self) -> Set[str]:
        return set(self._contracts())

    def allow_contract(self, contract: str, allowed: bool) -> str:
        """Add or remove an asset contract. Admin checks belong to the caller."""
        contract = to_address(contract, 'token contract')
        contracts = self.ledger.update_store('token_contracts', self._new_contracts)
        if allowed:
            contracts.add(contract)
        else:
            contracts.discard(contract)
        return contract

    def require_supported(self, asset: AssetRef) -> AssetRef:
        """Normalize an asset and check its contract is traded here.

        Raises:
            ValidationError: If the contract is not on the allowlist
        """
        asset = normalize_asset(asset)
        if asset.contract not in self._contracts():
            raise ValidationError(f"Token contract {asset.contract} is not supported")
        return asset

    def is_held(self, asset: AssetRef) -> bool:
        asset = normalize_asset(asset)
        return asset in self._custody() and self.ledger.owner_of(asset) == self.ledger.escrow

    def depositor(self, asset: AssetRef) -> Optional[str]:
        return self._custody().get(normalize_asset(asset))

    async def hold(self, holder: str, asset: AssetRef) -> AssetRef:
        """Take custody of an asset from its current holder.

        Raises:
            SettlementError: If ``holder`` does not hold the asset
        """
        asset = normalize_asset(asset)
        holder = to_address(holder, 'holder')
        await self.ledger.transfer_asset(holder, self.ledger.escrow, asset, operator=self.ledger.escrow)
        self.ledger.assign(self._custody(), asset, holder)
        logger.info(f"Holding asset {asset} for {holder}")
        return asset

    async def release(self, asset: AssetRef, recipient: str) -> None:
        """Transfer a held asset out of custody.

        Raises:
            StateError: If the asset is not held
            SettlementError: If the recipient rejects the asset
        """
        asset = normalize_asset(asset)
        recipient = to_address(recipient, 'recipient')
        if not self.is_held(asset):
            raise StateError(f"Asset {asset} is not held in escrow")
        self.ledger.remove(self._custody(), asset)
        logger.info(f"Releasing asset {asset} to {recipient}")
        await self.ledger.transfer_asset(self.ledger.escrow, recipient, asset, operator=self.ledger.escrow)

    async def deliver(self, holder: str, asset: AssetRef, recipient: str) -> None:
        """Move an asset from its holder to a recipient within one call."""
        asset = await self.hold(holder, asset)
        await self.release(asset, recipient)
