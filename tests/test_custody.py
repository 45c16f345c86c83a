"""Tests for the asset custodian."""

import pytest

from conftest import BUYER, SELLER, ESCROW, NFT, UNLISTED_NFT, asset
from ledger import SettlementError, StateError, ValidationError


@pytest.mark.asyncio
async def test_hold_and_release(market, ledger):
    custodian = market.custodian

    await custodian.hold(SELLER, asset(1))
    assert ledger.owner_of(asset(1)) == ESCROW
    assert custodian.is_held(asset(1))
    assert custodian.depositor(asset(1)) == SELLER

    await custodian.release(asset(1), BUYER)
    assert ledger.owner_of(asset(1)) == BUYER
    assert not custodian.is_held(asset(1))
    assert custodian.depositor(asset(1)) is None


@pytest.mark.asyncio
async def test_hold_requires_holder(market):
    with pytest.raises(SettlementError):
        await market.custodian.hold(BUYER, asset(1))


@pytest.mark.asyncio
async def test_release_requires_custody(market):
    with pytest.raises(StateError):
        await market.custodian.release(asset(1), BUYER)


@pytest.mark.asyncio
async def test_deliver_moves_directly(market, ledger):
    await market.custodian.deliver(SELLER, asset(2), BUYER)
    assert ledger.owner_of(asset(2)) == BUYER
    assert not market.custodian.is_held(asset(2))


def test_contract_allowlist(market):
    custodian = market.custodian
    assert custodian.require_supported(asset(1)).contract == NFT
    with pytest.raises(ValidationError):
        custodian.require_supported(asset(1, UNLISTED_NFT))

    custodian.allow_contract(UNLISTED_NFT, True)
    assert UNLISTED_NFT in custodian.supported_contracts()
    custodian.allow_contract(UNLISTED_NFT, False)
    assert UNLISTED_NFT not in custodian.supported_contracts()


def test_require_supported_rejects_bad_token_id(market):
    with pytest.raises(ValidationError):
        market.custodian.require_supported(asset(-1))
