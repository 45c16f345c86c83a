"""Tests for signature-authorized settlement."""

import pytest

from conftest import (
    ADMIN,
    BUYER,
    SELLER,
    STRANGER,
    ESCROW,
    NFT,
    FUNDS,
    SIGNER,
    OTHER_SIGNER,
    asset,
    make_settings
)
from events import SOLD, SIGNER_UPDATED
from ledger import (
    NATIVE,
    AuthorizationError,
    PaymentError,
    ReentrancyError,
    SettlementError,
    StateError,
    ValidationError
)
from marketplace import Marketplace
from settlement import EthSignatureVerifier, authorization_digest, sign_authorization


def authorize(seller, buyer, token_id, price, key=SIGNER.key):
    return sign_authorization(key, seller, buyer, asset(token_id), price)


def test_signature_round_trip():
    signature = authorize(SELLER, BUYER, 3, 8)
    recovered = EthSignatureVerifier().recover_signer(SELLER, BUYER, asset(3), 8, signature)
    assert recovered == SIGNER.address


def test_digest_binds_every_field():
    digest = authorization_digest(SELLER, BUYER, asset(3), 8)
    assert len(digest) == 32
    assert digest != authorization_digest(BUYER, SELLER, asset(3), 8)
    assert digest != authorization_digest(SELLER, BUYER, asset(4), 8)
    assert digest != authorization_digest(SELLER, BUYER, asset(3), 9)


@pytest.mark.asyncio
async def test_settle_redeems_once(market, ledger):
    """A valid authorization settles once; the second attempt finds the asset gone."""
    signature = authorize(SELLER, BUYER, 3, 8)

    receipt = await market.settlement.settle(BUYER, asset(3), SELLER, 8, signature, value=8)

    assert receipt == {'seller': SELLER, 'buyer': BUYER, 'price': 8, 'payout': 7, 'fee': 1}
    assert ledger.owner_of(asset(3)) == BUYER
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS + 7
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 8
    assert market.events.last(SOLD).data['offledger'] is True

    with pytest.raises(SettlementError):
        await market.settlement.settle(BUYER, asset(3), SELLER, 8, signature, value=8)
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 8
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS + 7


@pytest.mark.asyncio
async def test_settle_rejects_bad_authorizations(market, ledger):
    settle = market.settlement.settle
    good = authorize(SELLER, BUYER, 3, 8)

    with pytest.raises(AuthorizationError):
        await settle(BUYER, asset(3), SELLER, 8, authorize(SELLER, BUYER, 3, 8, OTHER_SIGNER.key), value=8)
    with pytest.raises(AuthorizationError):
        await settle(STRANGER, asset(3), SELLER, 8, good, value=8)
    with pytest.raises(AuthorizationError):
        await settle(BUYER, asset(3), SELLER, 8, '0x1234', value=8)
    with pytest.raises(PaymentError):
        await settle(BUYER, asset(3), SELLER, 8, good, value=7)
    with pytest.raises(AuthorizationError):
        await settle(SELLER, asset(3), SELLER, 8, authorize(SELLER, SELLER, 3, 8), value=8)

    assert ledger.owner_of(asset(3)) == SELLER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS


@pytest.mark.asyncio
async def test_settle_requires_configured_signer(clock):
    market = Marketplace.from_settings(make_settings(signer_address=''), clock=clock)
    market.ledger.mint_balance(NATIVE, BUYER, FUNDS)
    market.ledger.register_asset(asset(3), SELLER)

    with pytest.raises(AuthorizationError, match='signer not configured'):
        await market.settlement.settle(
            BUYER, asset(3), SELLER, 8, authorize(SELLER, BUYER, 3, 8), value=8
        )


@pytest.mark.asyncio
async def test_set_signer(market):
    with pytest.raises(AuthorizationError):
        await market.set_signer(SELLER, OTHER_SIGNER.address)

    await market.set_signer(ADMIN, OTHER_SIGNER.address)
    assert market.settlement.signer == OTHER_SIGNER.address
    assert market.events.last(SIGNER_UPDATED).data['previous_signer'] == SIGNER.address

    with pytest.raises(AuthorizationError):
        await market.settlement.settle(
            BUYER, asset(3), SELLER, 8, authorize(SELLER, BUYER, 3, 8), value=8
        )
    await market.settlement.settle(
        BUYER, asset(3), SELLER, 8, authorize(SELLER, BUYER, 3, 8, OTHER_SIGNER.key), value=8
    )


@pytest.mark.asyncio
async def test_settle_bulk_refunds_failed_entries(market, ledger):
    entries = [
        {'contract': NFT, 'token_id': 3, 'seller': SELLER, 'price': 100},
        {'contract': NFT, 'token_id': 4, 'seller': STRANGER, 'price': 40},
        {'contract': NFT, 'token_id': 5, 'seller': SELLER, 'price': 60},
    ]
    signatures = [
        authorize(SELLER, BUYER, 3, 100),
        authorize(STRANGER, BUYER, 4, 40),
        authorize(SELLER, BUYER, 5, 60),
    ]

    results = await market.settlement.settle_bulk(BUYER, entries, signatures, value=200)

    assert [r.ok for r in results] == [True, False, True]
    assert results[1].error == 'settlement_error'
    assert ledger.owner_of(asset(3)) == BUYER
    assert ledger.owner_of(asset(4)) == SELLER
    assert ledger.owner_of(asset(5)) == BUYER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 160
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS + 99 + 59
    assert market.fee_balance() == 2
    assert len(market.events.events(SOLD)) == 2


@pytest.mark.asyncio
async def test_settle_bulk_validates_whole_call(market, ledger):
    entries = [{'contract': NFT, 'token_id': 3, 'seller': SELLER, 'price': 100}]
    signatures = [authorize(SELLER, BUYER, 3, 100)]

    with pytest.raises(ValidationError):
        await market.settlement.settle_bulk(BUYER, [], [], value=0)
    with pytest.raises(ValidationError):
        await market.settlement.settle_bulk(BUYER, entries, signatures * 2, value=100)
    with pytest.raises(ValidationError):
        await market.settlement.settle_bulk(
            BUYER, [{'contract': NFT, 'token_id': 3, 'seller': SELLER, 'price': 0}],
            signatures, value=0
        )
    with pytest.raises(PaymentError):
        await market.settlement.settle_bulk(BUYER, entries, signatures, value=99)

    assert ledger.owner_of(asset(3)) == SELLER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS


@pytest.mark.asyncio
async def test_buyer_reentering_settle_is_refused(market, ledger):
    signature = authorize(SELLER, BUYER, 3, 8)
    seen = []

    async def settle_again(operator, sender, received):
        seen.append(ledger.balance_of(NATIVE, SELLER))
        try:
            await market.settlement.settle(BUYER, asset(3), SELLER, 8, signature, value=8)
        except StateError as e:
            seen.append(type(e))
        return True

    ledger.set_receiver(BUYER, settle_again)
    await market.settlement.settle(BUYER, asset(3), SELLER, 8, signature, value=8)

    assert seen == [FUNDS + 7, ReentrancyError]
    assert ledger.owner_of(asset(3)) == BUYER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 8
    assert len(market.events.events(SOLD)) == 1

    ledger.set_receiver(BUYER, None)
    with pytest.raises(SettlementError):
        await market.settlement.settle(BUYER, asset(3), SELLER, 8, signature, value=8)


@pytest.mark.asyncio
async def test_buyer_reentering_bulk_settlement(market, ledger):
    """A callback redeeming the next trade early makes that entry fail and refund."""
    entries = [
        {'contract': NFT, 'token_id': 3, 'seller': SELLER, 'price': 100},
        {'contract': NFT, 'token_id': 4, 'seller': SELLER, 'price': 40},
    ]
    signatures = [authorize(SELLER, BUYER, 3, 100), authorize(SELLER, BUYER, 4, 40)]
    seen = []

    async def redeem_early(operator, sender, received):
        if received == asset(3):
            try:
                await market.settlement.settle(BUYER, asset(3), SELLER, 100, signatures[0], value=100)
            except StateError as e:
                seen.append(type(e))
            await market.settlement.settle(BUYER, asset(4), SELLER, 40, signatures[1], value=40)
        return True

    ledger.set_receiver(BUYER, redeem_early)
    results = await market.settlement.settle_bulk(BUYER, entries, signatures, value=140)

    assert seen == [ReentrancyError]
    assert [r.ok for r in results] == [True, False]
    assert results[1].error == 'settlement_error'
    assert ledger.owner_of(asset(3)) == BUYER
    assert ledger.owner_of(asset(4)) == BUYER
    assert ledger.balance_of(NATIVE, BUYER) == FUNDS - 140
    assert ledger.balance_of(NATIVE, SELLER) == FUNDS + 99 + 40 - 1
    assert ledger.balance_of(NATIVE, ESCROW) == market.fee_balance() == 2
    assert len(market.events.events(SOLD)) == 2
