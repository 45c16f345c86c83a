"""Shared fixtures: a manually driven clock and a funded marketplace."""

import pytest
from eth_account import Account
from web3 import Web3

from config import validate_settings
from ledger import AssetRef, NATIVE, Token
from marketplace import Marketplace


def address(byte: str) -> str:
    return Web3.to_checksum_address('0x' + byte * 20)


ADMIN = address('a1')
ESCROW = address('e5')
SELLER = address('11')
BUYER = address('22')
BIDDER = address('33')
STRANGER = address('44')
NFT = address('4f')
UNLISTED_NFT = address('5f')
TOKEN = address('70')

SIGNER = Account.from_key('0x' + '01' * 32)
OTHER_SIGNER = Account.from_key('0x' + '02' * 32)

START = 1_700_000_000
FUNDS = 1_000_000
DAY = 86400


class ManualClock:
    """Clock the tests move forward explicitly."""

    def __init__(self, now: int = START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


def asset(token_id: int, contract: str = NFT) -> AssetRef:
    return AssetRef(contract, token_id)


def make_settings(**overrides):
    settings = {
        'admin_address': ADMIN,
        'escrow_address': ESCROW,
        'signer_address': SIGNER.address,
        'token_contracts': [NFT],
        'payment_tokens': [TOKEN]
    }
    settings.update(overrides)
    return validate_settings(settings)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def market(clock):
    """Marketplace with funded accounts; SELLER holds NFT tokens 1-5."""
    market = Marketplace.from_settings(make_settings(), clock=clock)
    ledger = market.ledger
    for account in (SELLER, BUYER, BIDDER, STRANGER):
        ledger.mint_balance(NATIVE, account, FUNDS)
        ledger.mint_balance(Token(TOKEN), account, FUNDS)
    for token_id in range(1, 6):
        ledger.register_asset(asset(token_id), SELLER)
    ledger.register_asset(asset(1, UNLISTED_NFT), SELLER)
    return market


@pytest.fixture
def ledger(market):
    return market.ledger
