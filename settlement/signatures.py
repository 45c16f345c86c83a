"""Trade authorization signatures.

An authorization binds one (seller, buyer, asset, price) tuple. The signer
signs ``keccak256(abi.encodePacked(seller, buyer, contract, token_id, price))``
as an EIP-191 personal message.
"""

import logging
from typing import Union

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ledger import AssetRef, AuthorizationError, to_address, normalize_asset

logger = logging.getLogger(__name__)

AUTHORIZATION_TYPES = ['address', 'address', 'address', 'uint256', 'uint256']


def authorization_digest(seller: str, buyer: str, asset: AssetRef, price: int) -> bytes:
    """Digest of the packed authorization tuple."""
    asset = normalize_asset(asset)
    return bytes(Web3.solidity_keccak(
        AUTHORIZATION_TYPES,
        [to_address(seller, 'seller'), to_address(buyer, 'buyer'),
         asset.contract, asset.token_id, price]
    ))


def sign_authorization(private_key: Union[str, bytes], seller: str, buyer: str,
                       asset: AssetRef, price: int) -> str:
    """Issue a hex signature authorizing one trade.

    Used by the off-ledger signer service; the engine only verifies.
    """
    message = encode_defunct(primitive=authorization_digest(seller, buyer, asset, price))
    signed = Account.sign_message(message, private_key=private_key)
    return '0x' + bytes(signed.signature).hex()


class EthSignatureVerifier:
    """Recovers the signer of an authorization with eth_account."""

    def recover_signer(self, seller: str, buyer: str, asset: AssetRef,
                       price: int, signature: Union[str, bytes]) -> str:
        """Recover the address that signed the authorization.

        Raises:
            AuthorizationError: If the signature is malformed
        """
        message = encode_defunct(primitive=authorization_digest(seller, buyer, asset, price))
        try:
            return Account.recover_message(message, signature=signature)
        except Exception as e:
            logger.debug(f"Signature recovery failed: {e}")
            raise AuthorizationError(f"Malformed signature: {e}") from e
