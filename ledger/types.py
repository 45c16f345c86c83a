"""Value types shared by the ledger and the marketplace components."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar, Union

import pydantic
from web3 import Web3

from .exceptions import ValidationError

ModelT = TypeVar('ModelT', bound=pydantic.BaseModel)
ItemT = TypeVar('ItemT')

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'


def to_address(value: Any, field: str = 'address') -> str:
    """Validate an account or contract address and return its checksum form.

    Raises:
        ValidationError: If the value is not a 20-byte hex address
    """
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return Web3.to_checksum_address(value)


@dataclass(frozen=True)
class AssetRef:
    """A uniquely-owned asset: token contract plus token id."""
    contract: str
    token_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {'contract': self.contract, 'token_id': self.token_id}

    def __str__(self) -> str:
        return f"{self.contract}#{self.token_id}"


def normalize_asset(asset: Any) -> AssetRef:
    """Validate an AssetRef and normalize its contract address."""
    if not isinstance(asset, AssetRef):
        raise ValidationError(f"Invalid asset reference: {asset!r}")
    if isinstance(asset.token_id, bool) or not isinstance(asset.token_id, int) or asset.token_id < 0:
        raise ValidationError(f"Invalid token id: {asset.token_id!r}")
    return AssetRef(to_address(asset.contract, 'asset contract'), asset.token_id)


class PaymentMethod:
    """How a trade is paid: native value or a fungible token."""
    is_native = False

    @property
    def key(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {'native': self.is_native, 'token': None if self.is_native else self.key}


@dataclass(frozen=True)
class Native(PaymentMethod):
    """Native ledger value."""
    is_native = True

    @property
    def key(self) -> str:
        return 'native'

    def __str__(self) -> str:
        return 'native'


@dataclass(frozen=True)
class Token(PaymentMethod):
    """Fungible token identified by its contract address."""
    address: str

    @property
    def key(self) -> str:
        return self.address

    def __str__(self) -> str:
        return self.address


NATIVE = Native()


def payment_method(value: Union[PaymentMethod, str, None]) -> PaymentMethod:
    """Parse a payment method.

    ``None``, ``'native'`` and the zero address all mean native value; any other
    address names a fungible token.
    """
    if isinstance(value, Native):
        return NATIVE
    if isinstance(value, Token):
        return Token(to_address(value.address, 'payment token'))
    if value is None or value == '' or str(value).lower() == 'native':
        return NATIVE
    address = to_address(value, 'payment token')
    if address == ZERO_ADDRESS:
        return NATIVE
    return Token(address)


def require_positive(value: Any, field: str) -> int:
    """Validate a strictly positive integer amount."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer, got {value!r}")
    return value


def paginate(items: Iterable[ItemT], limit: int, offset: int) -> List[ItemT]:
    """Take one page of ``limit`` items after skipping ``offset``."""
    require_positive(limit, 'limit')
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError(f"offset must be a non-negative integer, got {offset!r}")
    return list(items)[offset:offset + limit]


def validate_model(model: Type[ModelT], data: Any) -> ModelT:
    """Validate request data against a pydantic model.

    Raises:
        ValidationError: If the data does not match the model
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        details = '; '.join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}") from e


@dataclass
class BulkEntryResult:
    """Outcome of one entry of a bulk call."""
    index: int
    ok: bool
    entity_id: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'ok': self.ok,
            'entity_id': self.entity_id,
            'error': self.error,
            'message': self.message
        }
