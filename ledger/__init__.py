"""Ledger module modelling the serialized ledger the marketplace runs on.

This module provides:
- Call serialization (one external call at a time, reentrant calls allowed)
- Whole-call atomicity through an undo journal, with nested savepoints
- Native and fungible-token balances behind a single transfer capability
- Uniquely-owned asset registry with recipient hooks
- Exclusive call regions guarding settlement against reentrancy
"""

import asyncio
import contextlib
import copy
import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .exceptions import (
    MarketplaceError,
    ValidationError,
    StateError,
    ReentrancyError,
    AuthorizationError,
    PaymentError,
    SettlementError
)
from .types import (
    ZERO_ADDRESS,
    AssetRef,
    BulkEntryResult,
    PaymentMethod,
    Native,
    Token,
    NATIVE,
    to_address,
    normalize_asset,
    payment_method,
    paginate,
    require_positive,
    validate_model
)

logger = logging.getLogger(__name__)

# async hook(operator, sender, asset) -> accepted
ReceiverHook = Callable[[Optional[str], str, AssetRef], Awaitable[bool]]

# Ids of the ledgers whose call is running in the current task
_call_stack: ContextVar[Tuple[int, ...]] = ContextVar('ledger_call_stack', default=())

# Marks a key that did not exist when it was journaled
_MISSING = object()


@dataclass
class CallContext:
    """Context of one external call."""
    caller: str
    value: int
    timestamp: int
    depth: int


@dataclass
class LedgerState:
    """Everything a call may change. Changes are journaled for rollback."""
    balances: Dict[Tuple[str, str], int] = field(default_factory=dict)
    owners: Dict[AssetRef, str] = field(default_factory=dict)
    stores: Dict[str, Any] = field(default_factory=dict)


class Ledger:
    """In-process ledger serializing every marketplace call."""

    def __init__(self, escrow_address: str, clock: Optional[Callable[[], int]] = None):
        """Initialize the ledger.

        Args:
            escrow_address: Account holding escrowed assets and funds
            clock: Optional callable returning the current time in seconds
        """
        self.escrow = to_address(escrow_address, 'escrow address')
        self.state = LedgerState()
        self._clock = clock or (lambda: int(time.time()))
        self._lock = asyncio.Lock()
        self._receivers: Dict[str, ReceiverHook] = {}
        self._regions: Set[Any] = set()
        self._journal: List[Callable[[], None]] = []
        self._depth = 0

    def now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Calls and transactions
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def transaction(self):
        """Run a block atomically; nested use behaves as a savepoint.

        Every change made through the ledger is journaled with the value it
        replaced. Rollback replays the journal backwards to the savepoint, so
        undoing a call costs what the call touched. The journal is dropped
        when the outermost transaction commits.
        """
        mark = len(self._journal)
        self._depth += 1
        try:
            yield
        except BaseException:
            self._undo(mark)
            raise
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._journal.clear()

    def _undo(self, mark: int) -> None:
        while len(self._journal) > mark:
            self._journal.pop()()

    def _record(self, undo: Callable[[], None]) -> None:
        # Changes made outside any transaction (ledger setup) are permanent
        if self._depth:
            self._journal.append(undo)

    def touch(self, container: Dict[Any, Any], key: Any) -> Any:
        """Journal ``container[key]`` before it changes and return its live value.

        After a touch the caller may replace, delete or mutate the value in
        place until the transaction ends; rollback puts back a copy of the
        value as it was, or removes the key if it did not exist. Objects held
        across a failed savepoint are stale and must be loaded again.

        Returns:
            The current value, or None when the key is absent
        """
        current = container.get(key, _MISSING)
        saved = current if current is _MISSING else copy.deepcopy(current)

        def undo():
            if saved is _MISSING:
                container.pop(key, None)
            else:
                container[key] = saved

        self._record(undo)
        return None if current is _MISSING else current

    def assign(self, container: Dict[Any, Any], key: Any, value: Any) -> Any:
        """Set ``container[key]`` with rollback."""
        self.touch(container, key)
        container[key] = value
        return value

    def remove(self, container: Dict[Any, Any], key: Any) -> None:
        """Delete ``container[key]`` with rollback."""
        if key in container:
            self.touch(container, key)
            del container[key]

    def append(self, items: List[Any], item: Any) -> None:
        """Append to a list with rollback by truncation."""
        length = len(items)
        items.append(item)

        def undo():
            del items[length:]

        self._record(undo)

    @contextlib.asynccontextmanager
    async def call(self, caller: str, value: int = 0):
        """Enter one external call.

        The outermost call takes the ledger lock. Calls made while a call is
        running in the same task (recipient hooks calling back in) run inside
        it without the lock. Any exception rolls back every state change made
        by the call, including the attached value transfer.

        Args:
            caller: Address of the account making the call
            value: Native value attached to the call

        Yields:
            CallContext for the call
        """
        caller = to_address(caller, 'caller')
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"Invalid attached value: {value!r}")

        stack = _call_stack.get()
        reentrant = id(self) in stack
        lock = contextlib.nullcontext() if reentrant else self._lock

        async with lock:
            token = _call_stack.set(stack + (id(self),))
            try:
                async with self.transaction():
                    ctx = CallContext(
                        caller=caller,
                        value=value,
                        timestamp=self.now(),
                        depth=len(stack) + 1
                    )
                    if reentrant:
                        logger.debug(f"Reentrant call from {caller} at depth {ctx.depth}")
                    if value:
                        self.transfer_payment(NATIVE, caller, self.escrow, value)
                    yield ctx
            finally:
                _call_stack.reset(token)

    async def bulk_entry(self, index: int,
                         operation: Callable[[], Awaitable[Optional[int]]]) -> BulkEntryResult:
        """Run one entry of a bulk call as its own atomic unit.

        A marketplace error rolls back only this entry and is reported in the
        result. Earlier entries keep their effects. Any other exception fails
        the whole call.
        """
        try:
            async with self.transaction():
                entity_id = await operation()
        except MarketplaceError as e:
            logger.warning(f"Bulk entry {index} failed: {e}")
            return BulkEntryResult(index=index, ok=False, error=e.code, message=str(e))
        return BulkEntryResult(index=index, ok=True, entity_id=entity_id)

    @contextlib.contextmanager
    def exclusive(self, key: Any):
        """Exclusive call region for one entity.

        Raises:
            ReentrancyError: If the region is already open further up the call
        """
        if key in self._regions:
            raise ReentrancyError(f"Reentrant call into {key}")
        self._regions.add(key)
        try:
            yield
        finally:
            self._regions.discard(key)

    # ------------------------------------------------------------------
    # Component storage
    # ------------------------------------------------------------------

    def store(self, name: str, factory: Callable[[], Any] = dict) -> Any:
        """Get the named storage area of the current state, creating it once."""
        stores = self.state.stores
        if name not in stores:
            self.assign(stores, name, factory())
        return stores[name]

    def update_store(self, name: str, factory: Callable[[], Any] = dict) -> Any:
        """Get a small storage area for in-place changes, journaling all of it."""
        self.store(name, factory)
        return self.touch(self.state.stores, name)

    def next_id(self, name: str) -> int:
        """Next id from a monotonic counter. Ids start at 1 and never repeat."""
        counters = self.store('counters')
        return self.assign(counters, name, counters.get(name, 0) + 1)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def balance_of(self, method: PaymentMethod, account: str) -> int:
        return self.state.balances.get((method.key, to_address(account)), 0)

    def mint_balance(self, method: PaymentMethod, account: str, amount: int) -> None:
        """Credit an account. Ledger setup only, not a marketplace operation."""
        require_positive(amount, 'amount')
        key = (method.key, to_address(account))
        balances = self.state.balances
        self.assign(balances, key, balances.get(key, 0) + amount)

    def transfer_payment(self, method: PaymentMethod, sender: str,
                         recipient: str, amount: int) -> None:
        """Move native value or fungible tokens between accounts.

        Raises:
            PaymentError: If the sender's balance is insufficient
        """
        if amount == 0:
            return
        if amount < 0:
            raise ValidationError(f"Negative transfer amount: {amount}")
        sender = to_address(sender, 'sender')
        recipient = to_address(recipient, 'recipient')
        balances = self.state.balances
        available = balances.get((method.key, sender), 0)
        if available < amount:
            raise PaymentError(
                f"Insufficient {method} balance for {sender}: "
                f"available {available}, required {amount}",
                expected=amount,
                received=available
            )
        self.assign(balances, (method.key, sender), available - amount)
        self.assign(balances, (method.key, recipient), balances.get((method.key, recipient), 0) + amount)
        logger.debug(f"Transferred {amount} {method} from {sender} to {recipient}")

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def register_asset(self, asset: AssetRef, owner: str) -> AssetRef:
        """Record an existing asset and its owner. Ledger setup only."""
        asset = normalize_asset(asset)
        if asset in self.state.owners:
            raise ValidationError(f"Asset {asset} already registered")
        self.assign(self.state.owners, asset, to_address(owner, 'owner'))
        return asset

    def owner_of(self, asset: AssetRef) -> Optional[str]:
        return self.state.owners.get(normalize_asset(asset))

    def set_receiver(self, account: str, hook: Optional[ReceiverHook]) -> None:
        """Register (or clear) the code run when an account receives an asset."""
        account = to_address(account, 'account')
        if hook is None:
            self._receivers.pop(account, None)
        else:
            self._receivers[account] = hook

    async def transfer_asset(self, sender: str, recipient: str, asset: AssetRef,
                             operator: Optional[str] = None) -> None:
        """Transfer an asset and run the recipient's hook, if any.

        Ownership changes before the hook runs; the hook may call back into
        the marketplace.

        Raises:
            SettlementError: If the sender does not own the asset or the
                recipient rejects it
        """
        asset = normalize_asset(asset)
        sender = to_address(sender, 'sender')
        recipient = to_address(recipient, 'recipient')
        owner = self.state.owners.get(asset)
        if owner != sender:
            raise SettlementError(f"{sender} does not hold asset {asset}")
        if recipient == ZERO_ADDRESS:
            raise SettlementError(f"Cannot transfer asset {asset} to the zero address")

        self.assign(self.state.owners, asset, recipient)
        logger.debug(f"Asset {asset} moved from {sender} to {recipient}")

        hook = self._receivers.get(recipient)
        if hook is None:
            return
        try:
            accepted = await hook(operator, sender, asset)
        except Exception as e:
            raise SettlementError(f"Recipient {recipient} rejected asset {asset}: {e}") from e
        if not accepted:
            raise SettlementError(f"Recipient {recipient} rejected asset {asset}")


__all__ = [
    'Ledger',
    'LedgerState',
    'CallContext',
    'ReceiverHook',
    'AssetRef',
    'BulkEntryResult',
    'PaymentMethod',
    'Native',
    'Token',
    'NATIVE',
    'ZERO_ADDRESS',
    'to_address',
    'normalize_asset',
    'payment_method',
    'paginate',
    'require_positive',
    'validate_model',
    'MarketplaceError',
    'ValidationError',
    'StateError',
    'ReentrancyError',
    'AuthorizationError',
    'PaymentError',
    'SettlementError'
]
