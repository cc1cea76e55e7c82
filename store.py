"""
Persistence contract for orders, ledger transactions and the audit log.

Every read-decide-write step of the escrow core runs inside one unit of work.
A unit of work either commits all of its writes or none of them. Order status
updates are compare-and-swap: they apply only when the stored status still
equals the expected one, and return None otherwise.

MemoryStore implements the contract in process for tests and single-process
deployments. database.PostgresStore implements it on asyncpg.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from errors import DuplicateCorrelationRef
from models import (
    AuditEntry,
    Order,
    OrderStatus,
    PaymentMethod,
    Transaction,
    TransactionPurpose,
    TransactionStatus,
    TERMINAL_TRANSACTION_STATUSES,
)

logger = logging.getLogger(__name__)


class UnitOfWork(ABC):
    """Repository operations available inside one atomic unit."""

    # ==================== ORDERS ====================

    @abstractmethod
    async def insert_order(
        self,
        buyer_id: int,
        seller_id: int,
        item_description: str,
        amount: Decimal,
        payment_method: PaymentMethod
    ) -> Order:
        ...

    @abstractmethod
    async def get_order(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        ...

    @abstractmethod
    async def update_order_status(
        self,
        order_id: int,
        expected: OrderStatus,
        new_status: OrderStatus,
        proof_of_delivery: Optional[str] = None,
        amount_paid: Optional[Decimal] = None
    ) -> Optional[Order]:
        """Set status to new_status only if it is still expected."""
        ...

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        ...

    # ==================== TRANSACTIONS ====================

    @abstractmethod
    async def insert_transaction(
        self,
        order_id: int,
        user_id: Optional[int],
        provider: str,
        purpose: TransactionPurpose,
        correlation_ref: str,
        amount: Decimal,
        status: TransactionStatus,
        description: Optional[str] = None
    ) -> Transaction:
        """Raises DuplicateCorrelationRef if (provider, correlation_ref) exists."""
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: int, for_update: bool = False) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def find_transaction(
        self,
        provider: str,
        correlation_ref: str,
        for_update: bool = False
    ) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def update_transaction(
        self,
        transaction_id: int,
        status: Optional[TransactionStatus] = None,
        provider_tx_id: Optional[str] = None,
        description: Optional[str] = None,
        correlation_ref: Optional[str] = None,
        amount: Optional[Decimal] = None
    ) -> Optional[Transaction]:
        """
        Update a non-terminal transaction.

        Returns None when the transaction is missing or already terminal.
        Raises DuplicateCorrelationRef when re-keying onto a taken ref.
        """
        ...

    @abstractmethod
    async def list_transactions(
        self,
        order_id: Optional[int] = None,
        statuses: Optional[Iterable[TransactionStatus]] = None,
        purpose: Optional[TransactionPurpose] = None,
        created_before: Optional[datetime] = None
    ) -> List[Transaction]:
        ...

    # ==================== AUDIT LOG ====================

    @abstractmethod
    async def append_audit(
        self,
        order_id: int,
        from_status: Optional[OrderStatus],
        to_status: OrderStatus,
        event: str,
        actor_id: Optional[int] = None,
        detail: Optional[str] = None
    ) -> AuditEntry:
        ...

    @abstractmethod
    async def list_audit(self, order_id: int) -> List[AuditEntry]:
        ...


class Store(ABC):
    """Factory for units of work over one backing store."""

    @abstractmethod
    def unit_of_work(self):
        """Async context manager yielding a UnitOfWork."""
        ...

    async def ping(self) -> bool:
        return True


class _MemoryState:
    """Tables held by MemoryStore."""

    def __init__(self):
        self.orders: Dict[int, Order] = {}
        self.transactions: Dict[int, Transaction] = {}
        self.refs: Dict[Tuple[str, str], int] = {}
        self.audit: List[AuditEntry] = []

    def snapshot(self) -> tuple:
        return dict(self.orders), dict(self.transactions), dict(self.refs), list(self.audit)

    def restore(self, snapshot: tuple) -> None:
        self.orders, self.transactions, self.refs, self.audit = snapshot


class MemoryUnitOfWork(UnitOfWork):
    """UnitOfWork over MemoryStore tables. Records are immutable and replaced on update."""

    def __init__(self, store: 'MemoryStore'):
        self._store = store
        self._state = store._state

    async def insert_order(self, buyer_id, seller_id, item_description, amount, payment_method):
        order = Order(
            id=next(self._store._order_ids),
            buyer_id=buyer_id,
            seller_id=seller_id,
            item_description=item_description,
            amount=amount,
            payment_method=payment_method,
        )
        self._state.orders[order.id] = order
        return order

    async def get_order(self, order_id, for_update=False):
        return self._state.orders.get(order_id)

    async def update_order_status(self, order_id, expected, new_status, proof_of_delivery=None, amount_paid=None):
        order = self._state.orders.get(order_id)
        if order is None or order.status != expected:
            return None

        changes = {'status': new_status, 'updated_at': datetime.now()}
        if proof_of_delivery is not None:
            changes['proof_of_delivery'] = proof_of_delivery
        if amount_paid is not None:
            changes['amount_paid'] = amount_paid

        order = order.model_copy(update=changes)
        self._state.orders[order_id] = order
        return order

    async def list_orders(self, status=None):
        orders = sorted(self._state.orders.values(), key=lambda o: o.id)
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders

    async def insert_transaction(self, order_id, user_id, provider, purpose, correlation_ref,
                                 amount, status, description=None):
        key = (provider, correlation_ref)
        if key in self._state.refs:
            existing = self._state.transactions[self._state.refs[key]]
            raise DuplicateCorrelationRef(provider, correlation_ref, existing)

        transaction = Transaction(
            id=next(self._store._transaction_ids),
            order_id=order_id,
            user_id=user_id,
            provider=provider,
            purpose=purpose,
            correlation_ref=correlation_ref,
            amount=amount,
            status=status,
            description=description,
        )
        self._state.transactions[transaction.id] = transaction
        self._state.refs[key] = transaction.id
        return transaction

    async def get_transaction(self, transaction_id, for_update=False):
        return self._state.transactions.get(transaction_id)

    async def find_transaction(self, provider, correlation_ref, for_update=False):
        transaction_id = self._state.refs.get((provider, correlation_ref))
        if transaction_id is None:
            return None
        return self._state.transactions[transaction_id]

    async def update_transaction(self, transaction_id, status=None, provider_tx_id=None,
                                 description=None, correlation_ref=None, amount=None):
        transaction = self._state.transactions.get(transaction_id)
        if transaction is None or transaction.status in TERMINAL_TRANSACTION_STATUSES:
            return None

        changes = {'updated_at': datetime.now()}
        if status is not None:
            changes['status'] = status
        if provider_tx_id is not None:
            changes['provider_tx_id'] = provider_tx_id
        if description is not None:
            changes['description'] = description
        if amount is not None:
            changes['amount'] = amount

        if correlation_ref is not None and correlation_ref != transaction.correlation_ref:
            new_key = (transaction.provider, correlation_ref)
            if new_key in self._state.refs:
                existing = self._state.transactions[self._state.refs[new_key]]
                raise DuplicateCorrelationRef(transaction.provider, correlation_ref, existing)
            del self._state.refs[(transaction.provider, transaction.correlation_ref)]
            self._state.refs[new_key] = transaction_id
            changes['correlation_ref'] = correlation_ref

        transaction = transaction.model_copy(update=changes)
        self._state.transactions[transaction_id] = transaction
        return transaction

    async def list_transactions(self, order_id=None, statuses=None, purpose=None, created_before=None):
        statuses = set(statuses) if statuses is not None else None
        result = []
        for transaction in sorted(self._state.transactions.values(), key=lambda t: t.id):
            if order_id is not None and transaction.order_id != order_id:
                continue
            if statuses is not None and transaction.status not in statuses:
                continue
            if purpose is not None and transaction.purpose != purpose:
                continue
            if created_before is not None and transaction.created_at >= created_before:
                continue
            result.append(transaction)
        return result

    async def append_audit(self, order_id, from_status, to_status, event, actor_id=None, detail=None):
        entry = AuditEntry(
            id=next(self._store._audit_ids),
            order_id=order_id,
            from_status=from_status,
            to_status=to_status,
            event=event,
            actor_id=actor_id,
            detail=detail,
        )
        self._state.audit.append(entry)
        return entry

    async def list_audit(self, order_id):
        return [entry for entry in self._state.audit if entry.order_id == order_id]


class MemoryStore(Store):
    """
    In-process store.

    Units of work are serialized by a single asyncio lock and rolled back
    from a snapshot when the block raises.
    """

    def __init__(self):
        self._state = _MemoryState()
        self._lock = asyncio.Lock()
        self._order_ids = itertools.count(1)
        self._transaction_ids = itertools.count(1)
        self._audit_ids = itertools.count(1)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[MemoryUnitOfWork]:
        async with self._lock:
            snapshot = self._state.snapshot()
            try:
                yield MemoryUnitOfWork(self)
            except BaseException:
                self._state.restore(snapshot)
                logger.debug("Memory unit of work rolled back")
                raise


@asynccontextmanager
async def using_unit(store: Store, uow: Optional[UnitOfWork] = None) -> AsyncIterator[UnitOfWork]:
    """Join the caller's unit of work, or open a new one on store."""
    if uow is not None:
        yield uow
    else:
        async with store.unit_of_work() as new_uow:
            yield new_uow
