"""
Transaction ledger.

Every attempt to move money for an order (collection, payout, reversal) is
one ledger row keyed by (provider, correlation_ref). Rows move forward only:
pending -> processing -> terminal, and a terminal row is never rewritten, so
replayed provider callbacks are no-ops.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from errors import DuplicateCorrelationRef, InvalidInput
from models import Transaction, TransactionPurpose, TransactionStatus
from store import Store, UnitOfWork, using_unit

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class TransactionLedger:
    """
    Ledger operations over a Store.

    Each method accepts an optional ``uow`` so the reconciliation engine can
    combine a ledger write with an order transition in one unit of work.
    """

    def __init__(self, store: Store):
        self.store = store

    async def record(
        self,
        order_id: int,
        user_id: Optional[int],
        provider: str,
        correlation_ref: str,
        amount: Decimal,
        status: TransactionStatus = TransactionStatus.PENDING,
        description: Optional[str] = None,
        purpose: TransactionPurpose = TransactionPurpose.COLLECTION,
        uow: Optional[UnitOfWork] = None
    ) -> Transaction:
        """
        Record a new money-movement attempt.

        Args:
            order_id: Order the attempt belongs to
            user_id: User who initiated it (None for system actions)
            provider: Ledger provider name, e.g. 'mpesa' or 'mpesa_payout'
            correlation_ref: Provider-issued correlation reference
            amount: Amount to move
            status: Initial status
            description: Free-text description
            purpose: Collection, payout or reversal

        Returns:
            The recorded Transaction

        Raises:
            DuplicateCorrelationRef: If (provider, correlation_ref) is already recorded.
                The existing record is attached as ``.existing``.
            InvalidInput: If the reference or amount is unusable
        """
        if not correlation_ref:
            raise InvalidInput("Correlation reference is required")
        if amount is None or amount <= 0:
            raise InvalidInput(f"Transaction amount must be positive, got {amount}")

        async with using_unit(self.store, uow) as unit:
            try:
                transaction = await unit.insert_transaction(
                    order_id=order_id,
                    user_id=user_id,
                    provider=provider,
                    purpose=purpose,
                    correlation_ref=correlation_ref,
                    amount=amount,
                    status=status,
                    description=description,
                )
            except DuplicateCorrelationRef:
                logger.warning(
                    f"Duplicate correlation ref {provider}/{correlation_ref} for order {order_id}"
                )
                raise

        logger.info(
            f"Recorded {purpose.value} transaction {transaction.id} for order {order_id}: "
            f"{provider}/{correlation_ref} status={status.value}"
        )
        return transaction

    async def find_by_correlation_ref(
        self,
        provider: str,
        correlation_ref: str,
        uow: Optional[UnitOfWork] = None,
        for_update: bool = False
    ) -> Optional[Transaction]:
        async with using_unit(self.store, uow) as unit:
            return await unit.find_transaction(provider, correlation_ref, for_update=for_update)

    async def get(self, transaction_id: int, uow: Optional[UnitOfWork] = None) -> Optional[Transaction]:
        async with using_unit(self.store, uow) as unit:
            return await unit.get_transaction(transaction_id)

    async def update_status(
        self,
        transaction_id: int,
        new_status: TransactionStatus,
        provider_tx_id: Optional[str] = None,
        description: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
        amount: Optional[Decimal] = None
    ) -> Transaction:
        """
        Move a transaction forward.

        A transaction that is already terminal is returned unchanged, which
        makes the update idempotent under callback replay. A processing
        transaction never goes back to pending. ``amount`` replaces the
        requested amount with what the provider actually settled.

        Raises:
            InvalidInput: If the transaction does not exist
        """
        async with using_unit(self.store, uow) as unit:
            current = await unit.get_transaction(transaction_id, for_update=True)
            if current is None:
                raise InvalidInput(f"Transaction {transaction_id} not found")

            if current.status.is_terminal:
                logger.info(
                    f"Transaction {transaction_id} already {current.status.value}, "
                    f"ignoring update to {new_status.value}"
                )
                return current

            if new_status == TransactionStatus.PENDING and current.status == TransactionStatus.PROCESSING:
                return current

            updated = await unit.update_transaction(
                transaction_id,
                status=new_status,
                provider_tx_id=provider_tx_id,
                description=description,
                amount=amount,
            )
            if updated is None:
                # Finalized by a concurrent writer between the read and the write
                return await unit.get_transaction(transaction_id)

        logger.info(f"Transaction {transaction_id} -> {new_status.value}")
        return updated

    async def assign_correlation_ref(
        self,
        transaction_id: int,
        correlation_ref: str,
        description: Optional[str] = None,
        uow: Optional[UnitOfWork] = None
    ) -> Optional[Transaction]:
        """
        Re-key a pending transaction onto the reference the provider issued.

        Returns None if the transaction was finalized in the meantime.

        Raises:
            DuplicateCorrelationRef: If the provider reused a reference
        """
        async with using_unit(self.store, uow) as unit:
            return await unit.update_transaction(
                transaction_id,
                correlation_ref=correlation_ref,
                description=description,
            )

    async def list_for_order(self, order_id: int, uow: Optional[UnitOfWork] = None) -> List[Transaction]:
        async with using_unit(self.store, uow) as unit:
            return await unit.list_transactions(order_id=order_id)

    async def find_successful(
        self,
        order_id: int,
        purpose: TransactionPurpose,
        uow: Optional[UnitOfWork] = None
    ) -> Optional[Transaction]:
        """Most recent successful transaction of the given purpose for an order."""
        async with using_unit(self.store, uow) as unit:
            transactions = await unit.list_transactions(
                order_id=order_id,
                statuses=[TransactionStatus.SUCCESS],
                purpose=purpose,
            )
        return transactions[-1] if transactions else None

    async def has_open(
        self,
        order_id: int,
        purpose: TransactionPurpose,
        uow: Optional[UnitOfWork] = None
    ) -> bool:
        async with using_unit(self.store, uow) as unit:
            transactions = await unit.list_transactions(
                order_id=order_id, statuses=_OPEN_STATUSES, purpose=purpose
            )
        return bool(transactions)

    async def list_stale(
        self,
        older_than: datetime,
        purpose: Optional[TransactionPurpose] = None
    ) -> List[Transaction]:
        """Pending or processing transactions created before older_than."""
        async with self.store.unit_of_work() as unit:
            return await unit.list_transactions(
                statuses=_OPEN_STATUSES,
                purpose=purpose,
                created_before=older_than,
            )
