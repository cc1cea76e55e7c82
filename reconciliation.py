"""
Reconciliation engine.

Consumes normalized provider events (callbacks, status-query answers) and
admin commands, checks them against the ledger for idempotency, and drives
order transitions. Every decision reads current state, decides and commits
inside one unit of work: the ledger update and the order transition are
written together or not at all. Notifications go out only after commit.

Provider callback:
    1. unknown (provider, correlation_ref) -> acknowledge, no side effects
    2. transaction already terminal        -> acknowledge, duplicate delivery
    3. success -> transaction success, order advanced by purpose
       failure -> transaction failed, collection left in place,
                  payout/refund returned to disputed
       ambiguous -> nothing finalized, status query decides later
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from errors import (
    DuplicateCorrelationRef,
    Inconsistent,
    InvalidInput,
    InvalidTransition,
    NotAuthorized,
    ProviderError,
    ProviderRejected,
)
from ledger import TransactionLedger
from models import (
    CallbackOutcome,
    NormalizedEvent,
    Order,
    OrderStatus,
    Transaction,
    TransactionPurpose,
    TransactionStatus,
    provider_key,
)
from notifications import NotificationDispatcher
import notifications as messages
from order_state import TRANSITIONS, OrderEvent, OrderStateMachine, UserDirectory
from payment_providers import ProviderRegistry
from store import Store, UnitOfWork
from utils import format_provider_error

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = 'pending-'
MANUAL_PREFIX = 'manual-'

# Recipient marker for admin alerts in the post-commit notification list
ADMIN = 'admin'


def provisional_ref() -> str:
    """Placeholder correlation ref used until the provider issues one."""
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"


@dataclass
class ResolutionResult:
    """Outcome of an admin release/refund or a post-confirmation payout."""
    order: Order
    transaction: Transaction
    outcome: str    # 'initiated' | 'failed' | 'skipped'

    @property
    def initiated(self) -> bool:
        return self.outcome == 'initiated'


# (purpose) -> (event that starts processing, event that returns to disputed)
_OUTBOUND_EVENTS = {
    TransactionPurpose.PAYOUT: (OrderEvent.RELEASE_FUNDS, OrderEvent.PAYOUT_FAILED),
    TransactionPurpose.REVERSAL: (OrderEvent.REFUND_BUYER, OrderEvent.REFUND_FAILED),
}


class ReconciliationEngine:
    """
    Decision core of the escrow service.

    Attributes:
        store: Backing store (single source of truth)
        orders: Order state machine
        ledger: Transaction ledger
        providers: Payment adapters keyed by payment method
        users: Identity lookup for payout destinations and notification targets
        notifier: Fire-and-forget notification dispatcher
        config: Underpayment policy and timeouts
    """

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        store: Store,
        orders: OrderStateMachine,
        ledger: TransactionLedger,
        providers: ProviderRegistry,
        users: UserDirectory,
        notifier: NotificationDispatcher,
        config: Config
    ):
        self.store = store
        self.orders = orders
        self.ledger = ledger
        self.providers = providers
        self.users = users
        self.notifier = notifier
        self.config = config

        # Statistics
        self.stats = {
            'events_applied': 0,
            'duplicates': 0,
            'unknown_refs': 0,
            'status_queries': 0,
            'underpayments': 0,
        }

    # ==================== COLLECTION ====================

    async def request_collection(self, order_id: int, actor_id: int) -> Transaction:
        """
        Ask the order's provider to collect the order amount from the buyer.

        The pending transaction is recorded before the provider is called so
        a crash mid-call still leaves a trace in the ledger.

        Returns:
            The pending collection transaction, keyed by the provider's ref

        Raises:
            OrderNotFound, NotAuthorized, InvalidTransition
            ProviderUnavailable, ProviderRejected, ProviderTimeout: initiation
                failed; the transaction is recorded failed and the order stays pending
        """
        order = await self.orders.get_order(order_id)
        if actor_id != order.buyer_id:
            raise NotAuthorized(f"Only the buyer may pay for order {order_id}")
        if order.status != OrderStatus.PENDING:
            raise InvalidTransition(
                f"Order {order_id} is '{order.status.value}', collection requires 'pending'",
                current_status=order.status.value,
            )
        if await self.ledger.has_open(order_id, TransactionPurpose.COLLECTION):
            raise InvalidTransition(f"A collection for order {order_id} is already in progress")

        provider = self.providers.require(order.payment_method)
        payer = await self.users.find_user_by_id(order.buyer_id)
        if payer is None:
            raise InvalidInput(f"Buyer {order.buyer_id} not found")

        transaction = await self.ledger.record(
            order_id=order.id,
            user_id=actor_id,
            provider=provider_key(order.payment_method, TransactionPurpose.COLLECTION),
            correlation_ref=provisional_ref(),
            amount=order.amount,
            description=f"{provider.name} collection requested",
            purpose=TransactionPurpose.COLLECTION,
        )

        try:
            result = await provider.initiate_collection(order, payer)
        except ProviderError as e:
            await self.ledger.update_status(
                transaction.id, TransactionStatus.FAILED, description=f"Initiation failed: {e}"
            )
            logger.error(f"Collection initiation failed for order {order_id}: {e}")
            raise

        if not result.provider_accepted:
            await self.ledger.update_status(
                transaction.id, TransactionStatus.FAILED,
                description=f"Initiation rejected: {result.description}"
            )
            self.notifier.send(payer.contact, messages.payment_failed_buyer(
                order, format_provider_error(error_message=result.description)
            ))
            raise ProviderRejected(
                f"Collection rejected: {result.description}", provider=provider.name
            )

        try:
            updated = await self.ledger.assign_correlation_ref(
                transaction.id,
                result.correlation_ref,
                description=f"{provider.name} collection initiated. Ref: {result.correlation_ref}",
            )
        except DuplicateCorrelationRef as e:
            await self.ledger.update_status(
                transaction.id, TransactionStatus.FAILED,
                description=f"Provider reused correlation ref {result.correlation_ref}"
            )
            logger.error(f"Order {order_id}: {e}")
            self.notifier.alert_admin(messages.manual_action_required(order, 'collection', str(e)))
            raise ProviderRejected(str(e), provider=provider.name) from e

        return updated or await self.ledger.get(transaction.id)

    # ==================== PROVIDER EVENTS ====================

    async def process_callback(
        self,
        method: str,
        purpose: TransactionPurpose,
        raw_payload: Dict[str, Any],
        order_hint: Optional[int] = None
    ) -> Optional[Transaction]:
        """
        Normalize a raw webhook body and apply it.

        Malformed payloads are logged and dropped; they are never reported
        back to the provider as errors.
        """
        provider = self.providers.require(method)
        try:
            event = provider.normalize_callback(raw_payload)
        except InvalidInput as e:
            logger.warning(f"Dropping malformed {method} {purpose.value} callback: {e}")
            return None

        return await self.apply_event(provider_key(method, purpose), event, order_hint=order_hint)

    async def apply_event(
        self,
        ledger_provider: str,
        event: NormalizedEvent,
        order_hint: Optional[int] = None
    ) -> Optional[Transaction]:
        """
        Apply one normalized event, retrying the whole step on a lost race.

        Returns:
            The transaction after the event (None for an unknown reference)

        Raises:
            Inconsistent: If the step kept conflicting after MAX_ATTEMPTS
        """
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return await self._apply_event_once(ledger_provider, event, order_hint)
            except Inconsistent as e:
                logger.warning(
                    f"Reconciliation conflict on {ledger_provider}/{event.correlation_ref} "
                    f"(attempt {attempt}/{self.MAX_ATTEMPTS}): {e}"
                )
        raise Inconsistent(
            f"Could not apply {event.outcome.value} for {ledger_provider}/{event.correlation_ref}"
        )

    async def _apply_event_once(
        self,
        ledger_provider: str,
        event: NormalizedEvent,
        order_hint: Optional[int]
    ) -> Optional[Transaction]:
        outbox: List[Tuple[Any, str]] = []

        async with self.store.unit_of_work() as uow:
            transaction = await self.ledger.find_by_correlation_ref(
                ledger_provider, event.correlation_ref, uow=uow, for_update=True
            )
            if transaction is None:
                self.stats['unknown_refs'] += 1
                logger.warning(
                    f"No transaction for {ledger_provider}/{event.correlation_ref}, "
                    f"acknowledging without changes"
                )
                return None

            if order_hint is not None and transaction.order_id != order_hint:
                logger.error(
                    f"Order mismatch for {ledger_provider}/{event.correlation_ref}: "
                    f"ledger order {transaction.order_id}, callback order {order_hint}. Ignoring."
                )
                return transaction

            if transaction.status.is_terminal:
                self.stats['duplicates'] += 1
                logger.info(
                    f"Transaction {transaction.id} already {transaction.status.value}, "
                    f"duplicate {event.outcome.value} delivery ignored"
                )
                return transaction

            if not event.is_definitive:
                logger.info(
                    f"Ambiguous outcome for transaction {transaction.id} "
                    f"({event.description}), awaiting status query"
                )
                return await self.ledger.update_status(
                    transaction.id, TransactionStatus.PROCESSING,
                    description=f"Awaiting confirmation: {event.description}", uow=uow
                )

            order = await uow.get_order(transaction.order_id, for_update=True)
            if order is None:
                raise Inconsistent(f"Transaction {transaction.id} references missing order {transaction.order_id}")

            if event.outcome == CallbackOutcome.SUCCESS:
                # A collection row holds what arrived, not what was asked for
                settled = event.amount if transaction.purpose == TransactionPurpose.COLLECTION else None
                transaction = await self.ledger.update_status(
                    transaction.id, TransactionStatus.SUCCESS,
                    provider_tx_id=event.provider_tx_id,
                    description=f"{transaction.purpose.value} succeeded. {event.description or ''}".strip(),
                    uow=uow,
                    amount=settled,
                )
                await self._on_success(uow, order, transaction, event, outbox)
            else:
                transaction = await self.ledger.update_status(
                    transaction.id, TransactionStatus.FAILED,
                    provider_tx_id=event.provider_tx_id,
                    description=f"{transaction.purpose.value} failed. {event.description or ''}".strip(),
                    uow=uow,
                )
                await self._on_failure(uow, order, transaction, event, outbox)

        self.stats['events_applied'] += 1
        await self._dispatch(outbox)
        return transaction

    async def _transition(self, uow: UnitOfWork, order: Order, event: OrderEvent, **kwargs) -> Order:
        try:
            return await self.orders.transition(order.id, event, actor_id=None, uow=uow, **kwargs)
        except InvalidTransition as e:
            # The order moved under us; roll back and re-read
            raise Inconsistent(str(e)) from e

    async def _on_success(self, uow, order, transaction, event, outbox) -> None:
        purpose = transaction.purpose

        if purpose == TransactionPurpose.COLLECTION:
            await self._settle_collection(uow, order, transaction, event, outbox)

        elif purpose == TransactionPurpose.PAYOUT:
            if order.status == OrderStatus.PROCESSING_PAYOUT:
                order = await self._transition(
                    uow, order, OrderEvent.PAYOUT_SUCCEEDED, detail=f"Payout ref {event.provider_tx_id}"
                )
            else:
                logger.info(f"Payout {transaction.id} settled for order {order.id} in status {order.status.value}")
            outbox.append((order.seller_id, messages.payout_sent(order, transaction)))
            outbox.append((order.buyer_id, messages.funds_released(order)))

        elif purpose == TransactionPurpose.REVERSAL:
            if order.status == OrderStatus.PROCESSING_REFUND:
                order = await self._transition(
                    uow, order, OrderEvent.REFUND_SUCCEEDED, detail=f"Reversal ref {event.provider_tx_id}"
                )
            else:
                logger.warning(
                    f"Reversal {transaction.id} succeeded but order {order.id} is {order.status.value}"
                )
                outbox.append((ADMIN, messages.manual_action_required(
                    order, 'refund', f"reversal settled while order was {order.status.value}"
                )))
            outbox.append((order.buyer_id, messages.refund_sent(order, transaction)))
            outbox.append((order.seller_id, messages.refund_completed_seller(order)))

    async def _settle_collection(self, uow, order, transaction, event, outbox) -> None:
        received = event.amount if event.amount is not None else transaction.amount

        if order.status != OrderStatus.PENDING:
            logger.warning(
                f"Collection {transaction.id} succeeded but order {order.id} is "
                f"{order.status.value}; funds need manual reconciliation"
            )
            outbox.append((ADMIN, messages.manual_action_required(
                order, 'collection', f"extra payment of {received} received while order was {order.status.value}"
            )))
            return

        shortfall = order.amount - received
        underpaid = shortfall > self.config.underpayment_tolerance

        if shortfall > 0:
            self.stats['underpayments'] += 1
            logger.warning(
                f"Order {order.id} underpaid: expected {order.amount}, received {received} "
                f"(tolerance {self.config.underpayment_tolerance})"
            )

        if underpaid and not self.config.accept_underpayment:
            await uow.append_audit(
                order.id, order.status, order.status, 'underpayment_rejected',
                detail=f"Expected {order.amount}, received {received}, transaction {transaction.id}"
            )
            outbox.append((ADMIN, messages.underpayment_alert(order, received, accepted=False)))
            return

        detail = f"Transaction {transaction.id}, received {received}"
        if underpaid:
            detail = f"UNDERPAID: expected {order.amount}, received {received}. " + detail
            outbox.append((ADMIN, messages.underpayment_alert(order, received, accepted=True)))

        order = await self._transition(
            uow, order, OrderEvent.COLLECTION_SUCCEEDED, detail=detail, amount_paid=received
        )
        outbox.append((order.buyer_id, messages.payment_received_buyer(order, transaction)))
        outbox.append((order.seller_id, messages.payment_received_seller(order, transaction)))

    async def _on_failure(self, uow, order, transaction, event, outbox) -> None:
        purpose = transaction.purpose
        reason = event.description or 'Unknown reason'

        if purpose == TransactionPurpose.COLLECTION:
            outbox.append((order.buyer_id, messages.payment_failed_buyer(
                order, format_provider_error(error_message=reason)
            )))
            return

        start_status = (
            OrderStatus.PROCESSING_PAYOUT if purpose == TransactionPurpose.PAYOUT
            else OrderStatus.PROCESSING_REFUND
        )
        action = 'payout' if purpose == TransactionPurpose.PAYOUT else 'refund'

        if order.status == start_status:
            await self._transition(uow, order, _OUTBOUND_EVENTS[purpose][1], detail=reason)
        else:
            logger.error(f"{action} {transaction.id} failed for order {order.id} in status {order.status.value}")
        outbox.append((ADMIN, messages.manual_action_required(order, action, reason)))

    # ==================== TIMEOUTS ====================

    async def handle_timeout(self, ledger_provider: str, correlation_ref: str) -> Optional[Transaction]:
        """
        A provider timeout or a missing callback: ask the provider instead of assuming failure.

        Adapters that list the purpose in ``final_timeout_purposes`` send the
        timeout only for requests they dropped unprocessed; those fail at once
        and a payout or refund goes back to disputed.
        """
        transaction = await self.ledger.find_by_correlation_ref(ledger_provider, correlation_ref)
        if transaction is None:
            self.stats['unknown_refs'] += 1
            logger.warning(f"Timeout for unknown {ledger_provider}/{correlation_ref}, ignoring")
            return None
        if transaction.status.is_terminal:
            return transaction

        provider, purpose = self.providers.resolve_ledger_provider(ledger_provider)
        if provider is not None and purpose in provider.final_timeout_purposes:
            logger.warning(f"{ledger_provider} request {correlation_ref} timed out in the provider queue")
            return await self.apply_event(ledger_provider, NormalizedEvent(
                correlation_ref=correlation_ref,
                outcome=CallbackOutcome.FAILURE,
                description=f"{purpose.value} timed out waiting for {provider.name}",
            ))
        return await self.query_and_apply(transaction)

    async def query_and_apply(self, transaction: Transaction) -> Optional[Transaction]:
        """Query the provider for a transaction's outcome and apply the answer."""
        provider, purpose = self.providers.resolve_ledger_provider(transaction.provider)
        if provider is None:
            logger.warning(f"No adapter registered for ledger provider '{transaction.provider}'")
            return transaction

        self.stats['status_queries'] += 1
        try:
            event = await provider.query_status(transaction.correlation_ref, purpose)
        except ProviderError as e:
            logger.warning(f"Status query for transaction {transaction.id} failed: {e}")
            event = NormalizedEvent(
                correlation_ref=transaction.correlation_ref,
                outcome=CallbackOutcome.AMBIGUOUS,
                description=f"Status query failed: {e}",
            )

        if event.correlation_ref != transaction.correlation_ref:
            event = event.model_copy(update={'correlation_ref': transaction.correlation_ref})
        return await self.apply_event(transaction.provider, event)

    async def reconcile_stale(self, older_than: Optional[datetime] = None) -> Dict[str, int]:
        """
        Query every pending/processing transaction older than the collection timeout.

        Transactions still carrying a provisional ref never got an answer
        from their initiation call; they are failed and flagged for an admin.
        """
        cutoff = older_than or datetime.now() - timedelta(seconds=self.config.collection_timeout)
        stale = await self.ledger.list_stale(cutoff)
        summary = {'checked': 0, 'finalized': 0, 'abandoned': 0, 'errors': 0}

        for transaction in stale:
            summary['checked'] += 1
            try:
                if transaction.correlation_ref.startswith(PROVISIONAL_PREFIX):
                    await self._abandon(transaction)
                    summary['abandoned'] += 1
                    continue

                result = await self.query_and_apply(transaction)
                if result is not None and result.status.is_terminal:
                    summary['finalized'] += 1
            except (Inconsistent, ProviderError, InvalidInput) as e:
                summary['errors'] += 1
                logger.error(f"Failed to reconcile transaction {transaction.id}: {e}")

        if stale:
            logger.info(f"Stale transaction sweep: {summary}")
        return summary

    async def _abandon(self, transaction: Transaction) -> None:
        outbox: List[Tuple[Any, str]] = []
        async with self.store.unit_of_work() as uow:
            updated = await self.ledger.update_status(
                transaction.id, TransactionStatus.FAILED,
                description="Initiation never confirmed by provider", uow=uow
            )
            if updated.status != TransactionStatus.FAILED:
                return
            order = await uow.get_order(transaction.order_id, for_update=True)
            if order is None:
                raise Inconsistent(f"Transaction {transaction.id} references missing order {transaction.order_id}")
            purpose = transaction.purpose
            if purpose in _OUTBOUND_EVENTS:
                start_event, fail_event = _OUTBOUND_EVENTS[purpose]
                start_status = TRANSITIONS[start_event].target
                if order.status == start_status:
                    await self._transition(uow, order, fail_event, detail="Initiation never confirmed")
            outbox.append((ADMIN, messages.manual_action_required(
                order, purpose.value, f"transaction {transaction.id} initiation never confirmed"
            )))
        logger.error(f"Abandoned transaction {transaction.id}: initiation never confirmed")
        await self._dispatch(outbox)

    # ==================== AUTO RELEASE ====================

    async def release_matured_orders(self, older_than: Optional[datetime] = None) -> Dict[str, int]:
        """
        Complete shipped/delivered orders nobody disputed within AUTO_RELEASE_DAYS and pay the seller.

        Args:
            older_than: Last-change cutoff; defaults to now minus AUTO_RELEASE_DAYS

        Returns:
            Summary with checked, released, payout_failed and errors counts
        """
        summary = {'checked': 0, 'released': 0, 'payout_failed': 0, 'errors': 0}
        days = self.config.auto_release_days
        if older_than is None:
            if days == 0:
                return summary
            older_than = datetime.now() - timedelta(days=days)

        candidates = []
        for status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            candidates.extend(await self.orders.list_orders(status))

        for order in candidates:
            if order.updated_at > older_than:
                continue
            summary['checked'] += 1
            try:
                order = await self.orders.transition(
                    order.id, OrderEvent.AUTO_RELEASE, actor_id=None,
                    detail=f"No dispute within {days} days of {order.status.value}"
                )
            except InvalidTransition as e:
                # Disputed or confirmed since it was listed
                logger.info(f"Order {order.id} skipped by auto release: {e}")
                continue
            except (Inconsistent, InvalidInput) as e:
                summary['errors'] += 1
                logger.error(f"Auto release of order {order.id} failed: {e}")
                continue

            summary['released'] += 1
            logger.info(f"Order {order.id} auto-released to seller {order.seller_id}")
            await self._dispatch([
                (order.buyer_id, messages.auto_released(order, days)),
                (order.seller_id, messages.auto_released(order, days)),
            ])
            result = await self.start_payout(order)
            if not result.initiated:
                summary['payout_failed'] += 1

        if summary['checked']:
            logger.info(f"Auto release run: {summary}")
        return summary

    # ==================== PAYOUTS AND REFUNDS ====================

    async def resolve_dispute(
        self,
        order_id: int,
        admin_id: int,
        decision: str,
        note: Optional[str] = None
    ) -> ResolutionResult:
        """
        Release funds to the seller or refund the buyer on a disputed order.

        Provider trouble never raises out of here: it is recorded as a
        failed or skipped transaction and the order stays disputed.

        Args:
            order_id: Disputed order
            admin_id: Admin performing the resolution
            decision: 'release' or 'refund'
            note: Optional admin note kept with the transaction

        Raises:
            InvalidInput: Unknown decision
            NotAuthorized: admin_id is not an admin
            InvalidTransition: Order is not disputed
        """
        purposes = {'release': TransactionPurpose.PAYOUT, 'refund': TransactionPurpose.REVERSAL}
        if decision not in purposes:
            raise InvalidInput(f"Unknown resolution '{decision}', expected 'release' or 'refund'")
        if not await self.orders.is_admin(admin_id):
            raise NotAuthorized(f"User {admin_id} may not resolve disputes")

        order = await self.orders.get_order(order_id)
        if order.status != OrderStatus.DISPUTED:
            raise InvalidTransition(
                f"Order {order_id} is '{order.status.value}', resolution requires 'disputed'",
                current_status=order.status.value,
            )

        return await self._initiate_outbound(order, purposes[decision], admin_id, note, from_dispute=True)

    async def start_payout(self, order: Order, actor_id: Optional[int] = None) -> ResolutionResult:
        """
        Pay the seller for an order that just completed on delivery confirmation.

        The order stays completed whatever happens; a failed or skipped
        payout is left in the ledger and the admin is alerted.
        """
        return await self._initiate_outbound(
            order, TransactionPurpose.PAYOUT, actor_id, note=None, from_dispute=False
        )

    async def _initiate_outbound(
        self,
        order: Order,
        purpose: TransactionPurpose,
        actor_id: Optional[int],
        note: Optional[str],
        from_dispute: bool
    ) -> ResolutionResult:
        action = 'payout' if purpose == TransactionPurpose.PAYOUT else 'refund'
        ledger_provider = provider_key(order.payment_method, purpose)
        amount = self._settled_amount(order)
        if purpose == TransactionPurpose.PAYOUT:
            provider = self.providers.payout_provider(order.payment_method)
        else:
            provider = self.providers.reversal_provider(order.payment_method)

        if provider is None:
            return await self._record_unstarted(
                order, ledger_provider, purpose, actor_id, amount, TransactionStatus.SKIPPED,
                f"Automated {action} not available for {order.payment_method.value}. Manual action required.",
                from_dispute,
            )

        # Resolve the destination before anything moves
        if purpose == TransactionPurpose.PAYOUT:
            payee = await self.users.find_user_by_id(order.seller_id)
            if payee is None or not payee.msisdn:
                return await self._record_unstarted(
                    order, ledger_provider, purpose, actor_id, amount, TransactionStatus.FAILED,
                    f"Seller {order.seller_id} has no payout phone number", from_dispute,
                )
        else:
            # A collection confirmed only by a status query has no receipt, so it
            # cannot be reversed automatically and the refund is left to the admin
            original = await self.ledger.find_successful(order.id, TransactionPurpose.COLLECTION)
            if original is None or not original.provider_tx_id:
                return await self._record_unstarted(
                    order, ledger_provider, purpose, actor_id, amount, TransactionStatus.FAILED,
                    "No successful collection with a provider transaction id to reverse", from_dispute,
                )

        memo = f"Order {order.id} {action}" + (f": {note}" if note else "")

        async with self.store.unit_of_work() as uow:
            transaction = await self.ledger.record(
                order_id=order.id,
                user_id=actor_id,
                provider=ledger_provider,
                correlation_ref=provisional_ref(),
                amount=amount,
                description=f"{action} requested" + (f": {note}" if note else ""),
                purpose=purpose,
                uow=uow,
            )
            if from_dispute:
                order = await self.orders.transition(
                    order.id, _OUTBOUND_EVENTS[purpose][0], actor_id=actor_id, detail=note, uow=uow
                )

        try:
            if purpose == TransactionPurpose.PAYOUT:
                result = await provider.initiate_payout(payee, amount, memo)
            else:
                result = await provider.initiate_reversal(original.provider_tx_id, amount, memo)
        except ProviderError as e:
            return await self._fail_outbound(order, transaction, f"{action} initiation failed: {e}", from_dispute)

        if not result.provider_accepted:
            return await self._fail_outbound(
                order, transaction, f"{action} initiation rejected: {result.description}", from_dispute
            )

        try:
            transaction = await self.ledger.assign_correlation_ref(
                transaction.id,
                result.correlation_ref,
                description=f"{action} initiated. Ref: {result.correlation_ref}" + (f". Note: {note}" if note else ""),
            ) or await self.ledger.get(transaction.id)
        except DuplicateCorrelationRef as e:
            return await self._fail_outbound(order, transaction, str(e), from_dispute)

        logger.info(f"Order {order.id}: {action} initiated, ref {result.correlation_ref}")
        if from_dispute:
            await self._dispatch([
                (order.buyer_id, messages.resolution_started(order, action)),
                (order.seller_id, messages.resolution_started(order, action)),
            ])
        return ResolutionResult(order=order, transaction=transaction, outcome='initiated')

    async def _record_unstarted(
        self,
        order: Order,
        ledger_provider: str,
        purpose: TransactionPurpose,
        actor_id: Optional[int],
        amount: Decimal,
        status: TransactionStatus,
        description: str,
        from_dispute: bool
    ) -> ResolutionResult:
        """Record a payout/refund that could not be started; the order does not move."""
        action = 'payout' if purpose == TransactionPurpose.PAYOUT else 'refund'
        async with self.store.unit_of_work() as uow:
            transaction = await self.ledger.record(
                order_id=order.id,
                user_id=actor_id,
                provider=ledger_provider,
                correlation_ref=f"{MANUAL_PREFIX}{uuid.uuid4().hex}",
                amount=amount,
                status=status,
                description=description,
                purpose=purpose,
                uow=uow,
            )
            await uow.append_audit(
                order.id, order.status, order.status, f"{action}_{status.value}",
                actor_id=actor_id, detail=description,
            )

        logger.warning(f"Order {order.id}: {action} {status.value}. {description}")
        outbox = [(ADMIN, messages.manual_action_required(order, action, description))]
        if from_dispute:
            outbox.append((order.buyer_id, messages.manual_action_required(order, action, 'order remains disputed')))
            outbox.append((order.seller_id, messages.manual_action_required(order, action, 'order remains disputed')))
        await self._dispatch(outbox)
        return ResolutionResult(order=order, transaction=transaction, outcome=status.value)

    async def _fail_outbound(
        self,
        order: Order,
        transaction: Transaction,
        reason: str,
        from_dispute: bool
    ) -> ResolutionResult:
        purpose = transaction.purpose
        async with self.store.unit_of_work() as uow:
            transaction = await self.ledger.update_status(
                transaction.id, TransactionStatus.FAILED, description=reason, uow=uow
            )
            current = await uow.get_order(order.id, for_update=True)
            start_status = TRANSITIONS[_OUTBOUND_EVENTS[purpose][0]].target
            if from_dispute and current.status == start_status:
                current = await self.orders.transition(
                    order.id, _OUTBOUND_EVENTS[purpose][1], actor_id=None, detail=reason, uow=uow
                )

        logger.error(f"Order {order.id}: {reason}")
        await self._dispatch([(ADMIN, messages.manual_action_required(current, purpose.value, reason))])
        return ResolutionResult(order=current, transaction=transaction, outcome='failed')

    @staticmethod
    def _settled_amount(order: Order) -> Decimal:
        """What escrow actually holds for the order."""
        if order.amount_paid is not None:
            return min(order.amount_paid, order.amount)
        return order.amount

    # ==================== NOTIFICATIONS ====================

    async def _dispatch(self, outbox: List[Tuple[Any, str]]) -> None:
        """Resolve recipients and hand messages to the fire-and-forget dispatcher."""
        for recipient, message in outbox:
            if recipient == ADMIN:
                self.notifier.alert_admin(message)
                continue
            try:
                user = await self.users.find_user_by_id(recipient)
            except Exception as e:
                logger.error(f"Could not resolve notification recipient {recipient}: {e}")
                continue
            self.notifier.send(user.contact if user else None, message)
