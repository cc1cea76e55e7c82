"""
Escrow Service Module

User and admin facing escrow operations composed from the order state
machine, the transaction ledger and the reconciliation engine. Handlers of
any front end (bot, HTTP API) call this module; it never talks to a payment
provider directly.

Features:
    - Buyer checkout and collection retry
    - Shipping, delivery reporting and delivery confirmation with payout
    - Disputes, cancellation and admin resolution
    - Order history and transaction listing for parties and admins
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from errors import InvalidInput, InvalidTransition, NotAuthorized
from ledger import TransactionLedger
from models import AuditEntry, Order, OrderStatus, Transaction, TransactionPurpose, TransactionStatus
from notifications import NotificationDispatcher
import notifications as messages
from order_state import OrderEvent, OrderStateMachine, UserDirectory
from reconciliation import ReconciliationEngine, ResolutionResult

logger = logging.getLogger(__name__)


class EscrowService:
    """
    Core escrow operations.

    Attributes:
        orders: Order state machine
        ledger: Transaction ledger
        engine: Reconciliation engine (collections, payouts, refunds)
        users: Identity lookup for notification targets
        notifier: Fire-and-forget notification dispatcher
    """

    def __init__(
        self,
        orders: OrderStateMachine,
        ledger: TransactionLedger,
        engine: ReconciliationEngine,
        users: UserDirectory,
        notifier: NotificationDispatcher
    ):
        self.orders = orders
        self.ledger = ledger
        self.engine = engine
        self.users = users
        self.notifier = notifier
        logger.info("EscrowService initialized successfully")

    # ==================== PAYMENT FLOW ====================

    async def create_order(
        self,
        buyer_id: int,
        seller_id: int,
        item_description: str,
        amount,
        payment_method: str
    ) -> Order:
        """Create a pending order and let the seller know about it."""
        order = await self.orders.create_order(buyer_id, seller_id, item_description, amount, payment_method)
        await self._notify(order.seller_id, messages.order_created(order))
        return order

    async def checkout(
        self,
        buyer_id: int,
        seller_id: int,
        item_description: str,
        amount,
        payment_method: str
    ) -> Tuple[Order, Transaction]:
        """
        Create an order and request payment from the buyer.

        Args:
            buyer_id: Buyer user id
            seller_id: Seller user id
            item_description: What is being bought
            amount: Order amount
            payment_method: 'mpesa', 'airtel' or 'equity'

        Returns:
            Tuple of (pending order, pending collection transaction)

        Raises:
            InvalidInput, SellerNotEligible: Order rejected, nothing stored
            ProviderUnavailable, ProviderRejected, ProviderTimeout: The order
                exists and stays pending; the buyer may retry with pay_order()
        """
        order = await self.create_order(buyer_id, seller_id, item_description, amount, payment_method)
        transaction = await self.engine.request_collection(order.id, buyer_id)
        return order, transaction

    async def pay_order(self, order_id: int, buyer_id: int) -> Transaction:
        """Retry collection for a pending order."""
        logger.info(f"Buyer {buyer_id} requesting collection for order {order_id}")
        return await self.engine.request_collection(order_id, buyer_id)

    async def cancel_order(self, order_id: int, buyer_id: int) -> Order:
        """
        Cancel an unpaid order.

        Raises:
            InvalidTransition: If the order is not pending or a payment is in progress
        """
        if await self.ledger.has_open(order_id, TransactionPurpose.COLLECTION):
            raise InvalidTransition(f"Order {order_id} has a payment in progress and cannot be cancelled")

        order = await self.orders.transition(order_id, OrderEvent.CANCEL, actor_id=buyer_id)
        await self._notify(order.seller_id, messages.order_cancelled(order))
        return order

    # ==================== DELIVERY FLOW ====================

    async def mark_shipped(
        self,
        order_id: int,
        seller_id: int,
        proof_of_delivery: Optional[str] = None
    ) -> Order:
        """Seller marks a paid order as shipped, optionally with a tracking reference."""
        proof = (proof_of_delivery or '').strip() or None
        order = await self.orders.transition(
            order_id, OrderEvent.SHIP, actor_id=seller_id, detail=proof, proof_of_delivery=proof
        )
        await self._notify(order.buyer_id, messages.order_shipped(order))
        return order

    async def report_delivery(self, order_id: int, seller_id: int, proof_of_delivery: str) -> Order:
        """
        Seller reports a shipped order as delivered.

        Raises:
            InvalidInput: If no proof of delivery is given
        """
        proof = (proof_of_delivery or '').strip()
        if not proof:
            raise InvalidInput("Proof of delivery is required")

        order = await self.orders.transition(
            order_id, OrderEvent.REPORT_DELIVERY, actor_id=seller_id, detail=proof, proof_of_delivery=proof
        )
        await self._notify(order.buyer_id, messages.delivery_reported(order))
        return order

    async def confirm_delivery(self, order_id: int, buyer_id: int) -> ResolutionResult:
        """
        Buyer confirms receipt; the order completes and the seller payout starts.

        The order is completed before the payout is attempted. A payout that
        cannot be started is kept in the ledger as failed/skipped and flagged
        to the admin; the order is not rolled back.

        Returns:
            ResolutionResult with the completed order and the payout transaction
        """
        order = await self.orders.transition(order_id, OrderEvent.CONFIRM_DELIVERY, actor_id=buyer_id)
        await self._notify(order.seller_id, messages.delivery_confirmed(order))
        return await self.engine.start_payout(order, actor_id=buyer_id)

    # ==================== DISPUTE FLOW ====================

    async def raise_dispute(self, order_id: int, actor_id: int, reason: str) -> Order:
        """
        Either party disputes a paid, shipped or delivered order.

        Raises:
            InvalidInput: If the reason is empty
        """
        reason = (reason or '').strip()
        if not reason:
            raise InvalidInput("A reason is required to raise a dispute")

        order = await self.orders.transition(
            order_id, OrderEvent.RAISE_DISPUTE, actor_id=actor_id, detail=reason
        )
        logger.warning(f"Dispute raised on order {order_id} by user {actor_id}: {reason}")

        other_party = order.seller_id if actor_id == order.buyer_id else order.buyer_id
        message = messages.dispute_raised(order, reason)
        await self._notify(other_party, message)
        self.notifier.alert_admin(message)
        return order

    async def release_funds(self, order_id: int, admin_id: int, note: Optional[str] = None) -> ResolutionResult:
        """Admin resolves a dispute in the seller's favour."""
        return await self.engine.resolve_dispute(order_id, admin_id, 'release', note)

    async def refund_buyer(self, order_id: int, admin_id: int, note: Optional[str] = None) -> ResolutionResult:
        """Admin resolves a dispute in the buyer's favour."""
        return await self.engine.resolve_dispute(order_id, admin_id, 'refund', note)

    async def admin_override(self, order_id: int, admin_id: int, target_status, reason: str) -> Order:
        """Force a disputed order into any status after manual handling."""
        return await self.orders.override(order_id, target_status, admin_id, reason)

    # ==================== QUERIES ====================

    async def get_order(self, order_id: int, user_id: int) -> Order:
        order = await self.orders.get_order(order_id)
        await self._require_party_or_admin(order, user_id)
        return order

    async def get_disputed_orders(self, admin_id: int) -> List[Order]:
        await self._require_admin(admin_id)
        return await self.orders.list_orders(OrderStatus.DISPUTED)

    async def get_order_history(self, order_id: int, user_id: int) -> List[AuditEntry]:
        """Audit trail of an order, oldest first."""
        order = await self.orders.get_order(order_id)
        await self._require_party_or_admin(order, user_id)
        return await self.orders.history(order_id)

    async def get_transactions(self, order_id: int, user_id: int) -> List[Transaction]:
        order = await self.orders.get_order(order_id)
        await self._require_party_or_admin(order, user_id)
        return await self.ledger.list_for_order(order_id)

    async def get_escrow_balance(self, order_id: int) -> Decimal:
        """Collected minus paid out or refunded, for one order."""
        held = Decimal('0')
        for transaction in await self.ledger.list_for_order(order_id):
            if transaction.status != TransactionStatus.SUCCESS:
                continue
            if transaction.purpose == TransactionPurpose.COLLECTION:
                held += transaction.amount
            else:
                held -= transaction.amount
        return held

    # ==================== HELPERS ====================

    async def _require_admin(self, user_id: int) -> None:
        if not await self.orders.is_admin(user_id):
            raise NotAuthorized(f"User {user_id} is not an admin")

    async def _require_party_or_admin(self, order: Order, user_id: int) -> None:
        if user_id in (order.buyer_id, order.seller_id):
            return
        await self._require_admin(user_id)

    async def _notify(self, user_id: int, message: str) -> None:
        try:
            user = await self.users.find_user_by_id(user_id)
        except Exception as e:
            logger.error(f"Could not resolve notification recipient {user_id}: {e}")
            return
        self.notifier.send(user.contact if user else None, message)
