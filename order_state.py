"""
Order state machine.

Owns the authoritative status of every order. Each event has a fixed set of
source states, one target state and the party allowed to trigger it. A
transition is applied as a compare-and-swap on the stored status and is
written to the audit log in the same unit of work, so two concurrent
requests on one order can never both win.

    pending -> paid -> shipped -> (delivered) -> completed
    shipped | delivered -> completed     (auto release, no dispute in time)
    paid | shipped | delivered -> disputed
    disputed -> processing_payout -> completed | disputed
    disputed -> processing_refund -> refunded | disputed
    pending -> cancelled
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Protocol

from config import Config
from errors import (
    InvalidInput,
    InvalidTransition,
    NotAuthorized,
    OrderNotFound,
    SellerNotEligible,
)
from models import AuditEntry, Order, OrderStatus, PaymentMethod, SELLER_ROLES, User, UserRole
from store import Store, UnitOfWork, using_unit
from utils import parse_amount

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    """Read-only lookup into the identity subsystem."""

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        ...


class OrderEvent(str, Enum):
    """Events that move an order between states."""
    COLLECTION_SUCCEEDED = "collection_succeeded"
    SHIP = "ship"
    REPORT_DELIVERY = "report_delivery"
    CONFIRM_DELIVERY = "confirm_delivery"
    RAISE_DISPUTE = "raise_dispute"
    CANCEL = "cancel"
    RELEASE_FUNDS = "release_funds"
    REFUND_BUYER = "refund_buyer"
    PAYOUT_SUCCEEDED = "payout_succeeded"
    PAYOUT_FAILED = "payout_failed"
    REFUND_SUCCEEDED = "refund_succeeded"
    REFUND_FAILED = "refund_failed"
    AUTO_RELEASE = "auto_release"


class Actor(str, Enum):
    """Who may trigger an event."""
    BUYER = "buyer"
    SELLER = "seller"
    PARTY = "party"      # buyer or seller
    ADMIN = "admin"
    SYSTEM = "system"    # reconciliation engine only, no user id


@dataclass(frozen=True)
class Rule:
    sources: FrozenSet[OrderStatus]
    target: OrderStatus
    actor: Actor


def _rule(sources, target, actor) -> Rule:
    return Rule(frozenset(sources), target, actor)


TRANSITIONS: Dict[OrderEvent, Rule] = {
    OrderEvent.COLLECTION_SUCCEEDED: _rule([OrderStatus.PENDING], OrderStatus.PAID, Actor.SYSTEM),
    OrderEvent.SHIP: _rule([OrderStatus.PAID], OrderStatus.SHIPPED, Actor.SELLER),
    OrderEvent.REPORT_DELIVERY: _rule([OrderStatus.SHIPPED], OrderStatus.DELIVERED, Actor.SELLER),
    OrderEvent.CONFIRM_DELIVERY: _rule(
        [OrderStatus.SHIPPED, OrderStatus.DELIVERED], OrderStatus.COMPLETED, Actor.BUYER
    ),
    OrderEvent.RAISE_DISPUTE: _rule(
        [OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED], OrderStatus.DISPUTED, Actor.PARTY
    ),
    OrderEvent.CANCEL: _rule([OrderStatus.PENDING], OrderStatus.CANCELLED, Actor.BUYER),
    OrderEvent.RELEASE_FUNDS: _rule([OrderStatus.DISPUTED], OrderStatus.PROCESSING_PAYOUT, Actor.ADMIN),
    OrderEvent.REFUND_BUYER: _rule([OrderStatus.DISPUTED], OrderStatus.PROCESSING_REFUND, Actor.ADMIN),
    OrderEvent.PAYOUT_SUCCEEDED: _rule([OrderStatus.PROCESSING_PAYOUT], OrderStatus.COMPLETED, Actor.SYSTEM),
    OrderEvent.PAYOUT_FAILED: _rule([OrderStatus.PROCESSING_PAYOUT], OrderStatus.DISPUTED, Actor.SYSTEM),
    OrderEvent.REFUND_SUCCEEDED: _rule([OrderStatus.PROCESSING_REFUND], OrderStatus.REFUNDED, Actor.SYSTEM),
    OrderEvent.REFUND_FAILED: _rule([OrderStatus.PROCESSING_REFUND], OrderStatus.DISPUTED, Actor.SYSTEM),
    OrderEvent.AUTO_RELEASE: _rule(
        [OrderStatus.SHIPPED, OrderStatus.DELIVERED], OrderStatus.COMPLETED, Actor.SYSTEM
    ),
}

ADMIN_OVERRIDE_EVENT = "admin_override"


class OrderStateMachine:
    """
    Creates orders and applies validated transitions.

    Attributes:
        store: Backing store
        users: Identity lookup used for seller eligibility and admin checks
        config: Limits and supported payment methods
    """

    def __init__(self, store: Store, users: UserDirectory, config: Config):
        self.store = store
        self.users = users
        self.config = config

    async def create_order(
        self,
        buyer_id: int,
        seller_id: int,
        item_description: str,
        amount,
        payment_method: str
    ) -> Order:
        """
        Create a pending order.

        Args:
            buyer_id: Buyer user id
            seller_id: Seller user id
            item_description: What is being bought
            amount: Order amount (str, int or Decimal; floats go through str)
            payment_method: One of the supported payment methods

        Returns:
            The new Order in status pending

        Raises:
            InvalidInput: If the amount, method, description or parties are invalid
            SellerNotEligible: If the seller does not exist or cannot sell
        """
        is_valid, value, error = parse_amount(amount, self.config.min_amount, self.config.max_amount)
        if not is_valid:
            raise InvalidInput(error)

        method = str(getattr(payment_method, 'value', payment_method) or '').lower()
        if method not in self.config.supported_payment_methods:
            raise InvalidInput(
                f"Unsupported payment method '{payment_method}'. "
                f"Supported: {', '.join(self.config.supported_payment_methods)}"
            )

        item_description = (item_description or '').strip()
        if not item_description:
            raise InvalidInput("Item description is required")

        if buyer_id == seller_id:
            raise InvalidInput("Buyer and seller must be different users")

        buyer = await self.users.find_user_by_id(buyer_id)
        if buyer is None:
            raise InvalidInput(f"Buyer {buyer_id} not found")

        seller = await self.users.find_user_by_id(seller_id)
        if seller is None or seller.role not in SELLER_ROLES:
            raise SellerNotEligible(f"User {seller_id} is not an eligible seller")

        async with self.store.unit_of_work() as unit:
            order = await unit.insert_order(
                buyer_id=buyer_id,
                seller_id=seller_id,
                item_description=item_description,
                amount=value,
                payment_method=PaymentMethod(method),
            )
            await unit.append_audit(
                order.id, None, OrderStatus.PENDING, "order_created", actor_id=buyer_id
            )

        logger.info(
            f"Created order {order.id}: buyer={buyer_id} seller={seller_id} "
            f"amount={value} method={method}"
        )
        return order

    async def get_order(self, order_id: int, uow: Optional[UnitOfWork] = None) -> Order:
        """
        Raises:
            OrderNotFound: If the order does not exist
        """
        async with using_unit(self.store, uow) as unit:
            order = await unit.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        async with self.store.unit_of_work() as unit:
            return await unit.list_orders(status)

    async def history(self, order_id: int) -> List[AuditEntry]:
        async with self.store.unit_of_work() as unit:
            return await unit.list_audit(order_id)

    async def transition(
        self,
        order_id: int,
        event,
        actor_id: Optional[int] = None,
        detail: Optional[str] = None,
        proof_of_delivery: Optional[str] = None,
        amount_paid: Optional[Decimal] = None,
        uow: Optional[UnitOfWork] = None
    ) -> Order:
        """
        Apply an event to an order.

        Args:
            order_id: Order to transition
            event: OrderEvent (or its string value)
            actor_id: User triggering the event, None for system events
            detail: Free text kept in the audit log (dispute reason, receipt...)
            proof_of_delivery: Stored with shipping/delivery events
            amount_paid: Stored with the collection event
            uow: Unit of work to join

        Returns:
            The updated Order

        Raises:
            OrderNotFound: If the order does not exist
            NotAuthorized: If the actor may not trigger this event
            InvalidTransition: If the current status does not permit the event,
                or another request transitioned the order first
        """
        try:
            event = OrderEvent(event)
        except ValueError:
            raise InvalidInput(f"Unknown order event '{event}'")
        rule = TRANSITIONS[event]

        async with using_unit(self.store, uow) as unit:
            order = await unit.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            await self._authorize(order, rule.actor, actor_id, event.value)

            if order.status not in rule.sources:
                raise InvalidTransition(
                    f"Cannot {event.value} order {order_id} in status '{order.status.value}'",
                    current_status=order.status.value,
                )

            updated = await unit.update_order_status(
                order_id,
                expected=order.status,
                new_status=rule.target,
                proof_of_delivery=proof_of_delivery,
                amount_paid=amount_paid,
            )
            if updated is None:
                raise InvalidTransition(
                    f"Order {order_id} was transitioned concurrently, {event.value} rejected"
                )

            await unit.append_audit(
                order_id, order.status, rule.target, event.value, actor_id=actor_id, detail=detail
            )

        logger.info(
            f"Order {order_id}: {order.status.value} -> {rule.target.value} "
            f"({event.value}, actor={actor_id if actor_id is not None else 'system'})"
        )
        return updated

    async def override(
        self,
        order_id: int,
        target_status,
        admin_id: int,
        reason: str,
        uow: Optional[UnitOfWork] = None
    ) -> Order:
        """
        Move a disputed order directly to any status.

        Used after manual resolution outside the automated provider paths.

        Raises:
            InvalidInput: If the reason is empty or the status unknown
            NotAuthorized: If admin_id is not an admin
            InvalidTransition: If the order is not disputed
        """
        if not reason or not reason.strip():
            raise InvalidInput("A reason is required for an admin override")
        try:
            target = OrderStatus(target_status)
        except ValueError:
            raise InvalidInput(f"Unknown order status '{target_status}'")

        async with using_unit(self.store, uow) as unit:
            order = await unit.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            await self._authorize(order, Actor.ADMIN, admin_id, ADMIN_OVERRIDE_EVENT)

            if order.status != OrderStatus.DISPUTED:
                raise InvalidTransition(
                    f"Admin override requires a disputed order, order {order_id} is '{order.status.value}'",
                    current_status=order.status.value,
                )

            updated = await unit.update_order_status(order_id, OrderStatus.DISPUTED, target)
            if updated is None:
                raise InvalidTransition(f"Order {order_id} was transitioned concurrently")

            await unit.append_audit(
                order_id, OrderStatus.DISPUTED, target, ADMIN_OVERRIDE_EVENT,
                actor_id=admin_id, detail=reason.strip()
            )

        logger.warning(f"Admin {admin_id} overrode order {order_id}: disputed -> {target.value} ({reason})")
        return updated

    async def is_admin(self, user_id: Optional[int]) -> bool:
        if user_id is None:
            return False
        user = await self.users.find_user_by_id(user_id)
        return user is not None and user.role == UserRole.ADMIN.value

    async def _authorize(self, order: Order, actor: Actor, actor_id: Optional[int], event: str) -> None:
        if actor == Actor.SYSTEM:
            allowed = actor_id is None
        elif actor == Actor.BUYER:
            allowed = actor_id == order.buyer_id
        elif actor == Actor.SELLER:
            allowed = actor_id == order.seller_id
        elif actor == Actor.PARTY:
            allowed = actor_id in (order.buyer_id, order.seller_id)
        else:
            allowed = await self.is_admin(actor_id)

        if not allowed:
            raise NotAuthorized(f"User {actor_id} may not {event} order {order.id}")
