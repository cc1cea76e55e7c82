"""
Domain records for the escrow service.

Orders, ledger transactions, audit entries and the normalized provider
events exchanged between payment adapters and the reconciliation engine.
Amounts are always Decimal.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    """Enumeration of order states."""
    PENDING = "pending"                        # Created, waiting for collection
    PAID = "paid"                              # Funds collected and held
    SHIPPED = "shipped"                        # Seller marked as shipped
    DELIVERED = "delivered"                    # Seller reported delivery
    DISPUTED = "disputed"                      # Dispute open, funds frozen
    PROCESSING_PAYOUT = "processing_payout"    # Release to seller in flight
    PROCESSING_REFUND = "processing_refund"    # Reversal to buyer in flight
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})


class TransactionStatus(str, Enum):
    """Enumeration of ledger transaction states."""
    PENDING = "pending"
    PROCESSING = "processing"    # Status queried, provider answer ambiguous
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    SKIPPED = "skipped"          # No automated provider path, manual action needed

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TRANSACTION_STATUSES


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.SUCCESS,
    TransactionStatus.FAILED,
    TransactionStatus.REFUNDED,
    TransactionStatus.SKIPPED,
})


class TransactionPurpose(str, Enum):
    """What a ledger transaction moves money for."""
    COLLECTION = "collection"
    PAYOUT = "payout"
    REVERSAL = "reversal"


class PaymentMethod(str, Enum):
    """Payment methods an order may be placed with."""
    MPESA = "mpesa"
    AIRTEL = "airtel"
    EQUITY = "equity"


class UserRole(str, Enum):
    """Roles known to the identity subsystem."""
    BUYER = "buyer"
    SELLER = "seller"
    BUSINESS = "business"
    ADMIN = "admin"


SELLER_ROLES = frozenset({UserRole.SELLER.value, UserRole.BUSINESS.value})


class CallbackOutcome(str, Enum):
    """Three-way outcome every provider status is normalized into."""
    SUCCESS = "success"
    FAILURE = "failure"
    AMBIGUOUS = "ambiguous"


def provider_key(method: str, purpose: TransactionPurpose) -> str:
    """
    Ledger provider name for a payment method and purpose.

    Collections are recorded under the bare method name, payouts and
    reversals under ``<method>_payout`` / ``<method>_reversal``.
    """
    method = PaymentMethod(method).value
    if purpose == TransactionPurpose.COLLECTION:
        return method
    return f"{method}_{purpose.value}"


class User(BaseModel):
    """Read-only view of a user from the identity subsystem."""
    model_config = ConfigDict(frozen=True)

    id: int
    role: str
    contact: Optional[str] = None         # Notification address (chat id)
    phone_number: Optional[str] = None    # MSISDN for collections and payouts

    @property
    def msisdn(self) -> Optional[str]:
        return self.phone_number or self.contact


class Order(BaseModel):
    """One buyer/seller escrow order."""
    model_config = ConfigDict(frozen=True)

    id: int
    buyer_id: int
    seller_id: int
    item_description: str
    amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod
    proof_of_delivery: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_underpaid(self) -> bool:
        """True when a collection settled for less than the order amount."""
        return self.amount_paid is not None and self.amount_paid < self.amount


class Transaction(BaseModel):
    """One attempt to move money for an order."""
    model_config = ConfigDict(frozen=True)

    id: int
    order_id: int
    user_id: Optional[int] = None
    provider: str
    purpose: TransactionPurpose
    correlation_ref: str
    provider_tx_id: Optional[str] = None
    amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class AuditEntry(BaseModel):
    """Append-only record of one order state transition."""
    model_config = ConfigDict(frozen=True)

    id: int
    order_id: int
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    event: str
    actor_id: Optional[int] = None
    detail: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class NormalizedEvent(BaseModel):
    """Provider callback or status-query answer in canonical form."""
    model_config = ConfigDict(frozen=True)

    correlation_ref: str
    provider_tx_id: Optional[str] = None
    outcome: CallbackOutcome
    amount: Optional[Decimal] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    description: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_definitive(self) -> bool:
        return self.outcome != CallbackOutcome.AMBIGUOUS


class InitiationResult(BaseModel):
    """Synchronous answer from a provider initiation call."""
    model_config = ConfigDict(frozen=True)

    correlation_ref: str
    provider_accepted: bool
    description: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
