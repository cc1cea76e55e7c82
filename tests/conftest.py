"""
Pytest configuration and fixtures.

Everything runs against MemoryStore with scripted provider adapters, so no
database or network is needed.
"""
import itertools
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from config import Config
from errors import InvalidInput
from escrow_service import EscrowService
from ledger import TransactionLedger
from models import (
    CallbackOutcome,
    InitiationResult,
    NormalizedEvent,
    TransactionPurpose,
    User,
)
from notifications import NotificationDispatcher
from order_state import OrderStateMachine
from payment_providers import ProviderRegistry
from reconciliation import ReconciliationEngine
from store import MemoryStore

BUYER_ID = 1
SELLER_ID = 2
OTHER_USER_ID = 3
BUSINESS_ID = 4
SELLER_WITHOUT_PHONE_ID = 5
ADMIN_ID = 99
ADMIN_CHAT = 'admin-chat'

PROVIDER_ENV_KEYS = [
    'MPESA_CONSUMER_KEY', 'MPESA_CONSUMER_SECRET', 'MPESA_SHORTCODE', 'MPESA_PASSKEY',
    'MPESA_CALLBACK_URL', 'MPESA_B2C_INITIATOR_NAME', 'MPESA_B2C_SECURITY_CREDENTIAL',
    'MPESA_B2C_RESULT_URL', 'MPESA_B2C_TIMEOUT_URL', 'MPESA_REVERSAL_INITIATOR_NAME',
    'MPESA_REVERSAL_SECURITY_CREDENTIAL', 'MPESA_REVERSAL_RESULT_URL', 'MPESA_REVERSAL_TIMEOUT_URL',
    'MPESA_ALLOWED_IPS', 'AIRTEL_CLIENT_ID', 'AIRTEL_CLIENT_SECRET', 'AIRTEL_CALLBACK_URL',
    'EQUITY_CLIENT_ID', 'EQUITY_CLIENT_SECRET', 'EQUITY_MERCHANT_CODE', 'EQUITY_CALLBACK_URL',
    'WEBHOOK_SECRET', 'TELEGRAM_BOT_TOKEN', 'ADMIN_CHAT_ID', 'ENVIRONMENT',
    'UNDERPAYMENT_TOLERANCE', 'ACCEPT_UNDERPAYMENT', 'SUPPORTED_PAYMENT_METHODS',
    'AUTO_RELEASE_DAYS', 'AUTO_RELEASE_INTERVAL_SECONDS',
]

MPESA_ENV = {
    'MPESA_CONSUMER_KEY': 'consumer-key',
    'MPESA_CONSUMER_SECRET': 'consumer-secret',
    'MPESA_SHORTCODE': '174379',
    'MPESA_PASSKEY': 'passkey',
    'MPESA_CALLBACK_URL': 'https://escrow.example.com/payments/mpesa/collection/callback',
    'MPESA_B2C_INITIATOR_NAME': 'testapi',
    'MPESA_B2C_SECURITY_CREDENTIAL': 'b2c-credential',
    'MPESA_B2C_RESULT_URL': 'https://escrow.example.com/payments/mpesa/payout/result',
    'MPESA_B2C_TIMEOUT_URL': 'https://escrow.example.com/payments/mpesa/payout/timeout',
    'MPESA_REVERSAL_INITIATOR_NAME': 'testapi',
    'MPESA_REVERSAL_SECURITY_CREDENTIAL': 'reversal-credential',
    'MPESA_REVERSAL_RESULT_URL': 'https://escrow.example.com/payments/mpesa/reversal/result',
    'MPESA_REVERSAL_TIMEOUT_URL': 'https://escrow.example.com/payments/mpesa/reversal/timeout',
}


class FakeUserDirectory:
    """In-memory identity lookup."""

    def __init__(self, users: List[User]):
        self.users = {user.id: user for user in users}

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)


class RecordingNotifier:
    """Notifier sink that keeps every delivered message."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    async def notify(self, contact: str, message: str) -> None:
        self.sent.append((contact, message))

    def to(self, contact: str) -> List[str]:
        return [message for recipient, message in self.sent if recipient == contact]


class FakeProvider:
    """
    Scriptable payment adapter.

    Callback payloads are plain dicts: {"ref", "outcome", "amount", "receipt"}.
    """

    def __init__(self, name: str = 'mpesa', payout: bool = True, reversal: bool = True):
        self.name = name
        self._payout = payout
        self._reversal = reversal
        self.final_timeout_purposes = frozenset()
        self.calls: List[Tuple[Any, ...]] = []
        self.accept = True
        self.error: Optional[Exception] = None
        self.query_result: Any = None
        self._counter = itertools.count(1)

    def supports_payout(self) -> bool:
        return self._payout

    def supports_reversal(self) -> bool:
        return self._reversal

    async def _initiate(self, kind: str, *args) -> InitiationResult:
        self.calls.append((kind,) + args)
        if self.error is not None:
            raise self.error
        return InitiationResult(
            correlation_ref=f"{self.name.upper()}-{kind.upper()}-{next(self._counter)}",
            provider_accepted=self.accept,
            description='Accepted' if self.accept else 'Insufficient balance',
        )

    async def initiate_collection(self, order, payer) -> InitiationResult:
        return await self._initiate('collection', order.id, payer.id)

    async def initiate_payout(self, payee, amount, memo) -> InitiationResult:
        return await self._initiate('payout', payee.id, amount)

    async def initiate_reversal(self, original_provider_tx_id, amount, memo) -> InitiationResult:
        return await self._initiate('reversal', original_provider_tx_id, amount)

    def normalize_callback(self, raw_payload: Dict[str, Any]) -> NormalizedEvent:
        if not isinstance(raw_payload, dict) or not raw_payload.get('ref'):
            raise InvalidInput("callback missing ref")
        amount = raw_payload.get('amount')
        return NormalizedEvent(
            correlation_ref=raw_payload['ref'],
            provider_tx_id=raw_payload.get('receipt'),
            outcome=CallbackOutcome(raw_payload.get('outcome', 'success')),
            amount=Decimal(str(amount)) if amount is not None else None,
            description=raw_payload.get('description'),
            raw=raw_payload,
        )

    def extract_correlation_ref(self, raw_payload: Dict[str, Any]) -> Optional[str]:
        return raw_payload.get('ref') if isinstance(raw_payload, dict) else None

    def acknowledgement(self, message: Optional[str] = None) -> Dict[str, Any]:
        return {'ack': self.name, 'message': message or 'Accepted'}

    async def query_status(self, correlation_ref, purpose=TransactionPurpose.COLLECTION) -> NormalizedEvent:
        self.calls.append(('query', correlation_ref, purpose))
        result = self.query_result
        if isinstance(result, Exception):
            raise result
        if result is None:
            return NormalizedEvent(correlation_ref=correlation_ref, outcome=CallbackOutcome.AMBIGUOUS)
        return result.model_copy(update={'correlation_ref': correlation_ref})

    async def aclose(self) -> None:
        pass


@pytest.fixture
def config(monkeypatch) -> Config:
    """Config with no provider credentials and default escrow policy."""
    for key in PROVIDER_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('ADMIN_CHAT_ID', ADMIN_CHAT)
    return Config()


@pytest.fixture
def mpesa_config(monkeypatch, config) -> Config:
    """Config with full M-Pesa collection, B2C and reversal credentials."""
    for key, value in MPESA_ENV.items():
        monkeypatch.setenv(key, value)
    return Config()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def users() -> FakeUserDirectory:
    return FakeUserDirectory([
        User(id=BUYER_ID, role='buyer', contact='chat-buyer', phone_number='0712345678'),
        User(id=SELLER_ID, role='seller', contact='chat-seller', phone_number='0723456789'),
        User(id=OTHER_USER_ID, role='buyer', contact='chat-other', phone_number='0734567890'),
        User(id=BUSINESS_ID, role='business', contact='chat-business', phone_number='0745678901'),
        User(id=SELLER_WITHOUT_PHONE_ID, role='seller', contact=None, phone_number=None),
        User(id=ADMIN_ID, role='admin', contact=ADMIN_CHAT),
    ])


@pytest.fixture
def sink() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifier(sink) -> NotificationDispatcher:
    return NotificationDispatcher(sink, admin_contact=ADMIN_CHAT)


@pytest.fixture
def mpesa() -> FakeProvider:
    return FakeProvider('mpesa')


@pytest.fixture
def airtel() -> FakeProvider:
    return FakeProvider('airtel', payout=False, reversal=False)


@pytest.fixture
def registry(mpesa, airtel) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(mpesa)
    registry.register(airtel)
    return registry


@pytest.fixture
def orders(store, users, config) -> OrderStateMachine:
    return OrderStateMachine(store, users, config)


@pytest.fixture
def ledger(store) -> TransactionLedger:
    return TransactionLedger(store)


@pytest.fixture
def engine(store, orders, ledger, registry, users, notifier, config) -> ReconciliationEngine:
    return ReconciliationEngine(store, orders, ledger, registry, users, notifier, config)


@pytest.fixture
def service(orders, ledger, engine, users, notifier) -> EscrowService:
    return EscrowService(orders, ledger, engine, users, notifier)


@pytest.fixture
def place_order(service):
    """Create a pending order between the default buyer and seller."""
    async def _place(amount='1000', method='mpesa', seller_id=SELLER_ID):
        return await service.create_order(BUYER_ID, seller_id, 'Leather jacket', amount, method)
    return _place


@pytest.fixture
def collect(service, engine):
    """Request collection for an order and deliver the provider's answer."""
    async def _collect(order, amount=None, outcome=CallbackOutcome.SUCCESS, receipt='QK12ABC'):
        transaction = await service.pay_order(order.id, BUYER_ID)
        event = NormalizedEvent(
            correlation_ref=transaction.correlation_ref,
            provider_tx_id=receipt,
            outcome=outcome,
            amount=order.amount if amount is None else Decimal(str(amount)),
        )
        await engine.apply_event(transaction.provider, event)
        return transaction
    return _collect


@pytest.fixture
def disputed_order(place_order, collect, service):
    """A paid-then-disputed order."""
    async def _disputed(method='mpesa', seller_id=SELLER_ID):
        order = await place_order(method=method, seller_id=seller_id)
        await collect(order)
        return await service.raise_dispute(order.id, BUYER_ID, 'Item never arrived')
    return _disputed
