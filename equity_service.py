"""
Equity Bank payment provider adapter.

Collections go through the bank's payment initiation API with a reference we
generate; the bank posts the outcome to our callback URL with the same
``transactionReference``. Payouts and refunds through Equity are not
automated.
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from config import Config
from errors import InvalidInput, ProviderRejected
from models import (
    CallbackOutcome,
    InitiationResult,
    NormalizedEvent,
    Order,
    TransactionPurpose,
    User,
)
from payment_providers import AccessTokenCache, ProviderHttpClient, RETRY_DELAY
from utils import validate_kenyan_phone

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({'COMPLETED', 'SUCCESS', 'SUCCESSFUL', '000'})
FAILURE_STATUSES = frozenset({'FAILED', 'FAILURE', 'CANCELLED', 'DECLINED', 'REJECTED', 'EXPIRED'})


def classify_status(status: Any) -> CallbackOutcome:
    value = str(status or '').strip().upper()
    if value in SUCCESS_STATUSES:
        return CallbackOutcome.SUCCESS
    if value in FAILURE_STATUSES:
        return CallbackOutcome.FAILURE
    return CallbackOutcome.AMBIGUOUS


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ''):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class EquityProvider:
    """Equity Bank adapter (collections only)."""

    name = 'equity'
    final_timeout_purposes = frozenset()

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = RETRY_DELAY
    ):
        self.config = config
        self.base_url = config.equity_base_url.rstrip('/')
        self.http = ProviderHttpClient(
            self.name, timeout=config.api_timeout, transport=transport, retry_delay=retry_delay
        )
        self._token = AccessTokenCache()

    def supports_payout(self) -> bool:
        return False

    def supports_reversal(self) -> bool:
        return False

    async def _fetch_token(self):
        data = await self.http.request(
            'POST',
            f"{self.base_url}/oauth/token",
            data={'grant_type': 'client_credentials'},
            auth=(self.config.equity_client_id, self.config.equity_client_secret),
        )
        access_token = data.get('access_token')
        if not access_token:
            raise ProviderRejected("Equity access token not found in response", provider=self.name)
        return access_token, data.get('expires_in', 3600)

    async def _headers(self) -> Dict[str, str]:
        token = await self._token.get(self._fetch_token)
        return {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}

    async def initiate_collection(self, order: Order, payer: User) -> InitiationResult:
        """
        Raises:
            ProviderRejected, ProviderUnavailable, ProviderTimeout
        """
        is_valid, phone, error = validate_kenyan_phone(payer.msisdn)
        if not is_valid:
            raise ProviderRejected(f"Invalid phone number for user {payer.id}: {error}", provider=self.name)

        reference = f"ESCROW-EQUITY-{order.id}-{int(time.time() * 1000)}"
        payload = {
            'merchantCode': self.config.equity_merchant_code,
            'transactionReference': reference,
            'amount': f"{order.amount:.2f}",
            'currency': 'KES',
            'customer': {'mobileNumber': phone, 'countryCode': 'KE'},
            'description': f"Payment for Order #{order.id}",
            'callbackUrl': f"{self.config.equity_callback_url}?orderId={order.id}",
        }

        logger.info(f"Initiating Equity payment for order {order.id}, amount {order.amount}, ref {reference}")
        data = await self.http.request(
            'POST', f"{self.base_url}/v1/payments/initiate", json=payload, headers=await self._headers()
        )

        accepted = data.get('status') in (True, 'SUCCESS', 'Success') or str(data.get('responseCode')) in ('000', '0')
        description = data.get('message') or data.get('responseMessage')
        if not accepted:
            logger.error(f"Equity initiation rejected for {reference}: {description}")
        return InitiationResult(
            correlation_ref=reference,
            provider_accepted=accepted,
            description=description,
            raw=data,
        )

    async def initiate_payout(self, payee: User, amount: Decimal, memo: str) -> InitiationResult:
        raise ProviderRejected("Equity Bank payout is not configured", provider=self.name)

    async def initiate_reversal(self, original_provider_tx_id: str, amount: Decimal, memo: str) -> InitiationResult:
        raise ProviderRejected("Equity Bank refund is not configured", provider=self.name)

    def normalize_callback(self, raw_payload: Dict[str, Any]) -> NormalizedEvent:
        """
        Normalize an Equity callback body.

        Raises:
            InvalidInput: If transactionReference is missing
        """
        if not isinstance(raw_payload, dict) or not raw_payload.get('transactionReference'):
            raise InvalidInput("Equity callback missing transactionReference")

        status = raw_payload.get('transactionStatus')
        message = raw_payload.get('message') or raw_payload.get('description') or ''
        return NormalizedEvent(
            correlation_ref=raw_payload['transactionReference'],
            provider_tx_id=raw_payload.get('receiptNumber') or raw_payload.get('externalReference'),
            outcome=classify_status(status),
            amount=_decimal(raw_payload.get('amount')),
            description=f"{status}: {message}".strip(),
            raw=raw_payload,
        )

    def extract_correlation_ref(self, raw_payload: Dict[str, Any]) -> Optional[str]:
        if not isinstance(raw_payload, dict):
            return None
        return raw_payload.get('transactionReference')

    def acknowledgement(self, message: Optional[str] = None) -> Dict[str, Any]:
        return {"responseCode": "000", "responseMessage": message or "Callback received"}

    async def query_status(
        self,
        correlation_ref: str,
        purpose: TransactionPurpose = TransactionPurpose.COLLECTION
    ) -> NormalizedEvent:
        data = await self.http.request(
            'GET',
            f"{self.base_url}/v1/payments/{correlation_ref}/status",
            headers=await self._headers(),
        )
        status = data.get('transactionStatus')
        return NormalizedEvent(
            correlation_ref=correlation_ref,
            provider_tx_id=data.get('receiptNumber') or data.get('externalReference'),
            outcome=classify_status(status),
            amount=_decimal(data.get('amount')),
            description=f"{status}: {data.get('message') or ''}".strip(),
            raw=data,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
