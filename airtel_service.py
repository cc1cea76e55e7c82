"""
Airtel Money payment provider adapter.

Collections are pushed to the payer's handset through the merchant payments
API. We generate the transaction id ourselves, Airtel echoes it back in the
callback, so it doubles as the correlation reference.

Airtel disbursements are not wired up: supports_payout() and
supports_reversal() return False, and releases/refunds for Airtel orders
are recorded as skipped for manual handling.
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
from utils import mask_sensitive_data, to_national_number, validate_kenyan_phone

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({'TS', 'SUCCESS', 'SUCCESSFUL'})
FAILURE_STATUSES = frozenset({'TF', 'FAILED', 'FAILURE', 'TE', 'EXPIRED'})


def classify_status(status: Any) -> CallbackOutcome:
    """Map an Airtel transaction status onto the three-way outcome."""
    value = str(status or '').strip().upper().rstrip('.')
    if value in SUCCESS_STATUSES:
        return CallbackOutcome.SUCCESS
    if value in FAILURE_STATUSES:
        return CallbackOutcome.FAILURE
    # TIP (in progress), TA (ambiguous) and anything unknown
    return CallbackOutcome.AMBIGUOUS


class AirtelProvider:
    """Airtel Money adapter (collections only)."""

    name = 'airtel'
    final_timeout_purposes = frozenset()

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = RETRY_DELAY
    ):
        self.config = config
        self.base_url = config.airtel_base_url.rstrip('/')
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
            f"{self.base_url}/auth/oauth2/token",
            json={
                'client_id': self.config.airtel_client_id,
                'client_secret': self.config.airtel_client_secret,
                'grant_type': 'client_credentials',
            },
        )
        access_token = data.get('access_token')
        if not access_token:
            raise ProviderRejected("Airtel access token not found in response", provider=self.name)
        return access_token, data.get('expires_in', 3600)

    async def _headers(self) -> Dict[str, str]:
        token = await self._token.get(self._fetch_token)
        return {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
            'X-Country': self.config.airtel_country,
            'X-Currency': self.config.airtel_currency,
        }

    async def initiate_collection(self, order: Order, payer: User) -> InitiationResult:
        """
        Request a USSD push payment from the payer.

        Raises:
            ProviderRejected, ProviderUnavailable, ProviderTimeout
        """
        is_valid, phone, error = validate_kenyan_phone(payer.msisdn)
        if not is_valid:
            raise ProviderRejected(f"Invalid phone number for user {payer.id}: {error}", provider=self.name)

        reference = f"ESCROW-AIRTEL-{order.id}-{int(time.time() * 1000)}"
        payload = {
            'reference': f"Order {order.id}",
            'subscriber': {
                'country': self.config.airtel_country,
                'currency': self.config.airtel_currency,
                # Airtel expects the number without the country code
                'msisdn': to_national_number(phone),
            },
            'transaction': {
                'amount': str(order.amount),
                'country': self.config.airtel_country,
                'currency': self.config.airtel_currency,
                'id': reference,
            },
        }

        logger.info(
            f"Initiating Airtel payment to {mask_sensitive_data(phone)} "
            f"for order {order.id}, amount {order.amount}, ref {reference}"
        )
        data = await self.http.request(
            'POST', f"{self.base_url}/merchant/v1/payments/", json=payload, headers=await self._headers()
        )

        status = data.get('status') or {}
        accepted = status.get('success') is True or str(status.get('code')) in ('200', '201')
        description = status.get('message') or status.get('result_code')

        if not accepted:
            logger.error(f"Airtel initiation rejected for {reference}: {description}")
        return InitiationResult(
            correlation_ref=reference,
            provider_accepted=accepted,
            description=description,
            raw=data,
        )

    async def initiate_payout(self, payee: User, amount: Decimal, memo: str) -> InitiationResult:
        raise ProviderRejected("Airtel Money disbursement is not configured", provider=self.name)

    async def initiate_reversal(self, original_provider_tx_id: str, amount: Decimal, memo: str) -> InitiationResult:
        raise ProviderRejected("Airtel Money refund is not configured", provider=self.name)

    def normalize_callback(self, raw_payload: Dict[str, Any]) -> NormalizedEvent:
        """
        Normalize an Airtel transaction callback.

        Expected shape: ``{"transaction": {"id", "status_code" | "status",
        "message", "airtel_money_id", "amount"?}}``.

        Raises:
            InvalidInput: If the transaction id is missing
        """
        transaction = raw_payload.get('transaction') if isinstance(raw_payload, dict) else None
        if not isinstance(transaction, dict) or not transaction.get('id'):
            raise InvalidInput("Airtel callback missing transaction id")

        status = transaction.get('status_code') or transaction.get('status')
        amount = None
        if transaction.get('amount') not in (None, ''):
            try:
                amount = Decimal(str(transaction['amount']))
            except InvalidOperation:
                amount = None

        return NormalizedEvent(
            correlation_ref=transaction['id'],
            provider_tx_id=transaction.get('airtel_money_id'),
            outcome=classify_status(status),
            amount=amount,
            description=f"{status}: {transaction.get('message', '')}".strip(),
            raw=raw_payload,
        )

    def extract_correlation_ref(self, raw_payload: Dict[str, Any]) -> Optional[str]:
        if not isinstance(raw_payload, dict):
            return None
        transaction = raw_payload.get('transaction') or {}
        return transaction.get('id') or raw_payload.get('reference')

    def acknowledgement(self, message: Optional[str] = None) -> Dict[str, Any]:
        return {"code": "00", "message": message or "Callback received"}

    async def query_status(
        self,
        correlation_ref: str,
        purpose: TransactionPurpose = TransactionPurpose.COLLECTION
    ) -> NormalizedEvent:
        """
        Look up a collection by the id we issued.

        Raises:
            ProviderRejected, ProviderUnavailable, ProviderTimeout
        """
        data = await self.http.request(
            'GET',
            f"{self.base_url}/standard/v1/payments/{correlation_ref}",
            headers=await self._headers(),
        )
        transaction = (data.get('data') or {}).get('transaction') or {}
        status = transaction.get('status')
        return NormalizedEvent(
            correlation_ref=correlation_ref,
            provider_tx_id=transaction.get('airtel_money_id'),
            outcome=classify_status(status),
            description=f"{status}: {transaction.get('message', '')}".strip(),
            raw=data,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
