"""
M-Pesa payment provider adapter.

Wraps Safaricom's Daraja API behind the PaymentProvider contract:

    - STK Push for collections (correlation ref: CheckoutRequestID)
    - STK Push query for timed-out collections
    - B2C payment request for payouts (correlation ref: OriginatorConversationID)
    - Transaction reversal for refunds (correlation ref: OriginatorConversationID)
    - Normalization of STK callbacks and B2C/reversal Result callbacks

Payout and reversal are available only when their initiator credentials are
configured; otherwise supports_payout()/supports_reversal() return False and
the reconciliation engine records a skipped transaction.
"""

import logging
from datetime import datetime
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
from utils import (
    generate_mpesa_password,
    get_mpesa_timestamp,
    mask_sensitive_data,
    parse_mpesa_timestamp,
    to_whole_shillings,
    validate_kenyan_phone,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = '0'
# Codes M-Pesa uses while a request is still being processed
PROCESSING_CODES = frozenset({'4999', '500.001.1001'})


def _result_code(value: Any) -> str:
    return str(value).strip() if value is not None else ''


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _outcome(code: str) -> CallbackOutcome:
    if code == SUCCESS_CODE:
        return CallbackOutcome.SUCCESS
    if not code or code in PROCESSING_CODES:
        return CallbackOutcome.AMBIGUOUS
    return CallbackOutcome.FAILURE


class MpesaProvider:
    """
    M-Pesa adapter.

    Attributes:
        name: Payment method this adapter serves
        config: Service configuration (credentials and URLs)
    """

    name = 'mpesa'
    # B2C and reversal queue timeouts are sent when M-Pesa dropped the request unprocessed
    final_timeout_purposes = frozenset({TransactionPurpose.PAYOUT, TransactionPurpose.REVERSAL})

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = RETRY_DELAY
    ):
        self.config = config
        self.http = ProviderHttpClient(
            self.name, timeout=config.api_timeout, transport=transport, retry_delay=retry_delay
        )
        self._token = AccessTokenCache()

    def supports_payout(self) -> bool:
        return self.config.has_mpesa_b2c_config

    def supports_reversal(self) -> bool:
        return self.config.has_mpesa_reversal_config

    # ==================== AUTHENTICATION ====================

    async def _fetch_token(self):
        logger.info(f"Requesting M-Pesa access token from {self.config.environment} environment")
        data = await self.http.request(
            'GET',
            self.config.mpesa_auth_url,
            auth=(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret),
        )
        access_token = data.get('access_token')
        if not access_token:
            raise ProviderRejected("Access token not found in response", provider=self.name)
        return access_token, data.get('expires_in', 3599)

    async def _headers(self) -> Dict[str, str]:
        token = await self._token.get(self._fetch_token)
        return {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json'
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.http.request('POST', url, json=payload, headers=await self._headers())

    def _initiation_result(self, data: Dict[str, Any], ref_key: str, action: str) -> InitiationResult:
        response_code = _result_code(data.get('ResponseCode'))
        correlation_ref = data.get(ref_key) or ''
        description = data.get('ResponseDescription') or data.get('errorMessage')

        if response_code != SUCCESS_CODE:
            logger.error(f"M-Pesa {action} rejected: {response_code} - {description}")
            return InitiationResult(
                correlation_ref=correlation_ref,
                provider_accepted=False,
                description=description or 'Unknown M-Pesa error',
                raw=data,
            )

        if not correlation_ref:
            raise ProviderRejected(f"M-Pesa {action} response missing {ref_key}", provider=self.name)

        logger.info(f"M-Pesa {action} accepted - {ref_key}: {correlation_ref}")
        return InitiationResult(
            correlation_ref=correlation_ref,
            provider_accepted=True,
            description=description,
            raw=data,
        )

    def _msisdn(self, user: User) -> str:
        is_valid, phone, error = validate_kenyan_phone(user.msisdn)
        if not is_valid:
            raise ProviderRejected(f"Invalid phone number for user {user.id}: {error}", provider=self.name)
        return phone

    # ==================== COLLECTION ====================

    async def initiate_collection(self, order: Order, payer: User) -> InitiationResult:
        """
        Send an STK Push prompt to the payer's phone.

        Args:
            order: Order being paid
            payer: Buyer whose phone receives the prompt

        Returns:
            InitiationResult keyed by CheckoutRequestID

        Raises:
            ProviderRejected, ProviderUnavailable, ProviderTimeout
        """
        phone = self._msisdn(payer)
        timestamp = get_mpesa_timestamp()
        payload = {
            'BusinessShortCode': self.config.mpesa_shortcode,
            'Password': generate_mpesa_password(
                self.config.mpesa_shortcode, self.config.mpesa_passkey, timestamp
            ),
            'Timestamp': timestamp,
            'TransactionType': self.config.mpesa_transaction_type,
            'Amount': to_whole_shillings(order.amount),
            'PartyA': phone,
            'PartyB': self.config.mpesa_shortcode,
            'PhoneNumber': phone,
            'CallBackURL': self.config.mpesa_callback_url,
            'AccountReference': f"ORDER{order.id}"[:12],
            'TransactionDesc': f"Order {order.id}"[:13],
        }

        logger.info(
            f"Initiating STK Push: Phone={mask_sensitive_data(phone)}, "
            f"Amount={order.amount}, Order={order.id}"
        )
        data = await self._post(self.config.mpesa_stk_push_url, payload)
        return self._initiation_result(data, 'CheckoutRequestID', 'STK Push')

    # ==================== PAYOUT ====================

    async def initiate_payout(self, payee: User, amount: Decimal, memo: str) -> InitiationResult:
        """
        Send funds to the payee with a B2C BusinessPayment.

        Raises:
            ProviderRejected: If B2C is not configured or the request is refused
            ProviderUnavailable, ProviderTimeout
        """
        if not self.supports_payout():
            raise ProviderRejected("M-Pesa B2C is not configured", provider=self.name)

        phone = self._msisdn(payee)
        payload = {
            'InitiatorName': self.config.mpesa_b2c_initiator_name,
            'SecurityCredential': self.config.mpesa_b2c_security_credential,
            'CommandID': 'BusinessPayment',
            'Amount': to_whole_shillings(amount),
            'PartyA': self.config.mpesa_shortcode,
            'PartyB': phone,
            'Remarks': memo[:100],
            'QueueTimeOutURL': self.config.mpesa_b2c_timeout_url,
            'ResultURL': self.config.mpesa_b2c_result_url,
            'Occassion': 'Escrow Payout',
        }

        logger.info(f"Initiating B2C payout to {mask_sensitive_data(phone)} for KES {amount}")
        data = await self._post(self.config.mpesa_b2c_url, payload)
        return self._initiation_result(data, 'OriginatorConversationID', 'B2C payout')

    # ==================== REVERSAL ====================

    async def initiate_reversal(
        self,
        original_provider_tx_id: str,
        amount: Decimal,
        memo: str
    ) -> InitiationResult:
        """
        Reverse a completed collection back to the payer.

        Args:
            original_provider_tx_id: M-Pesa receipt of the original collection
            amount: Amount to reverse
            memo: Remarks sent with the request

        Raises:
            ProviderRejected: If reversal is not configured or the request is refused
            ProviderUnavailable, ProviderTimeout
        """
        if not self.supports_reversal():
            raise ProviderRejected("M-Pesa reversal is not configured", provider=self.name)

        payload = {
            'Initiator': self.config.mpesa_reversal_initiator_name,
            'SecurityCredential': self.config.mpesa_reversal_security_credential,
            'CommandID': 'TransactionReversal',
            'TransactionID': original_provider_tx_id,
            'Amount': to_whole_shillings(amount),
            'ReceiverParty': self.config.mpesa_shortcode,
            'RecieverIdentifierType': '11',
            'ResultURL': self.config.mpesa_reversal_result_url,
            'QueueTimeOutURL': self.config.mpesa_reversal_timeout_url,
            'Remarks': memo[:100],
            'Occasion': 'Escrow Refund',
        }

        logger.info(f"Initiating M-Pesa reversal of {original_provider_tx_id} for KES {amount}")
        data = await self._post(self.config.mpesa_reversal_url, payload)
        return self._initiation_result(data, 'OriginatorConversationID', 'reversal')

    # ==================== CALLBACKS ====================

    def normalize_callback(self, raw_payload: Dict[str, Any]) -> NormalizedEvent:
        """
        Normalize an STK Push callback or a B2C/reversal Result callback.

        Raises:
            InvalidInput: If the payload has neither shape
        """
        if not isinstance(raw_payload, dict):
            raise InvalidInput("M-Pesa callback must be a JSON object")

        stk_callback = (raw_payload.get('Body') or {}).get('stkCallback')
        if isinstance(stk_callback, dict):
            return self._normalize_stk_callback(stk_callback, raw_payload)

        result = raw_payload.get('Result')
        if isinstance(result, dict):
            return self._normalize_result(result, raw_payload)

        raise InvalidInput("Unrecognized M-Pesa callback payload")

    def _normalize_stk_callback(self, stk_callback: Dict[str, Any], raw: Dict[str, Any]) -> NormalizedEvent:
        checkout_request_id = stk_callback.get('CheckoutRequestID')
        if not checkout_request_id:
            raise InvalidInput("STK callback missing CheckoutRequestID")

        metadata = {}
        for item in (stk_callback.get('CallbackMetadata') or {}).get('Item', []) or []:
            if isinstance(item, dict) and 'Name' in item:
                metadata[item['Name']] = item.get('Value')

        code = _result_code(stk_callback.get('ResultCode'))
        return NormalizedEvent(
            correlation_ref=checkout_request_id,
            provider_tx_id=metadata.get('MpesaReceiptNumber'),
            outcome=_outcome(code),
            amount=_decimal(metadata.get('Amount')),
            timestamp=parse_mpesa_timestamp(metadata.get('TransactionDate')) or datetime.now(),
            description=f"{code}: {stk_callback.get('ResultDesc', '')}".strip(),
            raw=raw,
        )

    def _normalize_result(self, result: Dict[str, Any], raw: Dict[str, Any]) -> NormalizedEvent:
        originator_id = result.get('OriginatorConversationID')
        if not originator_id:
            raise InvalidInput("Result callback missing OriginatorConversationID")

        parameters = {}
        result_parameters = (result.get('ResultParameters') or {}).get('ResultParameter') or []
        if isinstance(result_parameters, dict):
            result_parameters = [result_parameters]
        for parameter in result_parameters:
            if isinstance(parameter, dict) and 'Key' in parameter:
                parameters[parameter['Key']] = parameter.get('Value')

        code = _result_code(result.get('ResultCode'))
        return NormalizedEvent(
            correlation_ref=originator_id,
            provider_tx_id=result.get('TransactionID') or None,
            outcome=_outcome(code),
            amount=_decimal(parameters.get('TransactionAmount', parameters.get('Amount'))),
            description=f"{code}: {result.get('ResultDesc', '')}".strip(),
            raw=raw,
        )

    def extract_correlation_ref(self, raw_payload: Dict[str, Any]) -> Optional[str]:
        """Correlation ref from a queue-timeout notification or any callback shape."""
        if not isinstance(raw_payload, dict):
            return None
        result = raw_payload.get('Result')
        if isinstance(result, dict) and result.get('OriginatorConversationID'):
            return result['OriginatorConversationID']
        stk_callback = (raw_payload.get('Body') or {}).get('stkCallback') or {}
        return (
            raw_payload.get('OriginatorConversationID')
            or raw_payload.get('CheckoutRequestID')
            or stk_callback.get('CheckoutRequestID')
        )

    def acknowledgement(self, message: Optional[str] = None) -> Dict[str, Any]:
        return {"ResultCode": 0, "ResultDesc": message or "Accepted"}

    # ==================== STATUS QUERY ====================

    async def query_status(
        self,
        correlation_ref: str,
        purpose: TransactionPurpose = TransactionPurpose.COLLECTION
    ) -> NormalizedEvent:
        """
        Ask M-Pesa for the outcome of an earlier request.

        STK Push collections are answered synchronously. B2C and reversal
        status is only delivered asynchronously to the result URL, so those
        queries come back ambiguous and the pending row waits for its result
        or queue-timeout callback.

        Raises:
            ProviderRejected, ProviderUnavailable, ProviderTimeout
        """
        if purpose != TransactionPurpose.COLLECTION:
            return NormalizedEvent(
                correlation_ref=correlation_ref,
                outcome=CallbackOutcome.AMBIGUOUS,
                description=f"M-Pesa {purpose.value} status is delivered by result callback only",
            )

        timestamp = get_mpesa_timestamp()
        payload = {
            'BusinessShortCode': self.config.mpesa_shortcode,
            'Password': generate_mpesa_password(
                self.config.mpesa_shortcode, self.config.mpesa_passkey, timestamp
            ),
            'Timestamp': timestamp,
            'CheckoutRequestID': correlation_ref,
        }

        logger.info(f"Querying STK Push status for CheckoutRequestID: {correlation_ref}")
        data = await self._post(self.config.mpesa_query_url, payload)

        code = _result_code(data.get('ResultCode'))
        return NormalizedEvent(
            correlation_ref=correlation_ref,
            outcome=_outcome(code),
            description=f"{code}: {data.get('ResultDesc') or data.get('ResponseDescription', '')}".strip(),
            raw=data,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
