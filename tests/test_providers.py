"""
Payment adapter tests against scripted HTTP transports.
"""
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from pydantic import ValidationError

from airtel_service import AirtelProvider, classify_status as airtel_status
from config import Config
from equity_service import EquityProvider, classify_status as equity_status
from errors import InvalidInput, ProviderRejected, ProviderTimeout, ProviderUnavailable
from main import build_registry
from models import CallbackOutcome, Order, TransactionPurpose, User
from mpesa_service import MpesaProvider
from payment_providers import ProviderRegistry

TOKEN_PATH = '/oauth/v1/generate'
STK_PATH = '/mpesa/stkpush/v1/processrequest'
QUERY_PATH = '/mpesa/stkpushquery/v1/query'
B2C_PATH = '/mpesa/b2c/v1/paymentrequest'
REVERSAL_PATH = '/mpesa/reversal/v1/request'


def _order(amount='1500.40', method='mpesa'):
    return Order(
        id=7, buyer_id=1, seller_id=2, item_description='Office chair',
        amount=Decimal(amount), payment_method=method,
    )


BUYER = User(id=1, role='buyer', contact='chat-buyer', phone_number='0712345678')
SELLER = User(id=2, role='seller', contact='chat-seller', phone_number='+254723456789')


class ScriptedDaraja:
    """Answers Daraja endpoints from a path -> response mapping and records requests."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes[request.url.path]
        if callable(route):
            return route(request)
        # Fresh response per request; httpx binds a response to one request
        return httpx.Response(route.status_code, content=route.content, headers=route.headers)

    def bodies(self, path):
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    def count(self, path):
        return sum(1 for r in self.requests if r.url.path == path)


def _token_response():
    return httpx.Response(200, json={'access_token': 'tok-123', 'expires_in': '3599'})


def _mpesa(config, routes):
    daraja = ScriptedDaraja({TOKEN_PATH: _token_response(), **routes})
    return MpesaProvider(config, transport=httpx.MockTransport(daraja), retry_delay=0), daraja


class TestMpesaInitiation:

    @pytest.mark.asyncio
    async def test_stk_push_accepted(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {
            STK_PATH: httpx.Response(200, json={
                'MerchantRequestID': '29115-34620561-1',
                'CheckoutRequestID': 'ws_CO_191220191020363925',
                'ResponseCode': '0',
                'ResponseDescription': 'Success. Request accepted for processing',
            })
        })

        result = await provider.initiate_collection(_order(), BUYER)

        assert result.provider_accepted
        assert result.correlation_ref == 'ws_CO_191220191020363925'

        body = daraja.bodies(STK_PATH)[0]
        assert body['PhoneNumber'] == '254712345678'
        assert body['PartyA'] == '254712345678'
        assert body['Amount'] == 1500
        assert body['BusinessShortCode'] == '174379'
        assert body['AccountReference'] == 'ORDER7'
        stk_request = [r for r in daraja.requests if r.url.path == STK_PATH][0]
        assert stk_request.headers['Authorization'] == 'Bearer tok-123'
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_access_token_is_cached(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {
            STK_PATH: httpx.Response(200, json={'ResponseCode': '0', 'CheckoutRequestID': 'ws_CO_1'})
        })

        await provider.initiate_collection(_order(), BUYER)
        await provider.initiate_collection(_order(), BUYER)

        assert daraja.count(TOKEN_PATH) == 1
        assert daraja.count(STK_PATH) == 2

    @pytest.mark.asyncio
    async def test_stk_push_refused(self, mpesa_config):
        provider, _ = _mpesa(mpesa_config, {
            STK_PATH: httpx.Response(200, json={'ResponseCode': '1', 'ResponseDescription': 'Insufficient funds'})
        })

        result = await provider.initiate_collection(_order(), BUYER)

        assert not result.provider_accepted
        assert result.description == 'Insufficient funds'

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable_and_not_retried(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {STK_PATH: httpx.Response(503, text='busy')})

        with pytest.raises(ProviderUnavailable):
            await provider.initiate_collection(_order(), BUYER)
        assert daraja.count(STK_PATH) == 1

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self, mpesa_config):
        provider, _ = _mpesa(mpesa_config, {
            STK_PATH: httpx.Response(400, json={'errorCode': '400.002.02', 'errorMessage': 'Bad Request - Invalid Amount'})
        })

        with pytest.raises(ProviderRejected, match='Invalid Amount'):
            await provider.initiate_collection(_order(), BUYER)

    @pytest.mark.asyncio
    async def test_timeout(self, mpesa_config):
        def slow(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        provider, _ = _mpesa(mpesa_config, {STK_PATH: slow})

        with pytest.raises(ProviderTimeout):
            await provider.initiate_collection(_order(), BUYER)

    @pytest.mark.asyncio
    async def test_token_fetch_retries_transient_errors(self, mpesa_config):
        answers = iter([httpx.Response(503), _token_response()])
        provider, daraja = _mpesa(mpesa_config, {
            TOKEN_PATH: lambda request: next(answers),
            STK_PATH: httpx.Response(200, json={'ResponseCode': '0', 'CheckoutRequestID': 'ws_CO_2'}),
        })

        result = await provider.initiate_collection(_order(), BUYER)

        assert result.correlation_ref == 'ws_CO_2'
        assert daraja.count(TOKEN_PATH) == 2

    @pytest.mark.asyncio
    async def test_invalid_payer_phone(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {})

        with pytest.raises(ProviderRejected):
            await provider.initiate_collection(_order(), User(id=1, role='buyer', phone_number='12'))
        assert daraja.requests == []

    @pytest.mark.asyncio
    async def test_b2c_payout(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {
            B2C_PATH: httpx.Response(200, json={
                'ConversationID': 'AG_20191219_00005797af5d7d75f652',
                'OriginatorConversationID': '16740-34861180-1',
                'ResponseCode': '0',
                'ResponseDescription': 'Accept the service request successfully.',
            })
        })

        assert provider.supports_payout()
        result = await provider.initiate_payout(SELLER, Decimal('999.50'), 'Order 7 payout')

        assert result.correlation_ref == '16740-34861180-1'
        body = daraja.bodies(B2C_PATH)[0]
        assert body['CommandID'] == 'BusinessPayment'
        assert body['PartyB'] == '254723456789'
        assert body['Amount'] == 1000
        assert body['ResultURL'].endswith('/payments/mpesa/payout/result')

    @pytest.mark.asyncio
    async def test_reversal(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {
            REVERSAL_PATH: httpx.Response(200, json={
                'OriginatorConversationID': '71840-27539181-07',
                'ConversationID': 'AG_20210709_12346c8e6f8858d7b70a',
                'ResponseCode': '0',
                'ResponseDescription': 'Accept the service request successfully.',
            })
        })

        result = await provider.initiate_reversal('QK12ABC', Decimal('1000'), 'Order 7 refund')

        assert result.correlation_ref == '71840-27539181-07'
        body = daraja.bodies(REVERSAL_PATH)[0]
        assert body['TransactionID'] == 'QK12ABC'
        assert body['CommandID'] == 'TransactionReversal'

    @pytest.mark.asyncio
    async def test_outbound_paths_need_initiator_credentials(self, config, monkeypatch):
        for key, value in {
            'MPESA_CONSUMER_KEY': 'k', 'MPESA_CONSUMER_SECRET': 's', 'MPESA_SHORTCODE': '174379',
            'MPESA_PASSKEY': 'p', 'MPESA_CALLBACK_URL': 'https://escrow.example.com/cb',
        }.items():
            monkeypatch.setenv(key, value)
        provider, _ = _mpesa(Config(), {})

        assert not provider.supports_payout()
        assert not provider.supports_reversal()
        with pytest.raises(ProviderRejected):
            await provider.initiate_payout(SELLER, Decimal('10'), 'memo')


class TestMpesaCallbacks:

    @pytest.fixture
    def provider(self, mpesa_config):
        return MpesaProvider(mpesa_config, transport=httpx.MockTransport(ScriptedDaraja({})))

    def test_stk_success(self, provider):
        event = provider.normalize_callback({
            'Body': {'stkCallback': {
                'MerchantRequestID': '29115-34620561-1',
                'CheckoutRequestID': 'ws_CO_191220191020363925',
                'ResultCode': 0,
                'ResultDesc': 'The service request is processed successfully.',
                'CallbackMetadata': {'Item': [
                    {'Name': 'Amount', 'Value': 1000.00},
                    {'Name': 'MpesaReceiptNumber', 'Value': 'NLJ7RT61SV'},
                    {'Name': 'TransactionDate', 'Value': 20191219102115},
                    {'Name': 'PhoneNumber', 'Value': 254712345678},
                ]},
            }}
        })

        assert event.outcome == CallbackOutcome.SUCCESS
        assert event.correlation_ref == 'ws_CO_191220191020363925'
        assert event.provider_tx_id == 'NLJ7RT61SV'
        assert event.amount == Decimal('1000')
        assert event.timestamp == datetime(2019, 12, 19, 10, 21, 15)

    def test_stk_cancelled_by_user(self, provider):
        event = provider.normalize_callback({
            'Body': {'stkCallback': {
                'CheckoutRequestID': 'ws_CO_1',
                'ResultCode': 1032,
                'ResultDesc': 'Request cancelled by user',
            }}
        })

        assert event.outcome == CallbackOutcome.FAILURE
        assert event.provider_tx_id is None
        assert event.amount is None

    def test_b2c_result(self, provider):
        event = provider.normalize_callback({
            'Result': {
                'ResultType': 0,
                'ResultCode': 0,
                'ResultDesc': 'The service request is processed successfully.',
                'OriginatorConversationID': '16740-34861180-1',
                'ConversationID': 'AG_20191219_00005797af5d7d75f652',
                'TransactionID': 'NLJ41HAY6Q',
                'ResultParameters': {'ResultParameter': [
                    {'Key': 'TransactionAmount', 'Value': 1000},
                    {'Key': 'TransactionReceipt', 'Value': 'NLJ41HAY6Q'},
                ]},
            }
        })

        assert event.outcome == CallbackOutcome.SUCCESS
        assert event.correlation_ref == '16740-34861180-1'
        assert event.provider_tx_id == 'NLJ41HAY6Q'
        assert event.amount == Decimal('1000')

    def test_failed_result(self, provider):
        event = provider.normalize_callback({
            'Result': {
                'ResultCode': 2001,
                'ResultDesc': 'The initiator information is invalid.',
                'OriginatorConversationID': '16740-34861180-1',
            }
        })
        assert event.outcome == CallbackOutcome.FAILURE
        assert '2001' in event.description

    @pytest.mark.parametrize('payload', [
        {'unexpected': True},
        {'Body': {'stkCallback': {'ResultCode': 0}}},
        {'Result': {'ResultCode': 0}},
        ['not', 'an', 'object'],
    ])
    def test_malformed(self, provider, payload):
        with pytest.raises(InvalidInput):
            provider.normalize_callback(payload)

    def test_events_are_immutable(self, provider):
        event = provider.normalize_callback({
            'Body': {'stkCallback': {'CheckoutRequestID': 'ws_CO_1', 'ResultCode': 1032, 'ResultDesc': 'Cancelled'}}
        })

        assert event.timestamp is not None
        with pytest.raises(ValidationError):
            event.timestamp = datetime(2020, 1, 1)

    def test_only_outbound_timeouts_are_final(self, provider):
        assert provider.final_timeout_purposes == {TransactionPurpose.PAYOUT, TransactionPurpose.REVERSAL}

    def test_timeout_notification_ref(self, provider):
        payload = {'Result': {'OriginatorConversationID': '16740-34861180-1', 'ResultCode': 1}}
        assert provider.extract_correlation_ref(payload) == '16740-34861180-1'
        assert provider.extract_correlation_ref({'CheckoutRequestID': 'ws_CO_1'}) == 'ws_CO_1'
        assert provider.extract_correlation_ref({'OriginatorConversationID': 'AG_1'}) == 'AG_1'
        assert provider.extract_correlation_ref({}) is None

    def test_acknowledgement(self, provider):
        assert provider.acknowledgement() == {'ResultCode': 0, 'ResultDesc': 'Accepted'}


class TestMpesaStatusQuery:

    @pytest.mark.asyncio
    @pytest.mark.parametrize('result_code, outcome', [
        ('0', CallbackOutcome.SUCCESS),
        ('1032', CallbackOutcome.FAILURE),
        ('4999', CallbackOutcome.AMBIGUOUS),
    ])
    async def test_stk_query(self, mpesa_config, result_code, outcome):
        provider, daraja = _mpesa(mpesa_config, {
            QUERY_PATH: httpx.Response(200, json={
                'ResponseCode': '0',
                'ResultCode': result_code,
                'ResultDesc': 'query answer',
            })
        })

        event = await provider.query_status('ws_CO_1')

        assert event.outcome == outcome
        assert event.correlation_ref == 'ws_CO_1'
        assert daraja.bodies(QUERY_PATH)[0]['CheckoutRequestID'] == 'ws_CO_1'

    @pytest.mark.asyncio
    async def test_payout_query_waits_for_result_callback(self, mpesa_config):
        provider, daraja = _mpesa(mpesa_config, {})

        event = await provider.query_status('16740-34861180-1', TransactionPurpose.PAYOUT)

        assert event.outcome == CallbackOutcome.AMBIGUOUS
        assert daraja.requests == []


class TestAirtel:

    @pytest.fixture
    def airtel_config(self, config, monkeypatch):
        monkeypatch.setenv('AIRTEL_CLIENT_ID', 'client')
        monkeypatch.setenv('AIRTEL_CLIENT_SECRET', 'secret')
        monkeypatch.setenv('AIRTEL_CALLBACK_URL', 'https://escrow.example.com/payments/airtel/collection/callback')
        return Config()

    @pytest.mark.parametrize('status, outcome', [
        ('TS', CallbackOutcome.SUCCESS),
        ('ts', CallbackOutcome.SUCCESS),
        ('TF', CallbackOutcome.FAILURE),
        ('TIP', CallbackOutcome.AMBIGUOUS),
        (None, CallbackOutcome.AMBIGUOUS),
    ])
    def test_classify(self, status, outcome):
        assert airtel_status(status) == outcome

    @pytest.mark.asyncio
    async def test_collection(self, airtel_config):
        daraja = ScriptedDaraja({
            '/auth/oauth2/token': httpx.Response(200, json={'access_token': 'airtel-tok', 'expires_in': 3600}),
            '/merchant/v1/payments/': httpx.Response(200, json={
                'data': {'transaction': {'id': 'x', 'status': 'Success.'}},
                'status': {'code': '200', 'message': 'SUCCESS', 'success': True},
            }),
        })
        provider = AirtelProvider(airtel_config, transport=httpx.MockTransport(daraja), retry_delay=0)

        result = await provider.initiate_collection(_order(method='airtel'), BUYER)

        assert result.provider_accepted
        assert result.correlation_ref.startswith('ESCROW-AIRTEL-7-')
        body = daraja.bodies('/merchant/v1/payments/')[0]
        assert body['subscriber']['msisdn'] == '712345678'
        assert body['transaction']['id'] == result.correlation_ref

    def test_callback(self, airtel_config):
        provider = AirtelProvider(airtel_config)
        event = provider.normalize_callback({
            'transaction': {
                'id': 'ESCROW-AIRTEL-7-1700000000000',
                'message': 'Paid KES 1000',
                'status_code': 'TS',
                'airtel_money_id': 'MP210603.1234.L06941',
            }
        })

        assert event.outcome == CallbackOutcome.SUCCESS
        assert event.provider_tx_id == 'MP210603.1234.L06941'
        assert provider.acknowledgement() == {'code': '00', 'message': 'Callback received'}

        with pytest.raises(InvalidInput):
            provider.normalize_callback({'transaction': {'status_code': 'TS'}})

    @pytest.mark.asyncio
    async def test_no_outbound_support(self, airtel_config):
        provider = AirtelProvider(airtel_config)
        assert not provider.supports_payout()
        assert not provider.supports_reversal()
        assert not provider.final_timeout_purposes
        with pytest.raises(ProviderRejected):
            await provider.initiate_payout(SELLER, Decimal('10'), 'memo')


class TestEquity:

    @pytest.fixture
    def equity_config(self, config, monkeypatch):
        monkeypatch.setenv('EQUITY_CLIENT_ID', 'client')
        monkeypatch.setenv('EQUITY_CLIENT_SECRET', 'secret')
        monkeypatch.setenv('EQUITY_MERCHANT_CODE', '0766')
        monkeypatch.setenv('EQUITY_CALLBACK_URL', 'https://escrow.example.com/payments/equity/collection/callback')
        return Config()

    @pytest.mark.parametrize('status, outcome', [
        ('COMPLETED', CallbackOutcome.SUCCESS),
        ('declined', CallbackOutcome.FAILURE),
        ('PENDING', CallbackOutcome.AMBIGUOUS),
    ])
    def test_classify(self, status, outcome):
        assert equity_status(status) == outcome

    @pytest.mark.asyncio
    async def test_collection_carries_order_hint(self, equity_config):
        daraja = ScriptedDaraja({
            '/oauth/token': httpx.Response(200, json={'access_token': 'eq-tok', 'expires_in': 3600}),
            '/v1/payments/initiate': httpx.Response(200, json={'status': True, 'message': 'Accepted'}),
        })
        provider = EquityProvider(equity_config, transport=httpx.MockTransport(daraja), retry_delay=0)

        result = await provider.initiate_collection(_order(method='equity'), BUYER)

        assert result.provider_accepted
        body = daraja.bodies('/v1/payments/initiate')[0]
        assert body['callbackUrl'].endswith('?orderId=7')
        assert body['amount'] == '1500.40'
        assert body['transactionReference'] == result.correlation_ref

    def test_callback(self, equity_config):
        provider = EquityProvider(equity_config)
        event = provider.normalize_callback({
            'transactionReference': 'ESCROW-EQUITY-7-1700000000000',
            'transactionStatus': 'COMPLETED',
            'amount': '1500.40',
            'receiptNumber': 'EQ998877',
        })

        assert event.outcome == CallbackOutcome.SUCCESS
        assert event.amount == Decimal('1500.40')
        assert event.provider_tx_id == 'EQ998877'
        assert provider.acknowledgement()['responseCode'] == '000'

        with pytest.raises(InvalidInput):
            provider.normalize_callback({'transactionStatus': 'COMPLETED'})


class TestRegistry:

    def test_lookup_by_ledger_provider(self, mpesa_config):
        registry = ProviderRegistry()
        mpesa = MpesaProvider(mpesa_config)
        registry.register(mpesa)

        assert registry.resolve_ledger_provider('mpesa') == (mpesa, TransactionPurpose.COLLECTION)
        assert registry.resolve_ledger_provider('mpesa_payout') == (mpesa, TransactionPurpose.PAYOUT)
        assert registry.resolve_ledger_provider('mpesa_reversal') == (mpesa, TransactionPurpose.REVERSAL)
        assert registry.resolve_ledger_provider('airtel_payout') == (None, TransactionPurpose.PAYOUT)

    def test_require_unknown_method(self):
        with pytest.raises(ProviderUnavailable):
            ProviderRegistry().require('airtel')

    def test_build_registry_only_registers_configured_methods(self, mpesa_config):
        registry = build_registry(mpesa_config)

        assert registry.methods() == ['mpesa']
        assert registry.payout_provider('mpesa') is not None
        assert registry.payout_provider('airtel') is None

    def test_build_registry_respects_supported_methods(self, monkeypatch, mpesa_config):
        monkeypatch.setenv('SUPPORTED_PAYMENT_METHODS', 'airtel')
        assert build_registry(Config()).methods() == []
