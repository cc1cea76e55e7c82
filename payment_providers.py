"""
Payment provider adapter contract and registry.

Every provider (M-Pesa, Airtel Money, Equity Bank) is a strategy object
implementing PaymentProvider. The reconciliation engine picks one by the
order's payment method and only ever sees InitiationResult and
NormalizedEvent values, or one of ProviderUnavailable, ProviderRejected and
ProviderTimeout.

ProviderHttpClient is the shared async HTTP layer: it applies the timeout,
retries idempotent requests on transient status codes, and maps every httpx
failure onto the provider error taxonomy.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Tuple

import httpx

from errors import ProviderRejected, ProviderTimeout, ProviderUnavailable
from models import (
    InitiationResult,
    NormalizedEvent,
    Order,
    TransactionPurpose,
    User,
)

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_DELAY = 2
RETRY_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
IDEMPOTENT_METHODS = frozenset({'GET', 'HEAD'})


class PaymentProvider(Protocol):
    """Uniform adapter contract, one implementation per provider."""

    name: str
    # Purposes whose timeout notification means the request was never processed
    final_timeout_purposes: FrozenSet[TransactionPurpose]

    def supports_payout(self) -> bool:
        ...

    def supports_reversal(self) -> bool:
        ...

    async def initiate_collection(self, order: Order, payer: User) -> InitiationResult:
        ...

    async def initiate_payout(self, payee: User, amount: Decimal, memo: str) -> InitiationResult:
        ...

    async def initiate_reversal(
        self, original_provider_tx_id: str, amount: Decimal, memo: str
    ) -> InitiationResult:
        ...

    def normalize_callback(self, raw_payload: Dict[str, Any]) -> NormalizedEvent:
        ...

    async def query_status(
        self, correlation_ref: str, purpose: TransactionPurpose = TransactionPurpose.COLLECTION
    ) -> NormalizedEvent:
        ...

    def extract_correlation_ref(self, raw_payload: Dict[str, Any]) -> Optional[str]:
        ...

    def acknowledgement(self, message: Optional[str] = None) -> Dict[str, Any]:
        """Body the provider expects back, whatever happened internally."""
        ...

    async def aclose(self) -> None:
        ...


class ProviderHttpClient:
    """
    Async HTTP client shared by the provider adapters.

    Connection failures are retried by the transport for every method since
    no request reached the provider. Transient status codes are retried only
    for idempotent methods: re-sending a payment POST could move money twice.
    """

    def __init__(
        self,
        provider: str,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY
    ):
        self.provider = provider
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            ProviderTimeout: If the provider did not answer in time
            ProviderUnavailable: On connection errors, 429/5xx or an unreadable body
            ProviderRejected: On any other 4xx
        """
        method = method.upper()
        attempts = self.max_retries + 1 if method in IDEMPOTENT_METHODS else 1

        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                logger.error(f"{self.provider}: timeout calling {url}: {e}")
                raise ProviderTimeout(f"Request timeout: {e}", provider=self.provider) from e
            except httpx.HTTPError as e:
                logger.error(f"{self.provider}: connection error calling {url}: {e}")
                raise ProviderUnavailable(f"Connection error: {e}", provider=self.provider) from e

            if response.status_code in RETRY_STATUS_CODES and attempt + 1 < attempts:
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"{self.provider}: HTTP {response.status_code} from {url}, "
                    f"retrying in {delay}s ({attempt + 1}/{attempts - 1})"
                )
                await asyncio.sleep(delay)
                continue
            break

        return self._decode(response, url)

    def _decode(self, response: httpx.Response, url: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(f"{self.provider}: HTTP {response.status_code} from {url}: {response.text[:500]}")
            raise ProviderUnavailable(
                f"HTTP {response.status_code} from provider", provider=self.provider
            )

        if response.status_code >= 400:
            message = (
                data.get('errorMessage')
                or data.get('message')
                or data.get('error_description')
                or response.text[:200]
            ) if isinstance(data, dict) else response.text[:200]
            logger.error(f"{self.provider}: HTTP {response.status_code} from {url}: {message}")
            raise ProviderRejected(
                f"HTTP {response.status_code}: {message}", provider=self.provider
            )

        if not isinstance(data, dict):
            raise ProviderUnavailable(
                f"Unreadable response from provider: {response.text[:200]}", provider=self.provider
            )
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


class AccessTokenCache:
    """Caches an OAuth access token until shortly before it expires."""

    def __init__(self, margin_seconds: int = 60):
        self.margin_seconds = margin_seconds
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get(self, fetch) -> str:
        """Return the cached token, calling ``await fetch()`` -> (token, expires_in) when stale."""
        async with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            token, expires_in = await fetch()
            self._token = token
            self._expires_at = time.monotonic() + max(int(expires_in) - self.margin_seconds, 0)
            return token

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


class ProviderRegistry:
    """Payment adapters keyed by payment method."""

    def __init__(self):
        self._providers: Dict[str, PaymentProvider] = {}

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.name] = provider
        logger.info(
            f"Registered payment provider '{provider.name}' "
            f"(payout={provider.supports_payout()}, reversal={provider.supports_reversal()})"
        )

    def get(self, method: Any) -> Optional[PaymentProvider]:
        return self._providers.get(str(getattr(method, 'value', method)))

    def require(self, method: Any) -> PaymentProvider:
        """
        Raises:
            ProviderUnavailable: If no adapter is registered for the method
        """
        provider = self.get(method)
        if provider is None:
            raise ProviderUnavailable(f"No payment provider configured for method '{method}'")
        return provider

    def payout_provider(self, method: Any) -> Optional[PaymentProvider]:
        provider = self.get(method)
        return provider if provider is not None and provider.supports_payout() else None

    def reversal_provider(self, method: Any) -> Optional[PaymentProvider]:
        provider = self.get(method)
        return provider if provider is not None and provider.supports_reversal() else None

    def resolve_ledger_provider(self, ledger_provider: str) -> Tuple[Optional[PaymentProvider], TransactionPurpose]:
        """Map a ledger provider name ('mpesa_payout') back to its adapter and purpose."""
        for purpose in (TransactionPurpose.PAYOUT, TransactionPurpose.REVERSAL):
            suffix = f"_{purpose.value}"
            if ledger_provider.endswith(suffix):
                return self.get(ledger_provider[:-len(suffix)]), purpose
        return self.get(ledger_provider), TransactionPurpose.COLLECTION

    def methods(self) -> List[str]:
        return sorted(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
