"""
FastAPI server for payment provider webhooks.

One endpoint per provider and transaction purpose:

    POST /payments/{method}/collection/callback
    POST /payments/{method}/collection/timeout
    POST /payments/{method}/payout/result
    POST /payments/{method}/payout/timeout
    POST /payments/{method}/reversal/result
    POST /payments/{method}/reversal/timeout

Every webhook answers HTTP 200 with the provider's acknowledgement body,
whatever happened internally, so providers never retry on our errors. The
only other answer is 403 when the request fails the signature or IP check.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from config import Config
from escrow_service import EscrowService
from models import TransactionPurpose, provider_key
from payment_providers import ProviderRegistry
from reconciliation import ReconciliationEngine
from store import Store
from utils import verify_webhook_signature

logger = logging.getLogger(__name__)

# kind of webhook -> whether it carries a result or asks for a status query
_RESULT_KINDS = {'callback', 'result'}
_TIMEOUT_KINDS = {'timeout'}

# Providers that sign their webhooks with WEBHOOK_SECRET
_SIGNED_METHODS = {'airtel', 'equity'}


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _parse_order_hint(request: Request) -> Optional[str]:
    return request.query_params.get('orderId')


def create_app(
    engine: ReconciliationEngine,
    registry: ProviderRegistry,
    config: Config,
    store: Store,
    escrow: Optional[EscrowService] = None
) -> FastAPI:
    """
    Build the webhook application.

    Args:
        engine: Reconciliation engine that applies provider events
        registry: Registered payment adapters
        config: Webhook security settings
        store: Store checked by the health endpoint
        escrow: Escrow operations for routers mounted on this app (app.state.escrow)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Escrow Payment Callback Server",
        description="Receive payment provider callbacks and reconcile escrow orders",
        version="1.0.0"
    )
    app.state.escrow = escrow

    def authorize(method: str, request: Request, raw_body: bytes) -> bool:
        if method == 'mpesa' and config.mpesa_allowed_ips:
            client_ip = _client_ip(request)
            if client_ip not in config.mpesa_allowed_ips:
                logger.warning(f"Rejected M-Pesa webhook from unlisted IP {client_ip}")
                return False

        if method in _SIGNED_METHODS and config.webhook_secret:
            signature = request.headers.get('X-Signature')
            if not verify_webhook_signature(raw_body, signature, config.webhook_secret):
                logger.warning(f"Rejected {method} webhook with invalid signature from {_client_ip(request)}")
                return False

        return True

    async def handle_webhook(method: str, purpose: TransactionPurpose, kind: str, request: Request):
        provider = registry.get(method)
        if provider is None:
            logger.warning(f"Webhook for unconfigured payment method '{method}'")
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": f"Unknown payment method '{method}'"}
            )

        raw_body = await request.body()
        if not authorize(method, request, raw_body):
            return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Forbidden"})

        logger.info(f"Received {method} {purpose.value} {kind}: {raw_body.decode('utf-8', errors='replace')}")

        try:
            payload: Dict[str, Any] = json.loads(raw_body or b'{}')
        except ValueError as e:
            logger.error(f"Unparseable {method} {purpose.value} {kind} body: {e}")
            return provider.acknowledgement()

        try:
            if kind in _TIMEOUT_KINDS:
                correlation_ref = provider.extract_correlation_ref(payload)
                if correlation_ref:
                    await engine.handle_timeout(provider_key(method, purpose), correlation_ref)
                else:
                    logger.warning(f"{method} {purpose.value} timeout without a correlation reference")
            else:
                order_hint = _parse_order_hint(request)
                if order_hint is not None and not order_hint.isdigit():
                    logger.warning(f"Dropping {method} callback with malformed orderId '{order_hint}'")
                    return provider.acknowledgement()
                await engine.process_callback(
                    method, purpose, payload,
                    order_hint=int(order_hint) if order_hint is not None else None
                )
        except Exception as e:
            # Never surfaced to the provider; the order's persisted status tells the story
            logger.error(f"Error processing {method} {purpose.value} {kind}: {e}", exc_info=True)

        return provider.acknowledgement()

    # ==================== API Endpoints ====================

    @app.get("/", tags=["Info"])
    async def root():
        """API information."""
        return {
            "service": config.app_name,
            "version": "1.0.0",
            "status": "running",
            "providers": registry.methods(),
            "endpoints": {
                "collection_callback": "/payments/{method}/collection/callback",
                "collection_timeout": "/payments/{method}/collection/timeout",
                "payout_result": "/payments/{method}/payout/result",
                "payout_timeout": "/payments/{method}/payout/timeout",
                "reversal_result": "/payments/{method}/reversal/result",
                "reversal_timeout": "/payments/{method}/reversal/timeout",
                "health": "/health",
                "docs": "/docs"
            }
        }

    @app.get("/health", tags=["Health"])
    async def health_check():
        """
        Health check endpoint.

        Returns:
            200 when the store answers, 503 otherwise
        """
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "providers": registry.methods(),
        }

        try:
            connected = await store.ping()
            health_status["database"] = "connected" if connected else "unreachable"
        except Exception as e:
            connected = False
            health_status["database"] = f"error: {str(e)}"
        if not connected:
            health_status["status"] = "degraded"

        status_code = (
            status.HTTP_200_OK if health_status["status"] == "healthy"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        return JSONResponse(content=health_status, status_code=status_code)

    @app.post("/payments/{method}/collection/callback", tags=["Webhooks"])
    async def collection_callback(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.COLLECTION, 'callback', request)

    @app.post("/payments/{method}/collection/timeout", tags=["Webhooks"])
    async def collection_timeout(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.COLLECTION, 'timeout', request)

    @app.post("/payments/{method}/payout/result", tags=["Webhooks"])
    async def payout_result(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.PAYOUT, 'result', request)

    @app.post("/payments/{method}/payout/timeout", tags=["Webhooks"])
    async def payout_timeout(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.PAYOUT, 'timeout', request)

    @app.post("/payments/{method}/reversal/result", tags=["Webhooks"])
    async def reversal_result(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.REVERSAL, 'result', request)

    @app.post("/payments/{method}/reversal/timeout", tags=["Webhooks"])
    async def reversal_timeout(method: str, request: Request):
        return await handle_webhook(method, TransactionPurpose.REVERSAL, 'timeout', request)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log unhandled errors on non-webhook routes."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "path": str(request.url.path)
            }
        )

    return app
