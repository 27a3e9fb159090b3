"""
API routes for contribution payments.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crowdpay.core.reconciliation import ReconciliationEngine
from crowdpay.database.models import utcnow
from crowdpay.exceptions import InvalidCallbackPayload, PaymentError

from .dependencies import Services, get_engine, get_services
from .schemas import (
    CallbackResponse,
    CancelTransactionResponse,
    HealthCheckResponse,
    IdentifyProviderResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    ProvidersResponse,
    ReconciliationResponse,
    ReportResponse,
    TransactionStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def http_error(error: PaymentError) -> HTTPException:
    """Map a payment error onto its HTTP status."""
    return HTTPException(status_code=error.http_status, detail=error.to_dict()["error"])


@payment_router.get(
    "/providers",
    response_model=ProvidersResponse,
    summary="List payment providers",
)
async def list_providers(engine: ReconciliationEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.list_providers()


@payment_router.get(
    "/providers/identify",
    response_model=IdentifyProviderResponse,
    summary="Identify a mobile-money operator",
    description="Normalize a phone number and detect its operator from numbering rules",
)
async def identify_provider(
    phone: str = Query(..., min_length=1, description="Phone number as typed by the payer"),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.identify_provider(phone)


@payment_router.post(
    "",
    response_model=InitiatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a payment",
    description="Create a pending transaction and send the payment request to the provider",
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    Initiate a contribution payment.

    Mobile-money payers confirm on their phone; gateway payers follow
    redirect_url. The outcome arrives through the provider callback.
    """
    logger.info(
        "api_initiate_payment_request",
        provider=request.provider,
        project_id=request.project_id,
        user_id=request.user_id,
        amount=str(request.amount),
        currency=request.currency,
    )

    try:
        return await engine.initiate_payment(
            provider=request.provider,
            payer=request.payer,
            amount=request.amount,
            project_id=request.project_id,
            user_id=request.user_id,
            description=request.description,
            currency=request.currency,
        )
    except PaymentError as e:
        logger.warning(
            "api_initiate_payment_error",
            provider=request.provider,
            error_code=e.error_code,
            error=e.message,
        )
        raise http_error(e)


@payment_router.get(
    "/{transaction_id}",
    response_model=TransactionStatusResponse,
    summary="Check transaction status",
    description="Return the transaction, polling the provider if it is still pending",
)
async def check_status(
    transaction_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return await engine.check_status(transaction_id)
    except PaymentError as e:
        raise http_error(e)


@payment_router.post(
    "/{transaction_id}/cancel",
    response_model=CancelTransactionResponse,
    summary="Cancel a pending transaction",
)
async def cancel_transaction(
    transaction_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        result = await engine.cancel_transaction(transaction_id)
    except PaymentError as e:
        logger.warning(
            "api_cancel_transaction_error",
            transaction_id=transaction_id,
            error_code=e.error_code,
            error=e.message,
        )
        raise http_error(e)

    logger.info(
        "api_cancel_transaction_completed",
        transaction_id=transaction_id,
        applied=result["applied"],
        status=result["status"],
    )
    return result


@webhook_router.post(
    "/{provider}",
    response_model=CallbackResponse,
    summary="Provider callback",
    description="Receive a provider payment notification",
)
async def provider_callback(
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle a provider callback.

    Stripe events are verified with the Stripe-Signature header when a
    webhook secret is configured.
    """
    body = await request.body()
    logger.info("api_webhook_received", provider=provider, body_size=len(body))

    try:
        return await services.webhook_handler.handle(
            provider,
            body,
            query=dict(request.query_params),
            signature=stripe_signature,
        )
    except PaymentError as e:
        logger.warning(
            "api_webhook_error",
            provider=provider,
            error_code=e.error_code,
            error=e.message,
        )
        raise http_error(e)


@webhook_router.get(
    "/{provider}",
    response_model=TransactionStatusResponse,
    summary="Gateway return URL",
    description=(
        "Landing point for payers returning from a hosted payment page. "
        "The outcome is confirmed with the provider, never taken from the query string."
    ),
)
async def provider_return(
    provider: str,
    transaction_id: Optional[str] = Query(None),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        if not transaction_id:
            raise InvalidCallbackPayload(
                "Missing transaction_id in return URL", provider=provider
            )
        result = await engine.check_status(transaction_id)
    except PaymentError as e:
        raise http_error(e)

    if result["transaction"]["provider"] != provider:
        raise http_error(
            InvalidCallbackPayload(
                f"Transaction {transaction_id} was not initiated with {provider}",
                provider=provider,
                transaction_id=transaction_id,
            )
        )
    return result


@admin_router.get(
    "/reports",
    response_model=ReportResponse,
    summary="Transaction report",
    description="Aggregate transactions over a period (defaults to the last 30 days)",
)
async def transaction_report(
    start: Optional[datetime] = Query(None, description="Period start (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Period end (ISO 8601)"),
    status_filter: Optional[str] = Query(None, alias="status"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    end = end or utcnow()
    start = start or end - timedelta(days=30)
    if start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end"
        )

    try:
        return await services.reporting.generate_report(start, end, status_filter)
    except PaymentError as e:
        raise http_error(e)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Poll providers for stale pending transactions",
)
async def run_reconciliation(
    older_than_hours: Optional[float] = Query(None, ge=0),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    hours = (
        older_than_hours
        if older_than_hours is not None
        else services.settings.reconciliation_older_than_hours
    )
    logger.info("api_reconciliation_started", older_than_hours=hours)

    start_time = time.perf_counter()
    result = await services.engine.reconcile_pending(timedelta(hours=hours))

    logger.info(
        "api_reconciliation_completed",
        duration_seconds=time.perf_counter() - start_time,
        **result["results"],
    )
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe; a degraded Redis still serves traffic."""
    result = await services.health.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
