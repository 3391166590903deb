"""
API Routes - FastAPI endpoints for subscription webhooks and receipts.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import UserIdentity, get_current_user, get_webhook_service
from app.db.session import get_db
from app.exceptions import (
    HistoryFetchFailedError,
    MalformedPayloadError,
    PlanNotFoundError,
    ProviderNotConfiguredError,
    SubscriptionExpiredError,
    VerificationFailedError,
)
from app.models.api import (
    AppleNotificationRequest,
    AppleReceiptRequest,
    GooglePlayReceiptRequest,
    HealthResponse,
    PubSubEnvelope,
    SubscriptionResponse,
    WebhookAck,
)
from app.models.domain import Environment, ReconcileResult
from app.observability.metrics import metrics
from app.services.reconciler import SubscriptionReconciler
from app.services.subscription_webhooks import SubscriptionWebhookService

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Store Webhooks
# =============================================================================
# Every delivered notification is acknowledged with 200 so the stores do not
# redeliver it; the body status says what happened to it.


@router.post(
    "/v1/subscriptions/webhooks/google-play",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
)
async def google_play_webhook(
    envelope: PubSubEnvelope,
    service: SubscriptionWebhookService = Depends(get_webhook_service),
) -> WebhookAck:
    """Handle Google Play Real-Time Developer Notifications pushed by Cloud Pub/Sub."""
    return WebhookAck(status=await service.handle_google_play(envelope))


@router.post(
    "/v1/subscriptions/webhooks/apple/sandbox",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
)
async def apple_sandbox_webhook(
    request: AppleNotificationRequest,
    service: SubscriptionWebhookService = Depends(get_webhook_service),
) -> WebhookAck:
    """Handle App Store Server Notifications V2 for the sandbox environment."""
    return WebhookAck(
        status=await service.handle_apple(request.signed_payload, Environment.SANDBOX)
    )


@router.post(
    "/v1/subscriptions/webhooks/apple/production",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
)
async def apple_production_webhook(
    request: AppleNotificationRequest,
    service: SubscriptionWebhookService = Depends(get_webhook_service),
) -> WebhookAck:
    """Handle App Store Server Notifications V2 for the production environment."""
    return WebhookAck(
        status=await service.handle_apple(request.signed_payload, Environment.PRODUCTION)
    )


# =============================================================================
# Client Receipts (user JWT auth)
# =============================================================================


def _receipt_response(result: ReconcileResult) -> SubscriptionResponse:
    if result.snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="subscription_not_recorded",
        )
    return SubscriptionResponse.from_snapshot(result.snapshot)


def _receipt_error(exc: Exception, platform: str) -> HTTPException:
    """Map a receipt sync failure to the client-facing error."""
    metrics.record_error(type(exc).__name__, f"{platform}_receipt")

    if isinstance(exc, MalformedPayloadError | VerificationFailedError):
        logger.warning("receipt_rejected", platform=platform, error=str(exc))
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_receipt")
    if isinstance(exc, PlanNotFoundError):
        logger.critical("receipt_plan_not_found", platform=platform, product_id=exc.product_id)
        metrics.record_plan_not_found(platform)
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="plan_not_found")
    if isinstance(exc, SubscriptionExpiredError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription_expired")
    if isinstance(exc, ProviderNotConfiguredError):
        logger.error("receipt_provider_not_configured", platform=platform)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="provider_not_configured",
        )
    logger.error("receipt_history_unavailable", platform=platform, error=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="history_unavailable")


RECEIPT_ERRORS = (
    MalformedPayloadError,
    VerificationFailedError,
    PlanNotFoundError,
    SubscriptionExpiredError,
    ProviderNotConfiguredError,
    HistoryFetchFailedError,
)


@router.post(
    "/v1/subscriptions/apple/receipt",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_200_OK,
)
async def sync_apple_receipt(
    request: AppleReceiptRequest,
    user: UserIdentity = Depends(get_current_user),
    service: SubscriptionWebhookService = Depends(get_webhook_service),
) -> SubscriptionResponse:
    """
    Reconcile the caller's App Store subscription from a StoreKit signed transaction.

    Errors:
        400 invalid_receipt, 404 plan_not_found, 409 subscription_expired,
        502 history_unavailable, 503 provider_not_configured
    """
    try:
        result = await service.sync_apple_receipt(user.user_id, request.receipt_data)
    except RECEIPT_ERRORS as exc:
        raise _receipt_error(exc, "apple") from exc
    return _receipt_response(result)


@router.post(
    "/v1/subscriptions/google-play/receipt",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_200_OK,
)
async def sync_google_play_receipt(
    request: GooglePlayReceiptRequest,
    user: UserIdentity = Depends(get_current_user),
    service: SubscriptionWebhookService = Depends(get_webhook_service),
) -> SubscriptionResponse:
    """Reconcile the caller's Google Play subscription from a client purchase."""
    try:
        result = await service.sync_google_play_receipt(
            user.user_id,
            product_id=request.product_id,
            purchase_token=request.purchase_token,
            purchase_data=request.purchase_data,
            signature=request.signature,
        )
    except RECEIPT_ERRORS as exc:
        raise _receipt_error(exc, "google_play") from exc
    return _receipt_response(result)


@router.get("/v1/subscriptions/me", response_model=SubscriptionResponse)
async def get_my_subscription(
    environment: Environment = Query(Environment.PRODUCTION),
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> SubscriptionResponse:
    """Current subscription record of the caller in one environment."""
    snapshot = await SubscriptionReconciler(db).get_snapshot(user.user_id, environment)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="subscription_not_found",
        )
    return SubscriptionResponse.from_snapshot(snapshot)


# =============================================================================
# Service
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
