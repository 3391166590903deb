"""
Subscription Webhooks - Verify, normalize and reconcile store notifications.

Store notifications are acknowledged once received: failures are logged
and counted, and the caller always answers 200 with a WebhookStatus.
Receipt syncs propagate their errors so the endpoint can map them to
client-facing status codes.
"""

import asyncio
import base64
import binascii
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    HistoryFetchFailedError,
    MalformedPayloadError,
    PlanNotFoundError,
    ProviderNotConfiguredError,
    VerificationFailedError,
)
from app.models.api import PubSubEnvelope, WebhookStatus
from app.models.domain import (
    Environment,
    EventKind,
    Platform,
    ReconcileOutcome,
    ReconcileResult,
)
from app.models.google_play import GooglePlayPurchaseToken
from app.observability.logging import get_logger, log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.apple_storekit_provider import AppleStoreKitProvider
from app.services.event_normalizer import (
    accepts,
    from_apple,
    from_apple_transaction,
    from_google_play,
    from_google_play_purchase,
    google_play_kind,
)
from app.services.google_play_provider import GooglePlayProvider, parse_notification
from app.services.provider_config import get_apple_provider, get_google_play_provider
from app.services.reconciler import SubscriptionReconciler

logger = get_logger(__name__)

T = TypeVar("T")

AppleProviderFactory = Callable[[Environment], AppleStoreKitProvider]
GooglePlayProviderFactory = Callable[[], GooglePlayProvider]


async def bounded(awaitable: Awaitable[T], operation: str) -> T:
    """
    Run an external call under the configured timeout.

    Raises:
        HistoryFetchFailedError: The call did not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=settings.external_call_timeout_seconds)
    except TimeoutError as exc:
        metrics.record_error("timeout", operation)
        raise HistoryFetchFailedError(
            f"{operation} timed out after {settings.external_call_timeout_seconds}s"
        ) from exc


def _webhook_status(result: ReconcileResult) -> WebhookStatus:
    if result.outcome in (ReconcileOutcome.APPLIED, ReconcileOutcome.NOOP):
        return WebhookStatus.PROCESSED
    return WebhookStatus.IGNORED


class SubscriptionWebhookService:
    """Entry points for store notifications and client receipts."""

    def __init__(
        self,
        session: AsyncSession,
        apple_provider_factory: AppleProviderFactory = get_apple_provider,
        google_play_provider_factory: GooglePlayProviderFactory = get_google_play_provider,
    ) -> None:
        self.session = session
        self.reconciler = SubscriptionReconciler(session)
        self._apple_provider = apple_provider_factory
        self._google_play_provider = google_play_provider_factory

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def _acknowledge(
        self,
        platform: Platform,
        environment: str,
        handler: Callable[[], Awaitable[WebhookStatus]],
    ) -> WebhookStatus:
        """Run a webhook handler and turn every failure into an acknowledgement."""
        try:
            outcome = await handler()
        except (MalformedPayloadError, VerificationFailedError) as exc:
            logger.warning(
                "subscription_webhook_rejected",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            metrics.record_error(type(exc).__name__, f"{platform.value}_webhook")
            outcome = WebhookStatus.REJECTED
        except PlanNotFoundError as exc:
            logger.critical(
                "subscription_webhook_plan_not_found",
                product_id=exc.product_id,
                error=str(exc),
            )
            metrics.record_plan_not_found(platform.value)
            outcome = WebhookStatus.ERROR
        except (HistoryFetchFailedError, ProviderNotConfiguredError) as exc:
            logger.error(
                "subscription_webhook_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            metrics.record_error(type(exc).__name__, f"{platform.value}_webhook")
            outcome = WebhookStatus.ERROR
        except Exception as exc:
            # Acknowledge anyway so the store does not redeliver a poison message
            logger.exception("subscription_webhook_processing_failed")
            metrics.record_error(type(exc).__name__, f"{platform.value}_webhook")
            outcome = WebhookStatus.ERROR

        metrics.record_webhook(platform.value, environment, outcome.value)
        logger.info("subscription_webhook_acknowledged", status=outcome.value)
        return outcome

    async def handle_google_play(self, envelope: PubSubEnvelope) -> WebhookStatus:
        """Process a Pub/Sub push of a Google Play real-time developer notification."""
        with log_context(
            platform=Platform.GOOGLE_PLAY.value, notification_id=envelope.message.message_id
        ):
            return await self._acknowledge(
                Platform.GOOGLE_PLAY, "any", lambda: self._process_google_play(envelope)
            )

    async def _process_google_play(self, envelope: PubSubEnvelope) -> WebhookStatus:
        message = envelope.message
        try:
            data = base64.b64decode(message.data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedPayloadError("Pub/Sub data is not base64") from exc

        provider = self._google_play_provider()

        signature = message.attributes.get("signature")
        if signature:
            provider.verify_signature(data, signature)

        notification = parse_notification(data)
        logger.info(
            "google_play_webhook_received",
            package_name=notification.package_name,
            is_test=notification.is_test,
        )

        if notification.is_test:
            logger.info("google_play_test_notification_ignored")
            return WebhookStatus.IGNORED

        provider.check_package(notification.package_name)

        sub = notification.subscription_notification
        if sub is None:
            logger.info("google_play_non_subscription_notification_ignored")
            return WebhookStatus.IGNORED

        logger.info(
            "google_play_subscription_notification",
            notification_type=sub.notification_type,
            subscription_id=sub.subscription_id,
            purchase_token=sub.purchase_token,
        )

        # Unknown types never reach the Play Developer API
        if google_play_kind(sub.notification_type) == EventKind.UNKNOWN:
            metrics.record_transition(
                Platform.GOOGLE_PLAY.value, EventKind.UNKNOWN.value, ReconcileOutcome.IGNORED.value
            )
            return WebhookStatus.IGNORED

        try:
            token = GooglePlayPurchaseToken(
                token=sub.purchase_token,
                product_id=sub.subscription_id,
                package_name=notification.package_name,
            )
        except ValueError as exc:
            raise MalformedPayloadError(str(exc)) from exc

        with trace_operation("google_play_subscription_lookup", product_id=token.product_id):
            purchase = await bounded(
                provider.get_subscription_purchase(token), "google_play_subscription_get"
            )

        event = from_google_play(notification, purchase, notification_id=message.message_id)
        result = await self.reconciler.apply(event)
        return _webhook_status(result)

    async def handle_apple(self, signed_payload: str, environment: Environment) -> WebhookStatus:
        """Process an App Store Server Notification V2 delivered to one environment's endpoint."""
        with log_context(platform=Platform.APPLE.value, endpoint_environment=environment.value):
            return await self._acknowledge(
                Platform.APPLE,
                environment.value,
                lambda: self._process_apple(signed_payload, environment),
            )

    async def _process_apple(self, signed_payload: str, environment: Environment) -> WebhookStatus:
        provider = self._apple_provider(environment)

        with trace_operation("apple_notification_verify", environment=environment.value):
            notification = await bounded(
                provider.verify_notification(signed_payload), "apple_notification_verify"
            )

        with log_context(notification_id=notification.notification_uuid):
            logger.info(
                "apple_webhook_received",
                notification_type=notification.notification_type,
                subtype=notification.subtype,
            )

            if notification.is_test():
                logger.info("apple_test_notification_ignored")
                return WebhookStatus.IGNORED

            event = from_apple(notification)
            if not accepts(event, environment):
                return WebhookStatus.REJECTED

            result = await self.reconciler.apply(event)
            return _webhook_status(result)

    # ========================================================================
    # Receipts
    # ========================================================================

    async def sync_apple_receipt(self, user_id: str, receipt_data: str) -> ReconcileResult:
        """
        Reconcile a user's App Store subscription from a StoreKit signed transaction.

        The submitted transaction only identifies the subscription; the state
        comes from the latest transaction in its history.

        Raises:
            MalformedPayloadError, VerificationFailedError: Receipt rejected
            HistoryFetchFailedError: History unavailable
            PlanNotFoundError: Product has no plan
            SubscriptionExpiredError: Latest transaction already expired
        """
        with log_context(platform=Platform.APPLE.value, user_id=user_id):
            verifier = self._apple_provider(Environment.PRODUCTION)
            submitted = await bounded(
                verifier.verify_transaction(receipt_data), "apple_transaction_verify"
            )
            try:
                environment = Environment.from_apple(submitted.environment)
            except ValueError as exc:
                raise MalformedPayloadError(str(exc)) from exc
            provider = self._apple_provider(environment)

            logger.info(
                "apple_receipt_received",
                original_transaction_id=submitted.original_transaction_id,
                environment=environment.value,
            )

            with trace_operation("apple_history_fetch", environment=environment.value):
                signed = await bounded(
                    provider.get_transaction_history(submitted.original_transaction_id),
                    "apple_history_fetch",
                )
                latest = await bounded(
                    provider.select_latest_transaction(signed), "apple_history_decode"
                )

            event = from_apple_transaction(latest, kind=EventKind.PURCHASED, vendor_type="RECEIPT")
            return await self.reconciler.sync_from_receipt(user_id, event)

    async def sync_google_play_receipt(
        self,
        user_id: str,
        product_id: str,
        purchase_token: str,
        purchase_data: str | None = None,
        signature: str | None = None,
    ) -> ReconcileResult:
        """
        Reconcile a user's Google Play subscription from a client purchase.

        Raises:
            MalformedPayloadError, VerificationFailedError: Purchase rejected
            HistoryFetchFailedError: Play Developer API unavailable
            PlanNotFoundError: Product has no plan
            SubscriptionExpiredError: Subscription already expired
        """
        with log_context(platform=Platform.GOOGLE_PLAY.value, user_id=user_id):
            provider = self._google_play_provider()

            if signature:
                if not purchase_data:
                    raise MalformedPayloadError("signature supplied without purchase_data")
                provider.verify_signature(purchase_data.encode("utf-8"), signature)

            try:
                token = GooglePlayPurchaseToken(
                    token=purchase_token,
                    product_id=product_id,
                    package_name=settings.android_package_name,
                )
            except ValueError as exc:
                raise MalformedPayloadError(str(exc)) from exc

            logger.info("google_play_receipt_received", product_id=product_id)

            purchase = await bounded(
                provider.get_subscription_purchase(token), "google_play_subscription_get"
            )
            event = from_google_play_purchase(purchase, kind=EventKind.PURCHASED, vendor_type="RECEIPT")
            return await self.reconciler.sync_from_receipt(user_id, event)

