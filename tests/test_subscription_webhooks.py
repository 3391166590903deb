"""
Tests for SubscriptionWebhookService - webhook acknowledgement and receipt sync.

Store providers are replaced by mocks passed through the provider factories;
the reconciler is patched per test.
"""

import asyncio
import base64
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from app.config import settings
from app.exceptions import (
    HistoryFetchFailedError,
    MalformedPayloadError,
    PlanNotFoundError,
    ProviderNotConfiguredError,
    VerificationFailedError,
)
from app.models.api import PubSubEnvelope, PubSubMessage, WebhookStatus
from app.models.apple_storekit import AppleNotification, AppleTransactionInfo
from app.models.domain import (
    Environment,
    EventKind,
    ReconcileOutcome,
    ReconcileResult,
)
from app.models.google_play import GooglePlayPurchaseToken, GooglePlaySubscriptionPurchase
from app.services.subscription_webhooks import SubscriptionWebhookService, bounded

PACKAGE = "com.example.app"
NOW = datetime.now(UTC)


def rtdn_envelope(body: dict, attributes: dict | None = None) -> PubSubEnvelope:
    data = base64.b64encode(json.dumps(body).encode()).decode()
    return PubSubEnvelope(
        message=PubSubMessage(data=data, messageId="msg-1", attributes=attributes or {}),
        subscription="projects/example/subscriptions/play-rtdn",
    )


def subscription_rtdn(notification_type: int = 2) -> dict:
    return {
        "version": "1.0",
        "packageName": PACKAGE,
        "eventTimeMillis": str(int(NOW.timestamp() * 1000)),
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": "purchase-token-abcdefghij",
            "subscriptionId": "pro_monthly_android",
        },
    }


def play_purchase(**overrides) -> GooglePlaySubscriptionPurchase:
    fields = {
        "order_id": "GPA.1234-5678-9012-34567",
        "purchase_token": "purchase-token-abcdefghij",
        "product_id": "pro_monthly_android",
        "start_time_millis": int(NOW.timestamp() * 1000),
        "expiry_time_millis": int((NOW + timedelta(days=30)).timestamp() * 1000),
        "price_amount_micros": 9_990_000,
        "price_currency_code": "USD",
        "auto_renewing": True,
        "payment_state": 1,
        "obfuscated_external_account_id": "user-123",
    }
    fields.update(overrides)
    return GooglePlaySubscriptionPurchase(**fields)


def apple_transaction(environment: str = "Production") -> AppleTransactionInfo:
    return AppleTransactionInfo(
        transaction_id="2000000000000002",
        original_transaction_id="2000000000000001",
        product_id="com.example.pro.monthly",
        bundle_id=PACKAGE,
        purchase_date=NOW,
        original_purchase_date=NOW,
        environment=environment,
        expires_date=NOW + timedelta(days=30),
        price=9990,
        currency="USD",
    )


def apple_notification(
    notification_type: str = "DID_RENEW", environment: str = "Production"
) -> AppleNotification:
    return AppleNotification(
        notification_type=notification_type,
        subtype=None,
        notification_uuid="uuid-1",
        version="2.0",
        signed_date=NOW,
        environment=environment,
        bundle_id=PACKAGE,
        transaction_info=apple_transaction(environment)
        if notification_type != "TEST"
        else None,
    )


@pytest.fixture
def google_provider() -> MagicMock:
    provider = MagicMock()
    provider.get_subscription_purchase = AsyncMock(return_value=play_purchase())
    return provider


@pytest.fixture
def apple_provider() -> MagicMock:
    provider = MagicMock()
    provider.verify_notification = AsyncMock(return_value=apple_notification())
    provider.verify_transaction = AsyncMock(return_value=apple_transaction())
    provider.get_transaction_history = AsyncMock(return_value=["signed-1", "signed-2"])
    provider.select_latest_transaction = AsyncMock(return_value=apple_transaction())
    return provider


@pytest.fixture
def apple_factory(apple_provider) -> MagicMock:
    return MagicMock(return_value=apple_provider)


@pytest.fixture
def service(db_session, apple_factory, google_provider) -> SubscriptionWebhookService:
    service = SubscriptionWebhookService(
        db_session,
        apple_provider_factory=apple_factory,
        google_play_provider_factory=lambda: google_provider,
    )
    service.reconciler.apply = AsyncMock(
        return_value=ReconcileResult(ReconcileOutcome.APPLIED, EventKind.RENEWED)
    )
    service.reconciler.sync_from_receipt = AsyncMock(
        return_value=ReconcileResult(ReconcileOutcome.APPLIED, EventKind.PURCHASED)
    )
    return service


class TestBounded:
    async def test_result_passed_through(self):
        async def quick():
            return "done"

        assert await bounded(quick(), "quick") == "done"

    async def test_timeout_raises_history_fetch_failed(self):
        async def slow():
            await asyncio.sleep(1)

        with patch.object(settings, "external_call_timeout_seconds", 0.01):
            with pytest.raises(HistoryFetchFailedError, match="timed out"):
                await bounded(slow(), "slow_call")


class TestGooglePlayWebhook:
    async def test_renewal_processed(self, service, google_provider):
        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.PROCESSED
        google_provider.check_package.assert_called_once_with(PACKAGE)
        token = google_provider.get_subscription_purchase.await_args.args[0]
        assert token == GooglePlayPurchaseToken(
            token="purchase-token-abcdefghij",
            product_id="pro_monthly_android",
            package_name=PACKAGE,
        )

        event = service.reconciler.apply.await_args.args[0]
        assert event.kind == EventKind.RENEWED
        assert event.notification_id == "msg-1"
        assert event.user_id == "user-123"

    async def test_noop_is_still_processed(self, service):
        service.reconciler.apply.return_value = ReconcileResult(
            ReconcileOutcome.NOOP, EventKind.RENEWED
        )

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.PROCESSED

    async def test_unresolved_user_ignored(self, service):
        service.reconciler.apply.return_value = ReconcileResult(
            ReconcileOutcome.USER_UNRESOLVED, EventKind.RENEWED
        )

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.IGNORED

    async def test_non_base64_data_rejected(self, service):
        envelope = PubSubEnvelope(message=PubSubMessage(data="not base64 at all!"))

        status = await service.handle_google_play(envelope)

        assert status == WebhookStatus.REJECTED
        service.reconciler.apply.assert_not_awaited()

    async def test_non_json_data_rejected(self, service):
        data = base64.b64encode(b"not json").decode()
        envelope = PubSubEnvelope(message=PubSubMessage(data=data))

        assert await service.handle_google_play(envelope) == WebhookStatus.REJECTED

    async def test_test_notification_ignored(self, service, google_provider):
        body = {"version": "1.0", "packageName": PACKAGE, "testNotification": {"version": "1.0"}}

        status = await service.handle_google_play(rtdn_envelope(body))

        assert status == WebhookStatus.IGNORED
        google_provider.get_subscription_purchase.assert_not_awaited()

    async def test_one_time_product_ignored(self, service, google_provider):
        body = {
            "version": "1.0",
            "packageName": PACKAGE,
            "oneTimeProductNotification": {
                "version": "1.0",
                "notificationType": 1,
                "purchaseToken": "purchase-token-abcdefghij",
                "sku": "coins_100",
            },
        }

        assert await service.handle_google_play(rtdn_envelope(body)) == WebhookStatus.IGNORED
        google_provider.get_subscription_purchase.assert_not_awaited()

    async def test_unknown_type_skips_api_call(self, service, google_provider):
        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(8)))

        assert status == WebhookStatus.IGNORED
        google_provider.get_subscription_purchase.assert_not_awaited()
        service.reconciler.apply.assert_not_awaited()

    async def test_other_package_rejected(self, service, google_provider):
        google_provider.check_package.side_effect = VerificationFailedError("Package mismatch")

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.REJECTED
        google_provider.get_subscription_purchase.assert_not_awaited()

    async def test_signature_attribute_verified(self, service, google_provider):
        body = subscription_rtdn(2)
        envelope = rtdn_envelope(body, attributes={"signature": "c2lnbmF0dXJl"})

        await service.handle_google_play(envelope)

        google_provider.verify_signature.assert_called_once_with(
            json.dumps(body).encode(), "c2lnbmF0dXJl"
        )

    async def test_bad_signature_rejected(self, service, google_provider):
        google_provider.verify_signature.side_effect = VerificationFailedError("bad signature")
        envelope = rtdn_envelope(subscription_rtdn(2), attributes={"signature": "c2ln"})

        assert await service.handle_google_play(envelope) == WebhookStatus.REJECTED
        service.reconciler.apply.assert_not_awaited()

    async def test_api_failure_acknowledged_as_error(self, service, google_provider):
        google_provider.get_subscription_purchase.side_effect = HistoryFetchFailedError(
            "Play API error", status_code=503
        )

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.ERROR

    async def test_unknown_product_acknowledged_as_error(self, service):
        service.reconciler.apply.side_effect = PlanNotFoundError("pro_monthly_android", "google_play")

        with patch("app.services.subscription_webhooks.metrics") as mock_metrics:
            status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.ERROR
        mock_metrics.record_plan_not_found.assert_called_once_with("google_play")

    async def test_unexpected_error_acknowledged(self, service):
        service.reconciler.apply.side_effect = RuntimeError("database unavailable")

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.ERROR

    async def test_unconfigured_provider_acknowledged(self, db_session):
        def not_configured():
            raise ProviderNotConfiguredError("google_play")

        service = SubscriptionWebhookService(db_session, google_play_provider_factory=not_configured)

        status = await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        assert status == WebhookStatus.ERROR

    async def test_acknowledgement_counted(self, service):
        with patch("app.services.subscription_webhooks.metrics") as mock_metrics:
            await service.handle_google_play(rtdn_envelope(subscription_rtdn(2)))

        mock_metrics.record_webhook.assert_called_once_with("google_play", "any", "processed")


class TestAppleWebhook:
    async def test_renewal_processed(self, service, apple_factory):
        status = await service.handle_apple("signed.payload.jws", Environment.PRODUCTION)

        assert status == WebhookStatus.PROCESSED
        apple_factory.assert_called_once_with(Environment.PRODUCTION)
        event = service.reconciler.apply.await_args.args[0]
        assert event.kind == EventKind.RENEWED
        assert event.environment == Environment.PRODUCTION
        assert event.notification_id == "uuid-1"

    async def test_test_notification_ignored(self, service, apple_provider):
        apple_provider.verify_notification.return_value = apple_notification("TEST")

        status = await service.handle_apple("signed.payload.jws", Environment.PRODUCTION)

        assert status == WebhookStatus.IGNORED
        service.reconciler.apply.assert_not_awaited()

    async def test_sandbox_event_on_production_endpoint_rejected(self, service, apple_provider):
        apple_provider.verify_notification.return_value = apple_notification(
            environment="Sandbox"
        )

        status = await service.handle_apple("signed.payload.jws", Environment.PRODUCTION)

        assert status == WebhookStatus.REJECTED
        service.reconciler.apply.assert_not_awaited()

    async def test_sandbox_endpoint(self, service, apple_provider, apple_factory):
        apple_provider.verify_notification.return_value = apple_notification(
            environment="Sandbox"
        )

        status = await service.handle_apple("signed.payload.jws", Environment.SANDBOX)

        assert status == WebhookStatus.PROCESSED
        apple_factory.assert_called_once_with(Environment.SANDBOX)

    async def test_invalid_signature_rejected(self, service, apple_provider):
        apple_provider.verify_notification.side_effect = VerificationFailedError(
            "Certificate chain does not lead to a trusted root"
        )

        status = await service.handle_apple("forged.payload.jws", Environment.PRODUCTION)

        assert status == WebhookStatus.REJECTED
        service.reconciler.apply.assert_not_awaited()

    async def test_malformed_payload_rejected(self, service, apple_provider):
        apple_provider.verify_notification.side_effect = MalformedPayloadError("not a JWS")

        status = await service.handle_apple("garbage", Environment.SANDBOX)

        assert status == WebhookStatus.REJECTED


class TestAppleReceipt:
    async def test_history_drives_sync(self, service, apple_provider, apple_factory):
        apple_provider.verify_transaction.return_value = apple_transaction("Sandbox")

        result = await service.sync_apple_receipt("user-123", "signed.transaction.jws")

        assert result.outcome == ReconcileOutcome.APPLIED
        assert apple_factory.call_args_list == [
            call(Environment.PRODUCTION),
            call(Environment.SANDBOX),
        ]
        apple_provider.get_transaction_history.assert_awaited_once_with("2000000000000001")
        apple_provider.select_latest_transaction.assert_awaited_once_with(["signed-1", "signed-2"])

        user_id, event = service.reconciler.sync_from_receipt.await_args.args
        assert user_id == "user-123"
        assert event.kind == EventKind.PURCHASED
        assert event.vendor_type == "RECEIPT"

    async def test_unknown_environment_is_malformed(self, service, apple_provider):
        apple_provider.verify_transaction.return_value = apple_transaction("Staging")

        with pytest.raises(MalformedPayloadError):
            await service.sync_apple_receipt("user-123", "signed.transaction.jws")

    async def test_forged_receipt_propagates(self, service, apple_provider):
        apple_provider.verify_transaction.side_effect = VerificationFailedError("bad chain")

        with pytest.raises(VerificationFailedError):
            await service.sync_apple_receipt("user-123", "forged.jws")

        apple_provider.get_transaction_history.assert_not_awaited()

    async def test_history_outage_propagates(self, service, apple_provider):
        apple_provider.get_transaction_history.side_effect = HistoryFetchFailedError(
            "Apple API error", status_code=503
        )

        with pytest.raises(HistoryFetchFailedError):
            await service.sync_apple_receipt("user-123", "signed.transaction.jws")

        service.reconciler.sync_from_receipt.assert_not_awaited()


class TestGooglePlayReceipt:
    @pytest.fixture(autouse=True)
    def package_name(self):
        with patch.object(settings, "android_package_name", PACKAGE):
            yield

    async def test_purchase_synced(self, service, google_provider):
        result = await service.sync_google_play_receipt(
            "user-123", "pro_monthly_android", "purchase-token-abcdefghij"
        )

        assert result.outcome == ReconcileOutcome.APPLIED
        token = google_provider.get_subscription_purchase.await_args.args[0]
        assert token.package_name == PACKAGE
        google_provider.verify_signature.assert_not_called()

        _, event = service.reconciler.sync_from_receipt.await_args.args
        assert event.kind == EventKind.PURCHASED
        assert event.transaction_id == "GPA.1234-5678-9012-34567"

    async def test_signed_purchase_data_verified(self, service, google_provider):
        await service.sync_google_play_receipt(
            "user-123",
            "pro_monthly_android",
            "purchase-token-abcdefghij",
            purchase_data='{"orderId":"GPA.1"}',
            signature="c2lnbmF0dXJl",
        )

        google_provider.verify_signature.assert_called_once_with(
            b'{"orderId":"GPA.1"}', "c2lnbmF0dXJl"
        )

    async def test_signature_without_data_is_malformed(self, service):
        with pytest.raises(MalformedPayloadError):
            await service.sync_google_play_receipt(
                "user-123", "pro_monthly_android", "purchase-token-abcdefghij", signature="c2ln"
            )

    async def test_short_token_is_malformed(self, service, google_provider):
        with pytest.raises(MalformedPayloadError):
            await service.sync_google_play_receipt("user-123", "pro_monthly_android", "short")

        google_provider.get_subscription_purchase.assert_not_awaited()

    async def test_unknown_token_propagates(self, service, google_provider):
        google_provider.get_subscription_purchase.side_effect = VerificationFailedError(
            "Purchase token not found"
        )

        with pytest.raises(VerificationFailedError):
            await service.sync_google_play_receipt(
                "user-123", "pro_monthly_android", "purchase-token-abcdefghij"
            )
