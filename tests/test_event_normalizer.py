"""
Tests for mapping store notifications onto ReconciliationEvent.
"""

from datetime import UTC, datetime

import pytest

from app.exceptions import MalformedPayloadError
from app.models.apple_storekit import AppleNotification, AppleRenewalInfo, AppleTransactionInfo
from app.models.domain import Environment, EventKind, PaymentState, Platform
from app.models.google_play import (
    DeveloperNotification,
    GooglePlaySubscriptionPurchase,
    SubscriptionNotification,
)
from app.services.event_normalizer import (
    accepts,
    apple_kind,
    from_apple,
    from_google_play,
    from_google_play_purchase,
    google_play_kind,
    micros_to_minor,
    milliunits_to_minor,
)

PURCHASED_AT = datetime(2026, 1, 1, tzinfo=UTC)


def apple_transaction(**overrides) -> AppleTransactionInfo:
    fields = {
        "transaction_id": "2000000000000002",
        "original_transaction_id": "2000000000000001",
        "product_id": "com.example.pro.monthly",
        "bundle_id": "com.example.app",
        "purchase_date": PURCHASED_AT,
        "original_purchase_date": PURCHASED_AT,
        "environment": "Production",
        "expires_date": datetime(2026, 2, 1, tzinfo=UTC),
        "price": 9990,
        "currency": "USD",
    }
    fields.update(overrides)
    return AppleTransactionInfo(**fields)


def apple_notification(
    notification_type: str,
    subtype: str | None = None,
    transaction: AppleTransactionInfo | None = None,
    renewal: AppleRenewalInfo | None = None,
) -> AppleNotification:
    return AppleNotification(
        notification_type=notification_type,
        subtype=subtype,
        notification_uuid="uuid-1",
        version="2.0",
        signed_date=PURCHASED_AT,
        environment="Production",
        bundle_id="com.example.app",
        transaction_info=transaction,
        renewal_info=renewal,
    )


def google_purchase(**overrides) -> GooglePlaySubscriptionPurchase:
    fields = {
        "order_id": "GPA.1234-5678-9012-34567",
        "purchase_token": "purchase-token-abcdefghij",
        "product_id": "pro_monthly_android",
        "start_time_millis": 1767225600000,
        "expiry_time_millis": 1769904000000,
        "price_amount_micros": 9_990_000,
        "price_currency_code": "USD",
        "auto_renewing": True,
        "payment_state": 1,
        "obfuscated_external_account_id": "user-123",
    }
    fields.update(overrides)
    return GooglePlaySubscriptionPurchase(**fields)


def google_notification(notification_type: int) -> DeveloperNotification:
    return DeveloperNotification(
        version="1.0",
        package_name="com.example.app",
        event_time_millis=1769904000000,
        subscription_notification=SubscriptionNotification(
            version="1.0",
            notification_type=notification_type,
            purchase_token="purchase-token-abcdefghij",
            subscription_id="pro_monthly_android",
        ),
    )


class TestMoneyConversion:
    def test_micros(self):
        assert micros_to_minor(9_990_000) == 999
        assert micros_to_minor(0) == 0

    def test_milliunits(self):
        assert milliunits_to_minor(9990) == 999
        assert milliunits_to_minor(990) == 99


class TestAppleKinds:
    @pytest.mark.parametrize(
        ("notification_type", "subtype", "expected"),
        [
            ("SUBSCRIBED", "INITIAL_BUY", EventKind.PURCHASED),
            ("SUBSCRIBED", "RESUBSCRIBE", EventKind.RESTARTED),
            ("DID_RENEW", None, EventKind.RENEWED),
            ("DID_RENEW", "BILLING_RECOVERY", EventKind.RENEWED),
            ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED", EventKind.AUTO_RENEW_DISABLED),
            ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED", EventKind.AUTO_RENEW_ENABLED),
            ("DID_FAIL_TO_RENEW", "GRACE_PERIOD", EventKind.GRACE_PERIOD),
            ("DID_FAIL_TO_RENEW", None, EventKind.ON_HOLD),
            ("GRACE_PERIOD_EXPIRED", None, EventKind.ON_HOLD),
            ("EXPIRED", "VOLUNTARY", EventKind.EXPIRED),
            ("REVOKE", None, EventKind.EXPIRED),
            ("REFUND", None, EventKind.REFUNDED),
            ("TEST", None, EventKind.UNKNOWN),
            ("CONSUMPTION_REQUEST", None, EventKind.UNKNOWN),
        ],
    )
    def test_mapping(self, notification_type, subtype, expected):
        assert apple_kind(notification_type, subtype) == expected

    def test_unlisted_type_is_unknown(self):
        assert apple_kind("SOMETHING_NEW", None) == EventKind.UNKNOWN

    def test_unlisted_subtype_falls_back_to_type(self):
        assert apple_kind("DID_RENEW", "SOMETHING_NEW") == EventKind.RENEWED


class TestGooglePlayKinds:
    @pytest.mark.parametrize(
        ("notification_type", "expected"),
        [
            (1, EventKind.RECOVERED),
            (2, EventKind.RENEWED),
            (3, EventKind.CANCELED),
            (4, EventKind.PURCHASED),
            (5, EventKind.ON_HOLD),
            (6, EventKind.GRACE_PERIOD),
            (7, EventKind.RESTARTED),
            (12, EventKind.REFUNDED),
            (13, EventKind.EXPIRED),
            (8, EventKind.UNKNOWN),
            (99, EventKind.UNKNOWN),
        ],
    )
    def test_mapping(self, notification_type, expected):
        assert google_play_kind(notification_type) == expected


class TestFromApple:
    def test_did_renew(self):
        event = from_apple(apple_notification("DID_RENEW", transaction=apple_transaction()))

        assert event.platform == Platform.APPLE
        assert event.kind == EventKind.RENEWED
        assert event.environment == Environment.PRODUCTION
        assert event.external_anchor_id == "2000000000000001"
        assert event.transaction_id == "2000000000000002"
        assert event.amount_minor == 999
        assert event.currency == "usd"
        assert event.purchase_instant == PURCHASED_AT
        assert event.notification_id == "uuid-1"
        assert event.carries_payment is True

    def test_renewal_product_preferred(self):
        renewal = AppleRenewalInfo(
            original_transaction_id="2000000000000001",
            product_id="com.example.pro.monthly",
            auto_renew_product_id="com.example.pro.yearly",
            auto_renew_status=1,
        )
        event = from_apple(
            apple_notification("DID_RENEW", transaction=apple_transaction(), renewal=renewal)
        )

        assert event.product_id == "com.example.pro.yearly"

    def test_free_trial(self):
        transaction = apple_transaction(price=0, offer_type=1, offer_discount_type="FREE_TRIAL")
        event = from_apple(apple_notification("SUBSCRIBED", "INITIAL_BUY", transaction))

        assert event.payment_state == PaymentState.FREE_TRIAL
        assert event.carries_payment is False

    def test_sandbox_environment(self):
        event = from_apple(
            apple_notification("DID_RENEW", transaction=apple_transaction(environment="Sandbox"))
        )

        assert event.environment == Environment.SANDBOX

    def test_known_type_without_transaction_is_malformed(self):
        with pytest.raises(MalformedPayloadError):
            from_apple(apple_notification("DID_RENEW"))

    def test_unknown_type_without_transaction(self):
        event = from_apple(apple_notification("SOMETHING_NEW"))

        assert event.kind == EventKind.UNKNOWN
        assert event.vendor_type == "SOMETHING_NEW"


class TestFromGooglePlay:
    def test_renewed_uses_event_time(self):
        event = from_google_play(google_notification(2), google_purchase(), "msg-1")

        assert event.platform == Platform.GOOGLE_PLAY
        assert event.kind == EventKind.RENEWED
        assert event.external_anchor_id == "purchase-token-abcdefghij"
        assert event.transaction_id == "GPA.1234-5678-9012-34567"
        assert event.amount_minor == 999
        assert event.currency == "usd"
        assert event.user_id == "user-123"
        assert event.purchase_instant == datetime.fromtimestamp(1769904000, tz=UTC)
        assert event.notification_id == "msg-1"
        assert event.vendor_type == "2"

    def test_purchased_uses_start_time(self):
        event = from_google_play(google_notification(4), google_purchase())

        assert event.purchase_instant == datetime.fromtimestamp(1767225600, tz=UTC)

    def test_pending_payment(self):
        event = from_google_play_purchase(google_purchase(payment_state=0))

        assert event.payment_state == PaymentState.PENDING
        assert event.carries_payment is False

    def test_replaced_expiry_flagged(self):
        event = from_google_play(google_notification(13), google_purchase(cancel_reason=2))

        assert event.kind == EventKind.EXPIRED
        assert event.replaced_by_new_purchase is True

    def test_one_time_notification_is_malformed(self):
        notification = DeveloperNotification(
            version="1.0", package_name="com.example.app", event_time_millis=0
        )

        with pytest.raises(MalformedPayloadError):
            from_google_play(notification, google_purchase())


class TestEnvironmentRouting:
    def test_matching_environment_accepted(self):
        event = from_apple(apple_notification("DID_RENEW", transaction=apple_transaction()))
        assert accepts(event, Environment.PRODUCTION) is True

    def test_sandbox_event_on_production_endpoint_rejected(self):
        event = from_apple(
            apple_notification("DID_RENEW", transaction=apple_transaction(environment="Sandbox"))
        )
        assert accepts(event, Environment.PRODUCTION) is False

    def test_shared_endpoint_accepts_both(self):
        event = from_google_play_purchase(google_purchase(purchase_type=0))
        assert accepts(event, None) is True
