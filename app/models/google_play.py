"""
Google Play domain models - Immutable dataclasses for RTDN and purchase data.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum

from app.exceptions import UnknownEventKindError
from app.models.domain import Environment, PaymentState


class SubscriptionNotificationType(IntEnum):
    """Real-time developer notification subscription types."""

    SUBSCRIPTION_RECOVERED = 1
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12
    SUBSCRIPTION_EXPIRED = 13
    SUBSCRIPTION_PRICE_CHANGE_UPDATED = 19
    SUBSCRIPTION_PENDING_PURCHASE_CANCELED = 20
    SUBSCRIPTION_PRICE_STEP_UP_CONSENT_UPDATED = 22

    @classmethod
    def parse(cls, value: int) -> "SubscriptionNotificationType":
        try:
            return cls(value)
        except ValueError:
            raise UnknownEventKindError("google_play", str(value)) from None


class CancelReason(IntEnum):
    """subscriptions.get cancelReason."""

    USER_CANCELED = 0
    SYSTEM_CANCELED = 1  # billing problem
    REPLACED = 2  # upgraded / downgraded to a new purchase
    DEVELOPER_CANCELED = 3


@dataclass(frozen=True)
class SubscriptionNotification:
    version: str
    notification_type: int
    purchase_token: str
    subscription_id: str


@dataclass(frozen=True)
class OneTimeProductNotification:
    version: str
    notification_type: int
    purchase_token: str
    sku: str


@dataclass(frozen=True)
class DeveloperNotification:
    """Decoded Pub/Sub message data of a real-time developer notification."""

    version: str
    package_name: str
    event_time_millis: int
    subscription_notification: SubscriptionNotification | None = None
    one_time_product_notification: OneTimeProductNotification | None = None
    is_test: bool = False

    @property
    def event_time(self) -> datetime:
        return datetime.fromtimestamp(self.event_time_millis / 1000, tz=UTC)


@dataclass(frozen=True)
class GooglePlayPurchaseToken:
    """Validated Google Play purchase token."""

    token: str
    product_id: str
    package_name: str

    def __post_init__(self) -> None:
        """Validate purchase token fields."""
        if not self.token or len(self.token) < 10:
            raise ValueError("Invalid purchase token")
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.package_name:
            raise ValueError("Package name required")


@dataclass(frozen=True)
class GooglePlaySubscriptionPurchase:
    """Authoritative subscription resource from purchases.subscriptions.get.

    Prices are in micros of the currency (9_990_000 = 9.99).
    """

    order_id: str
    purchase_token: str
    product_id: str
    start_time_millis: int
    expiry_time_millis: int
    price_amount_micros: int
    price_currency_code: str
    auto_renewing: bool
    payment_state: int | None = None  # 0: pending, 1: received, 2: free trial, 3: deferred
    cancel_reason: int | None = None
    purchase_type: int | None = None  # None: real, 0: test, 1: promo
    obfuscated_external_account_id: str | None = None
    linked_purchase_token: str | None = None
    acknowledgement_state: int = 0

    @property
    def start_time(self) -> datetime:
        return datetime.fromtimestamp(self.start_time_millis / 1000, tz=UTC)

    @property
    def expiry_time(self) -> datetime:
        return datetime.fromtimestamp(self.expiry_time_millis / 1000, tz=UTC)

    @property
    def environment(self) -> Environment:
        """License-tester purchases (purchaseType 0) belong to sandbox."""
        return Environment.SANDBOX if self.purchase_type == 0 else Environment.PRODUCTION

    @property
    def payment(self) -> PaymentState:
        if self.payment_state == 2:
            return PaymentState.FREE_TRIAL
        if self.payment_state in (0, 3):
            return PaymentState.PENDING
        return PaymentState.PAID

    def is_replaced(self) -> bool:
        return self.cancel_reason == CancelReason.REPLACED

    def is_test_purchase(self) -> bool:
        """Check if this is a test purchase (license tester account)."""
        return self.purchase_type == 0
