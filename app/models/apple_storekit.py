"""
Apple StoreKit domain models - Immutable dataclasses for verified JWS claims.

NO DICTIONARIES - All data uses strongly typed models.

App Store Server API v2 and App Store Server Notifications V2 deliver
transaction, renewal and notification data as JWS (ES256) tokens.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.exceptions import UnknownEventKindError


class AppleNotificationType(str, Enum):
    """App Store Server Notifications V2 notificationType values."""

    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    DID_RECOVER = "DID_RECOVER"  # V1 name, still sent by older configurations
    DID_RENEW = "DID_RENEW"
    EXPIRED = "EXPIRED"
    EXTERNAL_PURCHASE_TOKEN = "EXTERNAL_PURCHASE_TOKEN"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    ONE_TIME_CHARGE = "ONE_TIME_CHARGE"
    PRICE_INCREASE = "PRICE_INCREASE"
    REFUND = "REFUND"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    RENEWAL_EXTENSION = "RENEWAL_EXTENSION"
    REVOKE = "REVOKE"
    SUBSCRIBED = "SUBSCRIBED"
    TEST = "TEST"

    @classmethod
    def parse(cls, value: str) -> "AppleNotificationType":
        try:
            return cls(value)
        except ValueError:
            raise UnknownEventKindError("apple", value) from None


class AppleNotificationSubtype(str, Enum):
    """App Store Server Notifications V2 subtype values."""

    ACCEPTED = "ACCEPTED"
    AUTO_RENEW_DISABLED = "AUTO_RENEW_DISABLED"
    AUTO_RENEW_ENABLED = "AUTO_RENEW_ENABLED"
    BILLING_RECOVERY = "BILLING_RECOVERY"
    BILLING_RETRY = "BILLING_RETRY"
    DOWNGRADE = "DOWNGRADE"
    FAILURE = "FAILURE"
    GRACE_PERIOD = "GRACE_PERIOD"
    INITIAL_BUY = "INITIAL_BUY"
    PENDING = "PENDING"
    PRICE_INCREASE = "PRICE_INCREASE"
    PRODUCT_NOT_FOR_SALE = "PRODUCT_NOT_FOR_SALE"
    RESUBSCRIBE = "RESUBSCRIBE"
    SUMMARY = "SUMMARY"
    UPGRADE = "UPGRADE"
    UNREPORTED = "UNREPORTED"
    VOLUNTARY = "VOLUNTARY"


@dataclass(frozen=True)
class AppleTransactionInfo:
    """Verified JWSTransactionDecodedPayload.

    Prices are in milliunits of the currency (9990 = 9.99).
    """

    transaction_id: str
    original_transaction_id: str
    product_id: str
    bundle_id: str
    purchase_date: datetime
    original_purchase_date: datetime
    environment: str  # "Production", "Sandbox", "Xcode", "LocalTesting"
    type: str = "Auto-Renewable Subscription"

    expires_date: datetime | None = None
    price: int | None = None  # milliunits
    currency: str | None = None  # ISO 4217, upper-case from Apple
    transaction_reason: str | None = None  # "PURCHASE" or "RENEWAL"
    offer_type: int | None = None  # 1: intro, 2: promo, 3: offer code, 4: win-back
    offer_discount_type: str | None = None  # "FREE_TRIAL", "PAY_AS_YOU_GO", "PAY_UP_FRONT"
    app_account_token: str | None = None
    web_order_line_item_id: str | None = None
    revocation_date: datetime | None = None
    revocation_reason: int | None = None
    is_upgraded: bool = False

    def is_free_trial(self) -> bool:
        return self.offer_discount_type == "FREE_TRIAL" or (
            self.offer_type == 1 and self.price == 0
        )

    def is_revoked(self) -> bool:
        return self.revocation_date is not None


@dataclass(frozen=True)
class AppleRenewalInfo:
    """Verified JWSRenewalInfoDecodedPayload."""

    original_transaction_id: str
    product_id: str
    auto_renew_product_id: str | None
    auto_renew_status: int  # 0: off, 1: on
    environment: str | None = None
    renewal_price: int | None = None  # milliunits
    currency: str | None = None
    expiration_intent: int | None = None
    grace_period_expires_date: datetime | None = None
    is_in_billing_retry_period: bool = False
    renewal_date: datetime | None = None

    def will_renew(self) -> bool:
        return self.auto_renew_status == 1


@dataclass(frozen=True)
class AppleNotification:
    """Verified App Store Server Notification V2 (responseBodyV2DecodedPayload)."""

    notification_type: str
    subtype: str | None
    notification_uuid: str
    version: str
    signed_date: datetime
    environment: str
    bundle_id: str | None
    transaction_info: AppleTransactionInfo | None = None
    renewal_info: AppleRenewalInfo | None = None

    def is_test(self) -> bool:
        return self.notification_type == AppleNotificationType.TEST.value


@dataclass(frozen=True)
class AppleStoreKitConfig:
    """Configuration for the App Store Server API and JWS verification."""

    key_id: str  # Key ID from App Store Connect
    issuer_id: str  # Issuer ID from App Store Connect
    private_key: str  # Private key (.p8 contents)
    bundle_id: str  # App bundle ID
    environment: str  # "production" or "sandbox"
    root_certificates: tuple[bytes, ...] = ()  # pinned Apple roots, DER
    jwks_url: str = "https://apple-public.keys.appstoreconnect.apple.com/keys"

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.environment.lower() == "sandbox":
            return "https://api.storekit-sandbox.itunes.apple.com"
        return "https://api.storekit.itunes.apple.com"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.key_id:
            raise ValueError("StoreKit key_id is required")
        if not self.issuer_id:
            raise ValueError("StoreKit issuer_id is required")
        if not self.private_key:
            raise ValueError("StoreKit private_key is required")
        if not self.bundle_id:
            raise ValueError("StoreKit bundle_id is required")
        if self.environment.lower() not in ("production", "sandbox"):
            raise ValueError("Environment must be 'production' or 'sandbox'")
