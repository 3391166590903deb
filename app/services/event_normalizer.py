"""
Event Normalizer - Map store notifications onto ReconciliationEvent.

Vendor vocabularies are parsed into closed enums first; anything the enums
do not know surfaces as UnknownEventKindError and becomes EventKind.UNKNOWN
here, so a new vendor type is never silently treated as a known one.
"""

from datetime import datetime

from app.exceptions import MalformedPayloadError, UnknownEventKindError
from app.models.apple_storekit import (
    AppleNotification,
    AppleNotificationSubtype as Sub,
    AppleNotificationType as AType,
    AppleRenewalInfo,
    AppleTransactionInfo,
)
from app.models.domain import (
    Environment,
    EventKind,
    PaymentState,
    Platform,
    ReconciliationEvent,
)
from app.models.google_play import (
    DeveloperNotification,
    GooglePlaySubscriptionPurchase,
    SubscriptionNotificationType as GType,
)
from app.observability.logging import get_logger

logger = get_logger(__name__)

# (type, subtype) pairs take precedence over type-only entries.
APPLE_SUBTYPE_KINDS: dict[tuple[AType, Sub], EventKind] = {
    (AType.SUBSCRIBED, Sub.INITIAL_BUY): EventKind.PURCHASED,
    (AType.SUBSCRIBED, Sub.RESUBSCRIBE): EventKind.RESTARTED,
    (AType.DID_CHANGE_RENEWAL_PREF, Sub.RESUBSCRIBE): EventKind.RESTARTED,
    (AType.DID_CHANGE_RENEWAL_STATUS, Sub.AUTO_RENEW_DISABLED): EventKind.AUTO_RENEW_DISABLED,
    (AType.DID_CHANGE_RENEWAL_STATUS, Sub.AUTO_RENEW_ENABLED): EventKind.AUTO_RENEW_ENABLED,
    (AType.DID_FAIL_TO_RENEW, Sub.GRACE_PERIOD): EventKind.GRACE_PERIOD,
}

APPLE_TYPE_KINDS: dict[AType, EventKind] = {
    AType.DID_RENEW: EventKind.RENEWED,
    AType.DID_RECOVER: EventKind.RECOVERED,
    AType.DID_FAIL_TO_RENEW: EventKind.ON_HOLD,
    # grace period over, billing retry continues
    AType.GRACE_PERIOD_EXPIRED: EventKind.ON_HOLD,
    AType.EXPIRED: EventKind.EXPIRED,
    AType.REVOKE: EventKind.EXPIRED,
    AType.REFUND: EventKind.REFUNDED,
    AType.TEST: EventKind.UNKNOWN,
}

GOOGLE_PLAY_KINDS: dict[GType, EventKind] = {
    GType.SUBSCRIPTION_RECOVERED: EventKind.RECOVERED,
    GType.SUBSCRIPTION_RENEWED: EventKind.RENEWED,
    GType.SUBSCRIPTION_CANCELED: EventKind.CANCELED,
    GType.SUBSCRIPTION_PURCHASED: EventKind.PURCHASED,
    GType.SUBSCRIPTION_ON_HOLD: EventKind.ON_HOLD,
    GType.SUBSCRIPTION_IN_GRACE_PERIOD: EventKind.GRACE_PERIOD,
    GType.SUBSCRIPTION_RESTARTED: EventKind.RESTARTED,
    GType.SUBSCRIPTION_REVOKED: EventKind.REFUNDED,
    GType.SUBSCRIPTION_EXPIRED: EventKind.EXPIRED,
}


def micros_to_minor(micros: int) -> int:
    """Google priceAmountMicros -> minor units (9_990_000 -> 999)."""
    return micros // 10_000


def milliunits_to_minor(milliunits: int) -> int:
    """Apple price milliunits -> minor units (9990 -> 999)."""
    return milliunits // 10


def apple_kind(notification_type: str, subtype: str | None) -> EventKind:
    """Map an App Store notificationType / subtype pair to an event kind."""
    try:
        parsed_type = AType.parse(notification_type)
    except UnknownEventKindError as exc:
        logger.warning("apple_notification_type_unknown", notification_type=exc.vendor_type)
        return EventKind.UNKNOWN

    if subtype:
        try:
            parsed_subtype = Sub(subtype)
        except ValueError:
            logger.warning(
                "apple_notification_subtype_unknown",
                notification_type=notification_type,
                subtype=subtype,
            )
        else:
            kind = APPLE_SUBTYPE_KINDS.get((parsed_type, parsed_subtype))
            if kind is not None:
                return kind

    # SUBSCRIBED / DID_CHANGE_RENEWAL_* only mean something with a listed subtype
    return APPLE_TYPE_KINDS.get(parsed_type, EventKind.UNKNOWN)


def google_play_kind(notification_type: int) -> EventKind:
    """Map an RTDN subscription notificationType to an event kind."""
    try:
        parsed = GType.parse(notification_type)
    except UnknownEventKindError as exc:
        logger.warning("google_play_notification_type_unknown", notification_type=exc.vendor_type)
        return EventKind.UNKNOWN

    kind = GOOGLE_PLAY_KINDS.get(parsed, EventKind.UNKNOWN)
    if kind == EventKind.UNKNOWN:
        logger.info("google_play_notification_type_unhandled", notification_type=parsed.name)
    return kind


def _apple_environment(value: str) -> Environment:
    try:
        return Environment.from_apple(value)
    except ValueError as exc:
        raise MalformedPayloadError(str(exc)) from exc


def from_apple_transaction(
    transaction: AppleTransactionInfo,
    renewal: AppleRenewalInfo | None = None,
    kind: EventKind = EventKind.PURCHASED,
    notification_id: str | None = None,
    vendor_type: str = "",
) -> ReconciliationEvent:
    """Build an event from verified App Store transaction (and renewal) claims."""
    product_id = (renewal.auto_renew_product_id if renewal else None) or transaction.product_id

    price = transaction.price
    currency = transaction.currency
    if price is None and renewal is not None:
        price = renewal.renewal_price
        currency = currency or renewal.currency

    return ReconciliationEvent(
        platform=Platform.APPLE,
        kind=kind,
        environment=_apple_environment(transaction.environment),
        product_id=product_id,
        external_anchor_id=transaction.original_transaction_id,
        transaction_id=transaction.transaction_id,
        amount_minor=milliunits_to_minor(price) if price is not None else None,
        currency=currency.lower() if currency else None,
        purchase_instant=transaction.purchase_date,
        expiry_instant=transaction.expires_date,
        app_account_token=transaction.app_account_token,
        payment_state=PaymentState.FREE_TRIAL
        if transaction.is_free_trial()
        else PaymentState.PAID,
        notification_id=notification_id,
        vendor_type=vendor_type,
    )


def from_apple(notification: AppleNotification) -> ReconciliationEvent:
    """
    Normalize a verified App Store Server Notification.

    Raises:
        MalformedPayloadError: A known lifecycle notification without transaction claims
    """
    vendor_type = notification.notification_type
    if notification.subtype:
        vendor_type = f"{vendor_type}/{notification.subtype}"

    kind = apple_kind(notification.notification_type, notification.subtype)
    transaction = notification.transaction_info

    if transaction is None:
        if kind != EventKind.UNKNOWN:
            raise MalformedPayloadError(f"{vendor_type} notification has no transaction")
        return ReconciliationEvent(
            platform=Platform.APPLE,
            kind=EventKind.UNKNOWN,
            environment=_apple_environment(notification.environment),
            product_id="",
            external_anchor_id="",
            transaction_id=None,
            amount_minor=None,
            currency=None,
            purchase_instant=None,
            expiry_instant=None,
            notification_id=notification.notification_uuid,
            vendor_type=vendor_type,
        )

    return from_apple_transaction(
        transaction,
        notification.renewal_info,
        kind=kind,
        notification_id=notification.notification_uuid,
        vendor_type=vendor_type,
    )


def from_google_play_purchase(
    purchase: GooglePlaySubscriptionPurchase,
    kind: EventKind = EventKind.PURCHASED,
    event_time: datetime | None = None,
    notification_id: str | None = None,
    vendor_type: str = "",
) -> ReconciliationEvent:
    """
    Build an event from an authoritative subscription resource.

    The resource only carries the original start time, so non-purchase
    events use the notification time as the start of the new period.
    """
    if kind in (EventKind.PURCHASED, EventKind.RESTARTED) or event_time is None:
        purchase_instant = purchase.start_time
    else:
        purchase_instant = event_time

    return ReconciliationEvent(
        platform=Platform.GOOGLE_PLAY,
        kind=kind,
        environment=purchase.environment,
        product_id=purchase.product_id,
        external_anchor_id=purchase.purchase_token,
        transaction_id=purchase.order_id,
        amount_minor=micros_to_minor(purchase.price_amount_micros),
        currency=purchase.price_currency_code.lower(),
        purchase_instant=purchase_instant,
        expiry_instant=purchase.expiry_time,
        payment_state=purchase.payment,
        user_id=purchase.obfuscated_external_account_id,
        notification_id=notification_id,
        replaced_by_new_purchase=purchase.is_replaced(),
        vendor_type=vendor_type,
    )


def from_google_play(
    notification: DeveloperNotification,
    purchase: GooglePlaySubscriptionPurchase,
    notification_id: str | None = None,
) -> ReconciliationEvent:
    """Normalize an RTDN subscription notification plus its verified purchase."""
    sub = notification.subscription_notification
    if sub is None:
        raise MalformedPayloadError("RTDN carries no subscriptionNotification")

    return from_google_play_purchase(
        purchase,
        kind=google_play_kind(sub.notification_type),
        event_time=notification.event_time,
        notification_id=notification_id,
        vendor_type=str(sub.notification_type),
    )


def accepts(event: ReconciliationEvent, endpoint_environment: Environment | None) -> bool:
    """
    False when an event arrived on an endpoint for the other environment.

    The Google Play endpoint serves both environments (None).
    """
    if endpoint_environment is None or event.environment == endpoint_environment:
        return True
    logger.warning(
        "event_environment_mismatch",
        platform=event.platform.value,
        event_environment=event.environment.value,
        endpoint_environment=endpoint_environment.value,
        notification_id=event.notification_id,
    )
    return False
