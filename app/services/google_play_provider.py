"""
Google Play Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Android RTDN payloads are not self-verifying: a subscription event is
verified by exchanging its purchase token for the authoritative purchase
resource. One-time purchase data carries an RSA/SHA1 signature made with
the app's Play Console licensing key.
"""

import asyncio
import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key, load_pem_public_key
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from app.exceptions import (
    HistoryFetchFailedError,
    MalformedPayloadError,
    VerificationFailedError,
)
from app.models.google_play import (
    DeveloperNotification,
    GooglePlayPurchaseToken,
    GooglePlaySubscriptionPurchase,
    OneTimeProductNotification,
    SubscriptionNotification,
)
from app.observability.metrics import track_external_call

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


def load_service_account_info(value: str) -> dict[str, Any]:
    """Accept a service account as a file path, raw JSON or base64 JSON."""
    value = value.strip()
    if value.startswith("{"):
        info: dict[str, Any] = json.loads(value)
        return info
    if os.path.isfile(value):
        with open(value, encoding="utf-8") as fh:
            info = json.load(fh)
        return info
    try:
        info = json.loads(base64.b64decode(value).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError("Service account is not a path, JSON or base64 JSON") from exc
    return info


def parse_notification(data: bytes) -> DeveloperNotification:
    """
    Parse the decoded data of a Pub/Sub RTDN message.

    Raises:
        MalformedPayloadError: Not JSON or missing required fields
    """
    try:
        body = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayloadError(f"RTDN data is not JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedPayloadError("RTDN data is not an object")

    try:
        subscription: SubscriptionNotification | None = None
        if body.get("subscriptionNotification"):
            sub = body["subscriptionNotification"]
            subscription = SubscriptionNotification(
                version=str(sub.get("version", "1.0")),
                notification_type=int(sub["notificationType"]),
                purchase_token=str(sub["purchaseToken"]),
                subscription_id=str(sub["subscriptionId"]),
            )

        one_time: OneTimeProductNotification | None = None
        if body.get("oneTimeProductNotification"):
            otp = body["oneTimeProductNotification"]
            one_time = OneTimeProductNotification(
                version=str(otp.get("version", "1.0")),
                notification_type=int(otp["notificationType"]),
                purchase_token=str(otp["purchaseToken"]),
                sku=str(otp["sku"]),
            )

        return DeveloperNotification(
            version=str(body.get("version", "1.0")),
            package_name=str(body["packageName"]),
            event_time_millis=int(body.get("eventTimeMillis", 0)),
            subscription_notification=subscription,
            one_time_product_notification=one_time,
            is_test="testNotification" in body,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"Incomplete RTDN data: {exc}") from exc


class GooglePlayProvider:
    """
    Google Play Developer API provider.

    Handles subscription lookup and purchase signature verification.
    """

    def __init__(
        self,
        service_account_json: str | dict[str, Any],
        package_name: str,
        public_key: str = "",
    ) -> None:
        """
        Initialize Google Play provider.

        Args:
            service_account_json: Service account as path / JSON / base64, or parsed dict
            package_name: Android package name
            public_key: Play Console licensing key (base64 DER or PEM)
        """
        self.package_name = package_name
        self.public_key = public_key

        info = (
            load_service_account_info(service_account_json)
            if isinstance(service_account_json, str)
            else service_account_json
        )
        self.credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
            info,
            scopes=[ANDROID_PUBLISHER_SCOPE],
        )

        self.service = build(
            "androidpublisher", "v3", credentials=self.credentials, cache_discovery=False
        )

        logger.info("google_play_provider_initialized", package_name=package_name)

    def check_package(self, package_name: str) -> None:
        if package_name != self.package_name:
            raise VerificationFailedError(
                f"Package mismatch: expected {self.package_name}, got {package_name}"
            )

    def _load_public_key(self) -> RSAPublicKey:
        if not self.public_key:
            raise VerificationFailedError("No Google Play public key configured")
        try:
            if "BEGIN PUBLIC KEY" in self.public_key:
                key = load_pem_public_key(self.public_key.encode("utf-8"))
            else:
                key = load_der_public_key(base64.b64decode(self.public_key))
        except (binascii.Error, ValueError) as exc:
            raise VerificationFailedError(f"Unreadable Google Play public key: {exc}") from exc
        if not isinstance(key, RSAPublicKey):
            raise VerificationFailedError("Google Play public key is not RSA")
        return key

    def verify_signature(self, signed_data: bytes, signature: str) -> None:
        """
        Verify a one-time purchase signature (RSA PKCS#1 v1.5 over SHA-1).

        Raises:
            VerificationFailedError: Signature does not match
        """
        key = self._load_public_key()
        try:
            raw_signature = base64.b64decode(signature)
        except binascii.Error as exc:
            raise VerificationFailedError("Signature is not base64") from exc

        try:
            key.verify(raw_signature, signed_data, padding.PKCS1v15(), hashes.SHA1())
        except InvalidSignature as exc:
            logger.warning("google_play_signature_mismatch")
            raise VerificationFailedError("Purchase signature mismatch") from exc

    def _fetch_subscription(self, subscription_id: str, purchase_token: str) -> dict[str, Any]:
        """Blocking call to purchases.subscriptions.get."""
        result: dict[str, Any] = (
            self.service.purchases()
            .subscriptions()
            .get(
                packageName=self.package_name,
                subscriptionId=subscription_id,
                token=purchase_token,
            )
            .execute()
        )
        return result

    async def get_subscription_purchase(
        self,
        purchase_token: GooglePlayPurchaseToken,
    ) -> GooglePlaySubscriptionPurchase:
        """
        Look up the authoritative subscription resource for a purchase token.

        The lookup is the verification step for Android subscription events.

        Raises:
            VerificationFailedError: Token unknown (404) or expired (410)
            HistoryFetchFailedError: Any other API failure
        """
        self.check_package(purchase_token.package_name)

        logger.info(
            "getting_google_play_subscription",
            product_id=purchase_token.product_id,
            package_name=purchase_token.package_name,
        )

        try:
            with track_external_call("google_play_subscription_get"):
                result = await asyncio.to_thread(
                    self._fetch_subscription, purchase_token.product_id, purchase_token.token
                )
        except HttpError as exc:
            error_content = exc.content.decode("utf-8") if exc.content else str(exc)
            logger.error(
                "google_play_subscription_lookup_failed",
                status=exc.resp.status,
                error=error_content,
            )

            if exc.resp.status == 404:
                raise VerificationFailedError("Purchase not found or invalid token") from exc
            elif exc.resp.status == 410:
                raise VerificationFailedError("Purchase token expired") from exc
            raise HistoryFetchFailedError(
                f"Google Play API error: {error_content}", status_code=exc.resp.status
            ) from exc
        except OSError as exc:
            raise HistoryFetchFailedError(f"Google Play transport error: {exc}") from exc

        try:
            purchase = GooglePlaySubscriptionPurchase(
                order_id=str(result["orderId"]),
                purchase_token=purchase_token.token,
                product_id=purchase_token.product_id,
                start_time_millis=int(result["startTimeMillis"]),
                expiry_time_millis=int(result["expiryTimeMillis"]),
                price_amount_micros=int(result.get("priceAmountMicros", 0)),
                price_currency_code=str(result.get("priceCurrencyCode", "USD")),
                auto_renewing=bool(result.get("autoRenewing", False)),
                payment_state=int(result["paymentState"])
                if result.get("paymentState") is not None
                else None,
                cancel_reason=int(result["cancelReason"])
                if result.get("cancelReason") is not None
                else None,
                purchase_type=int(result["purchaseType"])
                if result.get("purchaseType") is not None
                else None,
                obfuscated_external_account_id=result.get("obfuscatedExternalAccountId"),
                linked_purchase_token=result.get("linkedPurchaseToken"),
                acknowledgement_state=int(result.get("acknowledgementState", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayloadError(f"Incomplete subscription resource: {exc}") from exc

        logger.info(
            "google_play_subscription_retrieved",
            order_id=purchase.order_id,
            product_id=purchase.product_id,
            payment_state=purchase.payment_state,
            is_test=purchase.is_test_purchase(),
        )

        return purchase
