"""
Apple StoreKit Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Verifies App Store JWS tokens against pinned Apple root certificates and
pages the App Store Server API transaction history.
https://developer.apple.com/documentation/appstoreserverapi
"""

import base64
import binascii
import time
from datetime import UTC, datetime
from typing import Any

import httpx
import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePublicKey
from cryptography.hazmat.primitives.serialization import Encoding
from structlog import get_logger

from app.exceptions import (
    HistoryFetchFailedError,
    MalformedPayloadError,
    VerificationFailedError,
)
from app.models.apple_storekit import (
    AppleNotification,
    AppleRenewalInfo,
    AppleStoreKitConfig,
    AppleTransactionInfo,
)
from app.observability.metrics import metrics, track_external_call

logger = get_logger(__name__)

# Apple marker extensions (see Apple PKI certificate policy)
APPLE_RECEIPT_SIGNING_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_WWDR_INTERMEDIATE_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")

# Cache for Apple's published JWS keys (kid-only tokens)
_apple_jwks: dict[str, jwt.PyJWK] = {}
_apple_jwks_fetched_at: float = 0
_APPLE_JWKS_CACHE_TTL = 3600  # Refresh every hour


def _ms_to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def latest_transaction(transactions: list[AppleTransactionInfo]) -> AppleTransactionInfo:
    """Return the transaction with the greatest purchase date."""
    if not transactions:
        raise VerificationFailedError("No decodable transactions in history")
    return max(transactions, key=lambda tx: tx.purchase_date)


class AppleStoreKitProvider:
    """
    Apple App Store Server API provider.

    Handles JWS verification, transaction history paging and notification
    decoding for one App Store environment.
    """

    def __init__(self, config: AppleStoreKitConfig, max_history_pages: int = 50) -> None:
        """
        Initialize Apple StoreKit provider.

        Args:
            config: StoreKit configuration with API credentials and pinned roots
            max_history_pages: Upper bound on history pages fetched per call
        """
        self.config = config
        self.max_history_pages = max_history_pages
        self._jwt_token: str | None = None
        self._jwt_expires_at: float = 0

        logger.info(
            "apple_storekit_provider_initialized",
            bundle_id=config.bundle_id,
            environment=config.environment,
            pinned_roots=len(config.root_certificates),
        )

    def _generate_jwt(self) -> str:
        """
        Generate JWT for App Store Server API authentication.

        The JWT is valid for up to 60 minutes.
        """
        now = time.time()

        # Reuse cached token if still valid (with 5 min buffer)
        if self._jwt_token and now < (self._jwt_expires_at - 300):
            return self._jwt_token

        private_key = self.config.private_key
        if "BEGIN PRIVATE KEY" not in private_key:
            try:
                private_key = base64.b64decode(private_key).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                pass

        expires_at = now + 3600
        payload = {
            "iss": self.config.issuer_id,
            "iat": int(now),
            "exp": int(expires_at),
            "aud": "appstoreconnect-v1",
            "bid": self.config.bundle_id,
        }

        token = jwt.encode(
            payload,
            private_key,
            algorithm="ES256",
            headers={"kid": self.config.key_id},
        )

        self._jwt_token = token
        self._jwt_expires_at = expires_at

        return token

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make authenticated request to App Store Server API."""
        url = f"{self.config.api_base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._generate_jwt()}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    timeout=30.0,
                    **kwargs,
                )
        except httpx.HTTPError as exc:
            logger.error("apple_storekit_transport_error", endpoint=endpoint, error=str(exc))
            raise HistoryFetchFailedError(f"Transport error: {exc}") from exc

        if response.status_code == 401:
            raise HistoryFetchFailedError("Invalid API credentials", status_code=401)
        elif response.status_code == 404:
            raise VerificationFailedError("Transaction not found")
        elif response.status_code >= 400:
            logger.error(
                "apple_storekit_api_error",
                status=response.status_code,
                error=response.text,
            )
            raise HistoryFetchFailedError(
                f"API error: {response.status_code}", status_code=response.status_code
            )

        try:
            result: dict[str, Any] = response.json()
        except ValueError as exc:
            raise HistoryFetchFailedError("API returned a non-JSON body") from exc
        return result

    # ========================================================================
    # JWS verification
    # ========================================================================

    def _verify_certificate_chain(self, x5c: list[str]) -> EllipticCurvePublicKey:
        """
        Validate an x5c chain (leaf, intermediate, root) and return the leaf key.

        The root must byte-match a pinned Apple root, each certificate must be
        issued by the next and currently valid, and the leaf and intermediate
        must carry Apple's marker extensions.
        """
        if not self.config.root_certificates:
            raise VerificationFailedError("No pinned Apple root certificates configured")
        if len(x5c) != 3:
            raise VerificationFailedError(f"Expected 3 certificates in x5c, got {len(x5c)}")

        try:
            chain = [x509.load_der_x509_certificate(base64.b64decode(cert)) for cert in x5c]
        except (binascii.Error, ValueError) as exc:
            raise MalformedPayloadError(f"Undecodable x5c certificate: {exc}") from exc

        leaf, intermediate, root = chain

        if root.public_bytes(Encoding.DER) not in self.config.root_certificates:
            raise VerificationFailedError("Certificate chain does not end at a pinned Apple root")

        now = datetime.now(UTC)
        for cert in chain:
            if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
                raise VerificationFailedError(
                    f"Certificate outside its validity window: {cert.subject.rfc4514_string()}"
                )

        for child, issuer in ((leaf, intermediate), (intermediate, root)):
            try:
                child.verify_directly_issued_by(issuer)
            except (InvalidSignature, ValueError, TypeError) as exc:
                raise VerificationFailedError(
                    f"Certificate not issued by its successor: {child.subject.rfc4514_string()}"
                ) from exc

        for cert, oid, role in (
            (leaf, APPLE_RECEIPT_SIGNING_OID, "leaf"),
            (intermediate, APPLE_WWDR_INTERMEDIATE_OID, "intermediate"),
        ):
            try:
                cert.extensions.get_extension_for_oid(oid)
            except x509.ExtensionNotFound as exc:
                raise VerificationFailedError(
                    f"{role} certificate lacks Apple extension {oid.dotted_string}"
                ) from exc

        public_key = leaf.public_key()
        if not isinstance(public_key, EllipticCurvePublicKey):
            raise VerificationFailedError("Leaf certificate does not hold an EC key")
        return public_key

    async def _get_jwks_key(self, kid: str) -> Any:
        """Return the published Apple key for kid, refreshing the cache hourly."""
        global _apple_jwks_fetched_at

        now = time.time()
        if kid not in _apple_jwks or now - _apple_jwks_fetched_at > _APPLE_JWKS_CACHE_TTL:
            try:
                with track_external_call("apple_jwks_fetch"):
                    async with httpx.AsyncClient() as client:
                        response = await client.get(self.config.jwks_url, timeout=30.0)
                response.raise_for_status()
                key_set = jwt.PyJWKSet.from_dict(response.json())
            except httpx.HTTPError as exc:
                raise HistoryFetchFailedError(f"Apple key set fetch failed: {exc}") from exc
            except (ValueError, jwt.PyJWKSetError) as exc:
                raise HistoryFetchFailedError(f"Apple key set unreadable: {exc}") from exc

            _apple_jwks.clear()
            for key in key_set.keys:
                if key.key_id:
                    _apple_jwks[key.key_id] = key
            _apple_jwks_fetched_at = now
            logger.info("apple_jwks_refreshed", keys=len(_apple_jwks))

        jwk = _apple_jwks.get(kid)
        if jwk is None:
            raise VerificationFailedError(f"Unknown Apple signing key: {kid}")
        return jwk.key

    async def _decode_jws(self, signed_data: str) -> dict[str, Any]:
        """
        Verify and decode a JWS signed by Apple.

        Raises:
            MalformedPayloadError: Token cannot be parsed
            VerificationFailedError: Signature or certificate chain rejected
        """
        try:
            header = jwt.get_unverified_header(signed_data)
        except jwt.DecodeError as exc:
            raise MalformedPayloadError(f"Invalid JWS: {exc}") from exc

        if header.get("alg") != "ES256":
            raise VerificationFailedError(f"Unsupported JWS algorithm: {header.get('alg')}")

        if header.get("x5c"):
            key: Any = self._verify_certificate_chain(list(header["x5c"]))
        elif header.get("kid"):
            key = await self._get_jwks_key(str(header["kid"]))
        else:
            raise VerificationFailedError("JWS header carries neither x5c nor kid")

        try:
            payload: dict[str, Any] = jwt.decode(signed_data, key=key, algorithms=["ES256"])
        except jwt.InvalidSignatureError as exc:
            raise VerificationFailedError("JWS signature mismatch") from exc
        except jwt.DecodeError as exc:
            raise MalformedPayloadError(f"Invalid JWS payload: {exc}") from exc
        except jwt.InvalidTokenError as exc:
            raise VerificationFailedError(f"JWS rejected: {exc}") from exc
        return payload

    # ========================================================================
    # Claim parsing
    # ========================================================================

    def _parse_transaction_info(self, data: dict[str, Any]) -> AppleTransactionInfo:
        """Parse transaction info from a verified JWS payload."""
        try:
            purchase_date = _ms_to_datetime(data["purchaseDate"])
            if purchase_date is None:
                raise MalformedPayloadError("Transaction has no purchaseDate")
            return AppleTransactionInfo(
                transaction_id=str(data["transactionId"]),
                original_transaction_id=str(data["originalTransactionId"]),
                product_id=str(data["productId"]),
                bundle_id=str(data["bundleId"]),
                purchase_date=purchase_date,
                original_purchase_date=_ms_to_datetime(data.get("originalPurchaseDate"))
                or purchase_date,
                environment=str(data.get("environment", "Production")),
                type=str(data.get("type", "Auto-Renewable Subscription")),
                expires_date=_ms_to_datetime(data.get("expiresDate")),
                price=int(data["price"]) if data.get("price") is not None else None,
                currency=data.get("currency"),
                transaction_reason=data.get("transactionReason"),
                offer_type=data.get("offerType"),
                offer_discount_type=data.get("offerDiscountType"),
                app_account_token=data.get("appAccountToken"),
                web_order_line_item_id=data.get("webOrderLineItemId"),
                revocation_date=_ms_to_datetime(data.get("revocationDate")),
                revocation_reason=data.get("revocationReason"),
                is_upgraded=bool(data.get("isUpgraded", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayloadError(f"Incomplete transaction claims: {exc}") from exc

    def _parse_renewal_info(self, data: dict[str, Any]) -> AppleRenewalInfo:
        """Parse renewal info from a verified JWS payload."""
        try:
            return AppleRenewalInfo(
                original_transaction_id=str(data["originalTransactionId"]),
                product_id=str(data.get("productId", "")),
                auto_renew_product_id=data.get("autoRenewProductId"),
                auto_renew_status=int(data.get("autoRenewStatus", 0)),
                environment=data.get("environment"),
                renewal_price=int(data["renewalPrice"])
                if data.get("renewalPrice") is not None
                else None,
                currency=data.get("currency"),
                expiration_intent=data.get("expirationIntent"),
                grace_period_expires_date=_ms_to_datetime(data.get("gracePeriodExpiresDate")),
                is_in_billing_retry_period=bool(data.get("isInBillingRetryPeriod", False)),
                renewal_date=_ms_to_datetime(data.get("renewalDate")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayloadError(f"Incomplete renewal claims: {exc}") from exc

    def _check_bundle(self, bundle_id: str | None) -> None:
        if bundle_id != self.config.bundle_id:
            raise VerificationFailedError(
                f"Bundle id mismatch: expected {self.config.bundle_id}, got {bundle_id}"
            )

    # ========================================================================
    # Public API
    # ========================================================================

    async def verify_transaction(self, signed_transaction: str) -> AppleTransactionInfo:
        """
        Verify a signed transaction (JWSTransaction) and return its claims.

        Raises:
            MalformedPayloadError, VerificationFailedError
        """
        transaction = self._parse_transaction_info(await self._decode_jws(signed_transaction))
        self._check_bundle(transaction.bundle_id)
        return transaction

    async def verify_notification(self, signed_payload: str) -> AppleNotification:
        """
        Verify an App Store Server Notification V2 and its nested tokens.

        Args:
            signed_payload: The notification's signedPayload

        Raises:
            MalformedPayloadError, VerificationFailedError
        """
        notification = await self._decode_jws(signed_payload)
        data = notification.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedPayloadError("Notification data is not an object")

        notification_type = notification.get("notificationType")
        if not notification_type:
            raise MalformedPayloadError("Notification has no notificationType")

        transaction_info: AppleTransactionInfo | None = None
        if data.get("signedTransactionInfo"):
            transaction_info = self._parse_transaction_info(
                await self._decode_jws(data["signedTransactionInfo"])
            )

        renewal_info: AppleRenewalInfo | None = None
        if data.get("signedRenewalInfo"):
            renewal_info = self._parse_renewal_info(
                await self._decode_jws(data["signedRenewalInfo"])
            )

        bundle_id = data.get("bundleId")
        if notification_type != "TEST" or bundle_id is not None:
            self._check_bundle(bundle_id)
        if transaction_info is not None:
            self._check_bundle(transaction_info.bundle_id)

        event = AppleNotification(
            notification_type=str(notification_type),
            subtype=notification.get("subtype"),
            notification_uuid=str(notification.get("notificationUUID", "")),
            version=str(notification.get("version", "2.0")),
            signed_date=_ms_to_datetime(notification.get("signedDate")) or datetime.now(UTC),
            environment=str(data.get("environment", "Production")),
            bundle_id=bundle_id,
            transaction_info=transaction_info,
            renewal_info=renewal_info,
        )

        logger.info(
            "apple_notification_verified",
            notification_type=event.notification_type,
            subtype=event.subtype,
            notification_uuid=event.notification_uuid,
            transaction_id=transaction_info.transaction_id if transaction_info else None,
        )

        return event

    async def get_transaction_history(self, original_transaction_id: str) -> list[str]:
        """
        Fetch every signed transaction for an original transaction id.

        Pages through GET /inApps/v2/history until hasMore is false; a
        missing hasMore counts as false.

        Returns:
            Signed transactions in ascending purchase order

        Raises:
            HistoryFetchFailedError: Transport, API or paging failure
        """
        logger.info(
            "getting_apple_transaction_history",
            original_transaction_id=original_transaction_id,
        )

        signed_transactions: list[str] = []
        revision: str | None = None
        pages = 0

        while True:
            params: dict[str, str] = {
                "sort": "ASCENDING",
                "productType": "AUTO_RENEWABLE",
                "revoked": "false",
            }
            if revision:
                params["revision"] = revision

            with track_external_call("apple_history_page"):
                result = await self._make_request(
                    "GET",
                    f"/inApps/v2/history/{original_transaction_id}",
                    params=params,
                )
            pages += 1
            metrics.history_pages_fetched_total.inc()

            signed_transactions.extend(result.get("signedTransactions") or [])

            if result.get("hasMore") is not True:
                break

            revision = result.get("revision")
            if not revision:
                raise HistoryFetchFailedError("History page has more results but no revision")
            if pages >= self.max_history_pages:
                raise HistoryFetchFailedError(
                    f"History exceeded {self.max_history_pages} pages"
                )

        logger.info(
            "apple_transaction_history_retrieved",
            original_transaction_id=original_transaction_id,
            pages=pages,
            count=len(signed_transactions),
        )

        return signed_transactions

    async def select_latest_transaction(
        self, signed_transactions: list[str]
    ) -> AppleTransactionInfo:
        """
        Decode every signed transaction and return the most recent purchase.

        Transactions that fail to decode or verify are skipped.

        Raises:
            VerificationFailedError: Nothing decoded
        """
        decoded: list[AppleTransactionInfo] = []
        for signed in signed_transactions:
            try:
                decoded.append(await self.verify_transaction(signed))
            except (MalformedPayloadError, VerificationFailedError) as exc:
                logger.warning("apple_history_transaction_skipped", error=str(exc))

        latest = latest_transaction(decoded)
        logger.info(
            "apple_latest_transaction_selected",
            transaction_id=latest.transaction_id,
            decoded=len(decoded),
            skipped=len(signed_transactions) - len(decoded),
        )
        return latest
