"""
Provider Configuration - Build store providers from application settings.

Providers hold token and key caches, so one instance per store
(and per App Store environment) is reused for the process lifetime.
"""

from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from structlog import get_logger

from app.config import settings
from app.exceptions import ProviderNotConfiguredError
from app.models.apple_storekit import AppleStoreKitConfig
from app.models.domain import Environment
from app.services.apple_storekit_provider import AppleStoreKitProvider
from app.services.google_play_provider import GooglePlayProvider

logger = get_logger(__name__)

_apple_providers: dict[Environment, AppleStoreKitProvider] = {}
_google_play_provider: GooglePlayProvider | None = None


def load_root_certificates(paths: list[str]) -> tuple[bytes, ...]:
    """Load pinned root certificates (PEM or DER files) as DER bytes."""
    roots: list[bytes] = []
    for path in paths:
        raw = Path(path).read_bytes()
        if b"-----BEGIN CERTIFICATE-----" in raw:
            cert = x509.load_pem_x509_certificate(raw)
        else:
            cert = x509.load_der_x509_certificate(raw)
        roots.append(cert.public_bytes(Encoding.DER))
    return tuple(roots)


def get_apple_provider(environment: Environment) -> AppleStoreKitProvider:
    """
    Get the App Store provider for an environment.

    Raises:
        ProviderNotConfiguredError: Apple credentials are missing
    """
    provider = _apple_providers.get(environment)
    if provider is not None:
        return provider

    if not settings.apple_configured:
        logger.warning("apple_storekit_config_not_found")
        raise ProviderNotConfiguredError("apple")

    roots = load_root_certificates(settings.apple_root_certificate_paths)
    if not roots:
        logger.warning("apple_root_certificates_not_configured")

    provider = AppleStoreKitProvider(
        AppleStoreKitConfig(
            key_id=settings.apple_key_id,
            issuer_id=settings.apple_issuer_id,
            private_key=settings.apple_private_key,
            bundle_id=settings.apple_bundle_id,
            environment=environment.value,
            root_certificates=roots,
            jwks_url=settings.apple_jwks_url,
        ),
        max_history_pages=settings.max_history_pages,
    )
    _apple_providers[environment] = provider
    return provider


def get_google_play_provider() -> GooglePlayProvider:
    """
    Get the Google Play provider.

    Raises:
        ProviderNotConfiguredError: Service account or package name missing
    """
    global _google_play_provider

    if _google_play_provider is not None:
        return _google_play_provider

    if not settings.google_play_configured:
        logger.warning("google_play_config_not_found")
        raise ProviderNotConfiguredError("google_play")

    _google_play_provider = GooglePlayProvider(
        service_account_json=settings.google_play_service_account,
        package_name=settings.android_package_name,
        public_key=settings.google_play_public_key,
    )
    return _google_play_provider
