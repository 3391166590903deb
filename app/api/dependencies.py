"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_db
from app.exceptions import AuthenticationError
from app.services.subscription_webhooks import SubscriptionWebhookService

logger = get_logger(__name__)


@dataclass
class UserIdentity:
    """Authenticated user identity from JWT token."""

    user_id: str


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str) -> UserIdentity:
    """
    Verify an HS256 user token issued by the upstream API.

    Raises:
        AuthenticationError: Secret not configured, bad signature, expired or no subject
    """
    if not settings.user_jwt_secret:
        raise AuthenticationError("User authentication is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.user_jwt_secret,
            algorithms=["HS256"],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationError("Token has no subject")
    return UserIdentity(user_id=user_id)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency to validate the bearer token.

    Usage:
        @router.get("/v1/subscriptions/me")
        async def get_my_subscription(
            user: UserIdentity = Depends(get_current_user)
        ):
            pass

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("user_token_rejected", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_webhook_service(
    db: AsyncSession = Depends(get_db),
) -> SubscriptionWebhookService:
    """Subscription service bound to the request's database session."""
    return SubscriptionWebhookService(db)
