"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.domain import SubscriptionSnapshot


class WebhookStatus(str, Enum):
    """Acknowledgement returned to the store for every delivered notification."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    REJECTED = "rejected"
    ERROR = "error"


# ============================================================================
# Webhook Models
# ============================================================================


class PubSubMessage(BaseModel):
    """Cloud Pub/Sub message carrying a base64-encoded RTDN."""

    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(..., min_length=1)
    message_id: str | None = Field(None, alias="messageId")
    publish_time: str | None = Field(None, alias="publishTime")
    attributes: dict[str, str] = Field(default_factory=dict)


class PubSubEnvelope(BaseModel):
    """POST /v1/subscriptions/webhooks/google-play request body (push subscription)."""

    message: PubSubMessage
    subscription: str | None = None


class AppleNotificationRequest(BaseModel):
    """POST /v1/subscriptions/webhooks/apple/{environment} request body."""

    signed_payload: str = Field(..., alias="signedPayload", min_length=1)


class WebhookAck(BaseModel):
    status: WebhookStatus


# ============================================================================
# Receipt Models
# ============================================================================


class AppleReceiptRequest(BaseModel):
    """
    POST /v1/subscriptions/apple/receipt request body.

    receipt_data is the signed transaction (JWS) returned by StoreKit 2.
    """

    receipt_data: str = Field(..., min_length=1)


class GooglePlayReceiptRequest(BaseModel):
    """POST /v1/subscriptions/google-play/receipt request body."""

    product_id: str = Field(..., min_length=1, max_length=255)
    purchase_token: str = Field(..., min_length=10, max_length=4096)
    purchase_data: str | None = Field(
        None, description="Original purchase JSON as returned by the Play Billing Library"
    )
    signature: str | None = Field(
        None, description="Base64 RSA/SHA1 signature over purchase_data"
    )

    @field_validator("purchase_token")
    @classmethod
    def validate_purchase_token(cls, v: str) -> str:
        """Purchase tokens never contain whitespace."""
        if any(c.isspace() for c in v):
            raise ValueError("purchase_token must not contain whitespace")
        return v


class SubscriptionResponse(BaseModel):
    """Subscription record as returned to the authenticated user."""

    id: UUID
    user_id: str
    environment: str
    plan_id: UUID
    device_type: str
    product_id: str
    status: str
    amount_minor: int
    currency: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    updated_at: datetime

    @classmethod
    def from_snapshot(cls, snapshot: SubscriptionSnapshot) -> "SubscriptionResponse":
        return cls(
            id=snapshot.id,
            user_id=snapshot.user_id,
            environment=snapshot.environment.value,
            plan_id=snapshot.plan_id,
            device_type=snapshot.device_type.value,
            product_id=snapshot.product_id,
            status=snapshot.status.value,
            amount_minor=snapshot.amount_minor,
            currency=snapshot.currency,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            updated_at=snapshot.updated_at,
        )


# ============================================================================
# Error / Health Models
# ============================================================================


class ErrorDetail(BaseModel):
    """Standard error response detail."""

    detail: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
