"""
Domain Models - Internal reconciliation models using enums and dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


class Platform(str, Enum):
    """Store that delivered an event."""

    APPLE = "apple"
    GOOGLE_PLAY = "google_play"


class Environment(str, Enum):
    """Billing environment. Sandbox and production records never mix."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"

    @classmethod
    def from_apple(cls, value: str) -> "Environment":
        """Map Apple's environment claim (Production, Sandbox, Xcode, LocalTesting)."""
        if value == "Production":
            return cls.PRODUCTION
        if value in ("Sandbox", "Xcode", "LocalTesting"):
            return cls.SANDBOX
        raise ValueError(f"Unknown Apple environment: {value}")


class DeviceType(str, Enum):
    ANDROID = "ANDROID"
    IOS = "IOS"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELING = "canceling"
    CANCELED = "canceled"


class LedgerStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class PaymentState(str, Enum):
    """How the period covered by an event was paid for."""

    PAID = "PAID"
    FREE_TRIAL = "FREE_TRIAL"
    PENDING = "PENDING"


class EventKind(str, Enum):
    """
    Closed vocabulary of lifecycle events the reconciler understands.

    Every member must have an entry in the reconciler's transition table;
    the table is checked when app.services.reconciler is imported.
    """

    PURCHASED = "PURCHASED"
    RENEWED = "RENEWED"
    RECOVERED = "RECOVERED"
    RESTARTED = "RESTARTED"
    AUTO_RENEW_DISABLED = "AUTO_RENEW_DISABLED"
    AUTO_RENEW_ENABLED = "AUTO_RENEW_ENABLED"
    GRACE_PERIOD = "GRACE_PERIOD"
    ON_HOLD = "ON_HOLD"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"
    UNKNOWN = "UNKNOWN"


# Kinds that represent money changing hands and therefore need a plan.
MONEY_BEARING_KINDS = frozenset(
    {EventKind.PURCHASED, EventKind.RENEWED, EventKind.RECOVERED, EventKind.RESTARTED}
)


@dataclass(frozen=True)
class ReconciliationEvent:
    """
    Platform-agnostic lifecycle event produced by the normalizer.

    Amounts are in minor units (cents); currency is a lower-case ISO code.
    """

    platform: Platform
    kind: EventKind
    environment: Environment
    product_id: str
    external_anchor_id: str  # purchase token / original transaction id
    transaction_id: str | None
    amount_minor: int | None
    currency: str | None
    purchase_instant: datetime | None
    expiry_instant: datetime | None
    app_account_token: str | None = None
    payment_state: PaymentState = PaymentState.PAID
    user_id: str | None = None  # correlation id echoed back by the store
    notification_id: str | None = None
    replaced_by_new_purchase: bool = False
    vendor_type: str = ""  # raw notification type, for logs

    def __post_init__(self) -> None:
        """Validate event fields."""
        if self.amount_minor is not None and self.amount_minor < 0:
            raise ValueError(f"Event amount cannot be negative: {self.amount_minor}")
        if self.currency is not None and self.currency != self.currency.lower():
            raise ValueError(f"Currency must be lower-case: {self.currency}")
        if self.kind != EventKind.UNKNOWN and not self.external_anchor_id:
            raise ValueError("external_anchor_id cannot be empty")

    @property
    def device_type(self) -> DeviceType:
        return DeviceType.IOS if self.platform == Platform.APPLE else DeviceType.ANDROID

    @property
    def is_money_bearing(self) -> bool:
        return self.kind in MONEY_BEARING_KINDS

    @property
    def carries_payment(self) -> bool:
        """True when the event should produce a ledger entry."""
        return (
            self.is_money_bearing
            and self.payment_state == PaymentState.PAID
            and self.transaction_id is not None
        )


@dataclass(frozen=True)
class PlanData:
    """Plan catalog entry (read-only)."""

    id: UUID
    key: str
    name: str
    android_product_id: str | None
    ios_product_id: str | None
    unit_amount_minor: int
    currency: str
    display_price: str | None
    is_active: bool


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription record state at a point in time."""

    id: UUID
    user_id: str
    environment: Environment
    plan_id: UUID
    device_type: DeviceType
    product_id: str
    external_anchor_id: str
    current_transaction_id: str | None
    amount_minor: int
    currency: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    status: SubscriptionStatus
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntryIntent:
    """Ledger entry before persistence - immutable intent."""

    transaction_id: str
    user_id: str
    plan_id: UUID
    platform: Platform
    environment: Environment
    amount_minor: int
    currency: str
    paid_at: datetime

    def __post_init__(self) -> None:
        """Validate ledger constraints."""
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if self.amount_minor < 0:
            raise ValueError(f"Ledger amount cannot be negative: {self.amount_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class LedgerEntryData:
    """Persisted ledger entry."""

    id: UUID
    transaction_id: str
    user_id: str
    plan_id: UUID
    platform: Platform
    environment: Environment
    status: LedgerStatus
    amount_minor: int
    currency: str
    paid_at: datetime
    refunded_at: datetime | None


class ReconcileOutcome(str, Enum):
    """What the reconciler did with an event."""

    APPLIED = "applied"
    NOOP = "noop"  # precondition not met or already applied
    IGNORED = "ignored"  # UNKNOWN kind
    USER_UNRESOLVED = "user_unresolved"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    kind: EventKind
    snapshot: SubscriptionSnapshot | None = None
    ledger_written: bool = False
    ledger_refunded: bool = False
