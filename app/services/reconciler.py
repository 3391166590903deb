"""
State Reconciler - Applies ReconciliationEvents to the subscription state machine.

    incomplete -> trialing -> active <-> past_due -> canceling -> canceled
                                 ^                                  |
                                 +------------ RESTARTED -----------+

Every mutation is a single SQL statement keyed on (user_id, environment)
whose WHERE clause carries the transition precondition, so concurrent or
re-delivered webhooks cannot interleave a read-then-write. An event whose
precondition does not hold is a no-op.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.db.models import Subscription
from app.exceptions import (
    DuplicateTransactionError,
    SubscriptionExpiredError,
    VerificationFailedError,
)
from app.models.domain import (
    DeviceType,
    Environment,
    EventKind,
    LedgerEntryIntent,
    PaymentState,
    PlanData,
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationEvent,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.ledger import LedgerWriter
from app.services.plan_catalog import PlanCatalog

logger = get_logger(__name__)

S = SubscriptionStatus
ALL_STATUSES = frozenset(SubscriptionStatus)


@dataclass(frozen=True)
class Transition:
    """
    Effect of one event kind on an existing record.

    allowed_from: statuses the record must be in for the event to apply
    target: resulting status (PURCHASED derives it from the payment state)
    updates_period: event carries a new transaction, period bounds and price
    match_anchor: record must belong to the event's purchase anchor
    dedupe_transaction: skip when the record already holds the event's transaction
    """

    allowed_from: frozenset[SubscriptionStatus]
    target: SubscriptionStatus | None
    updates_period: bool = False
    match_anchor: bool = True
    dedupe_transaction: bool = True


TRANSITIONS: dict[EventKind, Transition] = {
    EventKind.PURCHASED: Transition(
        frozenset({S.INCOMPLETE, S.CANCELED}), None, updates_period=True, match_anchor=False
    ),
    EventKind.RENEWED: Transition(ALL_STATUSES - {S.CANCELED}, S.ACTIVE, updates_period=True),
    EventKind.RECOVERED: Transition(frozenset({S.PAST_DUE}), S.ACTIVE, updates_period=True),
    # Android restarts keep the orderId; allowed_from alone stops a replay
    EventKind.RESTARTED: Transition(
        frozenset({S.CANCELED, S.CANCELING}),
        S.ACTIVE,
        updates_period=True,
        match_anchor=False,
        dedupe_transaction=False,
    ),
    EventKind.AUTO_RENEW_DISABLED: Transition(frozenset({S.ACTIVE}), S.CANCELING),
    EventKind.AUTO_RENEW_ENABLED: Transition(frozenset({S.CANCELING}), S.ACTIVE),
    EventKind.GRACE_PERIOD: Transition(frozenset({S.ACTIVE}), S.PAST_DUE),
    EventKind.ON_HOLD: Transition(frozenset({S.ACTIVE}), S.PAST_DUE),
    EventKind.CANCELED: Transition(ALL_STATUSES - {S.CANCELING, S.CANCELED}, S.CANCELING),
    EventKind.EXPIRED: Transition(ALL_STATUSES - {S.CANCELED}, S.CANCELED),
    EventKind.REFUNDED: Transition(ALL_STATUSES - {S.CANCELED}, S.CANCELED),
    EventKind.UNKNOWN: Transition(frozenset(), None),
}

_unhandled = set(EventKind) - set(TRANSITIONS)
if _unhandled:
    raise RuntimeError(f"No transition defined for event kinds: {sorted(k.value for k in _unhandled)}")

PURCHASE_STATUS: dict[PaymentState, SubscriptionStatus] = {
    PaymentState.PAID: S.ACTIVE,
    PaymentState.FREE_TRIAL: S.TRIALING,
    PaymentState.PENDING: S.INCOMPLETE,
}


def to_snapshot(record: Subscription) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=record.id,
        user_id=record.user_id,
        environment=Environment(record.environment),
        plan_id=record.plan_id,
        device_type=DeviceType(record.device_type),
        product_id=record.product_id,
        external_anchor_id=record.external_anchor_id,
        current_transaction_id=record.current_transaction_id,
        amount_minor=record.amount_minor,
        currency=record.currency,
        current_period_start=record.current_period_start,
        current_period_end=record.current_period_end,
        status=SubscriptionStatus(record.status),
        updated_at=record.updated_at,
    )


def not_yet_applied(
    transaction_id: str | None, status: SubscriptionStatus
) -> ColumnElement[bool]:
    """
    Redelivery guard: the record does not already hold this transaction.

    Status is not compared: a transaction replayed after a later status-only
    event stays a no-op. A pending purchase completing under the same
    transaction id still applies.
    """
    guard: ColumnElement[bool] = Subscription.current_transaction_id.is_distinct_from(
        transaction_id
    )
    if status != S.INCOMPLETE:
        guard = or_(guard, Subscription.status == S.INCOMPLETE.value)
    return guard


def target_status(event: ReconciliationEvent) -> SubscriptionStatus | None:
    if event.kind == EventKind.PURCHASED:
        return PURCHASE_STATUS[event.payment_state]
    return TRANSITIONS[event.kind].target


class SubscriptionReconciler:
    """Applies normalized events to subscription records and the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.catalog = PlanCatalog(session)
        self.ledger = LedgerWriter(session)

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get_snapshot(
        self, user_id: str, environment: Environment
    ) -> SubscriptionSnapshot | None:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.environment == environment.value,
        )
        result = await self.session.execute(stmt)
        record = result.scalar_one_or_none()
        return to_snapshot(record) if record is not None else None

    async def resolve_user(self, event: ReconciliationEvent) -> str | None:
        """
        Find the user an event belongs to.

        Order: the correlation id echoed by the store, the user holding the
        purchase anchor in this environment, then the App Store app account token.
        """
        if event.user_id:
            return event.user_id

        stmt = (
            select(Subscription.user_id)
            .where(
                Subscription.external_anchor_id == event.external_anchor_id,
                Subscription.environment == event.environment.value,
            )
            .order_by(Subscription.updated_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        user_id: str | None = result.scalar_one_or_none()
        if user_id:
            return user_id

        return event.app_account_token

    # ========================================================================
    # Statements
    # ========================================================================

    def _record_values(
        self,
        event: ReconciliationEvent,
        plan: PlanData,
        status: SubscriptionStatus,
        now: datetime,
    ) -> dict[str, Any]:
        return {
            "plan_id": plan.id,
            "device_type": event.device_type.value,
            "product_id": event.product_id,
            "external_anchor_id": event.external_anchor_id,
            "current_transaction_id": event.transaction_id,
            "amount_minor": event.amount_minor
            if event.amount_minor is not None
            else plan.unit_amount_minor,
            "currency": event.currency or plan.currency.lower(),
            "current_period_start": event.purchase_instant,
            "current_period_end": event.expiry_instant,
            "status": status.value,
            "updated_at": now,
        }

    async def _upsert(
        self,
        user_id: str,
        event: ReconciliationEvent,
        plan: PlanData,
        status: SubscriptionStatus,
        allowed_from: frozenset[SubscriptionStatus] | None,
    ) -> Subscription | None:
        """INSERT ... ON CONFLICT (user_id, environment) DO UPDATE ... WHERE precondition."""
        now = datetime.now(UTC)
        values = self._record_values(event, plan, status, now)

        guard = not_yet_applied(event.transaction_id, status)
        if allowed_from is not None:
            guard = and_(
                Subscription.status.in_([s.value for s in allowed_from]),
                guard,
            )

        stmt = (
            pg_insert(Subscription)
            .values(
                id=uuid4(),
                user_id=user_id,
                environment=event.environment.value,
                created_at=now,
                **values,
            )
            .on_conflict_do_update(
                index_elements=[Subscription.user_id, Subscription.environment],
                set_=values,
                where=guard,
            )
            .returning(Subscription)
        )
        result = await self.session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        record: Subscription | None = result.scalar_one_or_none()
        return record

    async def _conditional_update(
        self,
        user_id: str,
        event: ReconciliationEvent,
        transition: Transition,
        plan: PlanData | None,
    ) -> Subscription | None:
        """UPDATE ... WHERE (user_id, environment) AND precondition RETURNING."""
        status = transition.target
        if status is None:
            return None

        now = datetime.now(UTC)
        conditions: list[ColumnElement[bool]] = [
            Subscription.user_id == user_id,
            Subscription.environment == event.environment.value,
            Subscription.status.in_([s.value for s in transition.allowed_from]),
        ]
        if transition.match_anchor:
            conditions.append(Subscription.external_anchor_id == event.external_anchor_id)

        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if transition.updates_period and plan is not None:
            if transition.dedupe_transaction:
                conditions.append(not_yet_applied(event.transaction_id, status))
            values = self._record_values(event, plan, status, now)

        stmt = (
            update(Subscription)
            .where(*conditions)
            .values(**values)
            .returning(Subscription)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        record: Subscription | None = result.scalar_one_or_none()
        return record

    async def _write_ledger(
        self, user_id: str, event: ReconciliationEvent, plan: PlanData
    ) -> bool:
        """Append the event's payment. A duplicate transaction is success, not an error."""
        if not event.carries_payment or event.transaction_id is None:
            return False

        intent = LedgerEntryIntent(
            transaction_id=event.transaction_id,
            user_id=user_id,
            plan_id=plan.id,
            platform=event.platform,
            environment=event.environment,
            amount_minor=event.amount_minor
            if event.amount_minor is not None
            else plan.unit_amount_minor,
            currency=event.currency or plan.currency.lower(),
            paid_at=event.purchase_instant or datetime.now(UTC),
        )
        try:
            await self.ledger.record(intent)
        except DuplicateTransactionError:
            return False
        return True

    # ========================================================================
    # Entry points
    # ========================================================================

    async def apply(self, event: ReconciliationEvent) -> ReconcileResult:
        """
        Apply one normalized event.

        Raises:
            PlanNotFoundError: A money-bearing event references an unknown product
        """
        with trace_operation(
            "reconcile_event",
            platform=event.platform.value,
            kind=event.kind.value,
            environment=event.environment.value,
        ) as span:
            result = await self._apply(event)
            span.set_attribute("outcome", result.outcome.value)

        metrics.record_transition(event.platform.value, event.kind.value, result.outcome.value)
        return result

    async def _apply(self, event: ReconciliationEvent) -> ReconcileResult:
        log = logger.bind(
            platform=event.platform.value,
            kind=event.kind.value,
            vendor_type=event.vendor_type,
            environment=event.environment.value,
            transaction_id=event.transaction_id,
            notification_id=event.notification_id,
        )

        if event.kind == EventKind.UNKNOWN:
            log.info("reconciliation_event_ignored")
            return ReconcileResult(ReconcileOutcome.IGNORED, event.kind)

        plan: PlanData | None = None
        if event.is_money_bearing:
            plan = await self.catalog.get_by_product_id(event.platform, event.product_id)

        user_id = await self.resolve_user(event)
        if user_id is None:
            log.warning(
                "reconciliation_user_unresolved",
                external_anchor_id=event.external_anchor_id,
            )
            return ReconcileResult(ReconcileOutcome.USER_UNRESOLVED, event.kind)
        log = log.bind(user_id=user_id)

        try:
            record: Subscription | None = None
            if event.kind == EventKind.EXPIRED and event.replaced_by_new_purchase:
                log.info("subscription_expiry_replaced_by_new_purchase")
            elif event.kind == EventKind.PURCHASED and plan is not None:
                record = await self._upsert(
                    user_id,
                    event,
                    plan,
                    PURCHASE_STATUS[event.payment_state],
                    TRANSITIONS[EventKind.PURCHASED].allowed_from,
                )
            else:
                record = await self._conditional_update(
                    user_id, event, TRANSITIONS[event.kind], plan
                )

            ledger_written = False
            if plan is not None:
                ledger_written = await self._write_ledger(user_id, event, plan)

            ledger_refunded = False
            if event.kind == EventKind.REFUNDED and event.transaction_id:
                ledger_refunded = await self.ledger.mark_refunded(event.transaction_id)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if record is not None:
            log.info(
                "subscription_transition_applied",
                status=record.status,
                ledger_written=ledger_written,
                ledger_refunded=ledger_refunded,
            )
            return ReconcileResult(
                ReconcileOutcome.APPLIED,
                event.kind,
                snapshot=to_snapshot(record),
                ledger_written=ledger_written,
                ledger_refunded=ledger_refunded,
            )

        log.info(
            "subscription_transition_skipped",
            ledger_written=ledger_written,
            ledger_refunded=ledger_refunded,
        )
        return ReconcileResult(
            ReconcileOutcome.NOOP,
            event.kind,
            snapshot=await self.get_snapshot(user_id, event.environment),
            ledger_written=ledger_written,
            ledger_refunded=ledger_refunded,
        )

    async def sync_from_receipt(
        self, user_id: str, event: ReconciliationEvent
    ) -> ReconcileResult:
        """
        Reconcile from a client-submitted receipt whose latest transaction was verified.

        A receipt for the transaction the record already holds changes nothing,
        so status set by later notifications (canceling, past_due) survives.

        Raises:
            SubscriptionExpiredError: Latest transaction is already expired
            VerificationFailedError: The store ties the purchase to another user
            PlanNotFoundError: Product has no plan
        """
        now = datetime.now(UTC)
        if event.expiry_instant is None or event.expiry_instant <= now:
            logger.info(
                "receipt_subscription_expired",
                user_id=user_id,
                external_anchor_id=event.external_anchor_id,
                expiry_instant=event.expiry_instant.isoformat() if event.expiry_instant else None,
            )
            raise SubscriptionExpiredError(event.external_anchor_id)

        if event.user_id and event.user_id != user_id:
            logger.warning(
                "receipt_user_mismatch",
                user_id=user_id,
                store_user_id=event.user_id,
            )
            raise VerificationFailedError("Purchase belongs to a different account")

        plan = await self.catalog.get_by_product_id(event.platform, event.product_id)
        status = PURCHASE_STATUS[event.payment_state]

        with trace_operation(
            "sync_from_receipt", platform=event.platform.value, environment=event.environment.value
        ):
            try:
                record = await self._upsert(user_id, event, plan, status, allowed_from=None)
                ledger_written = await self._write_ledger(user_id, event, plan)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        outcome = ReconcileOutcome.APPLIED if record is not None else ReconcileOutcome.NOOP
        metrics.record_transition(event.platform.value, "RECEIPT_SYNC", outcome.value)
        logger.info(
            "subscription_synced_from_receipt",
            user_id=user_id,
            platform=event.platform.value,
            environment=event.environment.value,
            transaction_id=event.transaction_id,
            outcome=outcome.value,
            ledger_written=ledger_written,
        )

        snapshot = (
            to_snapshot(record)
            if record is not None
            else await self.get_snapshot(user_id, event.environment)
        )
        return ReconcileResult(
            outcome, event.kind, snapshot=snapshot, ledger_written=ledger_written
        )
