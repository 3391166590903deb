"""
Hypothesis Property-Based Tests for event normalization and domain models.

Uses Hypothesis to generate random inputs and verify:
- Every vendor notification type maps to exactly one event kind
- Money conversion never produces negative or inflated amounts
- Domain model invariants (dataclass validation)
- Every event kind has a transition
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from app.models.domain import (
    Environment,
    EventKind,
    LedgerEntryIntent,
    Platform,
    ReconciliationEvent,
)
from app.models.google_play import GooglePlaySubscriptionPurchase
from app.services.event_normalizer import (
    GOOGLE_PLAY_KINDS,
    apple_kind,
    from_google_play_purchase,
    google_play_kind,
    micros_to_minor,
    milliunits_to_minor,
)
from app.services.reconciler import TRANSITIONS

# ============================================================================
# Hypothesis Strategies - Reusable data generators
# ============================================================================

apple_types = st.sampled_from(
    [
        "SUBSCRIBED",
        "DID_RENEW",
        "DID_RECOVER",
        "DID_FAIL_TO_RENEW",
        "DID_CHANGE_RENEWAL_STATUS",
        "DID_CHANGE_RENEWAL_PREF",
        "EXPIRED",
        "REVOKE",
        "REFUND",
        "TEST",
    ]
) | st.text(min_size=1, max_size=40)

apple_subtypes = st.none() | st.sampled_from(
    ["INITIAL_BUY", "RESUBSCRIBE", "AUTO_RENEW_DISABLED", "AUTO_RENEW_ENABLED", "GRACE_PERIOD"]
) | st.text(max_size=40)

money = st.integers(min_value=0, max_value=10**12)
currencies = st.sampled_from(["usd", "eur", "gbp", "jpy"])


# ============================================================================
# Kind Mapping Properties
# ============================================================================


class TestKindMappingProperties:
    @given(notification_type=apple_types, subtype=apple_subtypes)
    def test_apple_mapping_is_total(self, notification_type, subtype):
        """Any Apple type/subtype pair yields a known kind without raising."""
        assert apple_kind(notification_type, subtype) in set(EventKind)

    @given(notification_type=st.integers(min_value=-1000, max_value=1000))
    def test_google_play_mapping_is_total(self, notification_type):
        kind = google_play_kind(notification_type)
        if notification_type in {int(t) for t in GOOGLE_PLAY_KINDS}:
            assert kind != EventKind.UNKNOWN
        else:
            assert kind == EventKind.UNKNOWN

    def test_every_kind_has_a_transition(self):
        assert set(TRANSITIONS) == set(EventKind)


# ============================================================================
# Money Properties
# ============================================================================


class TestMoneyProperties:
    @given(amount=money)
    def test_micros_conversion_bounds(self, amount):
        minor = micros_to_minor(amount)
        assert minor >= 0
        assert minor * 10_000 <= amount < (minor + 1) * 10_000

    @given(amount=money)
    def test_milliunits_conversion_bounds(self, amount):
        minor = milliunits_to_minor(amount)
        assert minor >= 0
        assert minor * 10 <= amount < (minor + 1) * 10

    @given(
        micros=money,
        currency=st.sampled_from(["USD", "EUR", "GBP", "JPY"]),
        payment_state=st.none() | st.integers(min_value=0, max_value=3),
    )
    @settings(max_examples=50)
    def test_google_purchase_always_normalizes(self, micros, currency, payment_state):
        purchase = GooglePlaySubscriptionPurchase(
            order_id="GPA.1",
            purchase_token="purchase-token-abcdefghij",
            product_id="pro_monthly_android",
            start_time_millis=1767225600000,
            expiry_time_millis=1769904000000,
            price_amount_micros=micros,
            price_currency_code=currency,
            auto_renewing=True,
            payment_state=payment_state,
        )

        event = from_google_play_purchase(purchase)

        assert event.amount_minor == micros // 10_000
        assert event.currency == currency.lower()
        assert event.carries_payment == (payment_state in (None, 1))


# ============================================================================
# Domain Model Invariants
# ============================================================================


class TestDomainInvariants:
    @given(amount=st.integers(max_value=-1))
    def test_negative_event_amount_rejected(self, amount):
        with pytest.raises(ValueError):
            ReconciliationEvent(
                platform=Platform.APPLE,
                kind=EventKind.RENEWED,
                environment=Environment.PRODUCTION,
                product_id="p",
                external_anchor_id="anchor",
                transaction_id="tx",
                amount_minor=amount,
                currency="usd",
                purchase_instant=None,
                expiry_instant=None,
            )

    @given(amount=money, currency=currencies)
    def test_valid_ledger_intent(self, amount, currency):
        intent = LedgerEntryIntent(
            transaction_id="tx-1",
            user_id="user-123",
            plan_id=uuid4(),
            platform=Platform.GOOGLE_PLAY,
            environment=Environment.SANDBOX,
            amount_minor=amount,
            currency=currency,
            paid_at=datetime.now(UTC),
        )
        assert intent.amount_minor == amount

    @given(currency=st.sampled_from(["USD", "Eur", "gbP", "JPY"]))
    def test_upper_case_event_currency_rejected(self, currency):
        with pytest.raises(ValueError):
            ReconciliationEvent(
                platform=Platform.GOOGLE_PLAY,
                kind=EventKind.RENEWED,
                environment=Environment.PRODUCTION,
                product_id="p",
                external_anchor_id="anchor",
                transaction_id="tx",
                amount_minor=100,
                currency=currency,
                purchase_instant=None,
                expiry_instant=None,
            )
