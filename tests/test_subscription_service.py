"""Tests for the subscription state machine and renewal arithmetic."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from payhook import clock
from payhook.errors import InvalidTransition
from payhook.models.subscription import Subscription
from payhook.services import subscription_service
from payhook.services.subscription_service import compute_renewed_expiry

T = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
PERIOD = timedelta(days=30)


class TestRenewalArithmetic:

    def test_running_subscription_extends_from_expiry(self):
        assert compute_renewed_expiry(T + timedelta(days=10), T, PERIOD) == T + timedelta(days=40)

    def test_lapsed_subscription_restarts_from_now(self):
        assert compute_renewed_expiry(T - timedelta(days=5), T, PERIOD) == T + timedelta(days=30)

    def test_expiring_exactly_now_restarts_from_now(self):
        assert compute_renewed_expiry(T, T, PERIOD) == T + PERIOD

    def test_never_started(self):
        assert compute_renewed_expiry(None, T, PERIOD) == T + PERIOD

    def test_naive_expiry_treated_as_utc(self):
        naive = (T + timedelta(days=1)).replace(tzinfo=None)
        assert compute_renewed_expiry(naive, T, PERIOD) == T + timedelta(days=31)

    def test_expiry_never_moves_backward(self):
        for offset in (-40, -1, 0, 1, 400):
            current = T + timedelta(days=offset)
            assert compute_renewed_expiry(current, T, PERIOD) > current

    def test_period_comes_from_config(self, app):
        app.config["RENEWAL_PERIOD_DAYS"] = 7
        try:
            assert subscription_service.renewal_period() == timedelta(days=7)
        finally:
            app.config["RENEWAL_PERIOD_DAYS"] = 30

    def test_zero_period_is_respected(self, app):
        app.config["RENEWAL_PERIOD_DAYS"] = 0
        try:
            assert subscription_service.renewal_period() == timedelta(0)
        finally:
            app.config["RENEWAL_PERIOD_DAYS"] = 30


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (Subscription.INACTIVE, Subscription.ACTIVE),
        (Subscription.ACTIVE, Subscription.ACTIVE),
        (Subscription.ACTIVE, Subscription.CANCELLED),
        (Subscription.ACTIVE, Subscription.EXPIRED),
        (Subscription.INACTIVE, Subscription.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert subscription_service.can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (Subscription.CANCELLED, Subscription.ACTIVE),
        (Subscription.EXPIRED, Subscription.ACTIVE),
        (Subscription.ACTIVE, Subscription.INACTIVE),
        (Subscription.INACTIVE, Subscription.EXPIRED),
        (Subscription.CANCELLED, Subscription.EXPIRED),
    ])
    def test_rejected(self, current, target):
        assert not subscription_service.can_transition(current, target)
        sub = Subscription(status=current)
        with pytest.raises(InvalidTransition):
            subscription_service.transition(sub, target)
        assert sub.status == current

    def test_cancel_sets_timestamp(self, db_session, seed_user, seed_subscription):
        sub = seed_subscription(seed_user())
        subscription_service.cancel(db_session, sub, now=T)
        assert sub.status == Subscription.CANCELLED
        assert clock.as_utc(sub.cancelled_at) == T

    def test_expire(self, db_session, seed_user, seed_subscription):
        sub = seed_subscription(seed_user())
        subscription_service.expire(db_session, sub)
        assert sub.status == Subscription.EXPIRED

    def test_cancelled_cannot_be_cancelled_again(self, db_session, seed_user,
                                                 seed_subscription):
        sub = seed_subscription(seed_user(), status=Subscription.CANCELLED)
        with pytest.raises(InvalidTransition):
            subscription_service.cancel(db_session, sub)


class TestRenewForUser:

    def test_creates_subscription_when_none(self, db_session, seed_user):
        user = seed_user()
        sub, created = subscription_service.renew_for_user(
            db_session, user.id, plan_id="pro", amount=Decimal("29.99"),
            currency="EUR", now=T,
        )
        assert created is True
        assert sub.status == Subscription.ACTIVE
        assert sub.currency == "EUR"
        assert sub.started_at == T
        assert sub.expires_at == T + PERIOD

    def test_targets_most_recent_renewable(self, db_session, seed_user, seed_subscription):
        user = seed_user()
        older = seed_subscription(user, expires_in=timedelta(days=3), now=T)
        newer = seed_subscription(user, expires_in=timedelta(days=5), now=T)

        sub, created = subscription_service.renew_for_user(db_session, user.id, now=T)

        assert created is False
        assert sub.id == newer.id
        db_session.refresh(older)
        assert clock.as_utc(older.expires_at) == T + timedelta(days=3)

    def test_skips_expired_subscription(self, db_session, seed_user, seed_subscription):
        user = seed_user()
        expired = seed_subscription(user, status=Subscription.EXPIRED, now=T)

        sub, created = subscription_service.renew_for_user(db_session, user.id, now=T)
        assert created is True
        assert sub.id != expired.id

    def test_keeps_existing_plan(self, db_session, seed_user, seed_subscription):
        user = seed_user()
        seed_subscription(user, plan_id="basic", now=T)
        sub, _ = subscription_service.renew_for_user(
            db_session, user.id, plan_id="pro", now=T
        )
        assert sub.plan_id == "basic"

    def test_row_locks(self, db_session):
        target_sql = str(
            subscription_service.renewal_target_query(db_session, "u1")
            .statement.compile(dialect=postgresql.dialect())
        )
        assert "FOR UPDATE" in target_sql
        assert "SKIP LOCKED" not in target_sql

    def test_find_plan_price(self, db_session, seed_user, seed_subscription):
        assert subscription_service.find_plan_price(db_session, "pro") is None
        seed_subscription(seed_user(), plan_id="pro", amount=Decimal("29.99"))
        assert subscription_service.find_plan_price(db_session, "pro") == Decimal("29.99")
