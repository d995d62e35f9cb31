"""Subscription service — lifecycle state machine and renewal arithmetic.

Responsible for:
- The allowed status transitions (inactive -> active -> cancelled/expired)
- Renewal-period arithmetic (expiry only ever moves forward)
- Picking and row-locking the renewal target for a user
- Creating a fresh subscription when no renewable one exists

Lifecycle:
    inactive  -> active      first completed payment
    active    -> active      renewal (extends expires_at)
    inactive  -> cancelled   cancelled before it ever started
    active    -> cancelled   external cancellation
    active    -> expired     external time-based sweep

cancelled / expired are terminal: a later payment creates a new row.
"""

import logging
from datetime import timedelta

from flask import current_app

from payhook import clock
from payhook.errors import InvalidTransition
from payhook.models.subscription import Subscription
from payhook.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_RENEWAL_PERIOD = timedelta(days=30)

TRANSITIONS = {
    Subscription.INACTIVE: {Subscription.ACTIVE, Subscription.CANCELLED},
    Subscription.ACTIVE: {
        Subscription.ACTIVE,
        Subscription.CANCELLED,
        Subscription.EXPIRED,
    },
    Subscription.CANCELLED: set(),
    Subscription.EXPIRED: set(),
}


def can_transition(current, target):
    return target in TRANSITIONS.get(current, set())


def transition(subscription, target):
    """Move a subscription to `target`, enforcing the transition table.

    Raises InvalidTransition.
    """
    if not can_transition(subscription.status, target):
        raise InvalidTransition(subscription.status, target)
    subscription.status = target
    return subscription


def renewal_period():
    """Configured renewal period (RENEWAL_PERIOD_DAYS, default 30 days)."""
    try:
        days = current_app.config.get("RENEWAL_PERIOD_DAYS")
    except RuntimeError:  # outside an app context
        days = None
    return timedelta(days=days) if days is not None else DEFAULT_RENEWAL_PERIOD


def compute_renewed_expiry(current_expires_at, now, period=DEFAULT_RENEWAL_PERIOD):
    """Expiry after one renewal.

    A subscription that is still running is extended from its current
    expiry; a lapsed (or never-started) one restarts from `now`. The result
    is never earlier than the current expiry.
    """
    current_expires_at = clock.as_utc(current_expires_at)
    if current_expires_at is not None and current_expires_at > now:
        return current_expires_at + period
    return now + period


def renewal_target_query(session, user_id):
    """Most recently created renewable subscription, locked for update."""
    return (
        session.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .filter(Subscription.status.in_(Subscription.RENEWABLE))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .with_for_update()
    )


def lock_user(session, user_id):
    """Row-lock the user.

    Serializes concurrent renewals for a user who has no subscription row
    yet to lock, so two first payments can't both create one.
    """
    return (
        session.query(User)
        .filter(User.id == user_id)
        .with_for_update()
        .one()
    )


def renew_for_user(session, user_id, plan_id=None, amount=None, currency=None,
                   now=None):
    """Extend the user's renewable subscription, or start a new one.

    Must run inside the caller's unit of work; the row locks taken here are
    held until it commits.

    Returns (subscription, created: bool).
    """
    now = now or clock.utcnow()
    period = renewal_period()

    lock_user(session, user_id)
    sub = renewal_target_query(session, user_id).first()

    if sub is not None:
        old_expiry = clock.as_utc(sub.expires_at)
        sub.expires_at = compute_renewed_expiry(old_expiry, now, period)
        if sub.started_at is None:
            sub.started_at = now
        transition(sub, Subscription.ACTIVE)
        if plan_id and not sub.plan_id:
            sub.plan_id = plan_id
        if amount is not None and sub.amount is None:
            sub.amount = amount
        session.flush()
        logger.info(
            f"Renewed subscription {sub.id} for user {user_id}: "
            f"{old_expiry} -> {sub.expires_at}"
        )
        return sub, False

    sub = Subscription(
        user_id=user_id,
        status=Subscription.INACTIVE,
        plan_id=plan_id,
        amount=amount,
        currency=currency or "USD",
        started_at=now,
        expires_at=now + period,
    )
    transition(sub, Subscription.ACTIVE)
    session.add(sub)
    session.flush()
    logger.info(f"Created subscription {sub.id} for user {user_id} (plan={plan_id})")
    return sub, True


def cancel(session, subscription, now=None):
    """External cancellation. A cancelled row is never renewed in place."""
    transition(subscription, Subscription.CANCELLED)
    subscription.cancelled_at = now or clock.utcnow()
    session.flush()
    return subscription


def expire(session, subscription):
    """Called by the time-based expiry sweep (which lives outside payhook)."""
    transition(subscription, Subscription.EXPIRED)
    session.flush()
    return subscription


def find_plan_price(session, plan_id):
    """Amount of the most recent subscription that references `plan_id`.

    Returns Decimal or None when no subscription has priced that plan yet.
    """
    sub = (
        session.query(Subscription)
        .filter(Subscription.plan_id == plan_id)
        .filter(Subscription.amount.isnot(None))
        .order_by(Subscription.created_at.desc())
        .first()
    )
    return sub.amount if sub else None
