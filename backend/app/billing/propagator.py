"""Derive the profile entitlement from the current subscription row."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.billing.cache import billing_paths
from app.billing.plans import Plan, as_utc, coerce_plan, is_active_status
from app.core.logging import get_logger
from app.db.models.profile import Profile
from app.db.models.subscription import Subscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class LapsedPlan:
    user_id: uuid.UUID
    previous_plan: str
    new_plan: str


def current_subscription(db: Session, user_id: uuid.UUID) -> Subscription | None:
    return db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def _set_entitlement(
    profile: Profile,
    plan: Plan,
    source: str,
    next_plan: Plan | None = None,
    expires_at: datetime | None = None,
) -> None:
    profile.plan = plan.value
    profile.plan_source = source
    profile.next_plan = next_plan.value if next_plan else None
    profile.plan_expires_at = expires_at


def apply_subscription_change(
    db: Session,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> Profile | None:
    """
    Recompute plan, next_plan and plan_expires_at from the current row.

    A scheduled change whose period boundary has already passed is applied
    immediately. Does not commit.
    """
    profile = db.get(Profile, user_id)
    if profile is None:
        return None
    now = now or datetime.now(timezone.utc)

    row = current_subscription(db, user_id)
    if row is None:
        _set_entitlement(profile, Plan.free, "manual")
    elif row.ended_at is not None and as_utc(row.ended_at) <= now:
        _set_entitlement(profile, Plan.free, "subscription")
    elif is_active_status(row.status):
        effective = coerce_plan(row.plan) or Plan.free
        pending = coerce_plan(row.pending_plan)
        scheduled = None
        if pending is not None and pending != effective:
            scheduled = pending
        elif row.cancel_at_period_end:
            scheduled = Plan.free

        period_end = as_utc(row.current_period_end)
        if scheduled is not None and period_end is not None and period_end <= now:
            effective, scheduled = scheduled, None

        _set_entitlement(
            profile,
            effective,
            "subscription",
            next_plan=scheduled,
            expires_at=period_end if scheduled is not None else None,
        )
    else:
        _set_entitlement(profile, Plan.free, "subscription")

    db.flush()
    return profile


def propagate_profile_plan(
    db: Session,
    user_id: uuid.UUID,
    invalidator=None,
    now: datetime | None = None,
    settle_lapsed: bool = False,
) -> Profile | None:
    """
    Persist the recomputed entitlement, then invalidate the user's cached pages.

    With settle_lapsed, a scheduled change whose expiry has passed is rolled
    over before the caches are told.
    """
    profile = apply_subscription_change(db, user_id, now=now)
    db.commit()
    if profile is None:
        logger.warning("no profile for user %s; entitlement not propagated", user_id)
        return None

    if settle_lapsed:
        compute_effective_plan(db, user_id, now=now)

    logger.info(
        "profile plan user=%s plan=%s next=%s expires=%s",
        user_id,
        profile.plan,
        profile.next_plan,
        profile.plan_expires_at,
    )

    if invalidator is not None:
        try:
            invalidator.invalidate(billing_paths(profile.username))
        except Exception:
            logger.warning("cache invalidation failed for user %s", user_id, exc_info=True)
    return profile


def compute_effective_plan(
    db: Session,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> Plan:
    """Plan the user holds right now, rolling over a lapsed scheduled change first."""
    profile = db.get(Profile, user_id)
    if profile is None:
        return Plan.free
    now = now or datetime.now(timezone.utc)

    expires_at = as_utc(profile.plan_expires_at)
    if expires_at is not None and expires_at <= now:
        desired = coerce_plan(profile.next_plan) or Plan.free
        source = profile.plan_source if profile.plan_source == "subscription" else "system"
        _set_entitlement(profile, desired, source)
        db.commit()
        return desired

    return coerce_plan(profile.plan) or Plan.free


def expire_lapsed_plans(
    db: Session,
    batch_size: int = 100,
    now: datetime | None = None,
) -> list[LapsedPlan]:
    """Roll over up to batch_size profiles whose plan_expires_at has passed, oldest first."""
    now = now or datetime.now(timezone.utc)
    rows = db.execute(
        select(Profile)
        .where(Profile.plan_expires_at.is_not(None), Profile.plan_expires_at <= now)
        .order_by(Profile.plan_expires_at.asc())
        .limit(max(batch_size, 0))
        .with_for_update(skip_locked=True)
    ).scalars().all()

    lapsed: list[LapsedPlan] = []
    for profile in rows:
        previous = profile.plan
        desired = coerce_plan(profile.next_plan) or Plan.free
        source = profile.plan_source if profile.plan_source == "subscription" else "system"
        _set_entitlement(profile, desired, source)
        lapsed.append(LapsedPlan(user_id=profile.id, previous_plan=previous, new_plan=desired.value))

    db.commit()
    return lapsed


def attach_customer(
    db: Session,
    user_id: uuid.UUID,
    customer_id: str,
    only_if_missing: bool = False,
) -> bool:
    """Link a provider customer to the profile. Returns whether anything changed."""
    profile = db.get(Profile, user_id)
    if profile is None:
        return False
    if only_if_missing and profile.stripe_customer_id:
        return False
    if profile.stripe_customer_id == customer_id:
        return False
    profile.stripe_customer_id = customer_id
    db.commit()
    return True
