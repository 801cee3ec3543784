"""Plan tiers, subscription status groups and the price to plan table."""
from datetime import datetime, timezone
from enum import Enum

from app.core.config import settings


class Plan(str, Enum):
    """Entitlement tier, ranked free < plus < pro."""

    free = "free"
    plus = "plus"
    pro = "pro"


PLAN_RANK: dict[Plan, int] = {
    Plan.free: 0,
    Plan.plus: 1,
    Plan.pro: 2,
}

PAID_PLANS = (Plan.plus, Plan.pro)

# past_due / unpaid stay live so a payment hiccup does not revoke access
ACTIVE_STATUSES = frozenset({"active", "trialing", "past_due", "unpaid", "incomplete"})
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})
CANCELABLE_STATUSES = ACTIVE_STATUSES


def coerce_plan(value) -> Plan | None:
    """Return the Plan for a raw value, or None when it is not a known tier."""
    if isinstance(value, Plan):
        return value
    if isinstance(value, str):
        try:
            return Plan(value.strip().lower())
        except ValueError:
            return None
    return None


def plan_rank(plan: Plan | str | None) -> int:
    coerced = coerce_plan(plan)
    return PLAN_RANK[coerced] if coerced else -1


def is_active_status(status: str | None) -> bool:
    return bool(status) and status in ACTIVE_STATUSES


def is_terminal_status(status: str | None) -> bool:
    return bool(status) and status in TERMINAL_STATUSES


def price_table() -> dict[str, Plan]:
    """Price ids provisioned in the Stripe dashboard, keyed to their tier."""
    return {
        settings.STRIPE_PLUS_PRICE_ID: Plan.plus,
        settings.STRIPE_PRO_PRICE_ID: Plan.pro,
    }


def plan_for_price(price_id: str | None) -> Plan | None:
    if not price_id:
        return None
    return price_table().get(price_id)


def price_for_plan(plan: Plan) -> str:
    if plan not in PAID_PLANS:
        raise ValueError(f"No price configured for plan {plan}")
    for price_id, mapped in price_table().items():
        if mapped == plan:
            return price_id
    raise ValueError(f"No price configured for plan {plan}")


def normalise_plan(plan: Plan | None, status: str | None) -> Plan:
    """Plan to store on a subscription row for the given provider status."""
    if plan is None or is_terminal_status(status):
        return Plan.free
    return plan


def resolve_profile_plan(
    status: str | None,
    plan: Plan | None,
    *,
    cancel_at_period_end: bool = False,
    ended_at: datetime | int | float | None = None,
    now: datetime | None = None,
) -> Plan:
    """
    Plan a user receives today from a single subscription.

    A subscription set to cancel at period end keeps its plan until it
    actually ends.
    """
    if not is_active_status(status) or plan is None:
        return Plan.free
    ended = as_utc(ended_at)
    if ended is not None and ended <= (now or datetime.now(timezone.utc)):
        return Plan.free
    return plan


def as_utc(value: datetime | int | float | None) -> datetime | None:
    """Epoch seconds or naive/aware datetimes to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
