"""
Plan resolution for provider subscription objects.

A Stripe subscription describes its tier through several overlapping
hints: the price on its newest line item, metadata on the item, the price
or the product, metadata on the subscription itself, and zero-amount
(complimentary) prices. Each hint is a strategy; strategies run in
priority order and the first one that yields a plan wins.

The same chain resolves the current items, a pending update's items and
the items of the next schedule phase, so a scheduled plan is resolved
exactly like a current one.
"""
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from app.billing.plans import PAID_PLANS, Plan, coerce_plan, plan_for_price
from app.core.logging import get_logger

logger = get_logger(__name__)

METADATA_PLAN_KEYS = ("plan", "target_plan", "framevault_plan", "requested_plan", "desired_plan")

# Schedules in these states no longer drive the subscription
INACTIVE_SCHEDULE_STATUSES = frozenset({"canceled", "completed", "released"})


@dataclass(frozen=True)
class PlanResolution:
    """What the provider object says about the tier, before any stored state is consulted."""

    current_plan: Plan | None
    scheduled_plan: Plan | None
    source: str | None = None
    # Raw scheduled target, kept even when it equals current_plan
    scheduled_target: Plan | None = None
    price_id: str | None = None
    pending_price_id: str | None = None


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def list_items(value: Any) -> list[Mapping]:
    """Line items from either a provider list object ({"data": [...]}) or a plain list."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        value = value.get("data") or []
    return [item for item in value if isinstance(item, Mapping)]


def find_active_item(items: Any) -> Mapping | None:
    """Newest line item that is neither deleted nor zero-quantity."""
    ordered = sorted(list_items(items), key=lambda item: item.get("created") or 0, reverse=True)
    for item in ordered:
        if item.get("deleted"):
            continue
        quantity = item.get("quantity")
        if isinstance(quantity, (int, float)) and quantity == 0:
            continue
        return item
    return None


def price_id_of(item: Mapping | None) -> str | None:
    if not item:
        return None
    for key in ("price", "plan"):
        value = item.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, Mapping) and value.get("id"):
            return value["id"]
    return None


def read_plan_from_metadata(metadata: Any) -> Plan | None:
    metadata = _mapping(metadata)
    for key in METADATA_PLAN_KEYS:
        plan = coerce_plan(metadata.get(key))
        if plan in PAID_PLANS:
            return plan
    return None


def is_zero_amount_price(price: Any) -> bool:
    price = _mapping(price)
    unit_amount = price.get("unit_amount")
    if isinstance(unit_amount, (int, float)) and not isinstance(unit_amount, bool):
        return unit_amount == 0
    decimal_amount = price.get("unit_amount_decimal")
    if isinstance(decimal_amount, str):
        try:
            return Decimal(decimal_amount) == 0
        except InvalidOperation:
            return False
    return False


# Strategies: (item, owner) -> Plan | None. The owner is the object holding
# the items: the subscription, its pending update or a schedule phase.

def by_price_id(item: Mapping | None, owner: Mapping) -> Plan | None:
    return plan_for_price(price_id_of(item))


def by_item_metadata(item: Mapping | None, owner: Mapping) -> Plan | None:
    return read_plan_from_metadata(_mapping(item).get("metadata"))


def by_price_metadata(item: Mapping | None, owner: Mapping) -> Plan | None:
    price = _mapping(_mapping(item).get("price"))
    return read_plan_from_metadata(price.get("metadata"))


def by_product_metadata(item: Mapping | None, owner: Mapping) -> Plan | None:
    product = _mapping(_mapping(_mapping(item).get("price")).get("product"))
    return read_plan_from_metadata(product.get("metadata"))


def by_owner_metadata(item: Mapping | None, owner: Mapping) -> Plan | None:
    return read_plan_from_metadata(owner.get("metadata"))


def by_zero_amount(item: Mapping | None, owner: Mapping) -> Plan | None:
    if item and is_zero_amount_price(item.get("price")):
        return Plan.free
    return None


Strategy = Callable[[Mapping | None, Mapping], Plan | None]

PLAN_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("price", by_price_id),
    ("item_metadata", by_item_metadata),
    ("price_metadata", by_price_metadata),
    ("product_metadata", by_product_metadata),
    ("metadata", by_owner_metadata),
    ("zero_amount", by_zero_amount),
)


def run_strategies(
    item: Mapping | None,
    owner: Mapping,
    strategies: tuple[tuple[str, Strategy], ...] = PLAN_STRATEGIES,
) -> tuple[Plan | None, str | None]:
    """First (plan, strategy name) produced by the chain, or (None, None)."""
    for name, strategy in strategies:
        plan = strategy(item, owner)
        if plan is not None:
            return plan, name
    return None, None


def resolve_current_plan(subscription: Mapping) -> tuple[Plan | None, str | None]:
    item = find_active_item(subscription.get("items"))
    return run_strategies(item, subscription)


def resolve_pending_update_plan(subscription: Mapping) -> tuple[Plan | None, str | None]:
    """(plan, price id) queued by a pending update, if the subscription has one."""
    pending = _mapping(subscription.get("pending_update"))
    if not pending:
        return None, None
    item = find_active_item(pending.get("subscription_items"))
    plan, _ = run_strategies(item, pending)
    return plan, price_id_of(item)


def _phase_matches(phase: Mapping, start: Any, end: Any) -> bool:
    return start is not None and phase.get("start_date") == start and phase.get("end_date") == end


def find_next_phase(
    subscription: Mapping,
    now: datetime | None = None,
) -> tuple[Mapping | None, bool]:
    """
    Phase of the subscription's schedule that follows the current one.

    Returns (phase, upcoming). The current phase is located by boundary
    equality; failing that the first future-dated phase is used, and failing
    that the last phase. upcoming is False only for the last-phase fallback,
    which describes where the subscription already is rather than a change.
    """
    schedule = _mapping(subscription.get("schedule"))
    if not schedule or schedule.get("status") in INACTIVE_SCHEDULE_STATUSES:
        return None, False
    phases = [phase for phase in schedule.get("phases") or [] if isinstance(phase, Mapping)]
    if not phases:
        return None, False

    current = _mapping(schedule.get("current_phase"))
    start = current.get("start_date", subscription.get("current_period_start"))
    end = current.get("end_date", subscription.get("current_period_end"))
    for index, phase in enumerate(phases):
        if _phase_matches(phase, start, end) and index + 1 < len(phases):
            return phases[index + 1], True

    reference = (now or datetime.now(timezone.utc)).timestamp()
    for phase in phases:
        if (phase.get("start_date") or 0) > reference:
            return phase, True

    return phases[-1], False


def resolve_schedule_plan(
    subscription: Mapping,
    now: datetime | None = None,
) -> tuple[Plan | None, bool]:
    phase, upcoming = find_next_phase(subscription, now)
    if phase is None:
        return None, False
    plan, _ = run_strategies(find_active_item(phase.get("items")), phase)
    return plan, upcoming


def resolve_plans(subscription: Mapping, now: datetime | None = None) -> PlanResolution:
    """Resolve the current and the scheduled plan of an expanded subscription."""
    current_item = find_active_item(subscription.get("items"))
    current_plan, source = run_strategies(current_item, subscription)

    target: Plan | None = None
    target_source: str | None = None

    # A pending update outranks whatever the schedule says
    pending_plan, pending_price_id = resolve_pending_update_plan(subscription)
    if pending_plan is not None:
        target, target_source = pending_plan, "pending_update"
    else:
        schedule_plan, upcoming = resolve_schedule_plan(subscription, now)
        if schedule_plan is not None and (upcoming or schedule_plan != current_plan):
            target, target_source = schedule_plan, "schedule"

    scheduled_plan = None if target == current_plan else target

    resolution = PlanResolution(
        current_plan=current_plan,
        scheduled_plan=scheduled_plan,
        source=source,
        scheduled_target=target,
        price_id=price_id_of(current_item),
        pending_price_id=pending_price_id,
    )
    logger.debug(
        "plan resolution subscription=%s current=%s (%s) scheduled=%s (%s) target=%s",
        subscription.get("id"),
        current_plan,
        source,
        scheduled_plan,
        target_source,
        target,
    )
    return resolution
