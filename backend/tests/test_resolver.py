from datetime import datetime, timezone

from app.billing.plans import Plan
from app.billing.resolver import (
    by_item_metadata,
    by_owner_metadata,
    by_product_metadata,
    by_zero_amount,
    find_active_item,
    find_next_phase,
    read_plan_from_metadata,
    resolve_current_plan,
    resolve_plans,
    run_strategies,
)
from conftest import PLUS_PRICE, PRO_PRICE, make_item, make_subscription

PERIOD_START = 1_780_000_000
PERIOD_END = PERIOD_START + 30 * 86400
NOW = datetime.fromtimestamp(PERIOD_START + 86400, tz=timezone.utc)


def _phase(price_id, start, end):
    return {"start_date": start, "end_date": end, "items": [{"price": {"id": price_id}, "quantity": 1}]}


def _schedule(*phases, status="active"):
    return {
        "id": "sub_sched_1",
        "status": status,
        "current_phase": {"start_date": PERIOD_START, "end_date": PERIOD_END},
        "phases": list(phases),
    }


def _sub(items, **kwargs):
    return make_subscription(
        "sub_1",
        items=items,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        metadata=kwargs.pop("metadata", {}),
        **kwargs,
    )


def test_newest_item_wins():
    items = [make_item(PLUS_PRICE, created=100), make_item(PRO_PRICE, created=200)]
    assert resolve_current_plan(_sub(items)) == (Plan.pro, "price")


def test_zero_quantity_and_deleted_items_are_skipped():
    items = [
        make_item(PRO_PRICE, created=300, quantity=0),
        dict(make_item(PRO_PRICE, created=250), deleted=True),
        make_item(PLUS_PRICE, created=100),
    ]
    assert find_active_item({"data": items})["price"]["id"] == PLUS_PRICE


def test_metadata_cascade_item_then_price_then_product():
    item = make_item(
        "price_legacy",
        metadata={"plan": "pro"},
        price_metadata={"plan": "plus"},
        product_metadata={"plan": "plus"},
    )
    assert run_strategies(item, {}) == (Plan.pro, "item_metadata")

    item = make_item("price_legacy", price_metadata={"plan": "plus"}, product_metadata={"plan": "pro"})
    assert run_strategies(item, {}) == (Plan.plus, "price_metadata")

    item = make_item("price_legacy", product_metadata={"framevault_plan": "pro"})
    assert by_product_metadata(item, {}) == Plan.pro
    assert run_strategies(item, {}) == (Plan.pro, "product_metadata")


def test_metadata_keys_are_checked_in_order_and_only_paid_tiers_count():
    assert read_plan_from_metadata({"target_plan": "pro", "plan": "plus"}) == Plan.plus
    assert read_plan_from_metadata({"plan": "free", "desired_plan": "pro"}) == Plan.pro
    assert read_plan_from_metadata({"plan": "gold"}) is None
    assert read_plan_from_metadata(None) is None
    assert by_item_metadata({"metadata": {"requested_plan": "plus"}}, {}) == Plan.plus


def test_subscription_metadata_is_consulted_after_item_sources():
    sub = _sub([make_item("price_legacy")], metadata={"plan": "pro"})
    assert by_owner_metadata(None, sub) == Plan.pro
    assert resolve_current_plan(sub) == (Plan.pro, "metadata")


def test_zero_amount_price_is_free():
    assert resolve_current_plan(_sub([make_item("price_comp", unit_amount=0)])) == (Plan.free, "zero_amount")

    item = make_item("price_comp", unit_amount=None)
    item["price"]["unit_amount_decimal"] = "0.00"
    assert by_zero_amount(item, {}) == Plan.free


def test_unresolvable_subscription():
    resolution = resolve_plans(_sub([make_item("price_unknown")]), now=NOW)
    assert resolution.current_plan is None
    assert resolution.scheduled_plan is None
    assert resolution.price_id == "price_unknown"


def test_schedule_next_phase_matched_by_boundaries():
    schedule = _schedule(
        _phase(PRO_PRICE, PERIOD_START, PERIOD_END),
        _phase(PLUS_PRICE, PERIOD_END, PERIOD_END + 30 * 86400),
    )
    resolution = resolve_plans(_sub([make_item(PRO_PRICE)], schedule=schedule), now=NOW)
    assert resolution.current_plan == Plan.pro
    assert resolution.scheduled_plan == Plan.plus
    assert resolution.scheduled_target == Plan.plus


def test_schedule_falls_back_to_first_future_phase():
    schedule = _schedule(
        _phase(PRO_PRICE, PERIOD_START - 100, PERIOD_END - 100),
        _phase(PLUS_PRICE, PERIOD_END + 500, PERIOD_END + 1000),
    )
    schedule["current_phase"] = None
    phase, upcoming = find_next_phase(_sub([make_item(PRO_PRICE)], schedule=schedule), now=NOW)
    assert upcoming
    assert phase["start_date"] == PERIOD_END + 500


def test_last_phase_fallback_equal_to_current_is_no_change():
    schedule = _schedule(_phase(PRO_PRICE, PERIOD_START - 200, PERIOD_START - 100))
    schedule["current_phase"] = None
    resolution = resolve_plans(_sub([make_item(PRO_PRICE)], schedule=schedule), now=NOW)
    assert resolution.scheduled_plan is None
    assert resolution.scheduled_target is None


def test_upcoming_phase_equal_to_current_keeps_the_target():
    schedule = _schedule(
        _phase(PRO_PRICE, PERIOD_START, PERIOD_END),
        _phase(PLUS_PRICE, PERIOD_END, PERIOD_END + 30 * 86400),
    )
    resolution = resolve_plans(_sub([make_item(PLUS_PRICE)], schedule=schedule), now=NOW)
    assert resolution.current_plan == Plan.plus
    assert resolution.scheduled_plan is None
    assert resolution.scheduled_target == Plan.plus


def test_released_schedule_is_ignored():
    schedule = _schedule(
        _phase(PRO_PRICE, PERIOD_START, PERIOD_END),
        _phase(PLUS_PRICE, PERIOD_END, PERIOD_END + 30 * 86400),
        status="released",
    )
    resolution = resolve_plans(_sub([make_item(PRO_PRICE)], schedule=schedule), now=NOW)
    assert resolution.scheduled_plan is None


def test_pending_update_outranks_schedule():
    schedule = _schedule(
        _phase(PLUS_PRICE, PERIOD_START, PERIOD_END),
        _phase(PLUS_PRICE, PERIOD_END, PERIOD_END + 30 * 86400),
    )
    pending = {"subscription_items": [make_item(PRO_PRICE)]}
    resolution = resolve_plans(
        _sub([make_item(PLUS_PRICE)], schedule=schedule, pending_update=pending),
        now=NOW,
    )
    assert resolution.scheduled_plan == Plan.pro
    assert resolution.scheduled_target == Plan.pro
    assert resolution.pending_price_id == PRO_PRICE


def test_pending_update_metadata_fallback():
    pending = {"subscription_items": [], "metadata": {"target_plan": "pro"}}
    resolution = resolve_plans(_sub([make_item(PLUS_PRICE)], pending_update=pending), now=NOW)
    assert resolution.scheduled_plan == Plan.pro
    assert resolution.pending_price_id is None
