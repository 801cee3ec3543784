"""Decide between immediate and deferred plan changes."""
from dataclasses import dataclass

from app.billing.plans import Plan, coerce_plan, is_active_status, plan_rank
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanChange:
    """Values to persist on the subscription row."""

    plan: Plan
    pending_plan: Plan | None


def calculate_plan_change(
    current_plan: Plan,
    scheduled_plan: Plan | None,
    *,
    stored_plan: str | None,
    stored_pending_plan: str | None = None,
    status: str | None = None,
    cancel_at_period_end: bool = False,
    scheduled_target: Plan | None = None,
) -> PlanChange:
    """
    Reconcile a freshly resolved plan with what the row already stores.

    A downgrade only waits for the period boundary when a scheduled change
    (pending update, schedule phase or cancellation at period end) explains
    it; otherwise the lower plan is accepted at once, since the provider is
    the source of truth when nothing pending accounts for the discrepancy.
    """
    if not is_active_status(status):
        return PlanChange(plan=current_plan, pending_plan=None)

    target = scheduled_target or scheduled_plan
    if target is None and cancel_at_period_end:
        target = Plan.free

    if target is None:
        if stored_pending_plan:
            logger.debug("clearing stale pending plan %s", stored_pending_plan)
        return PlanChange(plan=current_plan, pending_plan=None)

    stored = coerce_plan(stored_plan)
    if stored is None or plan_rank(current_plan) >= plan_rank(stored):
        return PlanChange(
            plan=current_plan,
            pending_plan=target if target != current_plan else None,
        )

    lower = current_plan if plan_rank(current_plan) <= plan_rank(target) else target
    logger.debug(
        "deferring downgrade stored=%s resolved=%s target=%s", stored.value, current_plan.value, target.value
    )
    return PlanChange(
        plan=stored,
        pending_plan=lower if lower != stored else None,
    )
