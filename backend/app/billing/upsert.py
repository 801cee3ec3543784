"""Conflict-safe insert-or-update of local subscription rows."""
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.errors import BillingError
from app.billing.pending import PlanChange
from app.billing.plans import ACTIVE_STATUSES, as_utc, is_active_status
from app.billing.resolver import PlanResolution, find_active_item
from app.core.logging import get_logger
from app.db.models.subscription import Subscription

logger = get_logger(__name__)

PROVIDER = "stripe"

T = TypeVar("T")


def extract_customer_id(customer: Any) -> str | None:
    """Customer id from either an id string or an expanded customer object."""
    if not customer:
        return None
    if isinstance(customer, str):
        return customer
    if isinstance(customer, Mapping) and isinstance(customer.get("id"), str):
        return customer["id"]
    return None


@dataclass
class SubscriptionSnapshot:
    """Provider-side facts about one subscription, ready to be written."""

    user_id: uuid.UUID
    subscription_id: str
    customer_id: str | None
    status: str
    price_id: str | None = None
    pending_price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None
    ended_at: datetime | None = None
    cancel_at_period_end: bool = False
    metadata: dict = field(default_factory=dict)
    provider: str = PROVIDER

    @property
    def is_active(self) -> bool:
        return is_active_status(self.status)

    @classmethod
    def from_provider(
        cls,
        user_id: uuid.UUID,
        subscription: Mapping,
        resolution: PlanResolution,
    ) -> "SubscriptionSnapshot":
        # Newer API versions report billing periods per item
        item = find_active_item(subscription.get("items")) or {}
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")
        return cls(
            user_id=user_id,
            subscription_id=subscription["id"],
            customer_id=extract_customer_id(subscription.get("customer")),
            status=subscription.get("status") or "incomplete",
            price_id=resolution.price_id,
            pending_price_id=resolution.pending_price_id,
            current_period_start=as_utc(period_start),
            current_period_end=as_utc(period_end),
            cancel_at=as_utc(subscription.get("cancel_at")),
            ended_at=as_utc(subscription.get("ended_at")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            metadata=dict(subscription.get("metadata") or {}),
        )

    def row_values(self, change: PlanChange) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "subscription_id": self.subscription_id,
            "stripe_subscription_id": self.subscription_id,
            "stripe_customer_id": self.customer_id,
            "plan": change.plan.value,
            "pending_plan": change.pending_plan.value if change.pending_plan else None,
            "status": self.status,
            "price_id": self.price_id,
            "pending_price_id": self.pending_price_id,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "cancel_at": self.cancel_at,
            "ended_at": self.ended_at,
            "cancel_at_period_end": self.cancel_at_period_end,
            "metadata_": self.metadata,
        }


def find_existing_subscription(
    db: Session,
    user_id: uuid.UUID,
    subscription_id: str,
    provider: str = PROVIDER,
) -> Subscription | None:
    """
    Row to mutate for a provider subscription.

    Identifiers shifted across migrations, so the row is looked up by
    (user_id, stripe_subscription_id) first and by (provider,
    subscription_id) second.
    """
    matchers = (
        (Subscription.user_id == user_id, Subscription.stripe_subscription_id == subscription_id),
        (Subscription.provider == provider, Subscription.subscription_id == subscription_id),
    )
    for criteria in matchers:
        row = db.execute(
            select(Subscription)
            .where(*criteria)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if row is not None:
            return row
    return None


def retry_on_conflict(db: Session, attempt: Callable[[], T], on_conflict: Callable[[], T]) -> T:
    """Run attempt inside a savepoint; on a uniqueness conflict run on_conflict instead."""
    try:
        with db.begin_nested():
            return attempt()
    except IntegrityError as e:
        logger.info("upsert conflict, retrying as update: %s", e.orig)
        return on_conflict()


def _insert(db: Session, values: dict[str, Any]) -> Subscription:
    row = Subscription(**values)
    db.add(row)
    db.flush()
    return row


def _update_by_key(db: Session, values: dict[str, Any]) -> Subscription:
    assignments = {getattr(Subscription, key): value for key, value in values.items()}
    assignments[Subscription.updated_at] = func.now()
    db.execute(
        update(Subscription)
        .where(
            Subscription.user_id == values["user_id"],
            Subscription.stripe_subscription_id == values["stripe_subscription_id"],
        )
        .values(assignments)
        .execution_options(synchronize_session=False)
    )
    row = db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == values["user_id"],
            Subscription.stripe_subscription_id == values["stripe_subscription_id"],
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise BillingError(
            f"Unable to resolve subscription row after upsert ({values['stripe_subscription_id']})"
        )
    return row


def flag_current(db: Session, row: Subscription, is_active: bool) -> None:
    """
    Keep exactly one current row per user while any of their rows is active-like.

    An active row takes the flag from every other row of the user; other rows
    are cleared first so two rows are never current at once. When the row
    stops being active-like, the newest remaining active-like row inherits
    the flag.
    """
    if is_active:
        db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == row.user_id,
                Subscription.id != row.id,
                Subscription.is_current.is_(True),
            )
            .values(is_current=False)
            .execution_options(synchronize_session="fetch")
        )
        row.is_current = True
        db.flush()
        return

    row.is_current = False
    db.flush()

    still_current = db.execute(
        select(Subscription.id)
        .where(Subscription.user_id == row.user_id, Subscription.is_current.is_(True))
        .limit(1)
    ).scalar_one_or_none()
    if still_current is not None:
        return

    successor = db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == row.user_id,
            Subscription.id != row.id,
            Subscription.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if successor is not None:
        logger.info(
            "subscription %s is %s; %s becomes current",
            row.stripe_subscription_id,
            row.status,
            successor.stripe_subscription_id,
        )
        successor.is_current = True
        db.flush()


def upsert_subscription(
    db: Session,
    snapshot: SubscriptionSnapshot,
    change: PlanChange,
    existing: Subscription | None = None,
) -> Subscription:
    """Write the row for snapshot, then flag it current exclusively. Does not commit."""
    values = snapshot.row_values(change)

    if existing is not None:
        for key, value in values.items():
            setattr(existing, key, value)
        db.flush()
        row = existing
    else:
        row = retry_on_conflict(
            db,
            lambda: _insert(db, values),
            lambda: _update_by_key(db, values),
        )

    logger.debug(
        "subscription row upserted id=%s subscription=%s plan=%s pending=%s status=%s",
        row.id,
        snapshot.subscription_id,
        row.plan,
        row.pending_plan,
        snapshot.status,
    )

    flag_current(db, row, snapshot.is_active)
    return row
