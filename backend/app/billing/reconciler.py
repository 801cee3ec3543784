"""
Webhook event reconciliation.

Every relevant event is reduced to "fetch the authoritative subscription
and reconcile it", so deliveries may repeat or arrive out of order and the
stored state still converges on what the provider reports. The provider
client, database session and cache invalidator are passed in explicitly.

Pipeline per event:
    ledger check -> dispatch -> fetch expanded subscription -> resolve plans
    -> pending-change calculation -> upsert -> link customer
    -> enforce single subscription -> propagate profile plan
    -> mark event processed
"""
import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.billing import ledger
from app.billing.enforcer import cancel_other_subscriptions, is_resource_missing
from app.billing.errors import BillingMisconfigured, ProviderCallFailed, UnresolvableUser
from app.billing.pending import calculate_plan_change
from app.billing.plans import Plan, normalise_plan, resolve_profile_plan
from app.billing.propagator import attach_customer, propagate_profile_plan
from app.billing.resolver import resolve_plans
from app.billing.upsert import (
    SubscriptionSnapshot,
    extract_customer_id,
    find_existing_subscription,
    upsert_subscription,
)
from app.core.logging import get_logger
from app.db.models.profile import Profile

logger = get_logger(__name__)

SUBSCRIPTION_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})

RELEVANT_EVENTS = SUBSCRIPTION_EVENTS | {"checkout.session.completed", "customer.created"}

USER_ID_METADATA_KEYS = ("user_id", "supabase_user_id")


def user_id_from_metadata(metadata: Any) -> uuid.UUID | None:
    if not isinstance(metadata, Mapping):
        return None
    for key in USER_ID_METADATA_KEYS:
        value = metadata.get(key)
        if not value:
            continue
        try:
            return uuid.UUID(str(value))
        except ValueError:
            logger.warning("metadata %s=%r is not a user id", key, value)
    return None


def resolve_user(db: Session, metadata: Any, customer_id: str | None = None) -> uuid.UUID:
    """Local profile id for a provider object; raises UnresolvableUser."""
    user_id = user_id_from_metadata(metadata)
    if user_id is not None:
        if db.get(Profile, user_id) is None:
            raise UnresolvableUser(f"No profile for user {user_id}")
        return user_id

    if customer_id:
        profile_id = db.execute(
            select(Profile.id).where(Profile.stripe_customer_id == customer_id).limit(1)
        ).scalar_one_or_none()
        if profile_id is not None:
            return profile_id

    raise UnresolvableUser("Provider object carries no user metadata")


def fetch_subscription(provider, subscription_id: str, fallback: Mapping | None = None) -> Mapping:
    try:
        return provider.retrieve_subscription(subscription_id)
    except stripe.StripeError as e:
        if is_resource_missing(e) and fallback is not None:
            logger.warning("subscription %s missing at provider; using event payload", subscription_id)
            return fallback
        raise ProviderCallFailed(f"Fetching subscription {subscription_id} failed: {e}") from e


def reconcile_subscription(
    db: Session,
    provider,
    subscription_id: str,
    invalidator=None,
    fallback: Mapping | None = None,
    now: datetime | None = None,
) -> None:
    subscription = fetch_subscription(provider, subscription_id, fallback)
    customer_id = extract_customer_id(subscription.get("customer"))

    try:
        user_id = resolve_user(db, subscription.get("metadata"), customer_id)
    except UnresolvableUser as e:
        logger.warning("skipping subscription %s: %s", subscription_id, e)
        return

    status = subscription.get("status")
    resolution = resolve_plans(subscription, now=now)
    existing = find_existing_subscription(db, user_id, subscription["id"])
    change = calculate_plan_change(
        normalise_plan(resolution.current_plan, status),
        resolution.scheduled_plan,
        stored_plan=existing.plan if existing else None,
        stored_pending_plan=existing.pending_plan if existing else None,
        status=status,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        scheduled_target=resolution.scheduled_target,
    )

    snapshot = SubscriptionSnapshot.from_provider(user_id, subscription, resolution)
    upsert_subscription(db, snapshot, change, existing)
    db.commit()
    if customer_id:
        attach_customer(db, user_id, customer_id)

    if snapshot.is_active and customer_id:
        cancel_other_subscriptions(provider, customer_id, snapshot.subscription_id)

    # A subscription that grants nothing today may leave a lapsed scheduled change behind
    grants = resolve_profile_plan(
        status,
        resolution.current_plan,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        ended_at=snapshot.ended_at,
        now=now,
    )
    propagate_profile_plan(db, user_id, invalidator, now=now, settle_lapsed=grants == Plan.free)


def handle_checkout_completed(db: Session, provider, session: Mapping, invalidator=None, now=None) -> None:
    subscription = session.get("subscription")
    subscription_id = subscription.get("id") if isinstance(subscription, Mapping) else subscription
    if subscription_id:
        reconcile_subscription(db, provider, subscription_id, invalidator, now=now)

    customer_id = extract_customer_id(session.get("customer"))
    user_id = user_id_from_metadata(session.get("metadata"))
    if user_id and customer_id:
        attach_customer(db, user_id, customer_id)


def handle_customer_created(db: Session, customer: Mapping) -> None:
    if customer.get("deleted"):
        return
    user_id = user_id_from_metadata(customer.get("metadata"))
    if user_id is None:
        logger.warning("customer %s has no user metadata", customer.get("id"))
        return
    attach_customer(db, user_id, customer["id"], only_if_missing=True)


def dispatch(db: Session, provider, event: Mapping, invalidator=None, now=None) -> None:
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type in SUBSCRIPTION_EVENTS:
        reconcile_subscription(db, provider, obj["id"], invalidator, fallback=obj, now=now)
    elif event_type == "checkout.session.completed":
        handle_checkout_completed(db, provider, obj, invalidator, now=now)
    elif event_type == "customer.created":
        handle_customer_created(db, obj)


def process_event(db: Session, provider, event: Mapping, invalidator=None, now=None) -> bool:
    """
    Run one verified event through the pipeline.

    Returns True when the event was a duplicate. Any exception leaves the
    ledger untouched so the provider redelivers.
    """
    if provider is None:
        raise BillingMisconfigured("Billing provider is not configured")

    event_id = event["id"]
    event_type = event["type"]

    if event_type not in RELEVANT_EVENTS:
        logger.debug("ignoring webhook event %s (%s)", event_id, event_type)
        return False

    if ledger.has_processed(db, event_id):
        logger.info("webhook event %s already processed", event_id)
        return True

    logger.info("processing webhook event %s (%s)", event_id, event_type)
    dispatch(db, provider, event, invalidator, now=now)

    return not ledger.mark_processed(db, event_id, event_type)
