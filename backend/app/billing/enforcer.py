"""Keep at most one billable subscription per customer."""
import stripe

from app.billing.errors import ProviderCallFailed
from app.billing.plans import CANCELABLE_STATUSES
from app.core.logging import get_logger

logger = get_logger(__name__)


def is_resource_missing(error: Exception) -> bool:
    return isinstance(error, stripe.InvalidRequestError) and error.code == "resource_missing"


def cancel_other_subscriptions(provider, customer_id: str, keep_subscription_id: str) -> list[str]:
    """
    Cancel every other open subscription the customer holds at the provider.

    Subscriptions that are already gone count as canceled. Returns the ids
    this call actually canceled.
    """
    try:
        subscriptions = provider.list_customer_subscriptions(customer_id)
    except stripe.StripeError as e:
        raise ProviderCallFailed(f"Listing subscriptions for {customer_id} failed: {e}") from e

    canceled: list[str] = []
    for subscription in subscriptions:
        subscription_id = subscription.get("id")
        status = subscription.get("status")
        if subscription_id == keep_subscription_id or status == "canceled":
            continue
        if status not in CANCELABLE_STATUSES:
            continue

        try:
            provider.cancel_subscription(subscription_id)
        except stripe.StripeError as e:
            if is_resource_missing(e):
                logger.warning("subscription %s already gone at provider", subscription_id)
                continue
            logger.error("failed to cancel stale subscription %s: %s", subscription_id, e)
            raise ProviderCallFailed(f"Canceling {subscription_id} failed: {e}") from e

        logger.info(
            "canceled stale subscription %s for customer %s (keeping %s)",
            subscription_id,
            customer_id,
            keep_subscription_id,
        )
        canceled.append(subscription_id)
    return canceled
