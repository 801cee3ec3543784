"""Stripe client wrapper handed to the reconciliation pipeline."""
from collections.abc import Mapping
from typing import Any

import stripe

from app.billing.errors import BillingMisconfigured
from app.core.config import settings

# Everything plan resolution reads must arrive expanded in a single fetch
SUBSCRIPTION_EXPAND = [
    "items.data.price.product",
    "items.data.plan",
    "pending_update.subscription_items",
    "schedule.phases.items.price",
]


class StripeBillingProvider:
    """
    Thin, explicit Stripe client.

    Holds its own api key and passes it on every call instead of relying on
    the module-level stripe.api_key, so several keys can coexist in one
    process and tests can substitute the whole object.
    """

    name = "stripe"

    def __init__(self, api_key: str):
        if not api_key:
            raise BillingMisconfigured("STRIPE_SECRET_KEY is not configured")
        self.api_key = api_key

    def retrieve_subscription(self, subscription_id: str) -> Mapping:
        return to_plain(
            stripe.Subscription.retrieve(
                subscription_id,
                expand=SUBSCRIPTION_EXPAND,
                api_key=self.api_key,
            )
        )

    def list_customer_subscriptions(self, customer_id: str) -> list[Mapping]:
        page = stripe.Subscription.list(
            customer=customer_id,
            status="all",
            limit=100,
            api_key=self.api_key,
        )
        return [to_plain(subscription) for subscription in page.auto_paging_iter()]

    def cancel_subscription(self, subscription_id: str) -> Mapping:
        return stripe.Subscription.cancel(subscription_id, api_key=self.api_key)

    def create_customer(self, *, user_id: str, username: str, email: str | None = None) -> str:
        params = {"name": username, "metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = stripe.Customer.create(api_key=self.api_key, **params)
        return customer.id

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": user_id},
            subscription_data={"metadata": {"user_id": user_id}},
            api_key=self.api_key,
        )
        return session.url

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
            api_key=self.api_key,
        )
        return session.url


def to_plain(obj: Any) -> Any:
    """Recursive plain-dict copy of a Stripe object; plain mappings pass through."""
    if obj is None or isinstance(obj, dict):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        to_dict = getattr(obj, attr, None)
        if callable(to_dict):
            return to_dict()
    return obj


def construct_event(payload: bytes, sig_header: str, secret: str) -> dict:
    """Verify the signature and parse the event; raises on any mismatch."""
    return to_plain(stripe.Webhook.construct_event(payload, sig_header, secret))


def get_stripe_provider() -> StripeBillingProvider | None:
    if not settings.STRIPE_SECRET_KEY:
        return None
    return StripeBillingProvider(settings.STRIPE_SECRET_KEY)
