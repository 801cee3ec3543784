"""Billing error taxonomy."""


class BillingError(Exception):
    """Base class for reconciliation failures."""


class BillingMisconfigured(BillingError):
    """Provider credentials or webhook secret are absent."""


class UnresolvableUser(BillingError):
    """The event cannot be mapped to a local profile; the event is skipped."""


class ProviderCallFailed(BillingError):
    """A call to the payment provider failed for a reason other than a missing resource."""
