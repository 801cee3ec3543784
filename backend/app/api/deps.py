"""
API dependencies (caller identity, shared DI).

- The frontend forwards the signed-in user's profile id in X-User-Id;
  session handling itself lives in the frontend.
- The billing provider and the cache invalidator are dependencies so tests
  can replace them with app.dependency_overrides.
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.billing.cache import RevalidationClient, get_revalidation_client
from app.billing.provider import StripeBillingProvider, get_stripe_provider
from app.db.models.profile import Profile
from app.db.session import get_db


def get_billing_provider() -> Optional[StripeBillingProvider]:
    """Stripe client, or None when STRIPE_SECRET_KEY is not configured."""
    return get_stripe_provider()


def get_cache_invalidator() -> RevalidationClient:
    return get_revalidation_client()


def get_current_profile(
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Profile:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header required",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    profile = db.get(Profile, user_id)
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return profile
