"""Billing routes: Stripe webhook, checkout, portal and entitlement."""
import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.deps import get_billing_provider, get_cache_invalidator, get_current_profile
from app.billing.errors import BillingMisconfigured
from app.billing.plans import Plan, price_for_plan
from app.billing.propagator import attach_customer, compute_effective_plan
from app.billing.provider import construct_event
from app.billing.reconciler import process_event
from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.profile import Profile
from app.db.session import get_db
from app.schemas.billing import CheckoutIn, EntitlementOut, SessionUrlOut, WebhookAck

logger = get_logger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


def require_provider(provider=Depends(get_billing_provider)):
    if provider is None:
        raise HTTPException(status_code=503, detail="Billing is not configured")
    return provider


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    provider=Depends(get_billing_provider),
    invalidator=Depends(get_cache_invalidator),
):
    secret = settings.webhook_secret
    if provider is None or not secret:
        raise HTTPException(status_code=503, detail="Billing is not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        event = construct_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        # Blocking Stripe and database calls stay off the event loop
        duplicate = await run_in_threadpool(process_event, db, provider, event, invalidator)
    except BillingMisconfigured:
        raise HTTPException(status_code=503, detail="Billing is not configured")
    except Exception:
        db.rollback()
        logger.exception("billing webhook processing failed event=%s type=%s", event["id"], event["type"])
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    return WebhookAck(received=True, duplicate=True if duplicate else None)


@router.post("/checkout", response_model=SessionUrlOut)
def create_checkout_session(
    body: CheckoutIn,
    profile: Profile = Depends(get_current_profile),
    provider=Depends(require_provider),
    db: Session = Depends(get_db),
):
    # Create the Stripe customer on first checkout
    if not profile.stripe_customer_id:
        customer_id = provider.create_customer(
            user_id=str(profile.id),
            username=profile.username,
            email=body.email,
        )
        attach_customer(db, profile.id, customer_id)

    url = provider.create_checkout_session(
        customer_id=profile.stripe_customer_id,
        price_id=price_for_plan(Plan(body.plan.value)),
        user_id=str(profile.id),
        success_url=f"{settings.SITE_URL}/settings/billing?checkout=success",
        cancel_url=f"{settings.SITE_URL}/settings/billing?checkout=cancelled",
    )
    return SessionUrlOut(url=url)


@router.post("/portal", response_model=SessionUrlOut)
def create_portal_session(
    profile: Profile = Depends(get_current_profile),
    provider=Depends(require_provider),
):
    if not profile.stripe_customer_id:
        raise HTTPException(status_code=400, detail="No billing account found")

    url = provider.create_portal_session(
        customer_id=profile.stripe_customer_id,
        return_url=f"{settings.SITE_URL}/settings/billing",
    )
    return SessionUrlOut(url=url)


@router.get("/entitlement", response_model=EntitlementOut)
def get_entitlement(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    compute_effective_plan(db, profile.id)
    db.refresh(profile)
    return EntitlementOut(
        user_id=profile.id,
        username=profile.username,
        plan=profile.plan,
        next_plan=profile.next_plan,
        plan_expires_at=profile.plan_expires_at,
        plan_source=profile.plan_source,
    )
