"""Pydantic schemas for billing endpoints."""
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr


class PaidPlan(str, Enum):
    """Tiers that can be bought through checkout."""

    plus = "plus"
    pro = "pro"


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None


class CheckoutIn(BaseModel):
    """Schema for starting a checkout session."""

    plan: PaidPlan
    # Stored on the Stripe customer the first time one is created
    email: Optional[EmailStr] = None


class SessionUrlOut(BaseModel):
    url: str


class EntitlementOut(BaseModel):
    """Plan the user receives today and any change queued behind it."""

    user_id: UUID
    username: str
    plan: str
    next_plan: Optional[str] = None
    plan_expires_at: Optional[datetime] = None
    plan_source: str

    model_config = {"from_attributes": True}
