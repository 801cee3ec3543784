"""Profile database model."""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import TIMESTAMP, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship


from app.db.base import Base


class Profile(Base):
    """Public profile and the plan entitlement the user receives today."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True, index=True)

    # Written only by app.billing.propagator
    plan: Mapped[str] = mapped_column(Text, nullable=False, default="free", server_default="free")
    next_plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan_expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    plan_source: Mapped[str] = mapped_column(Text, nullable=False, default="manual", server_default="manual")

    stripe_customer_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    subscriptions: Mapped[list["Subscription"]] = relationship(
        "Subscription",
        back_populates="profile",
    )
