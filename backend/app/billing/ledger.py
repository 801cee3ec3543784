"""Idempotency ledger for inbound webhook events."""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.db.models.webhook_event import StripeWebhookEvent

logger = get_logger(__name__)


def has_processed(db: Session, event_id: str) -> bool:
    return (
        db.execute(
            select(StripeWebhookEvent.id).where(StripeWebhookEvent.event_id == event_id)
        ).first()
        is not None
    )


def mark_processed(db: Session, event_id: str, event_type: str) -> bool:
    """
    Record the event as fully processed and commit.

    Returns False instead of raising when another delivery of the same
    event recorded it first.
    """
    try:
        with db.begin_nested():
            db.add(StripeWebhookEvent(event_id=event_id, event_type=event_type))
    except IntegrityError:
        logger.info("webhook event %s already recorded by a concurrent delivery", event_id)
        db.commit()
        return False
    db.commit()
    return True
