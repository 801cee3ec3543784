"""Database base classes and models."""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


# Import models so Alembic can autogenerate migrations
import app.db.models.profile  # noqa: F401
import app.db.models.subscription  # noqa: F401
import app.db.models.webhook_event  # noqa: F401
