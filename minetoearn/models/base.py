"""
Declarative base and shared mixins for all models.
"""

from datetime import date, datetime
from typing import Any, Dict

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from minetoearn.utils.timeutils import utc_now


class Base(DeclarativeBase):
    """SQLAlchemy declarative base holding the shared metadata."""


class BaseModel(Base):
    """Abstract base for every table model."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute name, dates as ISO strings."""
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, date):
                value = value.isoformat()
            data[column.key] = value
        return data


class TimestampMixin:
    """Adds created_at / updated_at columns maintained by the ORM."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        nullable=False,
        comment="Row creation time (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        comment="Last modification time (UTC)"
    )
