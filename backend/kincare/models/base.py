"""Declarative base and shared column mixins."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, func, inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


def model_to_dict(instance: Base) -> dict[str, Any]:
    """Column values of a mapped instance keyed by attribute name.

    Works for transient instances as well, which is what the in-memory
    stores hold.
    """
    mapper = inspect(type(instance))
    values: dict[str, Any] = {}
    for attr in mapper.column_attrs:
        value = getattr(instance, attr.key, None)
        if isinstance(value, list):
            value = list(value)
        values[attr.key] = value
    return values


def clone_model(instance: Base):
    """Detached copy of a mapped instance carrying only column values."""
    return type(instance)(**model_to_dict(instance))
