"""SQLAlchemy declarative base and the UUID primary key mixin."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import MetaData, inspect
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Naming convention for constraints (keeps alembic autogenerate stable)
NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    def to_dict(self) -> dict[str, Any]:
        """Attribute to value mapping, with datetimes as ISO strings.

        Deferred columns that were never loaded are left out.
        """
        state = inspect(self)
        out: dict[str, Any] = {}
        for attr in state.mapper.column_attrs:
            if attr.key in state.unloaded:
                continue
            value = getattr(self, attr.key)
            out[attr.key] = value.isoformat() if isinstance(value, datetime) else value
        return out


class UUIDMixin:
    """Adds a UUID v4 string primary key."""

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )


__all__ = [
    "Base",
    "NAMING_CONVENTION",
    "UUIDMixin",
]
