"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID) in a base class
ensures consistency across all models and reduces code duplication.
"""

import enum
from datetime import datetime, timezone
from typing import Optional, Type

from sqlalchemy import Column, Integer, DateTime, Enum
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    WHY: Every timestamp column is a naive DateTime holding UTC. Producing
    them from one helper keeps comparisons between stored and computed
    values free of mixed-awareness errors.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """Convert a gateway Unix timestamp to naive UTC, passing None through."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    WHY: Subscription rows are kept forever for audit; knowing when each row
    was written is part of that trail.
    """

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.

    WHY: Most models use an auto-incrementing integer primary key.
    This mixin ensures consistency and reduces boilerplate.
    """

    id = Column(Integer, primary_key=True, index=True)


def enum_type(enum_cls: Type[enum.Enum], name: str) -> Enum:
    """
    Database enum type that stores member values rather than member names.

    WHY: Status strings are shared with the payment processor ("past_due",
    "incomplete_expired"); storing the value keeps the column readable and
    lets migrations declare the same literals.
    """
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )
