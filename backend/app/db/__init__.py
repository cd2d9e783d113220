"""Declarative base plus the goal models registered on it."""

from app.db.base import Base
from app.db import models  # noqa: F401  registers goals and day_plans on Base.metadata

__all__ = ["Base"]
