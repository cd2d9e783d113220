"""Goal ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (Index("ix_goals_user_id", "user_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(String(length=128), nullable=False)
    title = Column(Text, nullable=False)
    duration_days = Column(Integer, nullable=False)
    current_day = Column(Integer, nullable=False, default=1)
    # Epoch millis; fixes the calendar date of day 1.
    created_at_ms = Column(BigInteger, nullable=False)
    pending_adjustment = Column(Boolean, nullable=False, default=False, server_default=sa_text("false"))
    last_missed_day = Column(Integer, nullable=True)
    # IANA zone fixed at creation; the day pointer and missed days are judged in it.
    timezone = Column(String(length=64), nullable=False, default="UTC", server_default=sa_text("'UTC'"))
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    day_plans = relationship(
        "DayPlan",
        back_populates="goal",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DayPlan.day_number",
    )

    __mapper_args__ = {"version_id_col": version}
