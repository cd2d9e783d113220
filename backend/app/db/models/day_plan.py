"""Day plan ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.types import JSONList


class DayPlan(Base):
    __tablename__ = "day_plans"
    __table_args__ = (UniqueConstraint("goal_id", "day_number", name="uq_day_plans_goal_day"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    goal_id = Column(UUID(as_uuid=True), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False)
    day_number = Column(Integer, nullable=False)
    # Parallel arrays: task descriptions and their completion flags.
    tasks = Column(JSONList, nullable=False, default=list)
    completed = Column(JSONList, nullable=False, default=list)
    status = Column(String(length=20), nullable=False, default="pending", server_default=sa_text("'pending'"))
    version = Column(Integer, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    goal = relationship("Goal", back_populates="day_plans")

    __mapper_args__ = {"version_id_col": version}
