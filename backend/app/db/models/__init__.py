"""ORM models exposed for metadata discovery."""
from app.db.models.day_plan import DayPlan
from app.db.models.goal import Goal

__all__ = [
    "DayPlan",
    "Goal",
]
