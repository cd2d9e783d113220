"""Pin each goal to the timezone its days are counted in."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610200900"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "goals",
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default=sa.text("'UTC'")),
    )


def downgrade() -> None:
    op.drop_column("goals", "timezone")
