"""create turns

Revision ID: 0001_create_turns
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_create_turns"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "turns",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("production_id", sa.String(length=64), nullable=False),
        sa.Column(
            "parent_id",
            sa.String(length=36),
            sa.ForeignKey("turns.id", ondelete="CASCADE"),
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("assistant_id", sa.String(length=64)),
        sa.Column("receiving_assistant_id", sa.String(length=64)),
        sa.Column("sending_persona_id", sa.String(length=64)),
        sa.Column("sender_name", sa.Text),
        sa.Column("is_directive", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "content_json",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("role in ('user', 'assistant')", name="ck_turns_role"),
    )
    op.create_index("ix_turns_production_id", "turns", ["production_id"])
    op.create_index("ix_turns_parent_id", "turns", ["parent_id"])
    op.create_index("idx_turns_production_created", "turns", ["production_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_turns_production_created", table_name="turns")
    op.drop_index("ix_turns_parent_id", table_name="turns")
    op.drop_index("ix_turns_production_id", table_name="turns")
    op.drop_table("turns")
