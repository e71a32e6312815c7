"""Add optimistic version column and stage transition history

Revision ID: 0002_ot_request_versioning
Revises: 0001_initial
Create Date: 2026-09-28 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_ot_request_versioning"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "ot_requests",
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
    )

    op.create_table(
        "ot_request_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("actor_role", sa.String(length=32), nullable=False),
        sa.Column("from_status", sa.String(length=64), nullable=True),
        sa.Column("to_status", sa.String(length=64), nullable=False),
        sa.Column("remarks", sa.String(length=500), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["request_id"], ["ot_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["profiles.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_ot_request_transitions_request_id", "ot_request_transitions", ["request_id"])

    # Seed history with each existing request's current position.
    op.execute(
        sa.text(
            """
            INSERT INTO ot_request_transitions (request_id, action, actor_id, actor_role, from_status, to_status, version)
            SELECT id, 'backfill', NULL, 'system', NULL, status::text, version
            FROM ot_requests
            """
        )
    )


def downgrade() -> None:
    op.drop_index("ix_ot_request_transitions_request_id", table_name="ot_request_transitions")
    op.drop_table("ot_request_transitions")
    op.drop_column("ot_requests", "version")
