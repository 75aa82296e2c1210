"""device registry

Revision ID: 0001_device_registry
Revises: 
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_device_registry"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "device_tokens",
        sa.Column("token", sa.String(), primary_key=True),
        sa.Column("platform", sa.String(), nullable=False, server_default="ios"),
        sa.Column("locale", sa.String(), nullable=False, server_default="en"),
        sa.Column(
            "last_active_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_device_tokens_locale", "device_tokens", ["locale"], unique=False)

    # One row per (device, tag); the tag index serves the OR-match broadcast query.
    op.create_table(
        "device_tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "token",
            sa.String(),
            sa.ForeignKey("device_tokens.token", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tag", sa.String(), nullable=False),
        sa.UniqueConstraint("token", "tag", name="uq_device_tags_token_tag"),
    )
    op.create_index("ix_device_tags_tag", "device_tags", ["tag"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_device_tags_tag", table_name="device_tags")
    op.drop_table("device_tags")
    op.drop_index("ix_device_tokens_locale", table_name="device_tokens")
    op.drop_table("device_tokens")
