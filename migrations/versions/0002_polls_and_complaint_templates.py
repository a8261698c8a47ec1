"""add polls and complaint templates

Revision ID: 0002_polls_and_templates
Revises: 0001_initial_schema
Create Date: 2026-10-19 15:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_polls_and_templates"
down_revision: Union[str, Sequence[str], None] = "0001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create polls, poll_options, poll_votes and complaint_templates."""
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    if "polls" not in existing_tables:
        op.create_table(
            "polls",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("allow_multiple", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("starts_at", sa.DateTime(), nullable=True),
            sa.Column("ends_at", sa.DateTime(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )

    if "poll_options" not in existing_tables:
        op.create_table(
            "poll_options",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("poll_id", sa.Integer(), sa.ForeignKey("polls.id", ondelete="CASCADE"), nullable=False),
            sa.Column("text", sa.String(255), nullable=False),
            sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        )
        op.create_index("ix_poll_options_poll_id", "poll_options", ["poll_id"])

    if "poll_votes" not in existing_tables:
        op.create_table(
            "poll_votes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("poll_id", sa.Integer(), sa.ForeignKey("polls.id", ondelete="CASCADE"), nullable=False),
            sa.Column("option_id", sa.Integer(), sa.ForeignKey("poll_options.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("option_id", "user_id", name="uq_poll_votes_option_user"),
        )
        op.create_index("ix_poll_votes_poll_id", "poll_votes", ["poll_id"])
        op.create_index("ix_poll_votes_user_id", "poll_votes", ["user_id"])

    if "complaint_templates" not in existing_tables:
        op.create_table(
            "complaint_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False, unique=True),
            sa.Column("title_template", sa.String(200), nullable=False),
            sa.Column("description_template", sa.Text(), nullable=False),
            sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
            sa.Column("default_priority", sa.String(16), nullable=False, server_default="medium"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )


def downgrade() -> None:
    """Drop polls and complaint templates."""
    for table in ("complaint_templates", "poll_votes", "poll_options", "polls"):
        op.drop_table(table)
