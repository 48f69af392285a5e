"""create crm opportunity

Revision ID: 202610190003
Revises: 202610190002
Create Date: 2026-10-19 00:03:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190003"
down_revision: str | None = "202610190002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="Discovery"),
        # No foreign key: the pointer survives deletion of the converted lead.
        sa.Column("source_lead_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["owner_user_id"], ["app_user.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_lead_id", name="uq_crm_opportunity_source_lead"),
        sa.CheckConstraint("value >= 0", name="ck_crm_opportunity_value_non_negative"),
    )
    op.create_index(
        "ix_crm_opportunity_owner_stage",
        "crm_opportunity",
        ["owner_user_id", "stage", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_crm_opportunity_owner_stage", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
