"""add expert payout accounts

Revision ID: 8b1f3c6d2e47
Revises: 4e2b7d9a1c05
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8b1f3c6d2e47"
down_revision: Union[str, None] = "4e2b7d9a1c05"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "expert_payout_accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("expert_id", sa.String(length=64), nullable=False),
        sa.Column("stripe_account_id", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_expert_payout_accounts_expert_id"),
        "expert_payout_accounts",
        ["expert_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_expert_payout_accounts_expert_id"), table_name="expert_payout_accounts")
    op.drop_table("expert_payout_accounts")
