"""profiles.next_billing_at

Revision ID: 8f41b2c6d930
Revises: 3c9d0e51a7b2
Create Date: 2025-10-14 09:31:52.604117+00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "8f41b2c6d930"
down_revision = "3c9d0e51a7b2"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Provider next_billing_date, refreshed on activation and renewal
    with op.batch_alter_table("profiles") as batch:
        batch.add_column(sa.Column("next_billing_at", sa.TIMESTAMP(timezone=True)))
    op.create_index(
        "idx_profiles_status_billing", "profiles", ["subscription_status", "next_billing_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_profiles_status_billing", table_name="profiles")
    with op.batch_alter_table("profiles") as batch:
        batch.drop_column("next_billing_at")
