"""profiles and webhook_events

Revision ID: 3c9d0e51a7b2
Revises:
Create Date: 2025-10-02 18:12:07.418220+00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3c9d0e51a7b2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Text(), primary_key=True),  # Supabase user id
        sa.Column("email", sa.Text()),
        sa.Column("name", sa.Text()),
        sa.Column(
            "subscription_status",
            sa.Text(),
            nullable=False,
            server_default="none",
        ),  # none | trialing | active | on_hold | cancelled | ...
        sa.Column("is_trialing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_ends_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("has_ever_trialed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("subscribed_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("last_payment_at", sa.TIMESTAMP(timezone=True)),
        sa.Column("payment_status", sa.Text()),  # succeeded | failed
        sa.Column("dodopayments_customer_id", sa.Text()),  # set once at first checkout
        sa.Column("dodopayments_subscription_id", sa.Text()),
        sa.Column("dodopayments_last_payment_id", sa.Text()),
        sa.Column("chosen_category_id", sa.Text()),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index(
        "idx_profiles_status_trial", "profiles", ["subscription_status", "trial_ends_at"]
    )
    op.create_index("idx_profiles_customer", "profiles", ["dodopayments_customer_id"])

    op.create_table(
        "webhook_events",
        sa.Column("webhook_id", sa.Text(), primary_key=True),  # `webhook-id` header
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("object_id", sa.Text()),  # subscription_id | payment_id
        sa.Column("result", sa.Text()),  # applied | skipped | stale
        sa.Column("processed_at", sa.Text(), nullable=False),
    )
    op.create_index("idx_webhook_events_object", "webhook_events", ["object_id"])


def downgrade() -> None:
    op.drop_index("idx_webhook_events_object", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("idx_profiles_customer", table_name="profiles")
    op.drop_index("idx_profiles_status_trial", table_name="profiles")
    op.drop_table("profiles")
