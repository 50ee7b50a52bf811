"""Pipeline schema: connections, spend, anomalies, reservations, run locks and contacts.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TIMESTAMP = sa.DateTime(timezone=True)


def upgrade() -> None:
    op.create_table(
        "connections",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("access_key_id", sa.String(128), nullable=False),
        sa.Column("secret_access_key_enc", sa.Text, nullable=False),
        sa.Column("region", sa.String(32), nullable=False, server_default="us-east-1"),
        sa.Column("status", sa.String(16), nullable=False, server_default="connected"),
        sa.Column("last_validated_at", TIMESTAMP, nullable=True),
        sa.Column("last_sync_at", TIMESTAMP, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", TIMESTAMP, nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False),
    )
    op.create_index(
        "ix_connections_status_last_sync", "connections", ["status", "last_sync_at"]
    )

    # Spend: idempotent on (user, day, dimension)
    op.create_table(
        "cost_points",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("day", sa.Date, primary_key=True),
        sa.Column("dimension", sa.String(255), primary_key=True),
        sa.Column("amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("source", sa.String(32), nullable=False, server_default="aws_ce"),
        sa.Column("created_at", TIMESTAMP, nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_cost_points_amount_non_negative"),
    )
    op.create_index("ix_cost_points_user_day", "cost_points", ["user_id", "day"])

    op.create_table(
        "anomalies",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("dimension", sa.String(255), nullable=False),
        sa.Column("observed", sa.Float, nullable=False),
        sa.Column("baseline", sa.Float, nullable=False),
        sa.Column("pct_change", sa.Float, nullable=False),
        sa.Column("z_score", sa.Float, nullable=True),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("insight", sa.JSON().with_variant(JSONB(), "postgresql"), nullable=True),
        sa.Column("insight_status", sa.String(32), nullable=True),
        sa.Column("created_at", TIMESTAMP, nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False),
        sa.UniqueConstraint("user_id", "day", "dimension", name="uq_anomalies_user_day_dimension"),
    )
    op.create_index("ix_anomalies_user_day", "anomalies", ["user_id", "day"])
    op.create_index("ix_anomalies_user_status_day", "anomalies", ["user_id", "status", "day"])

    # At-most-once delivery claims
    op.create_table(
        "notification_reservations",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("kind", sa.String(32), primary_key=True),
        sa.Column("channel", sa.String(16), primary_key=True),
        sa.Column("day", sa.Date, primary_key=True),
        sa.Column("dimension", sa.String(255), primary_key=True),
        sa.Column("destination", sa.String(320), nullable=False),
        sa.Column("severity", sa.String(16), nullable=True),
        sa.Column("state", sa.String(16), nullable=False, server_default="reserved"),
        sa.Column("claim_token", sa.String(64), nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("sent_at", TIMESTAMP, nullable=True),
        sa.Column("created_at", TIMESTAMP, nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False),
    )
    op.create_index(
        "ix_notification_reservations_user_created",
        "notification_reservations",
        ["user_id", "created_at"],
    )

    op.create_table(
        "run_locks",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("holder", sa.String(255), nullable=False),
        sa.Column("expires_at", TIMESTAMP, nullable=False),
        sa.Column("acquired_at", TIMESTAMP, nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False),
    )

    op.create_table(
        "user_contacts",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("instant_message_number", sa.String(32), nullable=True),
        sa.Column(
            "instant_message_enabled", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("instant_message_verified_at", TIMESTAMP, nullable=True),
    )


def downgrade() -> None:
    op.drop_table("user_contacts")
    op.drop_table("run_locks")
    op.drop_index("ix_notification_reservations_user_created", table_name="notification_reservations")
    op.drop_table("notification_reservations")
    op.drop_index("ix_anomalies_user_status_day", table_name="anomalies")
    op.drop_index("ix_anomalies_user_day", table_name="anomalies")
    op.drop_table("anomalies")
    op.drop_index("ix_cost_points_user_day", table_name="cost_points")
    op.drop_table("cost_points")
    op.drop_index("ix_connections_status_last_sync", table_name="connections")
    op.drop_table("connections")
