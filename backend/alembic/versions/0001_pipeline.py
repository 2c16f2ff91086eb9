"""batch pipeline tables

Revision ID: 0001_pipeline
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # BATCHES
    op.create_table(
        "batches",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("provider_batch_id", sa.String(), nullable=True, unique=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicates", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_ts", sa.DateTime(), nullable=False),
        sa.Column("updated_ts", sa.DateTime(), nullable=False),
        sa.Column("submitted_ts", sa.DateTime(), nullable=True),
        sa.Column("completed_ts", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_batches_user_id", "batches", ["user_id"])
    op.create_index("ix_batches_request_id", "batches", ["request_id"])
    op.create_index("ix_batches_status", "batches", ["status"])

    # QUEUE ITEMS
    op.create_table(
        "queue_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contact_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("domain_hash", sa.String(length=32), nullable=True),
        sa.Column("created_ts", sa.DateTime(), nullable=False),
        sa.Column("assigned_ts", sa.DateTime(), nullable=True),
        sa.Column("completed_ts", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_queue_items_contact_id", "queue_items", ["contact_id"])
    op.create_index("ix_queue_items_user_id", "queue_items", ["user_id"])
    op.create_index("ix_queue_items_request_id", "queue_items", ["request_id"])
    op.create_index("ix_queue_items_batch_status", "queue_items", ["batch_id", "status"])

    # CONTACTS
    op.create_table(
        "contacts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("domain", sa.String(), nullable=True),
        sa.Column("latest_status", sa.String(length=32), nullable=True),
        sa.Column("latest_reason", sa.String(), nullable=True),
        sa.Column("latest_score", sa.Integer(), nullable=True),
        sa.Column("latest_batch_id", sa.String(length=32), nullable=True),
        sa.Column("verified_ts", sa.DateTime(), nullable=True),
        sa.Column("created_ts", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_contacts_email", "contacts", ["email"], unique=True)
    op.create_index("ix_contacts_domain", "contacts", ["domain"])

    # VERIFICATION RESULTS
    op.create_table(
        "verification_results",
        sa.Column("batch_id", sa.String(length=32), primary_key=True),
        sa.Column("contact_id", sa.Integer(), primary_key=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("toxic", sa.Boolean(), nullable=True),
        sa.Column("toxicity", sa.Float(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("domain_info", sa.JSON(), nullable=True),
        sa.Column("account_info", sa.JSON(), nullable=True),
        sa.Column("dns_info", sa.JSON(), nullable=True),
        sa.Column("processed_ts", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_verification_results_contact_id", "verification_results", ["contact_id"])

    # RATE LIMIT RECORDS
    op.create_table(
        "rate_limit_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("window_start", sa.DateTime(), nullable=False),
        sa.Column("window_end", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_rate_limit_records_window_start", "rate_limit_records", ["window_start"])
    op.create_index("ix_rate_limit_records_window_end", "rate_limit_records", ["window_end"])

    # DEAD LETTERS
    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_kind", sa.String(length=32), nullable=True),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default="medium"),
        sa.Column("requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("failed_ts", sa.DateTime(), nullable=False),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reviewed_ts", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_dead_letters_batch_id", "dead_letters", ["batch_id"])
    op.create_index("ix_dead_letters_user_id", "dead_letters", ["user_id"])
    op.create_index("ix_dead_letters_failed_ts", "dead_letters", ["failed_ts"])
    op.create_index("ix_dead_letters_reviewed", "dead_letters", ["reviewed"])

    # HEALTH METRICS
    op.create_table(
        "health_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("metric_name", sa.String(length=100), nullable=False),
        sa.Column("metric_value", sa.Float(), nullable=False),
        sa.Column("recorded_ts", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_health_metrics_metric_name", "health_metrics", ["metric_name"])
    op.create_index("ix_health_metrics_recorded_ts", "health_metrics", ["recorded_ts"])


def downgrade():
    op.drop_table("health_metrics")
    op.drop_table("dead_letters")
    op.drop_table("rate_limit_records")
    op.drop_table("verification_results")
    op.drop_table("contacts")
    op.drop_table("queue_items")
    op.drop_table("batches")
