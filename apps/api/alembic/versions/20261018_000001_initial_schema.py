"""create initial pipeline schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SINGLE_TENANT = "(user_id IS NOT NULL AND org_id IS NULL) OR (user_id IS NULL AND org_id IS NOT NULL)"


def _tenant_columns():
    return [
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("org_id", sa.String(), nullable=True),
    ]


def _tenant_indexes(table: str) -> None:
    op.create_index(op.f(f"ix_{table}_user_id"), table, ["user_id"], unique=False)
    op.create_index(op.f(f"ix_{table}_org_id"), table, ["org_id"], unique=False)


def upgrade() -> None:
    op.create_table(
        "preferences",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("org_id", sa.String(), nullable=True),
        sa.Column("ingestion_schedule", sa.String(), nullable=True),
        sa.Column("ingestion_active", sa.Boolean(), nullable=False),
        sa.Column("trigger_categorization", sa.Boolean(), nullable=False),
        sa.Column("emails", sa.JSON(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("issue_threshold", sa.Integer(), nullable=False),
        sa.Column("volume_threshold_multiplier", sa.Float(), nullable=False),
        sa.Column("sentiment_threshold", sa.Float(), nullable=False),
        sa.Column("comment_growth_threshold", sa.Float(), nullable=False),
        sa.Column("time_window", sa.Integer(), nullable=False),
        sa.Column("last_notified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_preferences_single_tenant"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_preferences_user_id"), "preferences", ["user_id"], unique=True)
    op.create_index(op.f("ix_preferences_org_id"), "preferences", ["org_id"], unique=True)

    op.create_table(
        "watched_channels",
        sa.Column("id", sa.String(), nullable=False),
        *_tenant_columns(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("keywords", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_ingested", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_watched_channels_single_tenant"),
        sa.UniqueConstraint("user_id", "name", name="uq_watched_channels_user_name"),
        sa.UniqueConstraint("org_id", "name", name="uq_watched_channels_org_name"),
        sa.PrimaryKeyConstraint("id"),
    )
    _tenant_indexes("watched_channels")
    op.create_index(op.f("ix_watched_channels_name"), "watched_channels", ["name"], unique=False)
    op.create_index(op.f("ix_watched_channels_is_active"), "watched_channels", ["is_active"], unique=False)

    for table, extra in (("feedback_categories", []), ("product_categories", [sa.Column("versions", sa.JSON(), nullable=False)])):
        op.create_table(
            table,
            sa.Column("id", sa.String(), nullable=False),
            *_tenant_columns(),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("keywords", sa.JSON(), nullable=False),
            *extra,
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint(SINGLE_TENANT, name=f"ck_{table}_single_tenant"),
            sa.UniqueConstraint("user_id", "name", name=f"uq_{table}_user_name"),
            sa.UniqueConstraint("org_id", "name", name=f"uq_{table}_org_name"),
            sa.PrimaryKeyConstraint("id"),
        )
        _tenant_indexes(table)

    op.create_table(
        "content_items",
        sa.Column("id", sa.String(), nullable=False),
        *_tenant_columns(),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("author", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("permalink", sa.String(), nullable=True),
        sa.Column("thumbnail", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("created_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("num_comments", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needs_processing", sa.Boolean(), nullable=False),
        sa.Column("processing_priority", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("product", sa.String(), nullable=True),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("sentiment_category", sa.String(), nullable=True),
        sa.Column("same_issues_count", sa.Integer(), nullable=False),
        sa.Column("same_device_count", sa.Integer(), nullable=False),
        sa.Column("solutions_count", sa.Integer(), nullable=False),
        sa.Column("update_issue_mention", sa.Boolean(), nullable=False),
        sa.Column("update_resolved_mention", sa.Boolean(), nullable=False),
        sa.Column("added_to_bucket_by_ai", sa.Boolean(), nullable=False),
        sa.Column("classified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_content_items_single_tenant"),
        sa.PrimaryKeyConstraint("id"),
    )
    _tenant_indexes("content_items")
    for column in ("channel", "created_utc", "category", "product", "sentiment_category"):
        op.create_index(op.f(f"ix_content_items_{column}"), "content_items", [column], unique=False)
    op.create_index(
        "ix_content_items_pending",
        "content_items",
        ["needs_processing", "processing_priority", "created_utc"],
        unique=False,
    )

    op.create_table(
        "replies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("content_item_id", sa.String(), nullable=False),
        sa.Column("parent_reply_id", sa.String(), nullable=True),
        sa.Column("author", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["content_item_id"], ["content_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_reply_id"], ["replies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_replies_content_item_id"), "replies", ["content_item_id"], unique=False)
    op.create_index(op.f("ix_replies_parent_reply_id"), "replies", ["parent_reply_id"], unique=False)

    op.create_table(
        "buckets",
        sa.Column("id", sa.String(), nullable=False),
        *_tenant_columns(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_buckets_single_tenant"),
        sa.UniqueConstraint("user_id", "name", name="uq_buckets_user_name"),
        sa.UniqueConstraint("org_id", "name", name="uq_buckets_org_name"),
        sa.PrimaryKeyConstraint("id"),
    )
    _tenant_indexes("buckets")

    op.create_table(
        "bucket_items",
        sa.Column("bucket_id", sa.String(), nullable=False),
        sa.Column("content_item_id", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("added_by_ai", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["bucket_id"], ["buckets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["content_item_id"], ["content_items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("bucket_id", "content_item_id"),
    )

    op.create_table(
        "window_metrics_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        *_tenant_columns(),
        sa.Column("window_label", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_posts", sa.Integer(), nullable=False),
        sa.Column("total_comments", sa.Integer(), nullable=False),
        sa.Column("total_upvotes", sa.Integer(), nullable=False),
        sa.Column("engagement_score", sa.Float(), nullable=False),
        sa.Column("sentiment_distribution", sa.JSON(), nullable=False),
        sa.Column("category_trends", sa.JSON(), nullable=False),
        sa.Column("top_trending_posts", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_window_metrics_snapshots_single_tenant"),
        sa.PrimaryKeyConstraint("id"),
    )
    _tenant_indexes("window_metrics_snapshots")
    op.create_index(op.f("ix_window_metrics_snapshots_created_at"), "window_metrics_snapshots", ["created_at"], unique=False)

    op.create_table(
        "notification_records",
        sa.Column("id", sa.String(), nullable=False),
        *_tenant_columns(),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("categories", sa.JSON(), nullable=False),
        sa.Column("content_item_ids", sa.JSON(), nullable=False),
        sa.Column("issue_count", sa.Integer(), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint(SINGLE_TENANT, name="ck_notification_records_single_tenant"),
        sa.PrimaryKeyConstraint("id"),
    )
    _tenant_indexes("notification_records")
    op.create_index(op.f("ix_notification_records_sent_at"), "notification_records", ["sent_at"], unique=False)

    op.create_table(
        "job_schedules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_class", sa.String(), nullable=False),
        sa.Column("tenant_kind", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("cron", sa.String(), nullable=True),
        sa.Column("interval_minutes", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("job_class", "tenant_kind", "tenant_id", name="uq_job_schedules_key"),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("job_class", "tenant_id", "is_active", "next_run_at"):
        op.create_index(op.f(f"ix_job_schedules_{column}"), "job_schedules", [column], unique=False)

    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_class", sa.String(), nullable=False),
        sa.Column("tenant_kind", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_summary", sa.Text(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("job_class", "tenant_id", "status", "created_at"):
        op.create_index(op.f(f"ix_job_runs_{column}"), "job_runs", [column], unique=False)


def downgrade() -> None:
    op.drop_table("job_runs")
    op.drop_table("job_schedules")
    op.drop_table("notification_records")
    op.drop_table("window_metrics_snapshots")
    op.drop_table("bucket_items")
    op.drop_table("buckets")
    op.drop_table("replies")
    op.drop_table("content_items")
    op.drop_table("product_categories")
    op.drop_table("feedback_categories")
    op.drop_table("watched_channels")
    op.drop_table("preferences")
