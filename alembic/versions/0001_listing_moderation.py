from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_listing_moderation"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb(default: str):
    return dict(
        type_=postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text(f"'{default}'::jsonb"),
    )


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def upgrade():
    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=80), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),

        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("location", **_jsonb("{}")),
        sa.Column("boat_details", **_jsonb("{}")),
        sa.Column("images", **_jsonb("[]")),
        sa.Column("features", **_jsonb("[]")),

        sa.Column("moderation_workflow", **_jsonb("{}")),
        sa.Column("pending_update", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("price_history", **_jsonb("[]")),
        sa.Column("moderation_history", **_jsonb("[]")),
        sa.Column("flags", **_jsonb("[]")),

        sa.Column("version", sa.Integer(), nullable=False),
        *_audit_columns(),

        sa.UniqueConstraint("slug", name="uq_listings_slug"),
    )
    op.create_index("ix_listings_owner_status", "listings", ["owner_id", "status"])
    op.create_index("ix_listings_status_updated_at", "listings", ["status", "updated_at"])

    op.create_table(
        "moderation_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("submitted_by", sa.String(length=120), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="standard"),
        sa.Column("priority_rank", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("submission_type", sa.String(length=20), nullable=False, server_default="initial"),
        sa.Column("assigned_to", sa.String(length=120), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution", sa.String(length=40), nullable=True),
        sa.Column("escalated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("escalation_reason", sa.Text(), nullable=True),
        sa.Column("flags", **_jsonb("[]")),
        *_audit_columns(),
    )
    op.create_index("ix_moderation_queue_status_priority", "moderation_queue", ["status", "priority_rank", "submitted_at"])
    op.create_index("ix_moderation_queue_assigned_to", "moderation_queue", ["assigned_to", "status"])
    op.create_index("ix_moderation_queue_listing", "moderation_queue", ["listing_id", "status"])

    op.create_table(
        "slug_redirects",
        sa.Column("old_slug", sa.String(length=80), primary_key=True),
        sa.Column("new_slug", sa.String(length=80), nullable=False),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_slug_redirects_new_slug", "slug_redirects", ["new_slug"])

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=200), nullable=False),
        sa.Column("payload", **_jsonb("{}")),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("lease_id", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
    )
    op.create_index("ix_outbox_status_created", "outbox", ["status", "created_at"])
    op.create_index("ix_outbox_lease_expires", "outbox", ["status", "lease_expires_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("actor_id", sa.String(length=120), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("target_type", sa.String(length=120), nullable=True),
        sa.Column("target_id", sa.String(length=200), nullable=True),
        sa.Column("detail", **_jsonb("{}")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_logs_target", "audit_logs", ["target_type", "target_id"])
    op.create_index("ix_audit_logs_actor", "audit_logs", ["actor_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("actor_id", sa.String(length=120), nullable=False),
        sa.Column("key", sa.String(length=200), nullable=False),
        sa.Column("request_hash", sa.String(length=80), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="in_progress"),
        sa.Column("listing_id", sa.String(), nullable=True),
        sa.Column("response", **_jsonb("{}")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("actor_id", "key", name="uq_idempotency_actor_key"),
    )


def downgrade():
    op.drop_table("idempotency_keys")
    op.drop_index("ix_audit_logs_actor", table_name="audit_logs")
    op.drop_index("ix_audit_logs_target", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_outbox_lease_expires", table_name="outbox")
    op.drop_index("ix_outbox_status_created", table_name="outbox")
    op.drop_table("outbox")
    op.drop_index("ix_slug_redirects_new_slug", table_name="slug_redirects")
    op.drop_table("slug_redirects")
    op.drop_index("ix_moderation_queue_listing", table_name="moderation_queue")
    op.drop_index("ix_moderation_queue_assigned_to", table_name="moderation_queue")
    op.drop_index("ix_moderation_queue_status_priority", table_name="moderation_queue")
    op.drop_table("moderation_queue")
    op.drop_index("ix_listings_status_updated_at", table_name="listings")
    op.drop_index("ix_listings_owner_status", table_name="listings")
    op.drop_table("listings")
