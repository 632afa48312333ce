"""Create the helpdesk sync schema: tenancy, integration bookkeeping, canonical entities.

Revision ID: a1c3e5f7b9d2
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(length=36), nullable=False)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _workspace_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE")


def _integration_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["integration_id"], ["integrations.id"], ondelete="CASCADE")


def _workspace_scoped(table: str, *columns, index_workspace: bool = True, constraints=()) -> None:
    op.create_table(
        table,
        _id(),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        *columns,
        _workspace_fk(),
        *constraints,
        sa.PrimaryKeyConstraint("id"),
    )
    if index_workspace:
        op.create_index(f"ix_{table}_workspace_id", table, ["workspace_id"], unique=False)


def upgrade() -> None:
    # --- tenancy ---
    op.create_table(
        "tenants",
        _id(),
        sa.Column("name", sa.String(length=200), nullable=False),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "workspaces",
        _id(),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_workspace_tenant_name"),
    )
    op.create_index("ix_workspaces_tenant_id", "workspaces", ["tenant_id"], unique=False)

    # --- integration bookkeeping ---
    op.create_table(
        "integrations",
        _id(),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        _ts("last_sync_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _workspace_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "provider", name="uq_integration_workspace_provider"),
    )
    op.create_index("ix_integrations_workspace_id", "integrations", ["workspace_id"], unique=False)

    op.create_table(
        "sync_cursors",
        _id(),
        sa.Column("integration_id", sa.String(length=36), nullable=False),
        sa.Column("object_type", sa.String(length=80), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=False),
        _ts("updated_at"),
        _integration_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("integration_id", "object_type", name="uq_sync_cursor_integration_type"),
    )
    op.create_table(
        "external_objects",
        _id(),
        sa.Column("integration_id", sa.String(length=36), nullable=False),
        sa.Column("object_type", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("internal_id", sa.String(length=36), nullable=False),
        sa.Column("checksum", sa.String(length=128), nullable=True),
        _ts("last_seen_at"),
        _integration_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "integration_id",
            "object_type",
            "external_id",
            name="uq_external_object_integration_type_external",
        ),
    )
    op.create_index(
        "ix_external_objects_internal",
        "external_objects",
        ["integration_id", "object_type", "internal_id"],
        unique=False,
    )
    op.create_table(
        "raw_records",
        _id(),
        sa.Column("integration_id", sa.String(length=36), nullable=False),
        sa.Column("object_type", sa.String(length=40), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _ts("received_at"),
        _integration_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "integration_id",
            "object_type",
            "external_id",
            name="uq_raw_record_integration_type_external",
        ),
    )
    op.create_table(
        "sync_runs",
        _id(),
        sa.Column("integration_id", sa.String(length=36), nullable=False),
        sa.Column("run_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        _ts("started_at"),
        _ts("finished_at", nullable=True),
        sa.Column("counts", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _integration_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_runs_integration_started", "sync_runs", ["integration_id", "started_at"], unique=False)

    # --- directory entities ---
    _workspace_scoped(
        "groups",
        sa.Column("name", sa.String(length=200), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "organizations",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("domains", sa.JSON(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "customers",
        sa.Column("org_id", sa.String(length=36), nullable=True),
        sa.Column("external_ref", sa.String(length=200), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        constraints=(sa.ForeignKeyConstraint(["org_id"], ["organizations.id"], ondelete="SET NULL"),),
    )
    _workspace_scoped(
        "users",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "brands",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("raw", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "ticket_forms",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("field_ids", sa.JSON(), nullable=False),
        sa.Column("raw", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "custom_fields",
        sa.Column("object_type", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("field_type", sa.String(length=40), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("required", sa.Boolean(), nullable=False),
        _ts("created_at"),
    )
    _workspace_scoped(
        "views",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("query", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        _ts("created_at"),
    )
    _workspace_scoped(
        "sla_policies",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("targets", sa.JSON(), nullable=True),
        sa.Column("schedules", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    _workspace_scoped(
        "tags",
        sa.Column("name", sa.String(length=200), nullable=False),
        index_workspace=False,
        constraints=(sa.UniqueConstraint("workspace_id", "name", name="uq_tag_workspace_name"),),
    )

    # --- tickets and conversations ---
    _workspace_scoped(
        "tickets",
        sa.Column("requester_id", sa.String(length=36), nullable=True),
        sa.Column("assignee_id", sa.String(length=36), nullable=True),
        sa.Column("group_id", sa.String(length=36), nullable=True),
        sa.Column("brand_id", sa.String(length=36), nullable=True),
        sa.Column("ticket_form_id", sa.String(length=36), nullable=True),
        sa.Column("subject", sa.String(length=500), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("priority", sa.String(length=32), nullable=True),
        sa.Column("source", sa.String(length=40), nullable=True),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        index_workspace=False,
        constraints=(
            sa.ForeignKeyConstraint(["requester_id"], ["customers.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["assignee_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["brand_id"], ["brands.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["ticket_form_id"], ["ticket_forms.id"], ondelete="SET NULL"),
        ),
    )
    op.create_index("ix_tickets_workspace_updated", "tickets", ["workspace_id", "updated_at"], unique=False)

    op.create_table(
        "ticket_tags",
        sa.Column("ticket_id", sa.String(length=36), nullable=False),
        sa.Column("tag_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("ticket_id", "tag_id"),
    )
    op.create_table(
        "conversations",
        _id(),
        sa.Column("ticket_id", sa.String(length=36), nullable=False),
        sa.Column("channel_type", sa.String(length=32), nullable=False),
        _ts("started_at", nullable=True),
        _ts("last_activity_at", nullable=True),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ticket_id"),
    )
    op.create_table(
        "messages",
        _id(),
        sa.Column("conversation_id", sa.String(length=36), nullable=False),
        sa.Column("author_type", sa.String(length=16), nullable=False),
        sa.Column("author_id", sa.String(length=36), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("visibility", sa.String(length=16), nullable=False),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"], unique=False)
    op.create_table(
        "attachments",
        _id(),
        sa.Column("message_id", sa.String(length=36), nullable=False),
        sa.Column("filename", sa.String(length=500), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("storage_key", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_attachments_message_id", "attachments", ["message_id"], unique=False)

    # --- ticket satellites ---
    _workspace_scoped(
        "audit_events",
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=120), nullable=False),
        sa.Column("object_type", sa.String(length=40), nullable=False),
        sa.Column("object_id", sa.String(length=36), nullable=True),
        sa.Column("diff", sa.JSON(), nullable=True),
        _ts("created_at"),
    )
    op.create_table(
        "csat_ratings",
        _id(),
        sa.Column("ticket_id", sa.String(length=36), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_csat_ratings_ticket_id", "csat_ratings", ["ticket_id"], unique=False)
    op.create_table(
        "time_entries",
        _id(),
        sa.Column("ticket_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("minutes", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_time_entries_ticket_id", "time_entries", ["ticket_id"], unique=False)

    # --- knowledge base and automation ---
    _workspace_scoped(
        "kb_articles",
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("category_path", sa.JSON(), nullable=True),
        sa.Column("source", sa.String(length=40), nullable=True),
        _ts("updated_at"),
    )
    _workspace_scoped(
        "rules",
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=True),
        sa.Column("actions", sa.JSON(), nullable=True),
        sa.Column("source", sa.String(length=40), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    )


def downgrade() -> None:
    for table in (
        "rules",
        "kb_articles",
        "time_entries",
        "csat_ratings",
        "audit_events",
        "attachments",
        "messages",
        "conversations",
        "ticket_tags",
        "tickets",
        "tags",
        "sla_policies",
        "views",
        "custom_fields",
        "ticket_forms",
        "brands",
        "users",
        "customers",
        "organizations",
        "groups",
        "sync_runs",
        "raw_records",
        "external_objects",
        "sync_cursors",
        "integrations",
        "workspaces",
        "tenants",
    ):
        op.drop_table(table)
