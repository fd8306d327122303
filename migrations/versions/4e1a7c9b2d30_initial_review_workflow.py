"""initial review workflow schema

Revision ID: 4e1a7c9b2d30
Revises:
Create Date: 2026-10-18 09:12:41.208113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4e1a7c9b2d30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create directory, audit, document/version/feedback and notification tables."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())
    # SQLite cannot ALTER in a constraint; it accepts a forward reference instead.
    inline_fk = conn.dialect.name == "sqlite"

    if "departments" not in existing_tables:
        approver_fk = []
        if inline_fk:
            approver_fk.append(
                sa.ForeignKeyConstraint(
                    ["approver_id"], ["users.id"], name="fk_departments_approver_id", ondelete="SET NULL"
                )
            )
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("code", sa.String(32), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("approver_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            *approver_fk,
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
            sa.Column("role", sa.String(32), nullable=False, server_default="pending"),
            sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "departments" not in existing_tables and not inline_fk:
        op.create_foreign_key(
            "fk_departments_approver_id", "departments", "users", ["approver_id"], ["id"], ondelete="SET NULL"
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("department_id", sa.Integer(), sa.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("state", sa.String(32), nullable=False, server_default="DRAFT"),
            sa.Column("current_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("submitted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_documents_state_department", "documents", ["state", "department_id"])
        op.create_index("idx_documents_owner", "documents", ["owner_id"])

    if "document_versions" not in existing_tables:
        op.create_table(
            "document_versions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("content_locator", sa.String(512), nullable=False),
            sa.Column("key_handle", sa.String(512), nullable=False),
            sa.Column("filename", sa.String(255), nullable=True),
            sa.Column("content_type", sa.String(128), nullable=True),
            sa.Column("size_bytes", sa.Integer(), nullable=True),
            sa.Column("sha256", sa.String(64), nullable=True),
            sa.Column("description", sa.String(512), nullable=False, server_default=""),
            sa.Column("uploaded_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
        )

    if "feedback" not in existing_tables:
        op.create_table(
            "feedback",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("document_id", sa.Integer(), sa.ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("reviewer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("reviewer_role", sa.String(32), nullable=False),
            sa.Column("action", sa.String(16), nullable=False),
            sa.Column("comments", sa.Text(), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_feedback_document", "feedback", ["document_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("type", sa.String(32), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(255), nullable=False, server_default=""),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(512), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_notifications_recipient_read", "notifications", ["recipient_id", "read"])
        op.create_index("idx_notifications_delivery_status", "notifications", ["delivery_status"])


def downgrade() -> None:
    op.drop_index("idx_notifications_delivery_status", table_name="notifications")
    op.drop_index("idx_notifications_recipient_read", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_feedback_document", table_name="feedback")
    op.drop_table("feedback")
    op.drop_table("document_versions")
    op.drop_index("idx_documents_owner", table_name="documents")
    op.drop_index("idx_documents_state_department", table_name="documents")
    op.drop_table("documents")
    op.drop_table("audit_events")
    if op.get_bind().dialect.name != "sqlite":
        op.drop_constraint("fk_departments_approver_id", "departments", type_="foreignkey")
    op.drop_table("users")
    op.drop_table("departments")
