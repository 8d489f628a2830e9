"""Initial schema: users, organizations, contacts, activities, sync_history.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("email", sa.String(320), unique=True, nullable=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("pipedrive_api_key", sa.String(200), nullable=True),
        sa.Column("pipedrive_user_id", sa.Integer(), nullable=True),
        sa.Column("last_sync_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(20), server_default=sa.text("'IDLE'"), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "organizations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("normalized_name", sa.String(300), nullable=False),
        sa.Column("pipedrive_org_id", sa.String(50), unique=True, nullable=True),
        sa.Column("industry", sa.String(100), nullable=True),
        sa.Column("size", sa.String(50), nullable=True),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("contact_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organizations_normalized_name", "organizations", ["normalized_name"])

    op.create_table(
        "contacts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("organisation", sa.String(300), nullable=True),
        sa.Column("warmness_score", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_contacted", sa.DateTime(timezone=True), nullable=True),
        sa.Column("added_to_campaign", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("pipedrive_person_id", sa.String(50), nullable=True),
        sa.Column("pipedrive_org_id", sa.String(50), nullable=True),
        sa.Column(
            "organization_id",
            UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_pipedrive_update", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_contacts_user_person", "contacts", ["user_id", "pipedrive_person_id"])
    op.create_index("ix_contacts_organization", "contacts", ["organization_id"])

    op.create_table(
        "activities",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "contact_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("subject", sa.String(300), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activities_contact_id", "activities", ["contact_id"])

    op.create_table(
        "sync_history",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'PENDING'"), nullable=False),
        sa.Column("contacts_total", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("contacts_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_sync_history_user_status_end", "sync_history", ["user_id", "status", "end_time"]
    )


def downgrade() -> None:
    op.drop_index("ix_sync_history_user_status_end", table_name="sync_history")
    op.drop_table("sync_history")
    op.drop_index("ix_activities_contact_id", table_name="activities")
    op.drop_table("activities")
    op.drop_index("ix_contacts_organization", table_name="contacts")
    op.drop_index("ix_contacts_user_person", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_organizations_normalized_name", table_name="organizations")
    op.drop_table("organizations")
    op.drop_table("users")
