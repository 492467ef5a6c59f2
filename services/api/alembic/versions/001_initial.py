"""Initial schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- devices ---
    op.create_table(
        "devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_library_identifier", sa.String(255), nullable=False),
        sa.Column("push_token", sa.String(512), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_devices_device_library_identifier", "devices", ["device_library_identifier"], unique=True)

    # --- passes ---
    op.create_table(
        "passes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("pass_type_identifier", sa.String(255), nullable=False),
        sa.Column("serial_number", sa.String(255), nullable=False),
        sa.Column("authentication_token", sa.LargeBinary, nullable=False, comment="Encrypted per-pass authenticationToken"),
        sa.Column("web_service_url", sa.String(1024), nullable=True),
        sa.Column("template_id", sa.String(255), nullable=True),
        sa.Column("properties", sa.JSON, nullable=False),
        sa.Column("artifact", sa.LargeBinary, nullable=True),
        sa.Column("last_update_tag", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("pass_type_identifier", "serial_number", name="uq_pass_type_serial"),
    )
    op.create_index("ix_passes_pass_type_identifier", "passes", ["pass_type_identifier"])

    # --- registrations ---
    op.create_table(
        "registrations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("device_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("devices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pass_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("passes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("device_id", "pass_id", name="uq_registration_device_pass"),
    )
    op.create_index("ix_registrations_device_id", "registrations", ["device_id"])
    op.create_index("ix_registrations_pass_id", "registrations", ["pass_id"])


def downgrade() -> None:
    op.drop_table("registrations")
    op.drop_table("passes")
    op.drop_table("devices")
