"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    key_status = sa.Enum("PENDING", "ACTIVE", "EXPIRED", "DEPLETED", "DISABLED", name="keystatus")
    expiration_type = sa.Enum(
        "NEVER", "FIXED_DATE", "DURATION_FROM_CREATION", "START_ON_FIRST_USE", name="expirationtype"
    )
    reset_strategy = sa.Enum("NEVER", "DAILY", "WEEKLY", "MONTHLY", name="datalimitresetstrategy")
    archive_reason = sa.Enum("EXPIRED", "DEPLETED", "DELETED", "DISABLED", name="archivereason")

    op.create_table(
        "servers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("location", sa.String(length=100), nullable=True),
        sa.Column("country_code", sa.String(length=2), nullable=True),
        sa.Column("api_url", sa.String(length=500), nullable=False, unique=True),
        sa.Column("api_cert_sha256", sa.String(length=95), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metrics_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remote_server_id", sa.String(length=100), nullable=True),
        sa.Column("remote_version", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_servers_id", "servers", ["id"])
    op.create_index("ix_servers_name", "servers", ["name"])
    op.create_index("ix_servers_is_active", "servers", ["is_active"])

    op.create_table(
        "access_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("server_id", sa.Integer(), sa.ForeignKey("servers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("remote_key_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("access_url", sa.Text(), nullable=True),
        sa.Column("method", sa.String(length=50), nullable=True),
        sa.Column("status", key_status, nullable=False, server_default="ACTIVE"),
        sa.Column("used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("usage_offset", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("data_limit_bytes", sa.BigInteger(), nullable=True),
        sa.Column("data_limit_reset_strategy", reset_strategy, nullable=False, server_default="NEVER"),
        sa.Column("last_data_limit_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expiration_type", expiration_type, nullable=False, server_default="NEVER"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_days", sa.Integer(), nullable=True),
        sa.Column("first_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_devices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("peak_devices", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_remote_key_id", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("server_id", "remote_key_id", name="uq_access_keys_server_remote_key"),
    )
    op.create_index("ix_access_keys_id", "access_keys", ["id"])
    op.create_index("ix_access_keys_server_id", "access_keys", ["server_id"])
    op.create_index("ix_access_keys_name", "access_keys", ["name"])
    op.create_index("ix_access_keys_status", "access_keys", ["status"])
    op.create_index("ix_access_keys_expires_at", "access_keys", ["expires_at"])

    op.create_table(
        "connection_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "access_key_id", sa.Integer(), sa.ForeignKey("access_keys.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_active_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("bytes_used", sa.BigInteger(), nullable=False, server_default="0"),
    )
    op.create_index("ix_connection_sessions_id", "connection_sessions", ["id"])
    op.create_index("ix_connection_sessions_access_key_id", "connection_sessions", ["access_key_id"])
    op.create_index("ix_connection_sessions_is_active", "connection_sessions", ["is_active"])

    op.create_table(
        "traffic_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "access_key_id", sa.Integer(), sa.ForeignKey("access_keys.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("bytes_used", sa.BigInteger(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_traffic_logs_id", "traffic_logs", ["id"])
    op.create_index("ix_traffic_logs_access_key_id", "traffic_logs", ["access_key_id"])
    op.create_index("ix_traffic_logs_recorded_at", "traffic_logs", ["recorded_at"])

    op.create_table(
        "archived_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("original_key_id", sa.Integer(), nullable=False),
        sa.Column("remote_key_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("server_name", sa.String(length=100), nullable=False),
        sa.Column("server_location", sa.String(length=100), nullable=True),
        sa.Column("access_url", sa.Text(), nullable=True),
        sa.Column("data_limit_bytes", sa.BigInteger(), nullable=True),
        sa.Column("used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("expiration_type", expiration_type, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_days", sa.Integer(), nullable=True),
        sa.Column("archive_reason", archive_reason, nullable=False),
        sa.Column("original_status", key_status, nullable=False),
        sa.Column("first_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("key_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("delete_after", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_archived_keys_id", "archived_keys", ["id"])
    op.create_index("ix_archived_keys_original_key_id", "archived_keys", ["original_key_id"])
    op.create_index("ix_archived_keys_name", "archived_keys", ["name"])
    op.create_index("ix_archived_keys_server_name", "archived_keys", ["server_name"])
    op.create_index("ix_archived_keys_archive_reason", "archived_keys", ["archive_reason"])
    op.create_index("ix_archived_keys_archived_at", "archived_keys", ["archived_at"])
    op.create_index("ix_archived_keys_delete_after", "archived_keys", ["delete_after"])

    op.create_table(
        "sync_locks",
        sa.Column("name", sa.String(length=100), primary_key=True),
        sa.Column("holder_id", sa.String(length=100), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sync_locks")
    op.drop_table("archived_keys")
    op.drop_table("traffic_logs")
    op.drop_table("connection_sessions")
    op.drop_table("access_keys")
    op.drop_table("servers")

    bind = op.get_bind()
    for enum_name in ("archivereason", "datalimitresetstrategy", "expirationtype", "keystatus"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
