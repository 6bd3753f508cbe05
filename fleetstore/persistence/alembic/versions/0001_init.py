"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("username", sa.String(), nullable=False, unique=True),
        sa.Column("email", sa.String(), nullable=False, unique=True),
        sa.Column("password_digest", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="confirmed"),
        _ts("created_at"),
        _ts("last_login", nullable=True),
        sa.Column("namespaces", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_namespaces", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("preferred_namespace", sa.String(), nullable=True),
    )

    op.create_table(
        "namespaces",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("max_devices", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("session_record", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.Column("devices_accepted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("devices_pending_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("devices_rejected_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("devices_removed_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_namespaces_owner", "namespaces", ["owner"])

    op.create_table(
        "namespace_members",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), primary_key=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="accepted"),
        _ts("added_at"),
        _ts("expires_at", nullable=True),
    )
    op.create_index("ix_namespace_members_user_id", "namespace_members", ["user_id"])

    op.create_table(
        "devices",
        sa.Column("uid", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("mac", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        _ts("status_updated_at"),
        _ts("created_at"),
        _ts("last_seen"),
        _ts("disconnected_at", nullable=True),
        sa.Column("remote_addr", sa.String(), nullable=True),
        sa.Column("info_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.UniqueConstraint("tenant_id", "name", name="uq_devices_tenant_name"),
    )
    op.create_index("ix_devices_tenant_id", "devices", ["tenant_id"])
    op.create_index("ix_devices_status", "devices", ["status"])
    op.create_index("ix_devices_tenant_last_seen", "devices", ["tenant_id", "last_seen"])

    op.create_table(
        "device_tags",
        sa.Column("device_uid", sa.String(), sa.ForeignKey("devices.uid"), primary_key=True),
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
    )
    op.create_index("ix_device_tags_tenant_id", "device_tags", ["tenant_id"])

    op.create_table(
        "tags",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),
    )
    op.create_index("ix_tags_tenant_id", "tags", ["tenant_id"])

    op.create_table(
        "sessions",
        sa.Column("uid", sa.String(), primary_key=True),
        sa.Column("device_uid", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=False, server_default=""),
        sa.Column("ip_address", sa.String(), nullable=False, server_default=""),
        sa.Column("type", sa.String(), nullable=False, server_default="shell"),
        sa.Column("term", sa.String(), nullable=True),
        _ts("started_at"),
        _ts("last_seen"),
        sa.Column("closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recorded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("authenticated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("event_types", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("event_seats", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    )
    op.create_index("ix_sessions_device_uid", "sessions", ["device_uid"])
    op.create_index("ix_sessions_tenant_id", "sessions", ["tenant_id"])
    op.create_index("ix_sessions_tenant_started_at", "sessions", ["tenant_id", "started_at"])

    op.create_table(
        "active_sessions",
        sa.Column("uid", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        _ts("last_seen"),
    )
    op.create_index("ix_active_sessions_tenant_id", "active_sessions", ["tenant_id"])

    op.create_table(
        "session_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_uid", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("seat", sa.Integer(), nullable=False, server_default="0"),
        _ts("timestamp"),
        sa.Column("data", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_session_events_session_uid", "session_events", ["session_uid"])
    op.create_index("ix_session_events_tenant_id", "session_events", ["tenant_id"])

    op.create_table(
        "recorded_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_uid", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        _ts("time"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("height", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_recorded_sessions_session_uid", "recorded_sessions", ["session_uid"])
    op.create_index("ix_recorded_sessions_tenant_id", "recorded_sessions", ["tenant_id"])

    op.create_table(
        "connected_devices",
        sa.Column("uid", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="accepted"),
        _ts("last_seen"),
    )
    op.create_index("ix_connected_devices_tenant_id", "connected_devices", ["tenant_id"])

    op.create_table(
        "tunnels",
        sa.Column("address", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("device_uid", sa.String(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_tunnels_tenant_id", "tunnels", ["tenant_id"])
    op.create_index("ix_tunnels_device_uid", "tunnels", ["device_uid"])

    op.create_table(
        "firewall_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False, server_default="allow"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_ip", sa.String(), nullable=False, server_default=".*"),
        sa.Column("username", sa.String(), nullable=False, server_default=".*"),
        sa.Column("filter_hostname", sa.String(), nullable=True),
        sa.UniqueConstraint("tenant_id", "priority", name="uq_firewall_rules_tenant_priority"),
    )
    op.create_index("ix_firewall_rules_tenant_id", "firewall_rules", ["tenant_id"])

    op.create_table(
        "firewall_rule_tags",
        sa.Column("rule_id", sa.String(), sa.ForeignKey("firewall_rules.id"), primary_key=True),
        sa.Column("name", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
    )
    op.create_index("ix_firewall_rule_tags_tenant_id", "firewall_rule_tags", ["tenant_id"])

    op.create_table(
        "public_keys",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("fingerprint", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("data", sa.Text(), nullable=False),
        sa.Column("username", sa.String(), nullable=False, server_default=".*"),
        sa.Column("filter_hostname", sa.String(), nullable=True),
        _ts("created_at"),
    )

    op.create_table(
        "public_key_tags",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("fingerprint", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), primary_key=True),
        sa.ForeignKeyConstraint(
            ["tenant_id", "fingerprint"],
            ["public_keys.tenant_id", "public_keys.fingerprint"],
        ),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="observer"),
        sa.Column("created_by", sa.String(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("expires_at", nullable=True),
        sa.UniqueConstraint("tenant_id", "name", name="uq_api_keys_tenant_name"),
    )
    op.create_index("ix_api_keys_tenant_id", "api_keys", ["tenant_id"])

    op.create_table(
        "system_settings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("setup", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("local_auth_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("saml_auth_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_index("ix_api_keys_tenant_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("public_key_tags")
    op.drop_table("public_keys")
    op.drop_index("ix_firewall_rule_tags_tenant_id", table_name="firewall_rule_tags")
    op.drop_table("firewall_rule_tags")
    op.drop_index("ix_firewall_rules_tenant_id", table_name="firewall_rules")
    op.drop_table("firewall_rules")
    op.drop_index("ix_tunnels_device_uid", table_name="tunnels")
    op.drop_index("ix_tunnels_tenant_id", table_name="tunnels")
    op.drop_table("tunnels")
    op.drop_index("ix_connected_devices_tenant_id", table_name="connected_devices")
    op.drop_table("connected_devices")
    op.drop_index("ix_recorded_sessions_tenant_id", table_name="recorded_sessions")
    op.drop_index("ix_recorded_sessions_session_uid", table_name="recorded_sessions")
    op.drop_table("recorded_sessions")
    op.drop_index("ix_session_events_tenant_id", table_name="session_events")
    op.drop_index("ix_session_events_session_uid", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_active_sessions_tenant_id", table_name="active_sessions")
    op.drop_table("active_sessions")
    op.drop_index("ix_sessions_tenant_started_at", table_name="sessions")
    op.drop_index("ix_sessions_tenant_id", table_name="sessions")
    op.drop_index("ix_sessions_device_uid", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_tags_tenant_id", table_name="tags")
    op.drop_table("tags")
    op.drop_index("ix_device_tags_tenant_id", table_name="device_tags")
    op.drop_table("device_tags")
    op.drop_index("ix_devices_tenant_last_seen", table_name="devices")
    op.drop_index("ix_devices_status", table_name="devices")
    op.drop_index("ix_devices_tenant_id", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_namespace_members_user_id", table_name="namespace_members")
    op.drop_table("namespace_members")
    op.drop_index("ix_namespaces_owner", table_name="namespaces")
    op.drop_table("namespaces")
    op.drop_table("users")
