from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere so tests run the same statements on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    # Normalize every timestamp to aware UTC on the way in and out.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            # SQLite stores naive ISO strings; keep them UTC so comparisons stay lexical.
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, default="")
    username: Mapped[str] = mapped_column(String, unique=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    password_digest: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="confirmed")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_login: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Stored counter maintained by namespace create/delete; bounded by max_namespaces.
    namespaces: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Negative means unlimited.
    max_namespaces: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    preferred_namespace: Mapped[str | None] = mapped_column(String, nullable=True)


class Namespace(Base):
    __tablename__ = "namespaces"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    owner: Mapped[str] = mapped_column(String, index=True)
    # Negative means unlimited.
    max_devices: Mapped[int] = mapped_column(Integer, default=-1, nullable=False)
    session_record: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # Denormalized per-status device counters; repaired by sync_device_counts.
    devices_accepted_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    devices_pending_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    devices_rejected_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    devices_removed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    members: Mapped[list["NamespaceMember"]] = relationship(
        primaryjoin="Namespace.tenant_id == foreign(NamespaceMember.tenant_id)",
        order_by="NamespaceMember.added_at",
        lazy="selectin",
        viewonly=True,
    )


class NamespaceMember(Base):
    __tablename__ = "namespace_members"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    role: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="accepted")
    added_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_devices_tenant_name"),)

    uid: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    mac: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    status_updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime)
    # Presence is derived from these two columns at read time; there is no stored online flag.
    disconnected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    remote_addr: Mapped[str | None] = mapped_column(String, nullable=True)
    info_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    tags: Mapped[list["DeviceTag"]] = relationship(order_by="DeviceTag.name", lazy="selectin", viewonly=True)


class DeviceTag(Base):
    __tablename__ = "device_tags"

    device_uid: Mapped[str] = mapped_column(String, ForeignKey("devices.uid"), primary_key=True)
    name: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_tags_tenant_name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class Session(Base):
    __tablename__ = "sessions"

    uid: Mapped[str] = mapped_column(String, primary_key=True)
    device_uid: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    username: Mapped[str] = mapped_column(String, default="")
    ip_address: Mapped[str] = mapped_column(String, default="")
    type: Mapped[str] = mapped_column(String, default="shell")
    term: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime)
    closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recorded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    authenticated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Sorted, de-duplicated sets of event types and seats seen on the session.
    event_types: Mapped[list[str]] = mapped_column(JSONType, default=list)
    event_seats: Mapped[list[int]] = mapped_column(JSONType, default=list)


class ActiveSession(Base):
    __tablename__ = "active_sessions"

    # Row exists only while the session is live.
    uid: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime)


class SessionEvent(Base):
    __tablename__ = "session_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_uid: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String)
    seat: Mapped[int] = mapped_column(Integer, default=0)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class RecordedFrame(Base):
    __tablename__ = "recorded_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_uid: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    time: Mapped[datetime] = mapped_column(UTCDateTime)
    message: Mapped[str] = mapped_column(Text)
    width: Mapped[int] = mapped_column(Integer, default=0)
    height: Mapped[int] = mapped_column(Integer, default=0)


class ConnectedDevice(Base):
    __tablename__ = "connected_devices"

    uid: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="accepted")
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime)


class Tunnel(Base):
    __tablename__ = "tunnels"

    address: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    device_uid: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class FirewallRule(Base):
    __tablename__ = "firewall_rules"
    # Priority is the evaluation order and must not repeat within a tenant.
    __table_args__ = (UniqueConstraint("tenant_id", "priority", name="uq_firewall_rules_tenant_priority"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    priority: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String, default="allow")
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    source_ip: Mapped[str] = mapped_column(String, default=".*")
    username: Mapped[str] = mapped_column(String, default=".*")
    filter_hostname: Mapped[str | None] = mapped_column(String, nullable=True)

    tags: Mapped[list["FirewallRuleTag"]] = relationship(
        order_by="FirewallRuleTag.name", lazy="selectin", viewonly=True
    )


class FirewallRuleTag(Base):
    __tablename__ = "firewall_rule_tags"

    rule_id: Mapped[str] = mapped_column(String, ForeignKey("firewall_rules.id"), primary_key=True)
    name: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)


class PublicKey(Base):
    __tablename__ = "public_keys"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, default="")
    data: Mapped[str] = mapped_column(Text)
    username: Mapped[str] = mapped_column(String, default=".*")
    filter_hostname: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)

    tags: Mapped[list["PublicKeyTag"]] = relationship(
        order_by="PublicKeyTag.name", lazy="selectin", viewonly=True
    )


class PublicKeyTag(Base):
    __tablename__ = "public_key_tags"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "fingerprint"],
            ["public_keys.tenant_id", "public_keys.fingerprint"],
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, primary_key=True)


class APIKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_api_keys_tenant_name"),)

    # Hashed key value; the plaintext secret never reaches the store.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="observer")
    created_by: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class SystemSettings(Base):
    __tablename__ = "system_settings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default="system")
    setup: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    local_auth_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    saml_auth_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


Index("ix_devices_tenant_last_seen", Device.tenant_id, Device.last_seen)
Index("ix_sessions_tenant_started_at", Session.tenant_id, Session.started_at)
