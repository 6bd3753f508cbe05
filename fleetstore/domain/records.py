from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    # Records are what callers and the cache see; ORM rows never leave the store.
    model_config = ConfigDict(from_attributes=True)


class MemberRecord(_Record):
    user_id: str
    role: str
    status: str = "accepted"
    added_at: datetime
    expires_at: datetime | None = None


class NamespaceRecord(_Record):
    tenant_id: str
    name: str
    owner: str
    max_devices: int = -1
    session_record: bool = True
    created_at: datetime
    members: list[MemberRecord] = Field(default_factory=list)
    devices_accepted_count: int = 0
    devices_pending_count: int = 0
    devices_rejected_count: int = 0
    devices_removed_count: int = 0


class DeviceRecord(_Record):
    uid: str
    tenant_id: str
    name: str
    mac: str | None = None
    status: str
    status_updated_at: datetime
    created_at: datetime
    last_seen: datetime
    disconnected_at: datetime | None = None
    remote_addr: str | None = None
    info: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    # Filled by late joins on list reads only.
    namespace: str | None = None
    # Always recomputed on read; cached copies carry False.
    online: bool = False

    @classmethod
    def from_row(cls, row, *, online: bool = False, namespace: str | None = None) -> "DeviceRecord":  # noqa: ANN001
        return cls(
            uid=row.uid,
            tenant_id=row.tenant_id,
            name=row.name,
            mac=row.mac,
            status=row.status,
            status_updated_at=row.status_updated_at,
            created_at=row.created_at,
            last_seen=row.last_seen,
            disconnected_at=row.disconnected_at,
            remote_addr=row.remote_addr,
            info=dict(row.info_json or {}),
            tags=[tag.name for tag in row.tags],
            namespace=namespace,
            online=bool(online),
        )


class SessionRecord(_Record):
    uid: str
    device_uid: str
    tenant_id: str
    username: str = ""
    ip_address: str = ""
    type: str = "shell"
    term: str | None = None
    started_at: datetime
    last_seen: datetime
    closed: bool = False
    recorded: bool = False
    authenticated: bool = False
    event_types: list[str] = Field(default_factory=list)
    event_seats: list[int] = Field(default_factory=list)
    # Derived from the existence of the active_sessions row.
    active: bool = False
    device_name: str | None = None


class SessionEventRecord(_Record):
    session_uid: str
    tenant_id: str
    type: str
    seat: int = 0
    timestamp: datetime
    data: dict[str, Any] | None = None


class RecordedFrameRecord(_Record):
    session_uid: str
    tenant_id: str
    time: datetime
    message: str
    width: int = 0
    height: int = 0


class TagRecord(_Record):
    id: str
    tenant_id: str
    name: str
    created_at: datetime


class FirewallRuleRecord(_Record):
    id: str
    tenant_id: str
    priority: int
    action: str
    active: bool
    source_ip: str
    username: str
    filter_hostname: str | None = None
    filter_tags: list[str] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row) -> "FirewallRuleRecord":  # noqa: ANN001
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            priority=row.priority,
            action=row.action,
            active=row.active,
            source_ip=row.source_ip,
            username=row.username,
            filter_hostname=row.filter_hostname,
            filter_tags=[tag.name for tag in row.tags],
        )


class PublicKeyRecord(_Record):
    tenant_id: str
    fingerprint: str
    name: str
    data: str
    username: str
    filter_hostname: str | None = None
    filter_tags: list[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_row(cls, row) -> "PublicKeyRecord":  # noqa: ANN001
        return cls(
            tenant_id=row.tenant_id,
            fingerprint=row.fingerprint,
            name=row.name,
            data=row.data,
            username=row.username,
            filter_hostname=row.filter_hostname,
            filter_tags=[tag.name for tag in row.tags],
            created_at=row.created_at,
        )


class UserRecord(_Record):
    id: str
    name: str
    username: str
    email: str
    status: str
    created_at: datetime
    last_login: datetime | None = None
    namespaces: int = 0
    max_namespaces: int = -1
    preferred_namespace: str | None = None
    # Derived count of namespaces whose owner is this user.
    namespaces_owned: int = 0


class APIKeyRecord(_Record):
    id: str
    tenant_id: str
    name: str
    role: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None


class SystemRecord(_Record):
    setup: bool = False
    local_auth_enabled: bool = True
    saml_auth_enabled: bool = False
