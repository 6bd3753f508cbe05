from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, ClassVar


class _Unset:
    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# Distinguishes "leave untouched" from an intentional False/0/None.
UNSET: Any = _Unset()


@dataclass(frozen=True)
class _ChangeSet:
    # Field name -> column name where they differ.
    _columns: ClassVar[dict[str, str]] = {}

    def as_values(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is UNSET:
                continue
            values[self._columns.get(item.name, item.name)] = value
        return values

    def is_empty(self) -> bool:
        return not self.as_values()


@dataclass(frozen=True)
class NamespaceChanges(_ChangeSet):
    name: Any = UNSET
    max_devices: Any = UNSET
    session_record: Any = UNSET


@dataclass(frozen=True)
class MemberChanges(_ChangeSet):
    role: Any = UNSET
    status: Any = UNSET
    expires_at: Any = UNSET


@dataclass(frozen=True)
class DeviceChanges(_ChangeSet):
    _columns: ClassVar[dict[str, str]] = {"info": "info_json"}

    name: Any = UNSET
    mac: Any = UNSET
    remote_addr: Any = UNSET
    info: Any = UNSET
    last_seen: Any = UNSET
    disconnected_at: Any = UNSET


@dataclass(frozen=True)
class SessionChanges(_ChangeSet):
    authenticated: Any = UNSET
    recorded: Any = UNSET
    term: Any = UNSET
    type: Any = UNSET


@dataclass(frozen=True)
class UserChanges(_ChangeSet):
    name: Any = UNSET
    username: Any = UNSET
    email: Any = UNSET
    password_digest: Any = UNSET
    status: Any = UNSET
    last_login: Any = UNSET
    max_namespaces: Any = UNSET
    preferred_namespace: Any = UNSET


@dataclass(frozen=True)
class FirewallRuleChanges(_ChangeSet):
    priority: Any = UNSET
    action: Any = UNSET
    active: Any = UNSET
    source_ip: Any = UNSET
    username: Any = UNSET
    filter_hostname: Any = UNSET


@dataclass(frozen=True)
class PublicKeyChanges(_ChangeSet):
    name: Any = UNSET
    username: Any = UNSET
    filter_hostname: Any = UNSET


@dataclass(frozen=True)
class APIKeyChanges(_ChangeSet):
    name: Any = UNSET
    role: Any = UNSET
    expires_at: Any = UNSET


@dataclass(frozen=True)
class SystemChanges(_ChangeSet):
    setup: Any = UNSET
    local_auth_enabled: Any = UNSET
    saml_auth_enabled: Any = UNSET


def stamp(values: dict[str, Any], column: str, now: datetime) -> dict[str, Any]:
    # Add an updated-at style column only when something else changes.
    if values:
        values = {**values, column: now}
    return values
