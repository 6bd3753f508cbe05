from __future__ import annotations

import enum
import uuid
from typing import Any, Callable, Mapping

from sqlalchemy.sql.elements import ColumnElement

from fleetstore.core.errors import InvalidIdentifierError, InvalidResolverError
from fleetstore.domain.models import APIKey, Device, FirewallRule, Namespace, PublicKey, Session, Tag, User


class DeviceResolver(enum.Enum):
    UID = "uid"
    HOSTNAME = "hostname"
    MAC = "mac"


class NamespaceResolver(enum.Enum):
    TENANT_ID = "tenant_id"
    NAME = "name"


class UserResolver(enum.Enum):
    ID = "id"
    EMAIL = "email"
    USERNAME = "username"


class SessionResolver(enum.Enum):
    UID = "uid"


class TagResolver(enum.Enum):
    ID = "id"
    NAME = "name"


class FirewallRuleResolver(enum.Enum):
    ID = "id"


class PublicKeyResolver(enum.Enum):
    FINGERPRINT = "fingerprint"


class APIKeyResolver(enum.Enum):
    ID = "id"
    NAME = "name"


def parse_uuid(value: Any) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidIdentifierError(f"invalid identifier: {value!r}") from exc


def _equals(column: Any) -> Callable[[Any], ColumnElement]:
    return lambda value: column == value


def _uuid_equals(column: Any) -> Callable[[Any], ColumnElement]:
    return lambda value: column == parse_uuid(value)


_PREDICATES: dict[type[enum.Enum], Mapping[enum.Enum, Callable[[Any], ColumnElement]]] = {
    DeviceResolver: {
        DeviceResolver.UID: _equals(Device.uid),
        DeviceResolver.HOSTNAME: _equals(Device.name),
        DeviceResolver.MAC: _equals(Device.mac),
    },
    NamespaceResolver: {
        NamespaceResolver.TENANT_ID: _equals(Namespace.tenant_id),
        NamespaceResolver.NAME: _equals(Namespace.name),
    },
    UserResolver: {
        UserResolver.ID: _uuid_equals(User.id),
        UserResolver.EMAIL: _equals(User.email),
        UserResolver.USERNAME: _equals(User.username),
    },
    SessionResolver: {
        SessionResolver.UID: _equals(Session.uid),
    },
    TagResolver: {
        TagResolver.ID: _uuid_equals(Tag.id),
        TagResolver.NAME: _equals(Tag.name),
    },
    FirewallRuleResolver: {
        FirewallRuleResolver.ID: _uuid_equals(FirewallRule.id),
    },
    PublicKeyResolver: {
        PublicKeyResolver.FINGERPRINT: _equals(PublicKey.fingerprint),
    },
    APIKeyResolver: {
        APIKeyResolver.ID: _equals(APIKey.id),
        APIKeyResolver.NAME: _equals(APIKey.name),
    },
}


def _check_exhaustive() -> None:
    # Every enum member must map to a predicate; fail at import, not at request time.
    for resolver_enum, table in _PREDICATES.items():
        missing = [member for member in resolver_enum if member not in table]
        if missing:
            raise RuntimeError(f"{resolver_enum.__name__} has no predicate for {missing}")


_check_exhaustive()


def resolver_predicate(resolver_enum: type[enum.Enum], kind: Any, value: Any) -> ColumnElement:
    if not isinstance(kind, resolver_enum):
        raise InvalidResolverError(f"{kind!r} is not a {resolver_enum.__name__}")
    return _PREDICATES[resolver_enum][kind](value)
