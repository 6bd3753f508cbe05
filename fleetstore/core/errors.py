from __future__ import annotations

from typing import Iterable


class FleetStoreError(Exception):
    """Base error for the fleet store."""


class NotFoundError(FleetStoreError):
    """Zero rows matched a unique lookup or an update/delete target."""

    def __init__(self, entity: str, identifier: object = None) -> None:
        self.entity = entity
        self.identifier = identifier
        detail = f"{entity} not found" if identifier is None else f"{entity} not found: {identifier}"
        super().__init__(detail)


class DuplicateError(FleetStoreError):
    """Unique index violation on insert or update."""


class InvalidIdentifierError(FleetStoreError):
    """Identifier cannot be parsed into the native key type."""


class ConflictError(FleetStoreError):
    """Named unique fields already taken by another row."""

    def __init__(self, fields: Iterable[str]) -> None:
        self.fields = sorted(set(fields))
        super().__init__(f"conflicting fields: {', '.join(self.fields)}")


class TransactionAbortedError(FleetStoreError):
    """Cascade rolled back; wraps the first underlying failure."""

    def __init__(self, cascade: str, step: str, cause: BaseException) -> None:
        self.cascade = cascade
        self.step = step
        self.cause = cause
        super().__init__(f"{cascade} aborted at step {step}: {cause}")


class StoreUnavailableError(FleetStoreError):
    """Database transport or session start failure."""


class InvalidQueryError(FleetStoreError, ValueError):
    """Client-supplied sort, filter or match option is not valid for the entity."""


class FilterParseError(InvalidQueryError):
    """Filter payload could not be decoded or holds an unsupported operator/value."""


class InvalidResolverError(TypeError):
    """Resolver kind does not belong to the entity's resolver enum."""
