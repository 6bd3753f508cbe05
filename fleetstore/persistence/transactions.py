from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from fleetstore.core.errors import (
    DuplicateError,
    FleetStoreError,
    StoreUnavailableError,
    TransactionAbortedError,
)


logger = logging.getLogger(__name__)


def translate_error(exc: BaseException) -> FleetStoreError:
    # Engine errors are mapped once here; nothing above the store sees SQLAlchemy types.
    if isinstance(exc, FleetStoreError):
        return exc
    if isinstance(exc, IntegrityError):
        return DuplicateError(str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)):
        return StoreUnavailableError(str(exc))
    if isinstance(exc, SQLAlchemyError):
        return FleetStoreError(str(exc))
    return FleetStoreError(repr(exc))


@dataclass(frozen=True)
class CascadeStep:
    name: str
    run: Callable[[AsyncSession], Awaitable[Any]]


async def run_cascade(session: AsyncSession, name: str, steps: Sequence[CascadeStep]) -> list[Any]:
    # Caller owns the transaction; any raise here rolls back every prior step.
    results: list[Any] = []
    for step in steps:
        try:
            results.append(await step.run(session))
        except FleetStoreError:
            logger.warning("cascade_aborted cascade=%s step=%s", name, step.name)
            raise
        except Exception as exc:
            cause = translate_error(exc) if isinstance(exc, SQLAlchemyError) else exc
            logger.warning("cascade_aborted cascade=%s step=%s", name, step.name, exc_info=exc)
            raise TransactionAbortedError(name, step.name, cause) from exc
    return results
