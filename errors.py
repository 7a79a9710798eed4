from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import (
    ArgumentError,
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

CONNECTION_MARKERS = (
    "unable to open database",
    "database is locked",
    "could not connect",
    "connection refused",
    "server closed the connection",
    "connection reset",
    "lost connection",
)


class DataAccessError(Exception):
    """Base for every failure surfaced by the data-access layer."""

    kind = "unknown"

    def __init__(self, message: str, *, model: Optional[str] = None, target: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.model = model
        self.target = target or []

    def __str__(self) -> str:
        if self.model:
            return f"{self.model}: {self.message}"
        return self.message


class RecordNotFound(DataAccessError):
    kind = "not_found"


class ConstraintViolation(DataAccessError):
    kind = "constraint_violation"


class QueryValidationError(DataAccessError):
    kind = "validation"


class StoreConnectionError(DataAccessError):
    kind = "connection"


class EngineFailure(DataAccessError):
    kind = "engine"


class TransactionError(DataAccessError):
    kind = "transaction"


def _driver_message(exc: DBAPIError) -> str:
    return str(exc.orig) if exc.orig is not None else str(exc)


def constraint_target(message: str) -> list[str]:
    # "UNIQUE constraint failed: sub_categories.category_id, sub_categories.slug"
    if "failed:" not in message:
        return []
    tail = message.split("failed:", 1)[1]
    return [part.strip() for part in tail.split(",") if part.strip()]


def is_connection_failure(exc: DBAPIError) -> bool:
    if exc.connection_invalidated or isinstance(exc, InterfaceError):
        return True
    message = _driver_message(exc).lower()
    return any(marker in message for marker in CONNECTION_MARKERS)


@contextmanager
def translate_errors(model: Optional[str] = None) -> Iterator[None]:
    """Re-raise SQLAlchemy/driver exceptions as DataAccessError kinds."""
    try:
        yield
    except DataAccessError:
        raise
    except IntegrityError as exc:
        message = _driver_message(exc)
        raise ConstraintViolation(message, model=model, target=constraint_target(message)) from exc
    except DisconnectionError as exc:
        raise StoreConnectionError(str(exc), model=model) from exc
    except OperationalError as exc:
        if is_connection_failure(exc):
            raise StoreConnectionError(_driver_message(exc), model=model) from exc
        raise EngineFailure(_driver_message(exc), model=model) from exc
    except DBAPIError as exc:
        if is_connection_failure(exc):
            raise StoreConnectionError(_driver_message(exc), model=model) from exc
        raise EngineFailure(_driver_message(exc), model=model) from exc
    except ArgumentError as exc:
        raise QueryValidationError(str(exc), model=model) from exc
    except SQLAlchemyError as exc:
        raise EngineFailure(str(exc), model=model) from exc


class ServiceError(Exception):
    """A business rule rejected the request (bad quantities, closed records, ...)."""


class AuthenticationFailed(ServiceError):
    pass
