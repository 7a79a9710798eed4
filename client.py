"""Entry point of the data-access layer.

``DataClient`` owns the engine, the session factory and one ``Repository``
per entity (``client.assets``, ``client.purchase_orders``, ...). Writes made
directly on the client commit on their own; writes made through the
``TransactionClient`` handed to :meth:`DataClient.transaction` share one
session and commit together.
"""

from __future__ import annotations

import re
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

import models
from db import create_db_engine
from errors import DataAccessError, QueryValidationError, TransactionError, translate_errors
from log_events import EventEmitter, LogDefinition
from orm import (
    AssetORM,
    AuditLogORM,
    CategoryORM,
    LineItemORM,
    MaintenanceRecordORM,
    PurchaseOrderORM,
    SubCategoryORM,
    UserORM,
    VendorORM,
)
from repository import Entity, PendingOperation, Repository, persist

T = TypeVar("T")

ENTITIES = (
    Entity("users", UserORM, models.User, models.UserIn, models.UserUpdate),
    Entity("categories", CategoryORM, models.Category, models.CategoryIn, models.CategoryUpdate),
    Entity("sub_categories", SubCategoryORM, models.SubCategory, models.SubCategoryIn, models.SubCategoryUpdate),
    Entity("assets", AssetORM, models.Asset, models.AssetIn, models.AssetUpdate),
    Entity(
        "maintenance_records",
        MaintenanceRecordORM,
        models.MaintenanceRecord,
        models.MaintenanceRecordIn,
        models.MaintenanceRecordUpdate,
    ),
    Entity("vendors", VendorORM, models.Vendor, models.VendorIn, models.VendorUpdate),
    Entity(
        "purchase_orders",
        PurchaseOrderORM,
        models.PurchaseOrder,
        models.PurchaseOrderIn,
        models.PurchaseOrderUpdate,
    ),
    Entity("line_items", LineItemORM, models.LineItem, models.LineItemIn, models.LineItemUpdate),
    Entity("audit_logs", AuditLogORM, models.AuditLog, models.AuditLogIn, models.AuditLogUpdate),
)

ISOLATION_LEVELS = {
    "readuncommitted": "READ UNCOMMITTED",
    "readcommitted": "READ COMMITTED",
    "repeatableread": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}


def normalize_isolation_level(level: Optional[str]) -> Optional[str]:
    """Map ``"Serializable"``, ``"read_committed"``, ``"ReadCommitted"`` ... to SQL names."""
    if level is None:
        return None
    key = re.sub(r"[^a-z]", "", str(level).lower())
    if key not in ISOLATION_LEVELS:
        raise QueryValidationError(
            f"unknown isolation level {level!r}, expected one of {sorted(ISOLATION_LEVELS)}"
        )
    return ISOLATION_LEVELS[key]


class _Scope:
    autocommit = True

    def __init__(self, events: EventEmitter):
        self._events = events

    def report(self, exc: DataAccessError) -> DataAccessError:
        if not getattr(exc, "emitted", False):
            exc.emitted = True
            self._events.error(str(exc), target=f"assetdb.{exc.kind}")
        return exc


class StandaloneScope(_Scope):
    """One short-lived session per call; every write commits."""

    def __init__(self, session_factory: sessionmaker, events: EventEmitter):
        super().__init__(events)
        self._session_factory = session_factory

    @contextmanager
    def session(self, model: Optional[str]) -> Iterator[Session]:
        db = self._session_factory()
        try:
            with translate_errors(model):
                yield db
        except DataAccessError as exc:
            db.rollback()
            self.report(exc)
            raise
        finally:
            db.close()


class TransactionScope(_Scope):
    """The shared session of one transaction; writes only flush."""

    autocommit = False

    def __init__(self, db: Session, events: EventEmitter, deadline: Optional[float]):
        super().__init__(events)
        self._db = db
        self._deadline = deadline
        self.closed = False

    def check(self) -> None:
        if self.closed:
            raise TransactionError("transaction handle used after the transaction finished")
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise TransactionError("transaction exceeded its timeout")

    @contextmanager
    def session(self, model: Optional[str]) -> Iterator[Session]:
        try:
            self.check()
            with translate_errors(model):
                yield self._db
        except DataAccessError as exc:
            self.report(exc)
            raise


class _Repositories:
    _scope: _Scope
    _repositories: dict[str, Repository]

    users: Repository
    categories: Repository
    sub_categories: Repository
    assets: Repository
    maintenance_records: Repository
    vendors: Repository
    purchase_orders: Repository
    line_items: Repository
    audit_logs: Repository

    def _bind_repositories(self, scope: _Scope, omit: dict) -> None:
        by_model: dict[type, Repository] = {}
        self._repositories = {}
        for entity in ENTITIES:
            repo = Repository(entity, scope, lookup=by_model.__getitem__, omit=omit.get(entity.name))
            by_model[entity.model] = repo
            self._repositories[entity.name] = repo
            setattr(self, entity.name, repo)

    def repository(self, name: str) -> Repository:
        try:
            return self._repositories[name]
        except KeyError:
            raise QueryValidationError(f"unknown entity {name!r}") from None

    # ---------- raw queries ----------
    def execute_raw(self, sql: str, params: Optional[dict] = None) -> int:
        """Run a statement with ``:name`` bound parameters; returns the affected row count."""
        with self._scope.session(None) as db:
            result = db.execute(text(sql), params or {})
            persist(db, commit=self._scope.autocommit)
            return result.rowcount

    def query_raw(self, sql: str, params: Optional[dict] = None) -> list[dict]:
        with self._scope.session(None) as db:
            result = db.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result]

    def execute_raw_unsafe(self, sql: str, *values: Any) -> int:
        """Send ``sql`` to the driver as-is with positional values."""
        with self._scope.session(None) as db:
            result = db.connection().exec_driver_sql(sql, tuple(values))
            persist(db, commit=self._scope.autocommit)
            return result.rowcount

    def query_raw_unsafe(self, sql: str, *values: Any) -> list[dict]:
        with self._scope.session(None) as db:
            result = db.connection().exec_driver_sql(sql, tuple(values))
            return [dict(row._mapping) for row in result]


class TransactionClient(_Repositories):
    """Repositories and raw queries bound to one open transaction."""

    def __init__(self, scope: TransactionScope, omit: dict):
        self._scope = scope
        self._bind_repositories(scope, omit)

    @property
    def closed(self) -> bool:
        return self._scope.closed


class DataClient(_Repositories):
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        log: Optional[Iterable[LogDefinition]] = None,
        omit: Optional[dict] = None,
        engine: Optional[Engine] = None,
    ):
        self.events = EventEmitter(log)
        self._omit = dict(omit or {})
        unknown = set(self._omit) - {e.name for e in ENTITIES}
        if unknown:
            raise QueryValidationError(f"omit names unknown entities {sorted(unknown)}")

        self._owns_engine = engine is None
        self.engine = engine if engine is not None else create_db_engine(url)
        self.events.attach(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._scope = StandaloneScope(self._session_factory, self.events)
        self._bind_repositories(self._scope, self._omit)
        self.events.info(f"data client ready on {self.engine.url.render_as_string(hide_password=True)}")

    def __enter__(self) -> "DataClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def on(self, level: str, callback: Callable[[Any], None]) -> None:
        self.events.on(level, callback)

    def dispose(self) -> None:
        self.events.detach()
        if self._owns_engine:
            self.engine.dispose()

    # ---------- transactions ----------
    def transaction(
        self,
        fn: Callable[[TransactionClient], T],
        *,
        max_wait: Optional[float] = 2.0,
        timeout: Optional[float] = 5.0,
        isolation_level: Optional[str] = None,
    ) -> T:
        """Run ``fn(tx)`` in one database transaction.

        ``max_wait`` bounds acquiring the connection and starting the
        transaction, ``timeout`` bounds ``fn`` itself. Any exception rolls the
        whole transaction back and is re-raised; the handle is unusable
        afterwards.
        """
        started = time.monotonic()
        scope: Optional[TransactionScope] = None
        db = self._session_factory()
        try:
            self._begin(db, normalize_isolation_level(isolation_level), max_wait)
            waited = time.monotonic() - started
            if max_wait is not None and waited > max_wait:
                raise TransactionError(f"transaction could not start within {max_wait}s (waited {waited:.3f}s)")

            deadline = time.monotonic() + timeout if timeout is not None else None
            scope = TransactionScope(db, self.events, deadline)
            result = fn(TransactionClient(scope, self._omit))
            scope.check()
            with translate_errors():
                db.commit()
            return result
        except Exception as exc:
            db.rollback()
            if isinstance(exc, DataAccessError):
                self._scope.report(exc)
            self.events.warn(f"transaction rolled back: {exc}")
            raise
        finally:
            if scope is not None:
                scope.closed = True
            db.close()

    def _begin(self, db: Session, level: Optional[str], max_wait: Optional[float]) -> None:
        with translate_errors():
            if level is not None:
                conn = db.connection(execution_options={"isolation_level": level})
            else:
                conn = db.connection()
            if conn.dialect.name != "sqlite":
                return
            # take the write lock now, waiting at most max_wait for other writers
            previous = conn.exec_driver_sql("PRAGMA busy_timeout").scalar()
            if max_wait is not None:
                conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(max_wait * 1000)}")
        try:
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        except OperationalError as exc:
            raise TransactionError(f"transaction could not start within {max_wait}s: {exc.orig}") from exc
        finally:
            with translate_errors():
                conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(previous)}")

    def batch(
        self,
        operations: Sequence[PendingOperation],
        *,
        isolation_level: Optional[str] = None,
        max_wait: Optional[float] = 2.0,
    ) -> list:
        """Run pending operations in order inside one transaction; results come back in order."""

        def run(tx: TransactionClient) -> list:
            results = []
            for op in operations:
                if not isinstance(op, PendingOperation):
                    raise QueryValidationError(f"batch expects pending operations, got {type(op).__name__}")
                repo = tx.repository(op.entity)
                results.append(getattr(repo, op.method)(*op.args, **op.kwargs))
            return results

        return self.transaction(run, max_wait=max_wait, timeout=None, isolation_level=isolation_level)
