"""Generic per-entity repository.

One ``Repository`` serves every mapped entity; the field list, types,
relationships and unique keys are read from the SQLAlchemy mapping instead of
being generated per entity. All methods run through a *scope*, which hands out
the session to use and says whether each write commits on its own
(standalone client) or only flushes (inside a transaction).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import Float, Integer, Numeric, UniqueConstraint, and_, false, func, inspect, not_, or_, true
from sqlalchemy import delete as delete_stmt
from sqlalchemy import select as select_stmt
from sqlalchemy import update as update_stmt
from sqlalchemy.orm import Session, selectinload, with_parent

from errors import QueryValidationError, RecordNotFound
from filter_helpers import (
    build_where,
    column_attrs,
    cursor_clause,
    is_nullable,
    normalize_limit,
    normalize_order_by,
    relationship_attrs,
    scalar_filter,
)

AGGREGATES = ("count", "min", "max", "sum", "avg")
ATOMIC_OPERATIONS = ("set", "increment", "decrement", "multiply", "divide")
NESTED_KEYS = {"include", "select", "omit"}
DEFERRABLE = {
    "find_unique",
    "find_unique_or_throw",
    "find_first",
    "find_first_or_throw",
    "find_many",
    "create",
    "create_many",
    "update",
    "update_many",
    "upsert",
    "delete",
    "delete_many",
    "count",
    "aggregate",
    "group_by",
}


@dataclass(frozen=True)
class Entity:
    name: str
    model: type
    schema: type[BaseModel]
    create_schema: type[BaseModel]
    update_schema: type[BaseModel]

    @property
    def label(self) -> str:
        return self.model.__name__.removesuffix("ORM")


@dataclass
class PendingOperation:
    """A repository call recorded for later execution inside a batch."""

    entity: str
    method: str
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)


def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


def unique_keys(model) -> list[tuple[str, ...]]:
    table = model.__table__
    mapper = inspect(model)

    def key_of(col) -> str:
        return mapper.get_property_by_column(col).key

    keys = [tuple(key_of(c) for c in table.primary_key.columns)]
    for col in table.columns:
        if col.unique:
            keys.append((key_of(col),))
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            keys.append(tuple(key_of(c) for c in constraint.columns))
    return keys


def _as_field_list(value: Any) -> list[str]:
    if isinstance(value, dict):
        return [k for k, v in value.items() if v]
    if isinstance(value, str):
        return [value]
    return list(value)


class Repository:
    def __init__(
        self,
        entity: Entity,
        scope,
        *,
        lookup: Callable[[type], "Repository"],
        omit: Optional[dict] = None,
    ):
        self.entity = entity
        self.model = entity.model
        self.label = entity.label
        self._scope = scope
        self._lookup = lookup
        self._omit = {k for k, v in (omit or {}).items() if v}
        self._columns = column_attrs(self.model)
        self._relations = relationship_attrs(self.model)
        self._unique_keys = unique_keys(self.model)
        self._pk = inspect(self.model).primary_key[0].key

        unknown = self._omit - set(self._columns)
        if unknown:
            raise QueryValidationError(f"cannot omit unknown field(s) {sorted(unknown)}", model=self.label)

    def __repr__(self) -> str:
        return f"<Repository {self.entity.name}>"

    # ---------- reads ----------
    def find_unique(self, where: dict, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._unique_row(db, where, includes)
            return None if row is None else self._shape(row, fields, includes)

    def find_unique_or_throw(self, where: dict, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._unique_row(db, where, includes)
            if row is None:
                raise RecordNotFound(f"no record matches {where!r}", model=self.label)
            return self._shape(row, fields, includes)

    def find_first(
        self,
        where: Optional[dict] = None,
        *,
        order_by=None,
        cursor: Optional[dict] = None,
        skip: Optional[int] = None,
        distinct=None,
        select=None,
        include=None,
        omit=None,
    ):
        found = self.find_many(
            where,
            order_by=order_by,
            cursor=cursor,
            take=1,
            skip=skip,
            distinct=distinct,
            select=select,
            include=include,
            omit=omit,
        )
        return found[0] if found else None

    def find_first_or_throw(self, where: Optional[dict] = None, **kwargs):
        found = self.find_first(where, **kwargs)
        if found is None:
            raise self._scope.report(RecordNotFound(f"no record matches {where!r}", model=self.label))
        return found

    def find_many(
        self,
        where: Optional[dict] = None,
        *,
        order_by=None,
        cursor: Optional[dict] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct=None,
        select=None,
        include=None,
        omit=None,
    ) -> list:
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            rows = self._query_rows(
                db,
                where,
                order_by=order_by,
                cursor=cursor,
                take=take,
                skip=skip,
                distinct=distinct,
                includes=includes,
            )
            return [self._shape(r, fields, includes) for r in rows]

    def related(self, where: dict, relation: str, **kwargs):
        """Rows linked to one record through ``relation``, fetched by their own query.

        Accepts the same keyword arguments as :meth:`find_many` on the related
        entity. Returns a list for to-many relations and a single record (or
        ``None``) for to-one relations.
        """
        rel = self._relations.get(relation)
        if rel is None:
            raise QueryValidationError(f"unknown relation {relation!r}", model=self.label)
        target = self._lookup(rel.mapper.class_)

        with self._scope.session(self.label) as db:
            owner = self._unique_row(db, where, {})
            if owner is None:
                return [] if rel.uselist else None

            select = kwargs.pop("select", None)
            include = kwargs.pop("include", None)
            omit = kwargs.pop("omit", None)
            fields, includes = target._prepare_shape(select, include, omit)
            rows = target._query_rows(
                db,
                kwargs.pop("where", None),
                extra=with_parent(owner, getattr(self.model, relation)),
                includes=includes,
                **kwargs,
            )
            shaped = [target._shape(r, fields, includes) for r in rows]
            if rel.uselist:
                return shaped
            return shaped[0] if shaped else None

    # ---------- writes ----------
    def create(self, data, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._insert(db, data)
            persist(db, commit=self._scope.autocommit)
            db.refresh(row)
            return self._shape(row, fields, includes)

    def create_many(self, data: Iterable, *, skip_duplicates: bool = False) -> int:
        with self._scope.session(self.label) as db:
            created = 0
            seen: set = set()
            for item in data:
                values, nested = self._split_nested(item)
                if nested:
                    raise QueryValidationError("create_many does not accept nested writes", model=self.label)
                values = self._validate(self.entity.create_schema, values)
                if skip_duplicates and self._is_duplicate(db, values, seen):
                    continue
                db.add(self.model(**values))
                created += 1
            persist(db, commit=self._scope.autocommit)
            return created

    def update(self, where: dict, data, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._unique_row(db, where, {})
            if row is None:
                raise RecordNotFound(f"no record to update matches {where!r}", model=self.label)
            self._apply_update(row, data)
            persist(db, commit=self._scope.autocommit)
            db.refresh(row)
            return self._shape(row, fields, includes)

    def update_many(self, where: Optional[dict], data) -> int:
        with self._scope.session(self.label) as db:
            values, atomic = self._split_update(data)
            values.update(atomic)
            if not values:
                return 0
            stmt = (
                update_stmt(self.model)
                .where(build_where(self.model, where))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = db.execute(stmt)
            persist(db, commit=self._scope.autocommit)
            return result.rowcount

    def upsert(self, where: dict, create, update, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._unique_row(db, where, {})
            if row is None:
                row = self._insert(db, create)
            else:
                self._apply_update(row, update)
            persist(db, commit=self._scope.autocommit)
            db.refresh(row)
            return self._shape(row, fields, includes)

    def delete(self, where: dict, *, select=None, include=None, omit=None):
        with self._scope.session(self.label) as db:
            fields, includes = self._prepare_shape(select, include, omit)
            row = self._unique_row(db, where, includes)
            if row is None:
                raise RecordNotFound(f"no record to delete matches {where!r}", model=self.label)
            shaped = self._shape(row, fields, includes)
            db.delete(row)
            persist(db, commit=self._scope.autocommit)
            return shaped

    def delete_many(self, where: Optional[dict] = None) -> int:
        with self._scope.session(self.label) as db:
            stmt = (
                delete_stmt(self.model)
                .where(build_where(self.model, where))
                .execution_options(synchronize_session=False)
            )
            result = db.execute(stmt)
            persist(db, commit=self._scope.autocommit)
            return result.rowcount

    # ---------- aggregates ----------
    def count(self, where: Optional[dict] = None) -> int:
        with self._scope.session(self.label) as db:
            stmt = select_stmt(self.model).where(build_where(self.model, where))
            count_stmt = select_stmt(func.count()).select_from(stmt.subquery())
            return int(db.execute(count_stmt).scalar_one())

    def aggregate(self, where: Optional[dict] = None, **aggregates) -> dict:
        """``aggregate(where, count=True, sum=["total_amount"], max=[...])``.

        Returns ``{"count": n, "sum": {"total_amount": ...}, ...}``; a list
        given to ``count`` yields per-field non-null counts (``"_all"`` counts rows).
        """
        with self._scope.session(self.label) as db:
            spec = self._aggregate_spec(aggregates)
            if not spec:
                raise QueryValidationError(f"aggregate needs at least one of {AGGREGATES}", model=self.label)
            stmt = (
                select_stmt(*[expr for _, _, expr in spec])
                .select_from(self.model)
                .where(build_where(self.model, where))
            )
            row = db.execute(stmt).one()
            return self._aggregate_result(spec, row._mapping, aggregates)

    def group_by(
        self,
        by,
        *,
        where: Optional[dict] = None,
        having: Optional[dict] = None,
        order_by=None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        **aggregates,
    ) -> list[dict]:
        with self._scope.session(self.label) as db:
            by = self._check_fields(_as_field_list(by), "group_by")
            if not by:
                raise QueryValidationError("group_by needs at least one field", model=self.label)
            spec = self._aggregate_spec(aggregates)
            take = normalize_limit(take, "take")
            skip = normalize_limit(skip, "skip")

            group_cols = [getattr(self.model, k) for k in by]
            stmt = (
                select_stmt(*[c.label(k) for c, k in zip(group_cols, by)], *[expr for _, _, expr in spec])
                .where(build_where(self.model, where))
                .group_by(*group_cols)
            )
            if having:
                stmt = stmt.having(self._having_clause(having, by))
            order = normalize_order_by(self.model, order_by, allowed=by)
            stmt = stmt.order_by(*self._order_clauses(order))
            if skip:
                stmt = stmt.offset(skip)
            if take is not None:
                stmt = stmt.limit(take)

            results = []
            for row in db.execute(stmt).all():
                mapping = row._mapping
                entry = {k: mapping[k] for k in by}
                entry.update(self._aggregate_result(spec, mapping, aggregates))
                results.append(entry)
            return results

    # ---------- batching ----------
    def defer(self, method: str, *args, **kwargs) -> PendingOperation:
        if method not in DEFERRABLE:
            raise QueryValidationError(f"{method!r} cannot be batched", model=self.label)
        return PendingOperation(self.entity.name, method, args, kwargs)

    # ---------- internals ----------
    def _query_rows(
        self,
        db: Session,
        where: Optional[dict],
        *,
        order_by=None,
        cursor: Optional[dict] = None,
        take: Optional[int] = None,
        skip: Optional[int] = None,
        distinct=None,
        includes: Optional[dict] = None,
        extra=None,
    ) -> list:
        order = normalize_order_by(self.model, order_by)
        take = normalize_limit(take, "take")
        skip = normalize_limit(skip, "skip")
        distinct_keys = self._check_fields(_as_field_list(distinct), "distinct") if distinct else []

        stmt = select_stmt(self.model).where(build_where(self.model, where))
        if extra is not None:
            stmt = stmt.where(extra)
        if cursor is not None:
            cursor_row = self._unique_row(db, cursor, {})
            if cursor_row is None:
                return []
            stmt = stmt.where(cursor_clause(self.model, cursor_row, order))
            if self._pk not in [k for k, _ in order]:
                order = order + [(self._pk, False)]

        stmt = stmt.order_by(*self._order_clauses(order))
        if not distinct_keys:
            if skip:
                stmt = stmt.offset(skip)
            if take is not None:
                stmt = stmt.limit(take)
        stmt = stmt.options(*self._loader_options(includes or {}))

        rows = list(db.execute(stmt).scalars().all())
        if distinct_keys:
            seen = set()
            unique_rows = []
            for r in rows:
                ident = tuple(getattr(r, k) for k in distinct_keys)
                if ident in seen:
                    continue
                seen.add(ident)
                unique_rows.append(r)
            rows = unique_rows[skip or 0:]
            if take is not None:
                rows = rows[:take]
        return rows

    def _order_clauses(self, order: list[tuple[str, bool]]) -> list:
        clauses = []
        for key, desc in order:
            col = getattr(self.model, key)
            clause = col.desc() if desc else col.asc()
            if is_nullable(self.model, key):
                clause = clause.nulls_last() if desc else clause.nulls_first()
            clauses.append(clause)
        return clauses

    def _unique_where(self, where: dict):
        if not isinstance(where, dict):
            raise QueryValidationError("unique lookup expects a dict", model=self.label)
        for key in self._unique_keys:
            if all(k in where and where[k] is not None and not isinstance(where[k], dict) for k in key):
                return build_where(self.model, where)
        raise QueryValidationError(
            f"unique lookup needs one of the keys {[list(k) for k in self._unique_keys]}, got {sorted(where)}",
            model=self.label,
        )

    def _unique_row(self, db: Session, where: dict, includes: dict):
        stmt = select_stmt(self.model).where(self._unique_where(where))
        stmt = stmt.options(*self._loader_options(includes))
        return db.execute(stmt).scalars().first()

    def _check_fields(self, keys: list[str], context: str) -> list[str]:
        unknown = [k for k in keys if k not in self._columns]
        if unknown:
            raise QueryValidationError(f"unknown field(s) {unknown} in {context}", model=self.label)
        return keys

    def _validate(self, schema: type[BaseModel], values: dict) -> dict:
        try:
            return schema.model_validate(values).model_dump(exclude_unset=True)
        except ValidationError as exc:
            raise QueryValidationError(str(exc), model=self.label) from exc

    def _split_nested(self, data) -> tuple[dict, dict]:
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        if not isinstance(data, dict):
            raise QueryValidationError("record data must be a dict", model=self.label)
        values, nested = {}, {}
        for key, value in data.items():
            rel = self._relations.get(key)
            if rel is None:
                values[key] = value
                continue
            if not rel.uselist or not isinstance(value, dict) or set(value) != {"create"}:
                raise QueryValidationError(
                    f"relation {key!r} only accepts nested {{'create': [...]}} on to-many relations",
                    model=self.label,
                )
            payload = value["create"]
            nested[key] = payload if isinstance(payload, (list, tuple)) else [payload]
        return values, nested

    def _insert(self, db: Session, data):
        values, nested = self._split_nested(data)
        values = self._validate(self.entity.create_schema, values)
        row = self.model(**values)
        db.add(row)
        db.flush()
        for rel_key, payloads in nested.items():
            rel = self._relations[rel_key]
            target = self._lookup(rel.mapper.class_)
            (local_col, remote_col), = rel.local_remote_pairs
            for payload in payloads:
                child = dict(payload.model_dump(exclude_unset=True) if isinstance(payload, BaseModel) else payload)
                child[remote_col.key] = getattr(row, local_col.key)
                target._insert(db, child)
        return row

    def _is_duplicate(self, db: Session, values: dict, seen: set) -> bool:
        for key in self._unique_keys:
            if not all(values.get(k) is not None for k in key):
                continue
            ident = (key, tuple(values[k] for k in key))
            if ident in seen:
                return True
            clause = and_(*[getattr(self.model, k) == values[k] for k in key])
            if db.execute(select_stmt(getattr(self.model, self._pk)).where(clause)).first() is not None:
                return True
        for key in self._unique_keys:
            if all(values.get(k) is not None for k in key):
                seen.add((key, tuple(values[k] for k in key)))
        return False

    def _is_numeric(self, key: str) -> bool:
        return isinstance(self._columns[key].columns[0].type, (Integer, Float, Numeric))

    def _split_update(self, data) -> tuple[dict, dict]:
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        if not isinstance(data, dict):
            raise QueryValidationError("update data must be a dict", model=self.label)

        plain, atomic = {}, {}
        for key, value in data.items():
            if key in self._columns and self._is_numeric(key) and isinstance(value, dict):
                if len(value) != 1 or next(iter(value)) not in ATOMIC_OPERATIONS:
                    raise QueryValidationError(
                        f"numeric update on {key!r} expects one of {ATOMIC_OPERATIONS}", model=self.label
                    )
                op, amount = next(iter(value.items()))
                if op == "set":
                    plain[key] = amount
                    continue
                if isinstance(amount, bool) or not isinstance(amount, (int, float)):
                    raise QueryValidationError(f"{op!r} on {key!r} expects a number", model=self.label)
                col = getattr(self.model, key)
                atomic[key] = {
                    "increment": col + amount,
                    "decrement": col - amount,
                    "multiply": col * amount,
                    "divide": col / amount,
                }[op]
            else:
                plain[key] = value

        return self._validate(self.entity.update_schema, plain), atomic

    def _apply_update(self, row, data) -> None:
        values, atomic = self._split_update(data)
        for key, value in values.items():
            setattr(row, key, value)
        for key, expr in atomic.items():
            setattr(row, key, expr)

    # ---------- result shaping ----------
    def _prepare_shape(self, select, include, omit) -> tuple[list[str], dict]:
        if select is not None and include is not None:
            raise QueryValidationError("select and include cannot be used together", model=self.label)
        selected = _as_field_list(select) if select is not None else None
        fields = self._visible_fields(selected, omit)
        includes = self._normalize_include(include, selected)
        return fields, includes

    def _visible_fields(self, selected: Optional[list[str]], omit: Optional[dict]) -> list[str]:
        if selected is not None:
            unknown = [k for k in selected if k not in self._columns and k not in self._relations]
            if unknown:
                raise QueryValidationError(f"cannot select unknown field(s) {unknown}", model=self.label)
            return [k for k in selected if k in self._columns]

        hidden = set(self._omit)
        for key, flag in (omit or {}).items():
            if key not in self._columns:
                raise QueryValidationError(f"cannot omit unknown field {key!r}", model=self.label)
            if flag:
                hidden.add(key)
            else:
                hidden.discard(key)
        return [k for k in self._columns if k not in hidden]

    def _normalize_include(self, include, selected: Optional[list[str]]) -> dict:
        includes: dict = {}
        for key, spec in (include or {}).items():
            if key not in self._relations:
                raise QueryValidationError(f"cannot include unknown relation {key!r}", model=self.label)
            if not spec:
                continue
            if spec is not True and (not isinstance(spec, dict) or set(spec) - NESTED_KEYS):
                raise QueryValidationError(
                    f"include of {key!r} expects True or a dict with {sorted(NESTED_KEYS)}", model=self.label
                )
            includes[key] = spec
        for key in selected or []:
            if key in self._relations:
                includes.setdefault(key, True)
        return includes

    def _nested(self, rel_key: str, spec) -> tuple["Repository", list[str], dict]:
        target = self._lookup(self._relations[rel_key].mapper.class_)
        if spec is True:
            spec = {}
        fields, includes = target._prepare_shape(spec.get("select"), spec.get("include"), spec.get("omit"))
        return target, fields, includes

    def _loader_options(self, includes: dict, parent=None) -> list:
        options = []
        for rel_key, spec in includes.items():
            attr = getattr(self.model, rel_key)
            loader = parent.selectinload(attr) if parent is not None else selectinload(attr)
            options.append(loader)
            target, _, nested = self._nested(rel_key, spec)
            options.extend(target._loader_options(nested, loader))
        return options

    def _shape(self, row, fields: list[str], includes: dict):
        data = {k: getattr(row, k) for k in fields}
        for rel_key, spec in includes.items():
            target, nested_fields, nested_includes = self._nested(rel_key, spec)
            value = getattr(row, rel_key)
            if self._relations[rel_key].uselist:
                data[rel_key] = [target._shape(r, nested_fields, nested_includes) for r in value]
            else:
                data[rel_key] = None if value is None else target._shape(value, nested_fields, nested_includes)

        schema = self.entity.schema
        if len(fields) == len(self._columns):
            return schema.model_validate(data)
        return schema.model_construct(**data)

    # ---------- aggregate helpers ----------
    def _aggregate_spec(self, aggregates: dict) -> list[tuple[str, Optional[str], Any]]:
        spec = []
        for fn, fields in aggregates.items():
            if fn not in AGGREGATES:
                raise QueryValidationError(f"unknown aggregate {fn!r}, expected one of {AGGREGATES}", model=self.label)
            if fn == "count" and fields is True:
                spec.append((fn, None, func.count().label("count___all")))
                continue
            if not fields:
                continue
            for key in _as_field_list(fields):
                if fn == "count" and key == "_all":
                    spec.append((fn, None, func.count().label("count___all")))
                    continue
                self._check_fields([key], fn)
                if fn in ("sum", "avg") and not self._is_numeric(key):
                    raise QueryValidationError(f"{fn} needs a numeric field, {key!r} is not", model=self.label)
                col = getattr(self.model, key)
                spec.append((fn, key, getattr(func, fn)(col).label(f"{fn}__{key}")))
        return spec

    def _aggregate_result(self, spec, mapping, aggregates: dict) -> dict:
        result: dict = {}
        for fn, key, expr in spec:
            value = mapping[expr.name]
            if fn == "count" and key is None and aggregates.get("count") is True:
                result["count"] = int(value)
                continue
            if fn == "count":
                value = int(value)
            result.setdefault(fn, {})[key or "_all"] = value
        return result

    def _having_clause(self, having: dict, by: list[str]):
        clauses = []
        for key, value in having.items():
            if key in ("AND", "OR", "NOT"):
                parts = [self._having_clause(h, by) for h in (value if isinstance(value, list) else [value])]
                if key == "AND":
                    clauses.append(and_(true(), *parts))
                elif key == "OR":
                    clauses.append(or_(false(), *parts))
                else:
                    clauses.append(not_(and_(true(), *parts)))
                continue
            self._check_fields([key], "having")
            col = getattr(self.model, key)
            if isinstance(value, dict) and set(value) & set(AGGREGATES):
                for fn, condition in value.items():
                    if fn not in AGGREGATES:
                        raise QueryValidationError(f"cannot mix aggregates and plain filters on {key!r}", model=self.label)
                    expr = getattr(func, fn)(col)
                    clauses.append(scalar_filter(expr, condition, nullable=True, field=f"{fn}({key})"))
            else:
                if key not in by:
                    raise QueryValidationError(
                        f"having on {key!r} needs an aggregate or the field in group_by", model=self.label
                    )
                clauses.append(scalar_filter(col, value, nullable=is_nullable(self.model, key), field=key))
        return and_(true(), *clauses)
