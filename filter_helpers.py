from __future__ import annotations

import operator
from typing import Any, Iterable, Optional

from sqlalchemy import and_, false, func, inspect, not_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from errors import QueryValidationError

SCALAR_OPERATORS = {
    "equals",
    "not",
    "in",
    "not_in",
    "lt",
    "lte",
    "gt",
    "gte",
    "contains",
    "starts_with",
    "ends_with",
    "mode",
}
COMPARATORS = {"lt": operator.lt, "lte": operator.le, "gt": operator.gt, "gte": operator.ge}
TO_ONE_OPERATORS = {"is", "is_not"}
TO_MANY_OPERATORS = {"some", "every", "none"}
VALID_ORDERS = {"asc", "desc"}
VALID_MODES = {"default", "insensitive"}


def column_attrs(model) -> dict:
    return {attr.key: attr for attr in inspect(model).column_attrs}


def relationship_attrs(model) -> dict:
    return {rel.key: rel for rel in inspect(model).relationships}


def is_nullable(model, key: str) -> bool:
    return bool(column_attrs(model)[key].columns[0].nullable)


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def build_where(model, where: Optional[dict]) -> ColumnElement:
    """Compile a filter dict into a SQL expression for ``model``."""
    if where is None:
        return true()
    if not isinstance(where, dict):
        raise QueryValidationError(f"filter for {model.__name__} must be a dict, got {type(where).__name__}")

    columns = column_attrs(model)
    relations = relationship_attrs(model)
    clauses: list[ColumnElement] = []

    for key, value in where.items():
        if key == "AND":
            clauses.append(and_(true(), *[build_where(model, w) for w in _as_list(value)]))
        elif key == "OR":
            parts = [build_where(model, w) for w in _as_list(value)]
            clauses.append(or_(false(), *parts))
        elif key == "NOT":
            parts = [build_where(model, w) for w in _as_list(value)]
            clauses.append(not_(and_(true(), *parts)))
        elif key in columns:
            column = getattr(model, key)
            clauses.append(scalar_filter(column, value, nullable=is_nullable(model, key), field=key))
        elif key in relations:
            clauses.append(_relation_filter(model, relations[key], value))
        else:
            raise QueryValidationError(f"unknown field {key!r} in filter for {model.__name__}")

    return and_(true(), *clauses)


def scalar_filter(expr, value: Any, *, nullable: bool = True, field: str = "") -> ColumnElement:
    """Filter one column (or aggregate expression) by a bare value or operator dict."""
    if not isinstance(value, dict):
        return _equals(expr, value, nullable, field)

    unknown = set(value) - SCALAR_OPERATORS
    if unknown:
        raise QueryValidationError(f"unknown filter operator(s) {sorted(unknown)} on {field!r}")

    mode = value.get("mode", "default")
    if mode not in VALID_MODES:
        raise QueryValidationError(f"invalid mode {mode!r} on {field!r}")
    insensitive = mode == "insensitive"
    target = func.lower(expr) if insensitive else expr

    def operand(v):
        return v.lower() if insensitive and isinstance(v, str) else v

    clauses: list[ColumnElement] = []
    for op, v in value.items():
        if op == "mode":
            continue
        if op == "equals":
            clauses.append(_equals(target, operand(v), nullable, field))
        elif op == "not":
            if isinstance(v, dict):
                nested = dict(v)
                if insensitive:
                    nested.setdefault("mode", "insensitive")
                clauses.append(not_(scalar_filter(expr, nested, nullable=nullable, field=field)))
            elif v is None:
                _require_nullable(nullable, field)
                clauses.append(expr.is_not(None))
            else:
                clauses.append(target != operand(v))
        elif op in ("in", "not_in"):
            if not isinstance(v, (list, tuple, set)):
                raise QueryValidationError(f"{op!r} on {field!r} expects a list")
            values = [operand(x) for x in v]
            clauses.append(target.in_(values) if op == "in" else target.not_in(values))
        elif op in ("lt", "lte", "gt", "gte"):
            if v is None:
                raise QueryValidationError(f"{op!r} on {field!r} cannot compare with null")
            clauses.append(COMPARATORS[op](target, operand(v)))
        else:
            if not isinstance(v, str):
                raise QueryValidationError(f"{op!r} on {field!r} expects a string")
            v = operand(v)
            if op == "contains":
                clauses.append(target.contains(v, autoescape=True))
            elif op == "starts_with":
                clauses.append(target.startswith(v, autoescape=True))
            else:
                clauses.append(target.endswith(v, autoescape=True))

    return and_(true(), *clauses)


def _require_nullable(nullable: bool, field: str) -> None:
    if not nullable:
        raise QueryValidationError(f"field {field!r} is not nullable; null comparisons are not allowed")


def _equals(expr, value: Any, nullable: bool, field: str) -> ColumnElement:
    if value is None:
        _require_nullable(nullable, field)
        return expr.is_(None)
    if isinstance(value, (list, tuple, set, dict)):
        raise QueryValidationError(f"equality on {field!r} expects a scalar value")
    return expr == value


def _relation_filter(model, rel, value: Any) -> ColumnElement:
    attr = getattr(model, rel.key)
    target = rel.mapper.class_

    if rel.uselist:
        if not isinstance(value, dict) or not value or set(value) - TO_MANY_OPERATORS:
            raise QueryValidationError(
                f"relation filter {rel.key!r} expects one of {sorted(TO_MANY_OPERATORS)}"
            )
        clauses = []
        for op, nested in value.items():
            if op == "some":
                clauses.append(attr.any(build_where(target, nested)))
            elif op == "none":
                clauses.append(not_(attr.any(build_where(target, nested))))
            else:
                clauses.append(not_(attr.any(not_(build_where(target, nested)))))
        return and_(true(), *clauses)

    if value is None:
        return not_(attr.has())
    if not isinstance(value, dict):
        raise QueryValidationError(f"relation filter {rel.key!r} expects a dict")
    if set(value) & TO_ONE_OPERATORS:
        if set(value) - TO_ONE_OPERATORS:
            raise QueryValidationError(f"cannot mix {sorted(TO_ONE_OPERATORS)} with field filters on {rel.key!r}")
        clauses = []
        for op, nested in value.items():
            if nested is None:
                clauses.append(not_(attr.has()) if op == "is" else attr.has())
            elif op == "is":
                clauses.append(attr.has(build_where(target, nested)))
            else:
                clauses.append(not_(attr.has(build_where(target, nested))))
        return and_(true(), *clauses)
    return attr.has(build_where(target, value))


def normalize_order_by(model, order_by: Any, *, allowed: Optional[Iterable[str]] = None) -> list[tuple[str, bool]]:
    """Return ``[(field, descending), ...]`` for a dict or list of dicts."""
    if order_by is None:
        return []
    allowed = set(allowed) if allowed is not None else set(column_attrs(model))
    result: list[tuple[str, bool]] = []
    for item in _as_list(order_by):
        if not isinstance(item, dict):
            raise QueryValidationError("order_by entries must be dicts like {'field': 'asc'}")
        for key, direction in item.items():
            if key not in allowed:
                raise QueryValidationError(f"cannot order {model.__name__} by {key!r}")
            direction = (direction or "").lower()
            if direction not in VALID_ORDERS:
                raise QueryValidationError(f"invalid sort order {direction!r} for {key!r}")
            result.append((key, direction == "desc"))
    return result


def normalize_limit(value: Optional[int], name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise QueryValidationError(f"{name} must be a non-negative integer")
    return value


def _same(col, pivot) -> ColumnElement:
    return col.is_(None) if pivot is None else col == pivot


def _after(col, pivot, desc: bool, nullable: bool) -> ColumnElement:
    # NULLs sort before every value: first ascending, last descending
    if pivot is None:
        return false() if desc else col.is_not(None)
    if desc:
        return or_(col < pivot, col.is_(None)) if nullable else col < pivot
    return col > pivot


def cursor_clause(model, cursor_row, order: list[tuple[str, bool]]) -> ColumnElement:
    """Rows at or after ``cursor_row`` in the given ordering (inclusive)."""
    pk = inspect(model).primary_key[0]
    keys = list(order)
    if pk.key not in [k for k, _ in keys]:
        keys.append((pk.key, False))

    alternatives = []
    for i, (key, desc) in enumerate(keys):
        prefix = [_same(getattr(model, k), getattr(cursor_row, k)) for k, _ in keys[:i]]
        col = getattr(model, key)
        pivot = getattr(cursor_row, key)
        alternatives.append(and_(*prefix, _after(col, pivot, desc, is_nullable(model, key))))
    alternatives.append(getattr(model, pk.key) == getattr(cursor_row, pk.key))
    return or_(*alternatives)
