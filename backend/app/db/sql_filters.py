"""Compile document filters and sorts to SQL over the JSON ``data`` column.

The operator dialect is the one the query layer produces (``$and``, ``$or``,
``$in``, ``$regex``, comparisons, ...). Array fields match when any element
matches, so field conditions are evaluated against the elements of the value:
``json_each`` on SQLite, ``jsonb_array_elements`` on PostgreSQL (a scalar is
wrapped in a one-element array first).
"""

import re
from collections.abc import Callable
from typing import Any

from sqlalchemy import (
    Numeric,
    Table,
    Text,
    and_,
    case,
    cast,
    exists,
    false,
    func,
    literal,
    literal_column,
    not_,
    or_,
    select,
    true,
    type_coerce,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql.elements import ColumnElement

from backend.app.db.documents import SortSpec

_FIELD_PART = re.compile(r"^[A-Za-z0-9_\-]+$")
_COMPARISONS = {
    "$gt": lambda left, right: left > right,
    "$gte": lambda left, right: left >= right,
    "$lt": lambda left, right: left < right,
    "$lte": lambda left, right: left <= right,
}


class _Element:
    """One element of a JSON value, as seen inside an EXISTS subquery."""

    def __init__(self, text: ColumnElement, number: ColumnElement, kind: ColumnElement) -> None:
        self.text = text
        self.number = number
        self.kind = kind


class JsonFilterCompiler:
    """Build WHERE and ORDER BY clauses for one document table.

    Args:
        table: Table with ``id`` and ``data`` columns
        dialect: SQLAlchemy dialect name ("sqlite" or "postgresql")
    """

    def __init__(self, table: Table, dialect: str) -> None:
        if dialect not in ("sqlite", "postgresql"):
            raise ValueError(f"Unsupported SQL dialect for document filters: {dialect}")
        self.table = table
        self.dialect = dialect
        self._data = table.c.data

    # Paths

    @staticmethod
    def _parts(path: str) -> list[str] | None:
        parts = path.split(".")
        return parts if all(_FIELD_PART.match(part) for part in parts) else None

    def _sqlite_path(self, parts: list[str]) -> str:
        return "$" + "".join(f'."{part}"' for part in parts)

    def _pg_node(self, parts: list[str]) -> ColumnElement:
        return type_coerce(self._data, JSONB)[tuple(parts)]

    def _kind_names(self) -> dict[str, tuple[str, ...]]:
        if self.dialect == "sqlite":
            return {"string": ("text",), "number": ("integer", "real")}
        return {"string": ("string",), "number": ("number",)}

    # Element-wise matching

    def _any_element(
        self, parts: list[str], predicate: Callable[[_Element], ColumnElement]
    ) -> ColumnElement:
        if self.dialect == "sqlite":
            each = func.json_each(self._data, self._sqlite_path(parts)).table_valued("value", "type")
            element = _Element(text=each.c.value, number=each.c.value, kind=each.c.type)
        else:
            node = self._pg_node(parts)
            wrapped = case(
                (func.jsonb_typeof(node) == "array", node), else_=func.jsonb_build_array(node)
            )
            each = func.jsonb_array_elements(wrapped).table_valued("value").render_derived()
            kind = func.jsonb_typeof(each.c.value)
            text = each.c.value.op("#>>", return_type=Text)(literal_column("'{}'"))
            element = _Element(
                text=text, number=case((kind == "number", cast(text, Numeric))), kind=kind
            )
        return exists(select(literal(1)).select_from(each).where(predicate(element)))

    def _equals(self, value: Any) -> Callable[[_Element], ColumnElement]:
        kinds = self._kind_names()
        if isinstance(value, bool):
            if self.dialect == "sqlite":
                return lambda e: e.kind == ("true" if value else "false")
            return lambda e: and_(e.kind == "boolean", e.text == ("true" if value else "false"))
        if isinstance(value, (int, float)):
            return lambda e: and_(e.kind.in_(kinds["number"]), e.number == value)
        if isinstance(value, str):
            return lambda e: and_(e.kind.in_(kinds["string"]), e.text == value)
        raise ValueError(f"Unsupported filter value for SQL documents: {value!r}")

    def _compare(self, op: str, value: Any) -> Callable[[_Element], ColumnElement]:
        kinds = self._kind_names()
        compare = _COMPARISONS[op]
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return lambda e: and_(e.kind.in_(kinds["number"]), compare(e.number, value))
        if isinstance(value, str):
            return lambda e: and_(e.kind.in_(kinds["string"]), compare(e.text, value))
        return lambda e: false()

    def _regex(self, pattern: str, options: str) -> Callable[[_Element], ColumnElement]:
        kinds = self._kind_names()
        if "i" in options:
            pattern = f"(?i){pattern}"
        return lambda e: and_(e.kind.in_(kinds["string"]), e.text.regexp_match(pattern))

    def _missing_or_null(self, parts: list[str]) -> ColumnElement:
        if self.dialect == "sqlite":
            kind = func.json_type(self._data, self._sqlite_path(parts))
        else:
            kind = func.jsonb_typeof(self._pg_node(parts))
        return or_(kind.is_(None), kind == "null")

    def _exists(self, parts: list[str]) -> ColumnElement:
        if self.dialect == "sqlite":
            return func.json_type(self._data, self._sqlite_path(parts)).is_not(None)
        return self._pg_node(parts).is_not(None)

    def _member(self, parts: list[str], value: Any) -> ColumnElement:
        if value is None:
            return self._missing_or_null(parts)
        if parts == ["id"] and isinstance(value, str):
            return self.table.c.id == value
        return self._any_element(parts, self._equals(value))

    def _in(self, parts: list[str], values: list[Any]) -> ColumnElement:
        if parts == ["id"] and values and all(isinstance(v, str) for v in values):
            return self.table.c.id.in_(values)
        clauses = [self._member(parts, value) for value in values]
        return or_(*clauses) if clauses else false()

    # Conditions

    def _operators(self, parts: list[str], condition: dict[str, Any]) -> ColumnElement:
        options = condition.get("$options", "")
        clauses: list[ColumnElement] = []
        for op, operand in condition.items():
            if op == "$options":
                continue
            if op == "$eq":
                clauses.append(self._member(parts, operand))
            elif op == "$ne":
                clauses.append(not_(self._member(parts, operand)))
            elif op == "$in":
                clauses.append(self._in(parts, list(operand)))
            elif op == "$nin":
                clauses.append(not_(self._in(parts, list(operand))))
            elif op in _COMPARISONS:
                clauses.append(self._any_element(parts, self._compare(op, operand)))
            elif op == "$regex":
                if isinstance(operand, re.Pattern):
                    options += "i" if operand.flags & re.IGNORECASE else ""
                    operand = operand.pattern
                clauses.append(self._any_element(parts, self._regex(str(operand), options)))
            elif op == "$exists":
                clauses.append(self._exists(parts) if operand else not_(self._exists(parts)))
            elif op == "$all":
                clauses.append(and_(true(), *(self._member(parts, item) for item in operand)))
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
        return and_(true(), *clauses)

    def _field(self, path: str, condition: Any) -> ColumnElement:
        parts = self._parts(path)
        if parts is None:
            # Not addressable as a JSON path, so no stored document has it
            return true() if condition is None else false()
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            return self._operators(parts, condition)
        if isinstance(condition, re.Pattern):
            options = "i" if condition.flags & re.IGNORECASE else ""
            return self._any_element(parts, self._regex(condition.pattern, options))
        return self._member(parts, condition)

    def where(self, filter_: dict[str, Any] | None) -> ColumnElement:
        """Compile ``filter_`` to a boolean SQL expression.

        Raises:
            ValueError: If the filter uses an unsupported operator or value
        """
        if not filter_:
            return true()

        clauses: list[ColumnElement] = []
        for key, condition in filter_.items():
            if key == "$and":
                clauses.append(and_(true(), *(self.where(sub) for sub in condition)))
            elif key == "$or":
                clauses.append(or_(false(), *(self.where(sub) for sub in condition)))
            elif key == "$nor":
                clauses.append(not_(or_(false(), *(self.where(sub) for sub in condition))))
            else:
                clauses.append(self._field(key, condition))
        return and_(true(), *clauses)

    def order_by(self, sort: SortSpec | None) -> list[ColumnElement]:
        """Compile a sort spec; missing values sort first ascending, last descending."""
        clauses: list[ColumnElement] = []
        for path, direction in sort or []:
            parts = self._parts(path)
            if parts is None:
                continue
            if parts == ["id"]:
                key: ColumnElement = self.table.c.id
            elif self.dialect == "sqlite":
                key = func.json_extract(self._data, self._sqlite_path(parts))
            else:
                key = self._pg_node(parts)
            if direction < 0:
                clauses.append(key.desc().nulls_last() if self.dialect == "postgresql" else key.desc())
            else:
                clauses.append(key.asc().nulls_first() if self.dialect == "postgresql" else key.asc())
        return clauses
