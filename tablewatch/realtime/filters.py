"""Subscription filter parsing, canonicalisation and in-process matching.

Clients send ``filters: {page, fields, sort, filter}`` exactly as they would
pass them to the list endpoint:

* ``fields``: ``"id,name"`` or ``["id", "name"]``
* ``sort``: ``"-created_at,name"`` or ``"created_at desc"``
* ``filter``: ``"status = 'open' and amount >= 10"`` or ``{"status": "open"}``
  (as an object, or JSON-encoded when sent as a query parameter)
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tablewatch.db.source import Condition, OrderBy, RowPredicate
from tablewatch.realtime.errors import InvalidFiltersError

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TABLE_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_AND = re.compile(r"\s+and\s+", re.IGNORECASE)
_COMPARISON = re.compile(r"^\s*(\w+)\s*(>=|<=|!=|<>|=|>|<)\s*(.+?)\s*$")
_LIKE = re.compile(r"^\s*(\w+)\s+like\s+(.+?)\s*$", re.IGNORECASE)
_NULL_CHECK = re.compile(r"^\s*(\w+)\s+is\s+(not\s+)?null\s*$", re.IGNORECASE)

FilterOp = Literal["=", "!=", ">", ">=", "<", "<=", "like", "is_null", "not_null"]


def is_identifier(name: str) -> bool:
    return bool(IDENTIFIER.match(name))


def _literal(raw: str) -> Any:
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        return text[1:-1]
    lowered = text.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered == "null":
        return None
    for cast in (int, float):
        try:
            return cast(text)
        except ValueError:
            continue
    return text


class FilterClause(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str
    op: FilterOp = "="
    value: Any = None

    def to_condition(self) -> Condition:
        return Condition(column=self.column, op=self.op, value=self.value)

    def matches(self, record: dict[str, Any]) -> bool:
        if self.column not in record:
            return False
        actual = record[self.column]
        if self.op == "is_null":
            return actual is None
        if self.op == "not_null":
            return actual is not None
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        if self.op == "like":
            pattern = "^" + re.escape(str(self.value)).replace("%", ".*").replace("_", ".") + "$"
            return actual is not None and re.match(pattern, str(actual), re.DOTALL) is not None
        if actual is None or self.value is None:
            return False
        try:
            if self.op == ">":
                return actual > self.value
            if self.op == ">=":
                return actual >= self.value
            if self.op == "<":
                return actual < self.value
            return actual <= self.value
        except TypeError:
            return False


class SortKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: str
    descending: bool = False


class QueryFilters(BaseModel):
    """Normalised list filters; equal filters always canonicalise identically."""

    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    fields: tuple[str, ...] = ()
    sort: tuple[SortKey, ...] = ()
    filter: tuple[FilterClause, ...] = ()

    @classmethod
    def parse(cls, raw: dict[str, Any] | None) -> QueryFilters:
        """Parse wire filters, raising InvalidFiltersError on anything unusable."""
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidFiltersError("filters must be an object")
        unknown = set(raw) - {"page", "fields", "sort", "filter"}
        if unknown:
            raise InvalidFiltersError(f"unsupported filter keys: {', '.join(sorted(unknown))}")
        try:
            parsed = cls(
                page=_parse_page(raw.get("page")),
                fields=_parse_fields(raw.get("fields")),
                sort=_parse_sort(raw.get("sort")),
                filter=_parse_filter(raw.get("filter")),
            )
        except ValidationError as exc:
            raise InvalidFiltersError(f"invalid filters: {exc.errors()[0].get('msg', 'validation failed')}") from exc
        for name in [*parsed.fields, *(s.column for s in parsed.sort), *(c.column for c in parsed.filter)]:
            if not is_identifier(name):
                raise InvalidFiltersError(f"invalid column name in filters: {name!r}")
        return parsed

    def canonical(self) -> str:
        payload = {
            "page": self.page,
            "fields": sorted(set(self.fields)),
            "sort": [[s.column, s.descending] for s in self.sort],
            "filter": sorted(
                ([c.column, c.op, c.value] for c in self.filter),
                key=lambda item: json.dumps(item, sort_keys=True, default=str),
            ),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)

    def predicate(self) -> RowPredicate:
        return RowPredicate(conditions=tuple(clause.to_condition() for clause in self.filter))

    def order_by(self) -> list[OrderBy]:
        return [OrderBy(column=s.column, descending=s.descending) for s in self.sort]

    def offset(self, page_size: int) -> int:
        return (self.page - 1) * page_size

    def matches(self, record: dict[str, Any]) -> bool:
        return all(clause.matches(record) for clause in self.filter)

    def select_fields(self, key_column: str = "id") -> list[str] | None:
        """Columns to fetch; the key column always rides along with an explicit list."""
        if not self.fields:
            return None
        return list(self.fields) if key_column in self.fields else [key_column, *self.fields]

    def project(self, record: dict[str, Any], key_column: str = "id") -> dict[str, Any]:
        if not self.fields:
            return dict(record)
        keep = set(self.fields) | {key_column}
        return {key: value for key, value in record.items() if key in keep}


def _parse_page(value: Any) -> int:
    if value is None or value == "":
        return 1
    if isinstance(value, bool):
        raise InvalidFiltersError("page must be a positive integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidFiltersError("page must be a positive integer") from exc


def _parse_fields(value: Any) -> tuple[str, ...]:
    if value is None or value == "" or value == "*":
        return ()
    items = value.split(",") if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        raise InvalidFiltersError("fields must be a comma separated string or a list")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _parse_sort(value: Any) -> tuple[SortKey, ...]:
    if value is None or value == "":
        return ()
    items = value.split(",") if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        raise InvalidFiltersError("sort must be a comma separated string or a list")
    keys: list[SortKey] = []
    for item in items:
        text = str(item).strip()
        if not text:
            continue
        descending = False
        if text.startswith("-"):
            descending, text = True, text[1:].strip()
        else:
            parts = text.split()
            if len(parts) == 2 and parts[1].lower() in {"asc", "desc"}:
                text, descending = parts[0], parts[1].lower() == "desc"
        keys.append(SortKey(column=text, descending=descending))
    return tuple(keys)


def _parse_filter(value: Any) -> tuple[FilterClause, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str) and value.lstrip().startswith("{"):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise InvalidFiltersError("filter object is not valid JSON") from exc
    if isinstance(value, dict):
        return tuple(FilterClause(column=str(column), op="=", value=item) for column, item in value.items())
    if not isinstance(value, str):
        raise InvalidFiltersError("filter must be an expression string or an object")
    clauses: list[FilterClause] = []
    for part in _AND.split(value.strip()):
        null_check = _NULL_CHECK.match(part)
        if null_check:
            op = "not_null" if null_check.group(2) else "is_null"
            clauses.append(FilterClause(column=null_check.group(1), op=op))
            continue
        like = _LIKE.match(part)
        if like:
            clauses.append(FilterClause(column=like.group(1), op="like", value=_literal(like.group(2))))
            continue
        comparison = _COMPARISON.match(part)
        if comparison is None:
            raise InvalidFiltersError(f"cannot parse filter clause: {part!r}")
        op = "!=" if comparison.group(2) == "<>" else comparison.group(2)
        clauses.append(FilterClause(column=comparison.group(1), op=op, value=_literal(comparison.group(3))))
    return tuple(clauses)
