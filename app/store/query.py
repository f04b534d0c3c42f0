from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from app.store.base import Document


def resolve_field(document: Document, field: str) -> Any:
    """Resolve `$id`, `$createdAt`, `$updatedAt` or a dotted path into the document fields."""

    if field == "$id":
        return document.id
    if field == "$createdAt":
        return document.created_at
    if field == "$updatedAt":
        return document.updated_at

    value: Any = document.fields
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


@dataclass(frozen=True, slots=True)
class Equal:
    field: str
    values: tuple[Any, ...]

    def matches(self, document: Document) -> bool:
        return resolve_field(document, self.field) in self.values


@dataclass(frozen=True, slots=True)
class Contains:
    """Matches when any of `values` is an element of an array field (or a substring of a string field)."""

    field: str
    values: tuple[Any, ...]

    def matches(self, document: Document) -> bool:
        current = resolve_field(document, self.field)
        if isinstance(current, (list, tuple, set, frozenset)):
            return any(value in current for value in self.values)
        if isinstance(current, str):
            return any(str(value) in current for value in self.values)
        return False


@dataclass(frozen=True, slots=True)
class GreaterThanEqual:
    field: str
    value: Any

    def matches(self, document: Document) -> bool:
        current = resolve_field(document, self.field)
        if current is None:
            return False
        return _comparable(current) >= _comparable(self.value)


@dataclass(frozen=True, slots=True)
class LessThanEqual:
    field: str
    value: Any

    def matches(self, document: Document) -> bool:
        current = resolve_field(document, self.field)
        if current is None:
            return False
        return _comparable(current) <= _comparable(self.value)


@dataclass(frozen=True, slots=True)
class OrderDesc:
    field: str


Filter = Union[Equal, Contains, GreaterThanEqual, LessThanEqual]
QueryItem = Union[Equal, Contains, GreaterThanEqual, LessThanEqual, OrderDesc]


class Query:
    """Constructors for store predicates."""

    @staticmethod
    def equal(field: str, value: Any) -> Equal:
        if isinstance(value, (list, tuple, set, frozenset)):
            return Equal(field, tuple(value))
        return Equal(field, (value,))

    @staticmethod
    def contains(field: str, value: Any) -> Contains:
        if isinstance(value, (list, tuple, set, frozenset)):
            return Contains(field, tuple(value))
        return Contains(field, (value,))

    @staticmethod
    def greater_than_equal(field: str, value: Any) -> GreaterThanEqual:
        return GreaterThanEqual(field, value)

    @staticmethod
    def less_than_equal(field: str, value: Any) -> LessThanEqual:
        return LessThanEqual(field, value)

    @staticmethod
    def order_desc(field: str) -> OrderDesc:
        return OrderDesc(field)


def apply_queries(documents: list[Document], queries: tuple[QueryItem, ...] | list[QueryItem]) -> list[Document]:
    filters = [item for item in queries if not isinstance(item, OrderDesc)]
    orders = [item for item in queries if isinstance(item, OrderDesc)]

    result = [document for document in documents if all(item.matches(document) for item in filters)]
    for order in reversed(orders):
        result.sort(key=lambda document: _sort_key(resolve_field(document, order.field)), reverse=True)
    return result


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    return (1, _comparable(value))
