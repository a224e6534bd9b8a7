"""Errors and row filters shared by the remote store backends.

A backend is any object offering the coroutines ``query``, ``insert``,
``update``, ``delete``, ``upload`` and ``subscribe`` plus a
``presence_channel(name, key)`` factory. ``InMemoryBackend`` and
``HttpBackend`` are the two implementations shipped with the package.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple, Union

from .models import parse_ts


class BackendError(Exception):
    """Base class for failures reported by a remote backend."""


class TransientNetworkError(BackendError):
    pass


class NotFoundError(BackendError):
    pass


FILTER_OPS = ("eq", "neq", "gt", "in", "either")

Clause = Tuple[str, Any, Any]

_TS_FIELDS = {"created_at", "last_message_at", "last_seen", "user1_deleted_at", "user2_deleted_at"}


def _coerce(field_name: str, value: Any) -> Any:
    if field_name in _TS_FIELDS:
        return parse_ts(value)
    return value


@dataclass
class Filter:
    """Conjunction of simple column clauses, evaluable locally and JSON friendly."""

    clauses: List[Clause] = field(default_factory=list)

    def eq(self, column: str, value: Any) -> "Filter":
        self.clauses.append(("eq", column, value))
        return self

    def neq(self, column: str, value: Any) -> "Filter":
        self.clauses.append(("neq", column, value))
        return self

    def gt(self, column: str, value: Any) -> "Filter":
        self.clauses.append(("gt", column, value))
        return self

    def is_in(self, column: str, values: Iterable[Any]) -> "Filter":
        self.clauses.append(("in", column, list(values)))
        return self

    def either(self, columns: Iterable[str], value: Any) -> "Filter":
        """Match rows where any of ``columns`` equals ``value``."""

        self.clauses.append(("either", list(columns), value))
        return self

    def matches(self, row: Dict[str, Any]) -> bool:
        for op, column, value in self.clauses:
            if op == "either":
                if not any(row.get(name) == value for name in column):
                    return False
                continue
            actual = _coerce(column, row.get(column))
            if op == "eq":
                if actual != _coerce(column, value):
                    return False
            elif op == "neq":
                if actual == _coerce(column, value):
                    return False
            elif op == "gt":
                expected = _coerce(column, value)
                if actual is None or expected is None or not actual > expected:
                    return False
            elif op == "in":
                if actual not in value:
                    return False
            else:
                raise ValueError(f"unsupported filter op: {op}")
        return True

    def to_json(self) -> List[List[Any]]:
        return [[op, column, value] for op, column, value in self.clauses]

    @classmethod
    def from_json(cls, data: Any) -> "Filter":
        if data is None:
            return cls()
        if not isinstance(data, list):
            raise ValueError("filter must be a list of clauses")
        clauses: List[Clause] = []
        for entry in data:
            if not isinstance(entry, list) or len(entry) != 3 or entry[0] not in FILTER_OPS:
                raise ValueError(f"invalid filter clause: {entry!r}")
            clauses.append((entry[0], entry[1], entry[2]))
        return cls(clauses)


Target = Union[str, Filter]


def target_filter(target: Target) -> Filter:
    """Normalise a write target (row id or filter) to a ``Filter``."""

    if isinstance(target, Filter):
        return target
    if isinstance(target, str) and target:
        return Filter().eq("id", target)
    raise ValueError("write target must be a row id or a Filter")


def sort_rows(rows: List[Dict[str, Any]], order_by: str | None, descending: bool = False) -> List[Dict[str, Any]]:
    if not order_by:
        return rows
    # Python's sort is stable, so rows with equal keys keep insertion order.
    present = [row for row in rows if row.get(order_by) is not None]
    missing = [row for row in rows if row.get(order_by) is None]
    present.sort(key=lambda row: _coerce(order_by, row.get(order_by)), reverse=descending)
    return present + missing
