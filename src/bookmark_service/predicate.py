from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

DEFAULT_OFFSET = 0
DEFAULT_LIMIT = 50
DEFAULT_SORT_BY = "createdAt"
DEFAULT_SORT_DIR = "asc"

BOOKMARK_FIELDS = ("guid", "link", "createdAt", "description", "favorites")
FILTER_OPERANDS = (("filter_value", "eq"), ("filter_from", "gte"), ("filter_to", "lte"))

INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# signed 64-bit, the widest integer SQLite binds
MIN_INTEGER = -(2**63)
MAX_INTEGER = 2**63 - 1


class IntegerOutOfRange(ValueError):
    """Raised for integers SQLite cannot store."""


def is_blank(value: Any) -> bool:
    return value is None or value == ""


def parse_integer(value: Any) -> int:
    """Coerce a query or body value to ``int``.

    Raises ``ValueError`` whose message is the user-facing reason, so rules can
    report it as-is.
    """
    if isinstance(value, bool):
        raise ValueError("is not a number")
    if isinstance(value, int):
        return _bounded(value)
    if isinstance(value, float):
        number = value
    elif isinstance(value, str) and NUMBER_PATTERN.fullmatch(value.strip()):
        text = value.strip()
        if INTEGER_PATTERN.fullmatch(text):
            if len(text.lstrip("+-").lstrip("0")) > 19:
                raise IntegerOutOfRange("is too small" if text.startswith("-") else "is too large")
            return _bounded(int(text))
        number = float(text)
    else:
        raise ValueError("is not a number")
    if not math.isfinite(number) or not number.is_integer():
        raise ValueError("must be an integer")
    return _bounded(int(number))


def _bounded(number: int) -> int:
    if number > MAX_INTEGER:
        raise IntegerOutOfRange("is too large")
    if number < MIN_INTEGER:
        raise IntegerOutOfRange("is too small")
    return number


def parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return value == "true"


FILTER_COERCIONS: dict[str, Callable[[Any], Any]] = {
    "createdAt": parse_integer,
    "favorites": parse_flag,
}


@dataclass(slots=True, frozen=True)
class QueryPredicate:
    """Normalized filter/sort/pagination descriptor handed to storage."""

    fields: tuple[str, ...]
    condition: dict[str, dict[str, Any]]
    order_by: tuple[str, str]
    offset: int
    limit: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": list(self.fields),
            "condition": {name: dict(operands) for name, operands in self.condition.items()},
            "orderBy": list(self.order_by),
            "offset": self.offset,
            "limit": self.limit,
        }


def _param(params: Mapping[str, Any], name: str, default: Any) -> Any:
    value = params.get(name)
    return default if is_blank(value) else value


def build_predicate(params: Mapping[str, Any]) -> QueryPredicate:
    """Turn an already validated list parameter set into a ``QueryPredicate``.

    Input is never mutated. Anything inconsistent here means validation was
    skipped, so it surfaces as ``ValueError`` rather than a request error.
    """
    offset = parse_integer(_param(params, "offset", DEFAULT_OFFSET))
    limit = parse_integer(_param(params, "limit", DEFAULT_LIMIT))
    sort_by = str(_param(params, "sort_by", DEFAULT_SORT_BY))
    sort_dir = str(_param(params, "sort_dir", DEFAULT_SORT_DIR)).lower()

    condition: dict[str, dict[str, Any]] = {}
    filter_name = params.get("filter")
    if not is_blank(filter_name):
        coerce = FILTER_COERCIONS.get(filter_name)
        if coerce is None:
            raise ValueError(f"unsupported filter field: {filter_name!r}")
        operands: dict[str, Any] = {}
        for key, operator in FILTER_OPERANDS:
            raw = params.get(key)
            if not is_blank(raw):
                operands[operator] = coerce(raw)
        if not operands:
            raise ValueError(f"filter {filter_name!r} has no operand")
        # equality and range are exclusive; validation rejects mixing them
        if "eq" in operands:
            operands = {"eq": operands["eq"]}
        condition[filter_name] = operands

    return QueryPredicate(
        fields=BOOKMARK_FIELDS,
        condition=condition,
        order_by=(sort_by, sort_dir),
        offset=offset,
        limit=limit,
    )
