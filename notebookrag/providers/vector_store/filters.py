"""Metadata filter evaluation shared by the vector stores.

Filters use a small Mongo-like syntax evaluated against a document's
metadata dict::

    {"category": "residential"}                     equality
    {"category": {"$in": ["residential", "mixed"]}}  membership
    {"tags": {"$contains": "heritage"}}              list member / substring
    {"decision_date": {"$gte": "2020-01-01"}}        range ($gte, $lte, $gt, $lt)
    {"$and": [...]} / {"$or": [...]}                 composition
"""

from __future__ import annotations

from typing import Any

from notebookrag.utils.errors import ValidationError

_OPERATORS = frozenset({"$eq", "$ne", "$in", "$nin", "$contains", "$gte", "$lte", "$gt", "$lt"})


def validate_filter(metadata_filter: dict[str, Any] | None) -> None:
    """Raise :class:`ValidationError` for unknown operators or malformed clauses."""
    if not metadata_filter:
        return
    if not isinstance(metadata_filter, dict):
        raise ValidationError(message="metadata_filter must be an object")
    for key, condition in metadata_filter.items():
        if key in ("$and", "$or"):
            if not isinstance(condition, list):
                raise ValidationError(message=f"{key} expects a list of filters")
            for sub in condition:
                validate_filter(sub)
            continue
        if key.startswith("$"):
            raise ValidationError(message=f"Unknown filter operator {key}")
        if isinstance(condition, dict):
            unknown = set(condition) - _OPERATORS
            if unknown:
                raise ValidationError(message=f"Unknown filter operator(s) {sorted(unknown)} on {key}")
            for op in ("$in", "$nin"):
                if op in condition and not isinstance(condition[op], list):
                    raise ValidationError(message=f"{op} on {key} expects a list")


def matches_filter(metadata: dict[str, Any], metadata_filter: dict[str, Any] | None) -> bool:
    """Return ``True`` if *metadata* satisfies *metadata_filter*.

    A missing or null field never satisfies a condition other than ``$ne``
    and ``$nin``.
    """
    if not metadata_filter:
        return True
    for key, condition in metadata_filter.items():
        if key == "$and":
            if not all(matches_filter(metadata, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches_filter(metadata, sub) for sub in condition):
                return False
            continue
        value = metadata.get(key)
        if isinstance(condition, dict):
            if not all(_apply(op, value, operand) for op, operand in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def _apply(op: str, value: Any, operand: Any) -> bool:
    if op == "$eq":
        return _equals(value, operand)
    if op == "$ne":
        return not _equals(value, operand)
    if op == "$in":
        return value is not None and any(_equals(value, o) for o in operand)
    if op == "$nin":
        return value is None or not any(_equals(value, o) for o in operand)
    if op == "$contains":
        if isinstance(value, list):
            return any(_equals(v, operand) for v in value)
        if isinstance(value, str):
            return str(operand).casefold() in value.casefold()
        return False
    if value is None:
        return False
    try:
        if op == "$gte":
            return value >= operand
        if op == "$lte":
            return value <= operand
        if op == "$gt":
            return value > operand
        if op == "$lt":
            return value < operand
    except TypeError:
        return False
    raise ValidationError(message=f"Unknown filter operator {op}")


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, str) and isinstance(expected, str):
        return value.casefold() == expected.casefold()
    return value == expected
