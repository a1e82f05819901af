"""In-process evaluation of ``where`` filters against plain dicts.

Used by the in-memory client to run queries, by the policy layer to decide
create guards statically from the input payload, and by guard templates to
test ``$user`` conditions against the current principal.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from warden.errors import UsageError
from warden.metadata.types import FieldInfo, ModelMeta
from warden.query.logic import LOGICAL_KEYS
from warden.utils import enumerate_items

logger = logging.getLogger(__name__)

# Resolves the related value of a relation field for a row: a list for to-many
# relations, a dict or None for to-one relations.
RelationResolver = Callable[[str, dict[str, Any], FieldInfo], Any]

SCALAR_OPERATORS = {
    "equals",
    "not",
    "in",
    "notIn",
    "lt",
    "lte",
    "gt",
    "gte",
    "contains",
    "startsWith",
    "endsWith",
    "mode",
    "has",
    "hasSome",
    "hasEvery",
    "isEmpty",
}


class FilterEvaluator:
    """Evaluates filters for one schema.

    ``model`` may be None, in which case every key is treated as a scalar
    field of a schema-less dict.
    """

    def __init__(self, meta: ModelMeta | None, resolve_relation: RelationResolver | None = None):
        self.meta = meta
        self.resolve_relation = resolve_relation

    def matches(self, model: str | None, row: dict[str, Any], where: Any) -> bool:
        if where is None or where is True:
            return True
        if where is False:
            return False
        if not isinstance(where, dict):
            raise UsageError(f"Invalid filter: {where!r}")

        for key, value in where.items():
            if key == "AND":
                if not all(self.matches(model, row, item) for item in enumerate_items(value)):
                    return False
            elif key == "OR":
                if not any(self.matches(model, row, item) for item in enumerate_items(value)):
                    return False
            elif key == "NOT":
                if any(self.matches(model, row, item) for item in enumerate_items(value)):
                    return False
            elif not self._match_key(model, row, key, value):
                return False
        return True

    def _match_key(self, model: str | None, row: dict[str, Any], key: str, value: Any) -> bool:
        field_info = self.meta.resolve_field(model, key) if (self.meta and model) else None

        if field_info is None:
            if self.meta and model:
                constraint = self.meta.unique_constraints(model).get(key)
                if constraint and isinstance(value, dict):
                    return all(self._match_scalar(row.get(f), value.get(f)) for f in constraint.fields)
                if key not in row:
                    raise UsageError(f"Unknown filter field '{key}' on model '{model}'")
            return self._match_scalar(row.get(key), value)

        if field_info.is_data_model:
            return self._match_relation(model, row, field_info, value)
        return self._match_scalar(row.get(key), value, field_info)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def _match_relation(self, model: str, row: dict[str, Any], field_info: FieldInfo, value: Any) -> bool:
        if self.resolve_relation is None:
            raise UsageError(f"Relation filter on '{model}.{field_info.name}' can't be evaluated here")
        related = self.resolve_relation(model, row, field_info)

        if field_info.is_array:
            if not isinstance(value, dict):
                raise UsageError(f"Invalid to-many relation filter on '{field_info.name}'")
            items = related or []
            for op, condition in value.items():
                if op == "some":
                    if not any(self.matches(field_info.type, item, condition) for item in items):
                        return False
                elif op == "every":
                    if not all(self.matches(field_info.type, item, condition) for item in items):
                        return False
                elif op == "none":
                    if any(self.matches(field_info.type, item, condition) for item in items):
                        return False
                else:
                    raise UsageError(f"Unknown to-many relation filter '{op}' on '{field_info.name}'")
            return True

        if value is None:
            return related is None
        if not isinstance(value, dict):
            raise UsageError(f"Invalid to-one relation filter on '{field_info.name}'")
        if "is" in value or "isNot" in value:
            if "is" in value:
                cond = value["is"]
                if cond is None:
                    if related is not None:
                        return False
                elif related is None or not self.matches(field_info.type, related, cond):
                    return False
            if "isNot" in value:
                cond = value["isNot"]
                if cond is None:
                    if related is None:
                        return False
                elif related is not None and self.matches(field_info.type, related, cond):
                    return False
            return True
        return related is not None and self.matches(field_info.type, related, value)

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    def _match_scalar(self, actual: Any, condition: Any, field_info: FieldInfo | None = None) -> bool:
        is_operator_dict = isinstance(condition, dict) and (
            (field_info is None or field_info.type != "Json")
            and condition
            and all(k in SCALAR_OPERATORS for k in condition)
        )
        if not is_operator_dict:
            return _equals(actual, condition)

        insensitive = condition.get("mode") == "insensitive"
        for op, operand in condition.items():
            if op == "mode":
                continue
            if not _apply_operator(op, actual, operand, insensitive):
                return False
        return True


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def _fold(value: Any, insensitive: bool) -> Any:
    if insensitive and isinstance(value, str):
        return value.lower()
    return value


def _apply_operator(op: str, actual: Any, operand: Any, insensitive: bool) -> bool:
    a = _fold(actual, insensitive)
    b = _fold(operand, insensitive)

    if op == "equals":
        return _equals(a, b)
    if op == "not":
        if isinstance(operand, dict):
            return not all(_apply_operator(k, actual, v, insensitive) for k, v in operand.items() if k != "mode")
        return not _equals(a, b)
    if op == "in":
        return any(_equals(a, _fold(item, insensitive)) for item in operand or [])
    if op == "notIn":
        return not any(_equals(a, _fold(item, insensitive)) for item in operand or [])
    if op == "isEmpty":
        return (len(actual or []) == 0) == bool(operand)
    if op == "has":
        return actual is not None and operand in actual
    if op == "hasSome":
        return actual is not None and any(item in actual for item in operand)
    if op == "hasEvery":
        return actual is not None and all(item in actual for item in operand)

    if a is None or b is None:
        return False
    if op == "lt":
        return a < b
    if op == "lte":
        return a <= b
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "contains":
        return b in a
    if op == "startsWith":
        return a.startswith(b)
    if op == "endsWith":
        return a.endswith(b)
    raise UsageError(f"Unknown filter operator '{op}'")


def referenced_fields(meta: ModelMeta, model: str, where: Any) -> set[str] | None:
    """Collect scalar fields referenced by a filter.

    Returns None when the filter traverses a relation, so it can't be decided
    from a flat payload alone.
    """
    fields: set[str] = set()
    if not isinstance(where, dict):
        return fields
    for key, value in where.items():
        if key in LOGICAL_KEYS:
            for item in enumerate_items(value):
                nested = referenced_fields(meta, model, item)
                if nested is None:
                    return None
                fields |= nested
            continue
        field_info = meta.resolve_field(model, key)
        if field_info is None:
            constraint = meta.unique_constraints(model).get(key)
            if constraint is None:
                return None
            fields.update(constraint.fields)
        elif field_info.is_data_model:
            return None
        else:
            fields.add(key)
    return fields
