"""Constraint trees for the permission checker.

Constraints are a small boolean language over typed variables (one per scalar
field) and constants. They are produced from resolved guard filters, combined
with caller-supplied field values, folded, and finally handed to a SAT
backend (see ``warden.policy.solver``).
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Union

from warden.errors import UsageError
from warden.metadata.types import FieldInfo, ModelMeta
from warden.query.logic import is_false, is_true
from warden.utils import enumerate_items

logger = logging.getLogger(__name__)

NUMBER_TYPES = {"Int", "BigInt", "Float", "Decimal"}

COMPARISON_KINDS = ("eq", "ne", "gt", "gte", "lt", "lte")
LOGICAL_KINDS = ("and", "or", "not")


@dataclass(frozen=True)
class Value:
    value: bool | int | str
    type: str  # "boolean" | "number" | "string"


@dataclass(frozen=True)
class Variable:
    name: str
    type: str


@dataclass(frozen=True)
class Comparison:
    kind: str
    left: Value | Variable
    right: Value | Variable


@dataclass(frozen=True)
class Logical:
    kind: str
    children: tuple[Constraint, ...]


Constraint = Union[Value, Variable, Comparison, Logical]

TRUE = Value(True, "boolean")
FALSE = Value(False, "boolean")


def all_of(*children: Constraint) -> Logical:
    return Logical("and", tuple(children))


def any_of(*children: Constraint) -> Logical:
    return Logical("or", tuple(children))


def negate(child: Constraint) -> Logical:
    return Logical("not", (child,))


def eq(left: Value | Variable, right: Value | Variable) -> Comparison:
    return Comparison("eq", left, right)


def constraint_type(field_info: FieldInfo) -> str | None:
    """Constraint type of a scalar field, or None if it can't take part in constraints."""
    if field_info.is_data_model or field_info.is_array:
        return None
    if field_info.type in NUMBER_TYPES:
        return "number"
    if field_info.type == "String":
        return "string"
    if field_info.type == "Boolean":
        return "boolean"
    return None


def from_dict(data: Any) -> Constraint:
    """Build a constraint from its plain dict form, e.g. ``{"kind": "eq", "left": ..., "right": ...}``."""
    if isinstance(data, bool):
        return TRUE if data else FALSE
    if not isinstance(data, dict) or "kind" not in data:
        raise UsageError(f"Invalid constraint: {data!r}")
    kind = data["kind"]
    if kind == "value":
        return Value(data["value"], data["type"])
    if kind == "variable":
        return Variable(data["name"], data["type"])
    if kind in COMPARISON_KINDS:
        return Comparison(kind, from_dict(data["left"]), from_dict(data["right"]))
    if kind in LOGICAL_KINDS:
        return Logical(kind, tuple(from_dict(c) for c in data.get("children", [])))
    raise UsageError(f"Unsupported constraint kind '{kind}'")


# ----------------------------------------------------------------------
# Folding
# ----------------------------------------------------------------------


def simplify(constraint: Constraint) -> Constraint:
    """Fold constants: ``and`` stops at a false child, ``or`` at a true one,
    and comparisons between two constants are evaluated directly."""
    if isinstance(constraint, Logical):
        children = [simplify(c) for c in constraint.children]
        if constraint.kind == "not":
            if len(children) != 1:
                raise UsageError('"not" constraint must have exactly one child')
            child = children[0]
            if isinstance(child, Value) and child.type == "boolean":
                return FALSE if child.value else TRUE
            return Logical("not", (child,))
        stop, skip = (FALSE, TRUE) if constraint.kind == "and" else (TRUE, FALSE)
        kept = []
        for child in children:
            if child == stop:
                return stop
            if child != skip:
                kept.append(child)
        if not kept:
            return skip
        if len(kept) == 1:
            return kept[0]
        return Logical(constraint.kind, tuple(kept))

    if isinstance(constraint, Comparison):
        left, right = constraint.left, constraint.right
        if isinstance(left, Value) and isinstance(right, Value):
            return TRUE if _compare_constants(constraint.kind, left, right) else FALSE
    return constraint


def _compare_constants(kind: str, left: Value, right: Value) -> bool:
    if kind == "eq":
        return left.type == right.type and left.value == right.value
    if kind == "ne":
        return not (left.type == right.type and left.value == right.value)
    if left.type != right.type:
        raise UsageError(f"Type mismatch in comparison: {left}, {right}")
    if kind == "gt":
        return left.value > right.value
    if kind == "gte":
        return left.value >= right.value
    if kind == "lt":
        return left.value < right.value
    return left.value <= right.value


# ----------------------------------------------------------------------
# Guard filters -> constraints
# ----------------------------------------------------------------------

_OPERATOR_KINDS = {"equals": "eq", "lt": "lt", "lte": "lte", "gt": "gt", "gte": "gte"}


class GuardTranslator:
    """Translate a resolved guard filter of one model into a constraint.

    Conditions the checker can't model (relation filters, string matching,
    non-integer numbers, ...) become fresh boolean variables, so they are
    treated as possibly true and possibly false.
    """

    def __init__(self, meta: ModelMeta, model: str):
        self.meta = meta
        self.model = model
        self._unknown = itertools.count()

    def translate(self, where: Any) -> Constraint:
        if where is True or is_true(where):
            return TRUE
        if where is False or is_false(where):
            return FALSE
        if not isinstance(where, dict):
            raise UsageError(f"Invalid guard filter: {where!r}")

        parts: list[Constraint] = []
        for key, value in where.items():
            if key == "AND":
                parts.append(all_of(*[self.translate(item) for item in enumerate_items(value)]))
            elif key == "OR":
                parts.append(any_of(*[self.translate(item) for item in enumerate_items(value)]))
            elif key == "NOT":
                parts.append(negate(all_of(*[self.translate(item) for item in enumerate_items(value)])))
            else:
                parts.append(self._field(key, value))
        return all_of(*parts)

    def _unknown_variable(self) -> Variable:
        return Variable(f"__unknown_{next(self._unknown)}", "boolean")

    def _field(self, name: str, condition: Any) -> Constraint:
        field_info = self.meta.resolve_field(self.model, name)
        var_type = constraint_type(field_info) if field_info else None
        if var_type is None:
            return self._unknown_variable()
        variable = Variable(name, var_type)

        if isinstance(condition, dict):
            if condition.get("mode") == "insensitive":
                return self._unknown_variable()
            parts = [self._operator(variable, op, operand) for op, operand in condition.items()]
            return all_of(*parts)
        return self._operator(variable, "equals", condition)

    def _operator(self, variable: Variable, op: str, operand: Any) -> Constraint:
        if op == "not":
            if isinstance(operand, dict):
                return negate(all_of(*[self._operator(variable, k, v) for k, v in operand.items()]))
            return negate(self._operator(variable, "equals", operand))
        if op in ("in", "notIn"):
            options = any_of(*[self._operator(variable, "equals", item) for item in operand or []])
            return options if op == "in" else negate(options)
        kind = _OPERATOR_KINDS.get(op)
        if variable.type == "string" and kind not in (None, "eq"):
            # strings are interned, only equality is meaningful
            return self._unknown_variable()
        value = self._constant(variable, operand)
        if kind is None or value is None:
            return self._unknown_variable()
        return Comparison(kind, variable, value)

    def _constant(self, variable: Variable, operand: Any) -> Value | None:
        if variable.type == "boolean" and isinstance(operand, bool):
            return Value(operand, "boolean")
        if variable.type == "string" and isinstance(operand, str):
            return Value(operand, "string")
        if variable.type == "number" and not isinstance(operand, bool):
            if isinstance(operand, int) and operand >= 0:
                return Value(operand, "number")
            if isinstance(operand, float) and operand.is_integer() and operand >= 0:
                return Value(int(operand), "number")
        return None


def field_value_constraints(meta: ModelMeta, model: str, where: dict[str, Any] | None) -> list[Constraint]:
    """Equality constraints for caller-supplied scalar field values.

    Raises:
        UsageError: If a value is null, targets a relation or array field, or
            doesn't match the field's type.
    """
    result: list[Constraint] = []
    for name, value in (where or {}).items():
        if value is None:
            raise UsageError('Using "null" as filter value is not supported yet')
        field_info = meta.require_field(model, name)
        if field_info.is_data_model or field_info.is_array:
            raise UsageError(f'Providing filter for field "{name}" is not supported. Only scalar fields are allowed.')
        var_type = constraint_type(field_info)
        if var_type is None:
            raise UsageError(
                f'Providing filter for field "{name}" is not supported. '
                "Only number, string, and boolean fields are allowed."
            )
        if isinstance(value, bool):
            value_type = "boolean"
        elif isinstance(value, (int, float)):
            value_type = "number"
        elif isinstance(value, str):
            value_type = "string"
        else:
            raise UsageError(f'Invalid value type for field "{name}". Only number, string or boolean is allowed.')
        if value_type != var_type:
            raise UsageError(f'Invalid value type for field "{name}". Expected "{var_type}".')
        if value_type == "number" and (not float(value).is_integer() or value < 0):
            raise UsageError(f'Invalid value for field "{name}". Only non-negative integers are allowed.')
        if value_type == "number":
            value = int(value)
        result.append(eq(Variable(name, var_type), Value(value, var_type)))
    return result
