"""Boolean algebra over filter trees.

A filter is a ``where``-shaped dict. The constants are ``{"AND": []}`` (always
true, so is an empty dict) and ``{"OR": []}`` (always false). Every helper
returns a new tree and folds constants away where it can.
"""

from typing import Any

from warden.utils import enumerate_items

LOGICAL_KEYS = ("AND", "OR", "NOT")


def make_true() -> dict[str, Any]:
    return {"AND": []}


def make_false() -> dict[str, Any]:
    return {"OR": []}


def is_true(condition: Any) -> bool:
    if condition is True:
        return True
    if not isinstance(condition, dict):
        return False
    keys = list(condition.keys())
    return len(keys) == 0 or (keys == ["AND"] and condition["AND"] == [])


def is_false(condition: Any) -> bool:
    if condition is False:
        return True
    if not isinstance(condition, dict):
        return False
    return list(condition.keys()) == ["OR"] and condition["OR"] == []


def reduce(condition: Any) -> Any:
    """Fold constant sub-conditions out of a filter tree."""
    if condition is True:
        return make_true()
    if condition is False:
        return make_false()
    if not isinstance(condition, dict):
        return condition

    result: dict[str, Any] = {}
    for key, value in condition.items():
        if value is None:
            result[key] = value
            continue

        if key == "AND":
            children = [reduce(c) for c in enumerate_items(value)]
            if any(is_false(c) for c in children):
                return make_false()
            children = [c for c in children if not is_true(c)]
            if children:
                result["AND"] = children
        elif key == "OR":
            children = [reduce(c) for c in enumerate_items(value)]
            if any(is_true(c) for c in children):
                continue
            children = [c for c in children if not is_false(c)]
            if not children:
                return make_false()
            result["OR"] = children
        elif key == "NOT":
            children = [reduce(c) for c in enumerate_items(value)]
            if any(is_true(c) for c in children):
                return make_false()
            children = [c for c in children if not is_false(c)]
            if children:
                result["NOT"] = children if isinstance(value, list) or len(children) > 1 else children[0]
        else:
            result[key] = value

    if not result:
        return make_true()
    return result


def and_(*conditions: Any) -> Any:
    filtered = [c for c in conditions if c is not None]
    if not filtered:
        return make_true()
    if len(filtered) == 1:
        return reduce(filtered[0])
    return reduce({"AND": filtered})


def or_(*conditions: Any) -> Any:
    filtered = [c for c in conditions if c is not None]
    if not filtered:
        return make_false()
    if len(filtered) == 1:
        return reduce(filtered[0])
    return reduce({"OR": filtered})


def not_(condition: Any) -> Any:
    if condition is None:
        return make_true()
    if isinstance(condition, bool):
        return make_true() if not condition else make_false()
    return reduce({"NOT": condition})


def merge_where(where: dict[str, Any] | None, extra: Any) -> dict[str, Any]:
    """Append ``extra`` to the ``AND`` list of ``where``, keeping the original structure."""
    where = dict(where or {})
    if is_true(extra):
        return where
    if "AND" in where:
        where["AND"] = [*enumerate_items(where["AND"]), extra]
    else:
        where["AND"] = [extra]
    return where
