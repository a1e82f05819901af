"""Guard templates.

A template is a filter tree that may reference the query context:

- ``{"$auth": "path.to.attr"}`` is replaced by the user's attribute,
- ``{"$preValue": "field"}`` by the entity's pre-update value,
- ``{"$authenticated": true}`` folds to whether a user is present,
- ``{"$user": {<filter>}}`` folds to whether the user matches the filter.

Comparing against a missing context value folds that comparison to false.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from warden.errors import UsageError
from warden.query.filters import SCALAR_OPERATORS, FilterEvaluator
from warden.query.logic import LOGICAL_KEYS, and_, make_false, make_true, not_, or_
from warden.utils import enumerate_items

logger = logging.getLogger(__name__)

AUTH_REF = "$auth"
PRE_VALUE_REF = "$preValue"
AUTHENTICATED = "$authenticated"
USER_FILTER = "$user"

RELATION_OPERATORS = {"some", "every", "none", "is", "isNot"}

_user_evaluator = FilterEvaluator(None)


class _MissingValue(Exception):
    pass


def lookup_path(source: dict[str, Any] | None, path: str) -> Any:
    """Resolve a dotted path against a dict, raising KeyError when absent."""
    current: Any = source
    for part in path.split(".") if path else []:
        if not isinstance(current, dict) or current.get(part) is None:
            raise KeyError(path)
        current = current[part]
    if current is None:
        raise KeyError(path)
    return current


def _reference(value: Any) -> tuple[str, str] | None:
    if isinstance(value, dict) and len(value) == 1:
        key = next(iter(value))
        if key in (AUTH_REF, PRE_VALUE_REF):
            return key, value[key]
    return None


def resolve_template(template: Any, user: dict[str, Any] | None, pre_value: dict[str, Any] | None = None) -> Any:
    """Resolve a guard template into a plain filter (or constant filter)."""
    if isinstance(template, bool):
        return make_true() if template else make_false()
    if not isinstance(template, dict):
        raise UsageError(f"Invalid guard template: {template!r}")
    return _resolve_filter(template, user, pre_value)


def _resolve_filter(node: Any, user: dict[str, Any] | None, pre_value: dict[str, Any] | None) -> Any:
    if isinstance(node, bool):
        return make_true() if node else make_false()
    if not isinstance(node, dict):
        raise UsageError(f"Invalid guard template: {node!r}")

    parts = []
    for key, value in node.items():
        if key == AUTHENTICATED:
            parts.append(make_true() if (user is not None) == bool(value) else make_false())
        elif key == USER_FILTER:
            matched = user is not None and _user_evaluator.matches(None, user, value)
            parts.append(make_true() if matched else make_false())
        elif key == "AND":
            parts.append(and_(*[_resolve_filter(item, user, pre_value) for item in enumerate_items(value)]))
        elif key == "OR":
            parts.append(or_(*[_resolve_filter(item, user, pre_value) for item in enumerate_items(value)]))
        elif key == "NOT":
            parts.append(not_(and_(*[_resolve_filter(item, user, pre_value) for item in enumerate_items(value)])))
        else:
            try:
                parts.append({key: _resolve_value(value, user, pre_value)})
            except _MissingValue:
                parts.append(make_false())
    return and_(*parts)


def _resolve_value(value: Any, user: dict[str, Any] | None, pre_value: dict[str, Any] | None) -> Any:
    ref = _reference(value)
    if ref is not None:
        kind, path = ref
        source = user if kind == AUTH_REF else pre_value
        try:
            return lookup_path(source, path)
        except KeyError:
            logger.debug("Guard references missing %s value '%s'", kind, path)
            raise _MissingValue(path) from None

    if isinstance(value, list):
        return [_resolve_value(item, user, pre_value) for item in value]
    if not isinstance(value, dict) or not value:
        return value

    if all(k in SCALAR_OPERATORS for k in value):
        return {k: _resolve_value(v, user, pre_value) for k, v in value.items()}
    if all(k in RELATION_OPERATORS for k in value):
        return {k: (None if v is None else _resolve_filter(v, user, pre_value)) for k, v in value.items()}
    # direct conditions on a to-one relation
    return _resolve_filter(value, user, pre_value)


def iter_references(template: Any, kind: str = AUTH_REF) -> Iterator[str]:
    """Yield every ``$auth`` (or ``$preValue``) path referenced by a template."""
    if isinstance(template, list):
        for item in template:
            yield from iter_references(item, kind)
    elif isinstance(template, dict):
        ref = _reference(template)
        if ref is not None:
            if ref[0] == kind:
                yield ref[1]
            return
        for key, value in template.items():
            if key == USER_FILTER and kind == AUTH_REF:
                yield from _user_filter_paths(value)
            elif key != AUTHENTICATED:
                yield from iter_references(value, kind)


def _user_filter_paths(node: Any) -> Iterator[str]:
    if not isinstance(node, dict):
        return
    for key, value in node.items():
        if key in LOGICAL_KEYS:
            for item in enumerate_items(value):
                yield from _user_filter_paths(item)
        else:
            yield key
