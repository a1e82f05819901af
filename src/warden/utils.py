"""Small helpers shared across warden modules."""

import copy
from typing import Any, Iterator


def lower_first(value: str) -> str:
    """Lower-case the first character of a string."""
    return value[:1].lower() + value[1:] if value else value


def upper_first(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


def enumerate_items(value: Any) -> list[Any]:
    """Normalize a payload that may be a single item, a list, or missing into a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def clone(value: Any) -> Any:
    return copy.deepcopy(value)


def walk_keys(value: Any) -> Iterator[str]:
    """Yield every dict key found anywhere inside a nested payload."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield key
            yield from walk_keys(item)
    elif isinstance(value, list):
        for item in value:
            yield from walk_keys(item)


def deep_merge(target: Any, source: Any) -> Any:
    """Merge ``source`` into a copy of ``target``.

    Dicts merge key by key. Lists combine by index: items at the same position
    are merged, scalars missing from the target are appended.
    """
    if isinstance(target, dict) and isinstance(source, dict):
        result = dict(target)
        for key, value in source.items():
            if key in result:
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = clone(value)
        return result
    if isinstance(target, list) and isinstance(source, list):
        result = list(target)
        for index, item in enumerate(source):
            if index >= len(result):
                result.append(clone(item))
            elif isinstance(item, (dict, list)):
                result[index] = deep_merge(result[index], item)
            elif item not in target:
                result.append(item)
        return result
    return clone(source)


def is_selected(value: Any) -> bool:
    """Whether a select/include entry requests the field; an empty dict does."""
    return value is not None and value is not False
