"""Traversal of nested write payloads.

``NestedWriteVisitor.visit()`` walks a private deep copy of a create/update/
delete payload and returns that copy. Callbacks receive the model, the
arguments of the nested operation and a ``VisitorContext``; they may edit
``context.parent`` (the copy's node holding the operation keys) to rewrite the
tree. A callback returning ``False`` stops descent into that subtree, a dict or
list replaces the subtree to descend into, anything else continues.
"""

from __future__ import annotations

import copy
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from warden.metadata.types import FieldInfo, ModelMeta
from warden.utils import enumerate_items

logger = logging.getLogger(__name__)

WRITE_ACTIONS = (
    "create",
    "createMany",
    "connectOrCreate",
    "connect",
    "disconnect",
    "set",
    "update",
    "updateMany",
    "upsert",
    "delete",
    "deleteMany",
)

# payload action key -> callback keyword
_CALLBACK_NAMES = {
    "create": "create",
    "createMany": "create_many",
    "createManyAndReturn": "create_many",
    "connectOrCreate": "connect_or_create",
    "connect": "connect",
    "disconnect": "disconnect",
    "set": "set",
    "update": "update",
    "updateMany": "update_many",
    "upsert": "upsert",
    "delete": "delete",
    "deleteMany": "delete_many",
}

Callback = Callable[..., Any | Awaitable[Any]]


@dataclass(frozen=True)
class NestingPathItem:
    """One level of the ancestor chain of a nested operation."""

    model: str
    where: Any
    unique: bool = False
    field: FieldInfo | None = None


@dataclass
class VisitorContext:
    parent: Any
    nesting_path: tuple[NestingPathItem, ...] = ()
    field: FieldInfo | None = None


@dataclass
class _Frame:
    context: VisitorContext = field(default_factory=lambda: VisitorContext(parent=None))

    def push(self, model: str, where: Any, unique: bool = False) -> VisitorContext:
        ctx = self.context
        item = NestingPathItem(model=model, where=where, unique=unique, field=ctx.field)
        return VisitorContext(parent=ctx.parent, nesting_path=(*ctx.nesting_path, item), field=ctx.field)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _replacement(result: Any) -> Any | None:
    return result if isinstance(result, (dict, list)) else None


class NestedWriteVisitor:
    """Recursive visitor for nested write payloads.

    Callbacks are passed as keyword arguments: ``create``, ``create_many``,
    ``connect_or_create``, ``connect``, ``disconnect``, ``set``, ``update``,
    ``update_many``, ``upsert``, ``delete``, ``delete_many`` receive
    ``(model, args, context)``; ``field`` receives
    ``(field_info, action, value, context)`` for every scalar field written.
    """

    def __init__(self, meta: ModelMeta, **callbacks: Callback):
        unknown = set(callbacks) - set(_CALLBACK_NAMES.values()) - {"field"}
        if unknown:
            raise TypeError(f"Unknown visitor callbacks: {sorted(unknown)}")
        self.meta = meta
        self.callbacks = callbacks

    async def visit(self, model: str, action: str, args: Any) -> Any:
        """Visit a top-level payload.

        Args:
            model: Model the top-level operation targets.
            action: Top-level action, e.g. ``create`` or ``update``.
            args: The operation arguments (``{"data": ...}`` for create,
                ``{"where": ..., "data": ...}`` for update).

        Returns:
            The rewritten copy of ``args``.
        """
        if not args:
            return args
        payload = copy.deepcopy(args)

        top = payload
        if action == "create":
            top = payload.get("data")
        elif action in ("delete", "deleteMany"):
            top = payload.get("where")

        await self._visit(model, action, top, _Frame())
        return payload

    async def _call(self, action: str, *args: Any) -> Any:
        callback = self.callbacks.get(_CALLBACK_NAMES[action])
        if callback is None:
            return None
        return await _maybe_await(callback(*args))

    async def _visit(self, model: str, action: str, data: Any, frame: _Frame) -> None:
        if data is None or data is False:
            return
        toplevel = frame.context.field is None

        if action == "create":
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, {})
                result = await self._call(action, model, item, ctx)
                if result is not False:
                    await self._visit_sub_payload(model, action, _replacement(result) or item, ctx.nesting_path)

        elif action in ("createMany", "createManyAndReturn"):
            ctx = frame.push(model, {})
            result = await self._call(action, model, data, ctx)
            if result is not False:
                sub = _replacement(result)
                for item in enumerate_items(sub if sub is not None else data.get("data")):
                    await self._visit_sub_payload(model, action, item, ctx.nesting_path)

        elif action == "connectOrCreate":
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, item.get("where"))
                result = await self._call(action, model, item, ctx)
                if result is not False:
                    await self._visit_sub_payload(
                        model, action, _replacement(result) or item.get("create"), ctx.nesting_path
                    )

        elif action in ("connect", "set"):
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, item, unique=True)
                await self._call(action, model, item, ctx)

        elif action == "disconnect":
            # a to-one disconnect is a boolean marker, a to-many one a unique filter
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, item, unique=isinstance(item, dict))
                await self._call(action, model, item, ctx)

        elif action == "update":
            for item in reversed(enumerate_items(data)):
                where = item.get("where") if isinstance(item, dict) else None
                ctx = frame.push(model, where)
                result = await self._call(action, model, item, ctx)
                if result is not False:
                    sub = _replacement(result)
                    if sub is None:
                        sub = item["data"] if isinstance(item, dict) and isinstance(item.get("data"), dict) else item
                    await self._visit_sub_payload(model, action, sub, ctx.nesting_path)

        elif action == "updateMany":
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, item.get("where"))
                result = await self._call(action, model, item, ctx)
                if result is not False:
                    await self._visit_sub_payload(model, action, _replacement(result) or item, ctx.nesting_path)

        elif action == "upsert":
            for item in reversed(enumerate_items(data)):
                ctx = frame.push(model, item.get("where"))
                result = await self._call(action, model, item, ctx)
                if result is False:
                    continue
                sub = _replacement(result)
                if sub is not None:
                    await self._visit_sub_payload(model, action, sub, ctx.nesting_path)
                else:
                    await self._visit_sub_payload(model, action, item.get("create"), ctx.nesting_path)
                    await self._visit_sub_payload(model, action, item.get("update"), ctx.nesting_path)

        elif action in ("delete", "deleteMany"):
            for item in reversed(enumerate_items(data)):
                where = item.get("where") if toplevel and isinstance(item, dict) and "where" in item else item
                ctx = frame.push(model, where)
                await self._call(action, model, item, ctx)

        else:
            raise ValueError(f"unhandled action type {action}")

    async def _visit_sub_payload(
        self,
        model: str,
        action: str,
        payload: Any,
        nesting_path: tuple[NestingPathItem, ...],
    ) -> None:
        if not isinstance(payload, dict):
            return
        for key in list(payload.keys()):
            if key not in payload:
                continue
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                continue

            value = payload[key]
            if field_info.is_data_model:
                if not isinstance(value, dict):
                    continue
                for sub_action, sub_data in list(value.items()):
                    if sub_action in WRITE_ACTIONS and sub_data is not None and sub_data is not False:
                        frame = _Frame(VisitorContext(parent=value, nesting_path=nesting_path, field=field_info))
                        await self._visit(field_info.type, sub_action, sub_data, frame)
            else:
                callback = self.callbacks.get("field")
                if callback is not None:
                    ctx = VisitorContext(parent=payload, nesting_path=nesting_path, field=field_info)
                    await _maybe_await(callback(field_info, action, value, ctx))


def visit_model_data(
    meta: ModelMeta,
    model: str,
    data: Any,
    callback: Callable[[str, dict[str, Any], dict[str, Any]], None],
) -> None:
    """Walk an entity tree returned by a query.

    ``callback`` receives ``(model, entity, scalar_data)`` for every entity,
    parents before children.
    """
    for item in enumerate_items(data):
        if not isinstance(item, dict):
            continue
        scalars = {}
        nested = []
        for key, value in item.items():
            field_info = meta.resolve_field(model, key)
            if field_info is not None and field_info.is_data_model:
                nested.append((field_info, value))
            else:
                scalars[key] = value
        callback(model, item, scalars)
        for field_info, value in nested:
            visit_model_data(meta, field_info.type, value, callback)


# ----------------------------------------------------------------------
# Payload surgery
# ----------------------------------------------------------------------


def merge_to_parent(parent: dict[str, Any], key: str, value: Any) -> None:
    """Add ``value`` under ``parent[key]``, turning an existing entry into a list."""
    if parent.get(key):
        if isinstance(parent[key], list):
            parent[key].append(value)
        else:
            parent[key] = [parent[key], value]
    else:
        parent[key] = value


def remove_from_parent(parent: dict[str, Any], key: str, data: Any) -> None:
    """Remove ``data`` (by identity) from ``parent[key]``, dropping the key once empty."""
    current = parent.get(key)
    if current is data:
        del parent[key]
    elif isinstance(current, list):
        for index, item in enumerate(current):
            if item is data:
                del current[index]
                break
        if not current:
            del parent[key]
