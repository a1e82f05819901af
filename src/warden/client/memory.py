"""In-memory CRUD client.

Implements the full CRUD contract over per-model row tables, including nested
writes, relation filters, select/include projection, aggregation and
snapshot-based transactions. Rows are stored physically: fields inherited from
a base model live in the base model's table and are reached through the
synthetic ``delegate_aux_*`` relations.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from warden.client.contract import require_args
from warden.errors import (
    ForeignKeyConstraintError,
    NotFoundError,
    UniqueConstraintError,
    UsageError,
)
from warden.metadata.types import FieldInfo, ModelMeta
from warden.query.filters import FilterEvaluator
from warden.utils import enumerate_items, is_selected

logger = logging.getLogger(__name__)

T = TypeVar("T")

ATOMIC_OPERATORS = {"set", "increment", "decrement", "multiply", "divide"}
AGGREGATE_KEYS = ("_count", "_sum", "_avg", "_min", "_max")


class MemoryStore:
    """Row tables shared by a client and its transaction handles."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.sequences: dict[str, int] = {}
        self.lock = asyncio.Lock()

    def table(self, model: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(model, [])

    def snapshot(self) -> tuple[dict[str, list[dict[str, Any]]], dict[str, int]]:
        return copy.deepcopy(self.tables), dict(self.sequences)

    def restore(self, snapshot: tuple[dict[str, list[dict[str, Any]]], dict[str, int]]) -> None:
        tables, sequences = snapshot
        self.tables = tables
        self.sequences = sequences

    def next_sequence(self, model: str, field_name: str) -> int:
        key = f"{model}.{field_name}"
        current = self.sequences.get(key)
        if current is None:
            current = max(
                (row[field_name] for row in self.table(model) if isinstance(row.get(field_name), int)),
                default=0,
            )
        current += 1
        self.sequences[key] = current
        return current


class MemoryClient:
    """A DbClient storing rows in process memory.

    Operations outside a transaction are serialized by the store lock; a
    transaction holds the lock for its whole duration and restores the
    snapshot taken at its start if the callback raises.
    """

    def __init__(self, meta: ModelMeta, store: MemoryStore | None = None, *, in_transaction: bool = False):
        self.meta = meta
        self.store = store or MemoryStore()
        self.in_transaction = in_transaction
        self._engine = _Engine(meta, self.store)

    def model(self, name: str) -> "MemoryModel":
        self.meta.get_model(name)
        return MemoryModel(self, name)

    async def transaction(
        self,
        fn: Callable[["MemoryClient"], Awaitable[T]],
        *,
        isolation_level: str | None = None,
        max_wait: float | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` with a transaction-scoped client.

        Args:
            fn: Coroutine function receiving the transaction handle.
            isolation_level: Accepted for contract compatibility; the store is serializable.
            max_wait: Milliseconds to wait for the store lock.
            timeout: Milliseconds the callback may run before the transaction is aborted.

        Returns:
            Whatever ``fn`` returns.
        """
        if self.in_transaction:
            return await fn(self)

        if max_wait is not None:
            await asyncio.wait_for(self.store.lock.acquire(), max_wait / 1000)
        else:
            await self.store.lock.acquire()
        try:
            snapshot = self.store.snapshot()
            tx = MemoryClient(self.meta, self.store, in_transaction=True)
            logger.debug("Transaction started (isolation=%s)", isolation_level or "default")
            try:
                if timeout is not None:
                    result = await asyncio.wait_for(fn(tx), timeout / 1000)
                else:
                    result = await fn(tx)
            except BaseException:
                self.store.restore(snapshot)
                logger.debug("Transaction rolled back")
                raise
            logger.debug("Transaction committed")
            return result
        finally:
            self.store.lock.release()

    async def _run(self, fn: Callable[[], T], write: bool) -> T:
        if self.in_transaction:
            return self._execute(fn, write)
        async with self.store.lock:
            return self._execute(fn, write)

    def _execute(self, fn: Callable[[], T], write: bool) -> T:
        if not write:
            return fn()
        snapshot = self.store.snapshot()
        try:
            return fn()
        except BaseException:
            self.store.restore(snapshot)
            raise


class MemoryModel:
    """Per-model handle of a MemoryClient."""

    def __init__(self, client: MemoryClient, model: str):
        self.client = client
        self.model = model

    @property
    def _engine(self) -> "_Engine":
        return self.client._engine

    async def find_unique(self, args=None):
        args = require_args(args, "where")
        return await self.client._run(lambda: self._engine.find_first(self.model, args), write=False)

    async def find_unique_or_throw(self, args=None):
        result = await self.find_unique(args)
        if result is None:
            raise NotFoundError(self.model)
        return result

    async def find_first(self, args=None):
        return await self.client._run(lambda: self._engine.find_first(self.model, args or {}), write=False)

    async def find_first_or_throw(self, args=None):
        result = await self.find_first(args)
        if result is None:
            raise NotFoundError(self.model)
        return result

    async def find_many(self, args=None):
        return await self.client._run(lambda: self._engine.find_many(self.model, args or {}), write=False)

    async def create(self, args=None):
        args = require_args(args, "data")
        return await self.client._run(lambda: self._engine.create(self.model, args), write=True)

    async def create_many(self, args=None):
        args = require_args(args, "data")
        return await self.client._run(lambda: self._engine.create_many(self.model, args), write=True)

    async def create_many_and_return(self, args=None):
        args = require_args(args, "data")
        return await self.client._run(lambda: self._engine.create_many_and_return(self.model, args), write=True)

    async def update(self, args=None):
        args = require_args(args, "where", "data")
        return await self.client._run(lambda: self._engine.update(self.model, args), write=True)

    async def update_many(self, args=None):
        args = require_args(args, "data")
        return await self.client._run(lambda: self._engine.update_many(self.model, args), write=True)

    async def upsert(self, args=None):
        args = require_args(args, "where", "create", "update")
        return await self.client._run(lambda: self._engine.upsert(self.model, args), write=True)

    async def delete(self, args=None):
        args = require_args(args, "where")
        return await self.client._run(lambda: self._engine.delete(self.model, args), write=True)

    async def delete_many(self, args=None):
        return await self.client._run(lambda: self._engine.delete_many(self.model, args or {}), write=True)

    async def aggregate(self, args=None):
        return await self.client._run(lambda: self._engine.aggregate(self.model, args or {}), write=False)

    async def group_by(self, args=None):
        args = require_args(args, "by")
        return await self.client._run(lambda: self._engine.group_by(self.model, args), write=False)

    async def count(self, args=None):
        return await self.client._run(lambda: self._engine.count(self.model, args or {}), write=False)


class _Engine:
    """Synchronous query execution over a MemoryStore."""

    def __init__(self, meta: ModelMeta, store: MemoryStore):
        self.meta = meta
        self.store = store
        self.evaluator = FilterEvaluator(meta, self.related)

    # ==================================================================
    # Physical schema helpers
    # ==================================================================

    @staticmethod
    def _is_physical(field_info: FieldInfo) -> bool:
        return not field_info.inherited_from or field_info.is_id

    def _scalar_fields(self, model: str) -> list[FieldInfo]:
        return [
            f
            for f in self.meta.get_fields(model).values()
            if not f.is_data_model and self._is_physical(f)
        ]

    def _relation_field(self, model: str, name: str) -> FieldInfo:
        field_info = self.meta.resolve_field(model, name)
        if field_info is None or not field_info.is_data_model or not self._is_physical(field_info):
            raise UsageError(f"Unknown relation field '{name}' on model '{model}'")
        return field_info

    def _back_link(self, field_info: FieldInfo) -> FieldInfo:
        if not field_info.back_link:
            raise UsageError(f"Relation field '{field_info.name}' has no back-link")
        return self.meta.require_field(field_info.type, field_info.back_link)

    # ==================================================================
    # Relation resolution
    # ==================================================================

    def related(self, model: str, row: dict[str, Any], field_info: FieldInfo) -> Any:
        table = self.store.table(field_info.type)
        if field_info.is_relation_owner:
            mapping = field_info.foreign_key_mapping or {}
            if any(row.get(fk) is None for fk in mapping.values()):
                return None
            for candidate in table:
                if all(candidate.get(id_f) == row.get(fk) for id_f, fk in mapping.items()):
                    return candidate
            return None

        back_link = self._back_link(field_info)
        if not back_link.is_relation_owner:
            raise UsageError(f"Relation '{model}.{field_info.name}' has no foreign key on either side")
        mapping = back_link.foreign_key_mapping or {}
        matched = [
            candidate
            for candidate in table
            if all(candidate.get(fk) is not None and candidate.get(fk) == row.get(id_f) for id_f, fk in mapping.items())
        ]
        if field_info.is_array:
            return matched
        return matched[0] if matched else None

    def _link(self, field_info: FieldInfo, parent: dict[str, Any], child: dict[str, Any]) -> None:
        """Point the foreign key of ``child`` (the owning side of a back-link) at ``parent``."""
        back_link = self._back_link(field_info)
        for id_f, fk in (back_link.foreign_key_mapping or {}).items():
            child[fk] = parent.get(id_f)

    def _unlink(self, model: str, field_info: FieldInfo, child: dict[str, Any]) -> None:
        back_link = self._back_link(field_info)
        for fk in (back_link.foreign_key_mapping or {}).values():
            fk_info = self.meta.resolve_field(field_info.type, fk)
            if fk_info is not None and not fk_info.is_optional:
                raise UsageError(
                    f"Can't disconnect required relation '{field_info.type}.{back_link.name}' from '{model}'"
                )
            child[fk] = None

    # ==================================================================
    # Reading
    # ==================================================================

    def _select_rows(self, model: str, args: dict[str, Any], rows: list[dict[str, Any]] | None = None) -> list[dict[str, Any]]:
        source = self.store.table(model) if rows is None else rows
        where = args.get("where")
        matched = [row for row in source if self.evaluator.matches(model, row, where)]

        if args.get("orderBy"):
            matched = self._order(model, matched, args["orderBy"])

        cursor = args.get("cursor")
        if cursor:
            index = next((i for i, row in enumerate(matched) if self.evaluator.matches(model, row, cursor)), None)
            matched = [] if index is None else matched[index:]

        distinct = args.get("distinct")
        if distinct:
            seen = set()
            unique_rows = []
            for row in matched:
                key = tuple(repr(row.get(f)) for f in enumerate_items(distinct))
                if key not in seen:
                    seen.add(key)
                    unique_rows.append(row)
            matched = unique_rows

        skip = args.get("skip") or 0
        take = args.get("take")
        if take is not None and take < 0:
            end = len(matched) - skip
            matched = matched[max(end + take, 0):end]
        else:
            matched = matched[skip:]
            if take is not None:
                matched = matched[:take]
        return matched

    def _order(self, model: str, rows: list[dict[str, Any]], order_by: Any) -> list[dict[str, Any]]:
        specs = enumerate_items(order_by)

        def compare(a: dict[str, Any], b: dict[str, Any]) -> int:
            for spec in specs:
                for key, direction in spec.items():
                    result = self._compare_by(model, a, b, key, direction)
                    if result:
                        return result
            return 0

        return sorted(rows, key=functools.cmp_to_key(compare))

    def _compare_by(self, model: str, a: dict[str, Any], b: dict[str, Any], key: str, direction: Any) -> int:
        field_info = self.meta.resolve_field(model, key)
        if field_info is not None and field_info.is_data_model:
            if field_info.is_array:
                if isinstance(direction, dict) and "_count" in direction:
                    left = len(self.related(model, a, field_info))
                    right = len(self.related(model, b, field_info))
                    return _compare_values(left, right, direction["_count"])
                raise UsageError(f"Invalid orderBy on to-many relation '{key}'")
            left_row = self.related(model, a, field_info)
            right_row = self.related(model, b, field_info)
            if left_row is None or right_row is None:
                return _compare_values(left_row and 1, right_row and 1, "asc")
            for sub_key, sub_direction in direction.items():
                result = self._compare_by(field_info.type, left_row, right_row, sub_key, sub_direction)
                if result:
                    return result
            return 0

        nulls = None
        if isinstance(direction, dict):
            nulls = direction.get("nulls")
            direction = direction.get("sort", "asc")
        return _compare_values(a.get(key), b.get(key), direction, nulls)

    def _project(self, model: str, row: dict[str, Any], args: dict[str, Any] | None) -> dict[str, Any]:
        args = args or {}
        select = args.get("select")
        include = args.get("include")
        result: dict[str, Any] = {}

        if select:
            for key, value in select.items():
                if is_selected(value):
                    self._project_key(model, row, key, value, result)
            return result

        for f in self._scalar_fields(model):
            result[f.name] = copy.deepcopy(row.get(f.name))
        for key, value in (include or {}).items():
            if is_selected(value):
                self._project_key(model, row, key, value, result)
        return result

    def _project_key(self, model: str, row: dict[str, Any], key: str, value: Any, result: dict[str, Any]) -> None:
        if key == "_count":
            result["_count"] = self._relation_counts(model, row, value)
            return
        field_info = self.meta.resolve_field(model, key)
        if field_info is None:
            raise UsageError(f"Unknown field '{key}' in select/include of model '{model}'")
        if not field_info.is_data_model:
            result[key] = copy.deepcopy(row.get(key))
            return

        sub_args = value if isinstance(value, dict) else {}
        related = self.related(model, row, field_info)
        if field_info.is_array:
            rows = self._select_rows(field_info.type, sub_args, related)
            result[key] = [self._project(field_info.type, r, sub_args) for r in rows]
        else:
            result[key] = None if related is None else self._project(field_info.type, related, sub_args)

    def _relation_counts(self, model: str, row: dict[str, Any], value: Any) -> dict[str, int]:
        if isinstance(value, dict) and "select" in value:
            targets = value["select"]
        else:
            targets = {f.name: True for f in self.meta.get_fields(model).values() if f.is_data_model and f.is_array}
        counts = {}
        for name, spec in targets.items():
            if spec is None or spec is False:
                continue
            field_info = self._relation_field(model, name)
            related = self.related(model, row, field_info) or []
            where = spec.get("where") if isinstance(spec, dict) else None
            counts[name] = sum(1 for r in related if self.evaluator.matches(field_info.type, r, where))
        return counts

    def find_many(self, model: str, args: dict[str, Any]) -> list[dict[str, Any]]:
        return [self._project(model, row, args) for row in self._select_rows(model, args)]

    def find_first(self, model: str, args: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._select_rows(model, {**args, "take": 1})
        return self._project(model, rows[0], args) if rows else None

    def _find_row(self, model: str, where: Any) -> dict[str, Any] | None:
        for row in self.store.table(model):
            if self.evaluator.matches(model, row, where):
                return row
        return None

    def _require_row(self, model: str, where: Any, action: str) -> dict[str, Any]:
        row = self._find_row(model, where)
        if row is None:
            raise NotFoundError(model, f"No '{model}' record was found for a nested {action}")
        return row

    # ==================================================================
    # Creating
    # ==================================================================

    def create(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        row = self._create_row(model, args["data"])
        return self._project(model, row, args)

    def create_many(self, model: str, args: dict[str, Any]) -> dict[str, int]:
        rows = self._create_many_rows(model, args)
        return {"count": len(rows)}

    def create_many_and_return(self, model: str, args: dict[str, Any]) -> list[dict[str, Any]]:
        if args.get("include"):
            raise UsageError("'include' is not supported by create_many_and_return")
        rows = self._create_many_rows(model, args)
        return [self._project(model, row, args) for row in rows]

    def _create_many_rows(self, model: str, args: dict[str, Any], parent_link=None) -> list[dict[str, Any]]:
        created = []
        for item in enumerate_items(args.get("data")):
            data = dict(item)
            for key, value in data.items():
                field_info = self.meta.resolve_field(model, key)
                if field_info is not None and field_info.is_data_model:
                    raise UsageError(f"Nested relation '{key}' is not supported in create_many")
            if args.get("skipDuplicates"):
                probe = dict(data)
                if parent_link is not None:
                    self._link(parent_link[0], parent_link[1], probe)
                if self._conflicts(model, self._build_row(model, probe, dry_run=True)):
                    continue
            created.append(self._create_row(model, data, parent_link))
        return created

    def _build_row(self, model: str, data: dict[str, Any], *, dry_run: bool = False) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for f in self._scalar_fields(model):
            if f.name in data and data[f.name] is not None:
                row[f.name] = copy.deepcopy(data[f.name])
                continue
            if f.name in data:
                row[f.name] = None
                continue
            row[f.name] = self._default_value(model, f, dry_run)
        return row

    def _default_value(self, model: str, f: FieldInfo, dry_run: bool) -> Any:
        default = f.get_attribute("@default")
        if default is not None:
            value = default.arg()
            if value == "autoincrement()":
                return None if dry_run else self.store.next_sequence(model, f.name)
            if value in ("uuid()", "cuid()"):
                return uuid.uuid4().hex
            if value == "now()":
                return datetime.now(timezone.utc)
            return copy.deepcopy(value)
        if f.has_attribute("@updatedAt"):
            return datetime.now(timezone.utc)
        if f.is_array:
            return []
        return None

    def _create_row(
        self,
        model: str,
        data: dict[str, Any],
        parent_link: tuple[FieldInfo, dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        info = self.meta.get_model(model)
        if info.is_delegate and not data.get(info.discriminator):
            raise UsageError(f"Model '{model}' is a delegate and can't be created without its discriminator")

        scalars: dict[str, Any] = {}
        owner_ops: list[tuple[FieldInfo, Any]] = []
        other_ops: list[tuple[FieldInfo, Any]] = []
        for key, value in data.items():
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                raise UsageError(f"Unknown argument '{key}' for model '{model}'")
            if field_info.is_data_model:
                self._relation_field(model, key)
                (owner_ops if field_info.is_relation_owner else other_ops).append((field_info, value))
            elif self._is_physical(field_info):
                scalars[key] = value
            else:
                raise UsageError(f"Field '{key}' is not stored on model '{model}'")

        for field_info, payload in owner_ops:
            target = self._resolve_owned_target(field_info, payload)
            for id_f, fk in (field_info.foreign_key_mapping or {}).items():
                scalars[fk] = target.get(id_f)

        if parent_link is not None:
            relation, parent = parent_link
            self._link(relation, parent, scalars)

        row = self._build_row(model, scalars)
        self._check_required(model, row)
        self._check_foreign_keys(model, row, {f.name for f, _ in owner_ops})
        conflict = self._conflicts(model, row)
        if conflict:
            raise UniqueConstraintError(model, conflict)
        self.store.table(model).append(row)

        for field_info, payload in other_ops:
            self._apply_create_relation(model, row, field_info, payload)
        return row

    def _resolve_owned_target(self, field_info: FieldInfo, payload: dict[str, Any]) -> dict[str, Any]:
        target = None
        if "connect" in payload:
            target = self._require_row(field_info.type, payload["connect"], "connect")
        if target is None and "connectOrCreate" in payload:
            spec = payload["connectOrCreate"]
            target = self._find_row(field_info.type, spec["where"]) or self._create_row(field_info.type, spec["create"])
        if target is None and "create" in payload:
            target = self._create_row(field_info.type, payload["create"])
        if target is None:
            raise UsageError(f"Invalid nested write for relation '{field_info.name}'")
        return target

    def _apply_create_relation(self, model: str, row: dict[str, Any], field_info: FieldInfo, payload: dict[str, Any]) -> None:
        for action, value in payload.items():
            if action == "create":
                for item in enumerate_items(value):
                    self._create_row(field_info.type, dict(item), (field_info, row))
            elif action == "createMany":
                self._create_many_rows(field_info.type, value, (field_info, row))
            elif action == "connect":
                for where in enumerate_items(value):
                    self._connect(model, row, field_info, where)
            elif action == "connectOrCreate":
                for spec in enumerate_items(value):
                    existing = self._find_row(field_info.type, spec["where"])
                    if existing is not None:
                        self._connect(model, row, field_info, spec["where"])
                    else:
                        self._create_row(field_info.type, dict(spec["create"]), (field_info, row))
            else:
                raise UsageError(f"Unsupported nested action '{action}' in create of '{model}.{field_info.name}'")

    def _connect(self, model: str, row: dict[str, Any], field_info: FieldInfo, where: Any) -> None:
        target = self._require_row(field_info.type, where, "connect")
        if not field_info.is_array:
            current = self.related(model, row, field_info)
            if current is not None and current is not target:
                self._unlink(model, field_info, current)
        self._link(field_info, row, target)
        self._check_unique_after_update(field_info.type, target)

    def _check_required(self, model: str, row: dict[str, Any]) -> None:
        for f in self._scalar_fields(model):
            if row.get(f.name) is None and not f.is_optional and not f.is_array:
                raise UsageError(f"Argument '{f.name}' is missing for model '{model}'")

    def _check_foreign_keys(self, model: str, row: dict[str, Any], skip: set[str]) -> None:
        for f in self.meta.get_fields(model).values():
            if not f.is_relation_owner or f.name in skip or not self._is_physical(f):
                continue
            mapping = f.foreign_key_mapping or {}
            if any(row.get(fk) is None for fk in mapping.values()):
                continue
            if self.related(model, row, f) is None:
                raise ForeignKeyConstraintError(model, ",".join(mapping.values()))

    def _conflicts(self, model: str, row: dict[str, Any], exclude: dict[str, Any] | None = None) -> list[str] | None:
        for constraint in self.meta.unique_constraints(model).values():
            values = [row.get(f) for f in constraint.fields]
            if any(v is None for v in values):
                continue
            for existing in self.store.table(model):
                if existing is exclude:
                    continue
                if all(existing.get(f) == v for f, v in zip(constraint.fields, values)):
                    return constraint.fields
        return None

    def _check_unique_after_update(self, model: str, row: dict[str, Any]) -> None:
        conflict = self._conflicts(model, row, exclude=row)
        if conflict:
            raise UniqueConstraintError(model, conflict)

    # ==================================================================
    # Updating
    # ==================================================================

    def update(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        row = self._find_row(model, args["where"])
        if row is None:
            raise NotFoundError(model, f"Record to update not found for model '{model}'")
        self._update_row(model, row, args["data"])
        return self._project(model, row, args)

    def update_many(self, model: str, args: dict[str, Any]) -> dict[str, int]:
        rows = [row for row in self.store.table(model) if self.evaluator.matches(model, row, args.get("where"))]
        for row in rows:
            self._update_scalars(model, row, args["data"])
        return {"count": len(rows)}

    def upsert(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        row = self._find_row(model, args["where"])
        if row is None:
            row = self._create_row(model, dict(args["create"]))
        else:
            self._update_row(model, row, args["update"])
        return self._project(model, row, args)

    def _update_scalars(self, model: str, row: dict[str, Any], data: dict[str, Any]) -> None:
        changed = False
        for key, value in data.items():
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                raise UsageError(f"Unknown argument '{key}' for model '{model}'")
            if field_info.is_data_model:
                raise UsageError(f"Relation '{key}' can't be written by update_many")
            if not self._is_physical(field_info):
                raise UsageError(f"Field '{key}' is not stored on model '{model}'")
            row[key] = _apply_atomic(row.get(key), value, field_info)
            changed = True
        if changed:
            self._touch(model, row, data)
            self._check_required(model, row)
            self._check_unique_after_update(model, row)

    def _touch(self, model: str, row: dict[str, Any], data: dict[str, Any]) -> None:
        for f in self._scalar_fields(model):
            if f.has_attribute("@updatedAt") and f.name not in data:
                row[f.name] = datetime.now(timezone.utc)

    def _update_row(self, model: str, row: dict[str, Any], data: dict[str, Any]) -> None:
        scalars: dict[str, Any] = {}
        relations: list[tuple[FieldInfo, dict[str, Any]]] = []
        for key, value in data.items():
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                raise UsageError(f"Unknown argument '{key}' for model '{model}'")
            if field_info.is_data_model:
                self._relation_field(model, key)
                relations.append((field_info, value))
            else:
                scalars[key] = value

        for field_info, payload in relations:
            if field_info.is_relation_owner:
                self._apply_owner_update(model, row, field_info, payload)
        if scalars:
            self._update_scalars(model, row, scalars)
        elif data:
            self._touch(model, row, data)
        self._check_foreign_keys(model, row, set())
        for field_info, payload in relations:
            if not field_info.is_relation_owner:
                self._apply_nested_update(model, row, field_info, payload)

    def _apply_owner_update(self, model: str, row: dict[str, Any], field_info: FieldInfo, payload: dict[str, Any]) -> None:
        mapping = field_info.foreign_key_mapping or {}

        def point_to(target: dict[str, Any] | None) -> None:
            for id_f, fk in mapping.items():
                row[fk] = None if target is None else target.get(id_f)

        for action, value in payload.items():
            current = self.related(model, row, field_info)
            if action in ("create", "connect", "connectOrCreate"):
                point_to(self._resolve_owned_target(field_info, {action: value}))
            elif action == "disconnect":
                if value is True or (isinstance(value, dict) and current and self.evaluator.matches(field_info.type, current, value)):
                    if not field_info.is_optional:
                        raise UsageError(f"Can't disconnect required relation '{model}.{field_info.name}'")
                    point_to(None)
            elif action == "update":
                if current is None:
                    raise NotFoundError(field_info.type, f"No '{field_info.type}' record was found for a nested update")
                self._update_row(field_info.type, current, _unwrap_update(value))
            elif action == "upsert":
                if current is None:
                    point_to(self._create_row(field_info.type, dict(value["create"])))
                else:
                    self._update_row(field_info.type, current, value["update"])
            elif action == "delete":
                if current is None:
                    raise NotFoundError(field_info.type, f"No '{field_info.type}' record was found for a nested delete")
                point_to(None)
                self._delete_row(field_info.type, current)
            else:
                raise UsageError(f"Unsupported nested action '{action}' on '{model}.{field_info.name}'")

    def _apply_nested_update(self, model: str, row: dict[str, Any], field_info: FieldInfo, payload: dict[str, Any]) -> None:
        target_model = field_info.type

        def members() -> list[dict[str, Any]]:
            related = self.related(model, row, field_info)
            if field_info.is_array:
                return list(related)
            return [related] if related is not None else []

        def pick(where: Any, action: str) -> dict[str, Any]:
            for candidate in members():
                if where is True or self.evaluator.matches(target_model, candidate, where):
                    return candidate
            raise NotFoundError(target_model, f"No '{target_model}' record was found for a nested {action}")

        for action, value in payload.items():
            if action in ("create", "createMany", "connect", "connectOrCreate"):
                self._apply_create_relation(model, row, field_info, {action: value})
            elif action == "disconnect":
                if field_info.is_array:
                    for where in enumerate_items(value):
                        for candidate in members():
                            if self.evaluator.matches(target_model, candidate, where):
                                self._unlink(model, field_info, candidate)
                elif value:
                    current = members()
                    if current and (value is True or self.evaluator.matches(target_model, current[0], value)):
                        self._unlink(model, field_info, current[0])
            elif action == "set":
                for candidate in members():
                    self._unlink(model, field_info, candidate)
                for where in enumerate_items(value):
                    self._connect(model, row, field_info, where)
            elif action == "update":
                for item in enumerate_items(value):
                    if field_info.is_array:
                        self._update_row(target_model, pick(item["where"], "update"), item["data"])
                    else:
                        update_payload = _unwrap_update(item)
                        self._update_row(target_model, pick(True, "update"), update_payload)
            elif action == "updateMany":
                for item in enumerate_items(value):
                    for candidate in members():
                        if self.evaluator.matches(target_model, candidate, item.get("where")):
                            self._update_scalars(target_model, candidate, item["data"])
            elif action == "upsert":
                for item in enumerate_items(value):
                    where = item.get("where", True) if field_info.is_array else True
                    existing = next(
                        (c for c in members() if where is True or self.evaluator.matches(target_model, c, where)),
                        None,
                    )
                    if existing is None:
                        self._create_row(target_model, dict(item["create"]), (field_info, row))
                    else:
                        self._update_row(target_model, existing, item["update"])
            elif action == "delete":
                for where in enumerate_items(value):
                    self._delete_row(target_model, pick(where, "delete"))
            elif action == "deleteMany":
                for where in enumerate_items(value):
                    for candidate in members():
                        if where is True or self.evaluator.matches(target_model, candidate, where):
                            self._delete_row(target_model, candidate)
            else:
                raise UsageError(f"Unsupported nested action '{action}' on '{model}.{field_info.name}'")

    # ==================================================================
    # Deleting
    # ==================================================================

    def delete(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        row = self._find_row(model, args["where"])
        if row is None:
            raise NotFoundError(model, f"Record to delete does not exist for model '{model}'")
        result = self._project(model, row, args)
        self._delete_row(model, row)
        return result

    def delete_many(self, model: str, args: dict[str, Any]) -> dict[str, int]:
        rows = [row for row in self.store.table(model) if self.evaluator.matches(model, row, args.get("where"))]
        for row in rows:
            if any(row is r for r in self.store.table(model)):
                self._delete_row(model, row)
        return {"count": len(rows)}

    def _delete_row(self, model: str, row: dict[str, Any]) -> None:
        table = self.store.table(model)
        if not any(row is r for r in table):
            return
        for f in self.meta.get_fields(model).values():
            if not f.is_data_model or f.is_relation_owner or not self._is_physical(f) or not f.back_link:
                continue
            back_link = self._back_link(f)
            if not back_link.is_relation_owner:
                continue
            dependents = enumerate_items(self.related(model, row, f))
            if not dependents:
                continue
            action = back_link.on_delete_action or self._default_on_delete(f.type, back_link)
            if action == "Cascade":
                for dependent in list(dependents):
                    self._delete_row(f.type, dependent)
            elif action == "SetNull":
                for dependent in dependents:
                    for fk in (back_link.foreign_key_mapping or {}).values():
                        dependent[fk] = None
            else:
                raise ForeignKeyConstraintError(f.type, back_link.name)
        self.store.tables[model] = [r for r in table if r is not row]

    def _default_on_delete(self, model: str, back_link: FieldInfo) -> str:
        fks = (back_link.foreign_key_mapping or {}).values()
        if all(self.meta.require_field(model, fk).is_optional for fk in fks):
            return "SetNull"
        return "Restrict"

    # ==================================================================
    # Aggregation
    # ==================================================================

    def count(self, model: str, args: dict[str, Any]) -> Any:
        rows = self._select_rows(model, args)
        select = args.get("select")
        if not select:
            return len(rows)
        result = {}
        for key, value in select.items():
            if not value:
                continue
            if key == "_all":
                result[key] = len(rows)
            else:
                result[key] = sum(1 for row in rows if row.get(key) is not None)
        return result

    def aggregate(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        rows = self._select_rows(model, args)
        return self._aggregates(rows, args)

    def _aggregates(self, rows: list[dict[str, Any]], args: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in AGGREGATE_KEYS:
            spec = args.get(key)
            if not spec:
                continue
            if key == "_count" and spec is True:
                result[key] = len(rows)
                continue
            values: dict[str, Any] = {}
            for field_name, enabled in spec.items():
                if not enabled:
                    continue
                if field_name == "_all":
                    values[field_name] = len(rows)
                    continue
                column = [row.get(field_name) for row in rows if row.get(field_name) is not None]
                values[field_name] = _aggregate_column(key, column)
            result[key] = values
        return result

    def group_by(self, model: str, args: dict[str, Any]) -> list[dict[str, Any]]:
        by = enumerate_items(args["by"])
        rows = [row for row in self.store.table(model) if self.evaluator.matches(model, row, args.get("where"))]
        groups: dict[tuple, list[dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(tuple(repr(row.get(f)) for f in by), []).append(row)

        results = []
        for members in groups.values():
            entry = {f: copy.deepcopy(members[0].get(f)) for f in by}
            entry.update(self._aggregates(members, args))
            if self._having(members, args.get("having")):
                results.append(entry)

        if args.get("orderBy"):
            specs = enumerate_items(args["orderBy"])

            def compare(a, b):
                for spec in specs:
                    for key, direction in spec.items():
                        if isinstance(direction, dict):
                            agg, field_name = key, next(iter(direction))
                            result = _compare_values(a[agg][field_name], b[agg][field_name], direction[field_name])
                        else:
                            result = _compare_values(a.get(key), b.get(key), direction)
                        if result:
                            return result
                return 0

            results.sort(key=functools.cmp_to_key(compare))
        skip = args.get("skip") or 0
        take = args.get("take")
        results = results[skip:]
        return results if take is None else results[:take]

    def _having(self, members: list[dict[str, Any]], having: Any) -> bool:
        if not having:
            return True
        for field_name, spec in having.items():
            if field_name in ("AND", "OR", "NOT"):
                items = [self._having(members, item) for item in enumerate_items(spec)]
                if field_name == "AND" and not all(items):
                    return False
                if field_name == "OR" and not any(items):
                    return False
                if field_name == "NOT" and any(items):
                    return False
                continue
            for agg, condition in spec.items():
                if agg not in AGGREGATE_KEYS:
                    # a plain condition on the grouped field
                    if not self.evaluator.matches(None, members[0], {field_name: {agg: condition}}):
                        return False
                    continue
                column = [row.get(field_name) for row in members if row.get(field_name) is not None]
                value = len(column) if agg == "_count" else _aggregate_column(agg, column)
                if not self.evaluator.matches(None, {"v": value}, {"v": condition}):
                    return False
        return True


def _unwrap_update(value: dict[str, Any]) -> dict[str, Any]:
    if isinstance(value, dict) and "data" in value and set(value) <= {"where", "data"}:
        return value["data"]
    return value


def _apply_atomic(current: Any, value: Any, field_info: FieldInfo) -> Any:
    if not isinstance(value, dict) or field_info.type == "Json" or not value or not set(value) <= ATOMIC_OPERATORS:
        return copy.deepcopy(value)
    op, operand = next(iter(value.items()))
    if op == "set":
        return copy.deepcopy(operand)
    if current is None:
        return None
    if op == "increment":
        return current + operand
    if op == "decrement":
        return current - operand
    if op == "multiply":
        return current * operand
    if isinstance(current, int) and isinstance(operand, int):
        return current // operand
    return current / operand


def _aggregate_column(kind: str, column: list[Any]) -> Any:
    if kind == "_count":
        return len(column)
    if not column:
        return None
    if kind == "_sum":
        return sum(column)
    if kind == "_avg":
        return sum(column) / len(column)
    if kind == "_min":
        return min(column)
    if kind == "_max":
        return max(column)
    raise UsageError(f"Unknown aggregate '{kind}'")


def _compare_values(left: Any, right: Any, direction: Any, nulls: str | None = None) -> int:
    descending = str(direction).lower() == "desc"
    if left is None or right is None:
        if left is None and right is None:
            return 0
        nulls_last = (nulls or ("first" if descending else "last")) == "last"
        if left is None:
            return 1 if nulls_last else -1
        return -1 if nulls_last else 1
    if left == right:
        return 0
    result = -1 if left < right else 1
    return -result if descending else result
