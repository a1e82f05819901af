"""Query helpers shared by the policy and delegate layers."""

from __future__ import annotations

import copy
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from warden.client.contract import DbClient
from warden.config import EnhancementOptions
from warden.errors import UnknownRequestError
from warden.metadata.types import FieldInfo, ModelMeta
from warden.nested_write import NestingPathItem

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryUtils:
    def __init__(self, meta: ModelMeta, options: EnhancementOptions | None = None):
        self.meta = meta
        self.options = options or EnhancementOptions()

    # ------------------------------------------------------------------
    # Ids and unique keys
    # ------------------------------------------------------------------

    def id_fields(self, model: str) -> list[FieldInfo]:
        return self.meta.id_fields(model)

    def make_id_selection(self, model: str) -> dict[str, bool]:
        return {f.name: True for f in self.id_fields(model)}

    def get_entity_ids(self, model: str, entity: dict[str, Any]) -> dict[str, Any]:
        return {f.name: entity.get(f.name) for f in self.id_fields(model)}

    def compose_compound_unique_field(self, model: str, field_data: dict[str, Any] | None) -> dict[str, Any]:
        """Compose multi-field unique keys, e.g. ``{a, b}`` -> ``{a_b: {a, b}}``."""
        result = copy.deepcopy(field_data) if field_data else {}
        if not field_data:
            return result
        for name, constraint in self.meta.unique_constraints(model).items():
            if len(constraint.fields) > 1 and all(field_data.get(f) is not None for f in constraint.fields):
                result[name] = {f: field_data[f] for f in constraint.fields}
                for f in constraint.fields:
                    result.pop(f, None)
        return result

    def flatten_generated_unique_field(self, model: str, where: dict[str, Any]) -> dict[str, Any]:
        """Flatten multi-field unique keys, e.g. ``{a_b: {a, b}}`` -> ``{a, b}``."""
        constraints = self.meta.unique_constraints(model)
        result = dict(where)
        for key, value in where.items():
            constraint = constraints.get(key)
            if constraint and len(constraint.fields) > 1 and isinstance(value, dict):
                del result[key]
                result.update(value)
        return result

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def transaction(self, db: DbClient, fn: Callable[[DbClient], Awaitable[T]]) -> T:
        """Run ``fn`` in a transaction, joining the current one if ``db`` is already transactional."""
        if db.in_transaction:
            return await fn(db)
        return await db.transaction(fn, **self.options.transaction.as_kwargs())

    # ------------------------------------------------------------------
    # Reversed query
    # ------------------------------------------------------------------

    async def build_reversed_query(
        self,
        db: DbClient,
        nesting_path: Sequence[NestingPathItem],
        for_mutation_payload: bool = False,
        unchecked_operation: bool = False,
    ) -> dict[str, Any]:
        """Build a filter, in the deepest model's terms, identifying the row(s) under a nested operation.

        Args:
            db: Client used to look up parent ids when a parent filter isn't an id filter.
            nesting_path: Root-to-leaf ancestor chain recorded by the nested write visitor.
            for_mutation_payload: Produce a shape usable in a write payload: to-many back-links
                aren't wrapped in ``some`` and compound unique keys are recomposed.
            unchecked_operation: The mutation assigns foreign keys directly, so the direct
                parent's relation condition may be converted to a foreign key too.

        Returns:
            The reversed filter.
        """
        result: dict[str, Any] | None = None
        current: dict[str, Any] = {}
        current_field: FieldInfo | None = None

        for i in range(len(nesting_path) - 1, -1, -1):
            item = nesting_path[i]
            where = item.where if isinstance(item.where, dict) else None
            visit_where = dict(where or {})
            if where:
                visit_where = self.flatten_generated_unique_field(item.model, visit_where)

            if result is None:
                result = current = dict(visit_where)
                current_field = item.field
                continue

            if current_field is None:
                raise UnknownRequestError(RuntimeError("missing field in nested path"))
            if not current_field.back_link:
                raise UnknownRequestError(
                    RuntimeError(f"field {current_field.type}.{current_field.name} doesn't have a backLink")
                )
            back_link = self.meta.resolve_field(current_field.type, current_field.back_link)
            if back_link is None:
                raise UnknownRequestError(
                    RuntimeError(f"missing backLink field {current_field.back_link} in {current_field.type}")
                )

            if back_link.is_array and not for_mutation_payload:
                current[back_link.name] = {"some": dict(visit_where)}
                current = current[back_link.name]["some"]
            else:
                fk_mapping = back_link.foreign_key_mapping if (where is not None and back_link.is_relation_owner) else None
                preserve_relation = (
                    for_mutation_payload and not unchecked_operation and i == len(nesting_path) - 2
                )
                if fk_mapping and not preserve_relation:
                    parent_ids = visit_where
                    if any(parent_ids.get(k) is None for k in fk_mapping):
                        # the parent filter is a non-id unique filter, load its ids
                        if self.options.log_queries:
                            logger.debug("[reverseLookup] `find_unique_or_throw` %s: %r", item.model, where)
                        parent_ids = await db.model(item.model).find_unique_or_throw(
                            {"where": where, "select": self.make_id_selection(item.model)}
                        )
                    for id_field, fk in fk_mapping.items():
                        current[fk] = parent_ids.get(id_field)
                    if i > 0:
                        current[back_link.name] = {}
                else:
                    current[back_link.name] = dict(visit_where)

                if for_mutation_payload and back_link.name in current:
                    current[back_link.name] = self.compose_compound_unique_field(back_link.type, current[back_link.name])
                if back_link.name in current:
                    current = current[back_link.name]
            current_field = item.field

        return result or {}
