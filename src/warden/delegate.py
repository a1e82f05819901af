"""Delegate (polymorphic) enhancement.

A model extending a delegate base is stored as one row per hierarchy level,
linked by the synthetic ``delegate_aux_*`` relations and sharing id values.
This layer presents every level as one flat virtual model: fields inherited
from a base are relocated under the base relation on the way down, and the
per-level rows are merged back into one entity on the way up.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from warden.client.contract import DbClient, require_args
from warden.client.proxy import ProxyHandler, translate_errors
from warden.config import EnhancementOptions
from warden.errors import UsageError
from warden.metadata.types import DELEGATE_AUX_RELATION_PREFIX, FieldInfo, ModelMeta, aux_relation_name
from warden.nested_write import NestedWriteVisitor, VisitorContext, remove_from_parent
from warden.query.logic import LOGICAL_KEYS
from warden.query.utils import QueryUtils
from warden.utils import clone, deep_merge, enumerate_items, is_selected, walk_keys

logger = logging.getLogger(__name__)

AGGREGATION_KEYS = ("_count", "_sum", "_avg", "_min", "_max", "select", "having")

RELATION_FILTER_OPERATORS = {"some", "every", "none", "is", "isNot"}


def _is_aux(name: str) -> bool:
    return name.startswith(DELEGATE_AUX_RELATION_PREFIX)


class DelegateProxyHandler(ProxyHandler):
    """Model handle flattening a table-per-type hierarchy into one virtual model."""

    def __init__(self, db: DbClient, model: str, options: EnhancementOptions | None, meta: ModelMeta):
        super().__init__(db, model, options)
        self.meta = meta
        self.query_utils = QueryUtils(meta, self.options)

    def _involves_delegate(self, model: str) -> bool:
        return self.meta.involves_delegate(model)

    @staticmethod
    def _is_inherited(field_info: FieldInfo | None) -> bool:
        # id fields are stored on every level
        return bool(field_info and field_info.inherited_from and not field_info.is_id)

    def _unique_filter(self, model: str, ids: dict[str, Any]) -> dict[str, Any]:
        if len(ids) > 1:
            return self.query_utils.compose_compound_unique_field(model, ids)
        return ids

    # ==================================================================
    # Find
    # ==================================================================

    @translate_errors
    async def find_unique(self, args=None):
        require_args(args, "where")
        return await self._do_find(self.db, self.model, "find_unique", args)

    @translate_errors
    async def find_unique_or_throw(self, args=None):
        require_args(args, "where")
        return await self._do_find(self.db, self.model, "find_unique_or_throw", args)

    @translate_errors
    async def find_first(self, args=None):
        return await self._do_find(self.db, self.model, "find_first", args)

    @translate_errors
    async def find_first_or_throw(self, args=None):
        return await self._do_find(self.db, self.model, "find_first_or_throw", args)

    @translate_errors
    async def find_many(self, args=None):
        return await self._do_find(self.db, self.model, "find_many", args)

    async def _do_find(self, db: DbClient, model: str, operation: str, args: dict[str, Any] | None) -> Any:
        if not self._involves_delegate(model):
            return await getattr(db.model(model), operation)(args)

        args = clone(args) if args else {}
        self._inject_where_hierarchy(model, args.get("where"))
        self._inject_select_include_hierarchy(model, args)
        # the discriminator decides which concrete level to merge
        self._ensure_discriminator_selection(model, args)
        for item in enumerate_items(args.get("orderBy")):
            self._inject_where_hierarchy(model, item)

        self.log_query("delegate", operation, model, args)
        result = await getattr(db.model(model), operation)(args)
        if isinstance(result, list):
            return [self.assemble_hierarchy(model, item) for item in result]
        return self.assemble_hierarchy(model, result)

    def _ensure_discriminator_selection(self, model: str, args: dict[str, Any]) -> None:
        discriminator = self.meta.get_model(model).discriminator
        if discriminator and isinstance(args.get("select"), dict):
            args["select"][discriminator] = True

    # ------------------------------------------------------------------
    # Filter relocation
    # ------------------------------------------------------------------

    def _inject_where_hierarchy(self, model: str, where: Any) -> None:
        """Move conditions on inherited fields under the base relation, recursively."""
        if not isinstance(where, dict):
            return

        for key, value in list(where.items()):
            if key in LOGICAL_KEYS:
                for item in enumerate_items(value):
                    self._inject_where_hierarchy(model, item)
                continue

            field_info = self.meta.resolve_field(model, key)
            if not self._is_inherited(field_info):
                if field_info is not None and field_info.is_data_model:
                    self._inject_relation_where(field_info, value)
                continue

            base = self.meta.base_model(model)
            target = where
            while base is not None:
                layer = target.setdefault(aux_relation_name(base.name), {})
                if base.name == field_info.inherited_from:
                    if field_info.is_data_model:
                        self._inject_relation_where(field_info, value)
                    layer[key] = value
                    del where[key]
                    break
                target = layer
                base = self.meta.base_model(base.name)

    def _inject_relation_where(self, field_info: FieldInfo, value: Any) -> None:
        if not isinstance(value, dict):
            return
        if value and all(k in RELATION_FILTER_OPERATORS for k in value):
            for condition in value.values():
                self._inject_where_hierarchy(field_info.type, condition)
        else:
            self._inject_where_hierarchy(field_info.type, value)

    # ------------------------------------------------------------------
    # Select/include relocation
    # ------------------------------------------------------------------

    def _inject_select_include_hierarchy(self, model: str, args: Any) -> None:
        """Relocate inherited fields in ``select``/``include`` and fetch the whole hierarchy.

        Without an explicit ``select``, every base level upward and every
        concrete level downward is included.
        """
        if not isinstance(args, dict):
            return

        selectors = [
            (args.get("select"), "select", False),
            (args.get("include"), "include", False),
            (_count_select(args.get("select")), "select", True),
            (_count_select(args.get("include")), "include", True),
        ]
        for data, kind, is_count in selectors:
            if not isinstance(data, dict):
                continue
            for field_name in list(data):
                value = data[field_name]
                field_info = self.meta.resolve_field(model, field_name)
                if field_info is None or _is_aux(field_name) or not is_selected(value):
                    continue

                if field_info.is_data_model and not is_count:
                    if value is True and self.meta.is_delegate_or_descendant(field_info.type):
                        data[field_name] = value = {}
                    if isinstance(value, dict):
                        for item in enumerate_items(value.get("orderBy")):
                            self._inject_where_hierarchy(field_info.type, item)
                        self._inject_where_hierarchy(field_info.type, value.get("where"))
                        self._inject_select_include_hierarchy(field_info.type, value)

                if not self._is_inherited(field_info):
                    continue
                if is_count:
                    target: dict[str, Any] = {kind: {}}
                    self._inject_base_field_select(model, field_name, value, target, kind, for_count=True)
                    del data[field_name]
                    if not data:
                        del args[kind]["_count"]
                    args[kind] = deep_merge(args[kind], target[kind])
                elif self._inject_base_field_select(model, field_name, value, args, kind):
                    del data[field_name]

        if not args.get("select"):
            self._inject_base_include_recursively(model, args)
            self._inject_concrete_include_recursively(model, args)

    def _inject_base_field_select(
        self,
        model: str,
        field_name: str,
        value: Any,
        select_include: dict[str, Any],
        kind: str,
        for_count: bool = False,
    ) -> bool:
        field_info = self.meta.resolve_field(model, field_name)
        if not self._is_inherited(field_info):
            return False

        base = self.meta.base_model(model)
        target = select_include
        while base is not None:
            relation = aux_relation_name(base.name)
            if isinstance(target.get("include"), dict):
                layer = target["include"]
            elif isinstance(target.get("select"), dict):
                layer = target["select"]
            else:
                layer = target["select"] = {}

            if base.name == field_info.inherited_from:
                entry = layer.get(relation)
                if not isinstance(entry, dict):
                    entry = layer[relation] = {}
                entry.setdefault(kind, {})
                if for_count:
                    # {_count: {select: {f}}} -> {delegate_aux_base: {select: {_count: {select: {f}}}}}
                    current = entry[kind].get("_count")
                    entry[kind]["_count"] = deep_merge(
                        current if isinstance(current, dict) else {}, {"select": {field_name: value}}
                    )
                else:
                    entry[kind][field_name] = value
                break

            if not isinstance(layer.get(relation), dict):
                layer[relation] = {"select": {}}
            target = layer[relation]
            base = self.meta.base_model(base.name)
        return True

    def _inject_base_include_recursively(self, model: str, select_include: dict[str, Any]) -> None:
        base = self.meta.base_model(model)
        if base is None:
            return
        relation = aux_relation_name(base.name)
        if select_include.get("select"):
            select_include["include"] = {relation: {}, **select_include.pop("select")}
        else:
            select_include.pop("select", None)
            select_include["include"] = {relation: {}, **(select_include.get("include") or {})}
        if not isinstance(select_include["include"][relation], dict):
            select_include["include"][relation] = {}
        self._inject_base_include_recursively(base.name, select_include["include"][relation])

    def _inject_concrete_include_recursively(self, model: str, select_include: dict[str, Any]) -> None:
        for sub_model in self.meta.sub_models.get(model, []):
            relation = aux_relation_name(sub_model)
            if select_include.get("select"):
                select_include["include"] = {relation: {}, **select_include.pop("select")}
            else:
                select_include.pop("select", None)
                select_include["include"] = {relation: {}, **(select_include.get("include") or {})}
            if not isinstance(select_include["include"][relation], dict):
                select_include["include"][relation] = {}
            self._inject_concrete_include_recursively(sub_model, select_include["include"][relation])

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble_hierarchy(self, model: str, entity: Any) -> Any:
        """Merge the per-level rows of an entity into one flat dict."""
        if not isinstance(entity, dict):
            return entity
        return deep_merge(self._assemble_up(model, entity), self._assemble_down(model, entity))

    def _assemble_up(self, model: str, entity: Any) -> Any:
        if not isinstance(entity, dict):
            return entity

        result: dict[str, Any] = {}
        base = self.meta.base_model(model)
        if base is not None:
            base_data = entity.get(aux_relation_name(base.name))
            if isinstance(base_data, dict):
                result.update(self.assemble_hierarchy(base.name, base_data))

        fields = self.meta.get_fields(model)
        for key, value in entity.items():
            if _is_aux(key):
                continue
            field_info = fields.get(key)
            if field_info is None:
                # _count, aggregates
                result[key] = value
            elif self._is_inherited(field_info):
                continue
            elif field_info.is_data_model:
                result[key] = self._map_related(field_info, value, self.assemble_hierarchy)
            else:
                result[key] = value
        return result

    def _assemble_down(self, model: str, entity: Any) -> Any:
        if not isinstance(entity, dict):
            return entity

        result: dict[str, Any] = {}
        info = self.meta.get_model(model)
        if info.discriminator:
            concrete = entity.get(info.discriminator)
            if isinstance(concrete, str) and self.meta.has_model(concrete):
                sub_data = entity.get(aux_relation_name(concrete))
                if isinstance(sub_data, dict):
                    result.update(self.assemble_hierarchy(concrete, sub_data))

        for key, value in entity.items():
            if _is_aux(key):
                continue
            field_info = info.fields.get(key)
            if field_info is not None and field_info.is_data_model:
                result[key] = self._map_related(field_info, value, self.assemble_hierarchy)
            else:
                result[key] = value
        return result

    @staticmethod
    def _map_related(field_info: FieldInfo, value: Any, fn) -> Any:
        if isinstance(value, list):
            return [fn(field_info.type, item) for item in value]
        return fn(field_info.type, value)

    # ==================================================================
    # Create
    # ==================================================================

    @translate_errors
    async def create(self, args=None):
        require_args(args, "data")
        self._sanitize_mutation_payload(args["data"])
        self._reject_delegate_creation(self.model)
        if not self._involves_delegate(self.model):
            return await self.target.create(args)
        return await self._do_create(self.db, self.model, args)

    @translate_errors
    async def create_many(self, args=None):
        require_args(args, "data")
        self._sanitize_mutation_payload(args["data"])
        if not self._involves_delegate(self.model):
            return await self.target.create_many(args)
        self._check_create_many(self.model, args)

        # create_many can't carry the nested base creates, so items are created one by one
        async def run(tx: DbClient):
            created = [await self._do_create(tx, self.model, {"data": item}) for item in enumerate_items(args["data"])]
            return {"count": len(created)}

        return await self.query_utils.transaction(self.db, run)

    @translate_errors
    async def create_many_and_return(self, args=None):
        require_args(args, "data")
        self._sanitize_mutation_payload(args["data"])
        if not self._involves_delegate(self.model):
            return await self.target.create_many_and_return(args)
        self._check_create_many(self.model, args)

        async def run(tx: DbClient):
            result = []
            for item in enumerate_items(args["data"]):
                create_args = {"data": item}
                if args.get("select"):
                    create_args["select"] = args["select"]
                result.append(await self._do_create(tx, self.model, create_args))
            return result

        return await self.query_utils.transaction(self.db, run)

    def _check_create_many(self, model: str, args: dict[str, Any]) -> None:
        self._reject_delegate_creation(model)
        if self.meta.is_delegate_or_descendant(model) and args.get("skipDuplicates"):
            raise UsageError("`create_many` with `skipDuplicates` set to true is not supported for delegated models")

    def _reject_delegate_creation(self, model: str) -> None:
        if self.meta.is_delegate(model):
            raise UsageError(f'Model "{model}" is a delegate and cannot be created directly')

    def _sanitize_mutation_payload(self, data: Any) -> None:
        for key in walk_keys(data):
            if _is_aux(key):
                raise UsageError(f'Auxiliary relation field "{key}" cannot be set directly')

    async def _do_create(self, db: DbClient, model: str, args: dict[str, Any]) -> Any:
        args = await self._inject_create_hierarchy(model, args)
        self._inject_select_include_hierarchy(model, args)
        self.log_query("delegate", "create", model, args)
        result = await db.model(model).create(args)
        return self.assemble_hierarchy(model, result)

    async def _inject_create_hierarchy(self, model: str, args: dict[str, Any]) -> dict[str, Any]:
        def on_create(model, data, context):
            if not _through_aux(context):
                self._reject_delegate_creation(model)
            self._process_create_payload(model, data)

        def on_create_many(model, args, context):
            if self.meta.is_delegate_or_descendant(model):
                return self._convert_create_many(model, args, context)
            return True

        visitor = NestedWriteVisitor(self.meta, create=on_create, create_many=on_create_many)
        return await visitor.visit(model, "create", args)

    def _convert_create_many(self, model: str, args: dict[str, Any], context: VisitorContext) -> list[Any]:
        """Turn a nested ``createMany`` into ``create`` items carrying their base levels."""
        self._check_create_many(model, args)
        create_payload = list(enumerate_items(context.parent.get("create")))
        for item in enumerate_items(args.get("data")):
            self._process_create_payload(model, item)
            create_payload.append(item)
        context.parent["create"] = create_payload
        del context.parent["createMany"]
        # converted items still need their own relations visited
        return list(enumerate_items(args.get("data")))

    def _process_create_payload(self, model: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        self._ensure_base_create_hierarchy(model, data)
        for key in list(data):
            field_info = self.meta.resolve_field(model, key)
            if self._is_inherited(field_info):
                self._inject_base_field_data(model, field_info, data[key], data, "create")
                del data[key]

    def _ensure_base_create_hierarchy(self, model: str, data: dict[str, Any]) -> None:
        """Build the nested ``create`` chain for every base level, setting discriminators."""
        current = data
        sub = self.meta.get_model(model)
        base = self.meta.base_model(model)
        has_base = base is not None

        while base is not None:
            relation = aux_relation_name(base.name)
            if not isinstance(current.get(relation), dict):
                current[relation] = {}
            if not isinstance(current[relation].get("create"), dict):
                current[relation]["create"] = {}
                if base.discriminator:
                    current[relation]["create"][base.discriminator] = sub.name

            # caller-assigned ids move down to the base level
            for id_field in self.meta.id_fields(base.name):
                if id_field.name in current:
                    current[relation]["create"][id_field.name] = current.pop(id_field.name)

            current = current[relation]["create"]
            sub = base
            base = self.meta.base_model(base.name)

        if has_base:
            self._fk_assignment_to_connect(model, data)

    def _fk_assignment_to_connect(self, model: str, data: dict[str, Any]) -> None:
        """Rewrite ``{fk: value}`` as ``{relation: {connect: {id: value}}}``.

        A payload with a nested base create can't also assign foreign keys directly.
        """
        for key in list(data):
            field_info = self.meta.resolve_field(model, key)
            if field_info is None or self._is_inherited(field_info) or not field_info.is_foreign_key:
                continue
            if data[key] is None:
                continue
            found = self.meta.relation_for_foreign_key(model, key)
            if found is None:
                continue
            relation, id_field = found
            connect = data.setdefault(relation.name, {}).setdefault("connect", {})
            if id_field not in connect:
                connect[id_field] = data.pop(key)

    def _inject_base_field_data(
        self,
        model: str,
        field_info: FieldInfo,
        value: Any,
        data: dict[str, Any],
        mode: str,
    ) -> None:
        base = self.meta.base_model(model)
        current = data
        while base is not None:
            if base.discriminator == field_info.name:
                raise UsageError(f'field "{field_info.name}" is a discriminator and cannot be set directly')
            relation = aux_relation_name(base.name)
            if not isinstance(current.get(relation), dict):
                current[relation] = {}
            if not isinstance(current[relation].get(mode), dict):
                current[relation][mode] = {}
            current = current[relation][mode]
            if field_info.inherited_from == base.name:
                current[field_info.name] = value
                break
            base = self.meta.base_model(base.name)

    # ==================================================================
    # Update
    # ==================================================================

    @translate_errors
    async def update(self, args=None):
        require_args(args, "where", "data")
        self._sanitize_mutation_payload(args["data"])
        if not self._involves_delegate(self.model):
            return await self.target.update(args)
        return await self.query_utils.transaction(self.db, lambda tx: self._do_update(tx, self.model, args))

    @translate_errors
    async def update_many(self, args=None):
        require_args(args, "data")
        self._sanitize_mutation_payload(args["data"])
        if not self._involves_delegate(self.model):
            return await self.target.update_many(args)
        simple = self._is_simple_update_many(self.model, args, check_where=False)
        return await self.query_utils.transaction(
            self.db, lambda tx: self._do_update_many(tx, self.model, args, simple)
        )

    @translate_errors
    async def upsert(self, args=None):
        require_args(args, "where", "create", "update")
        self._sanitize_mutation_payload(args["update"])
        self._sanitize_mutation_payload(args["create"])
        if self.meta.is_delegate(self.model):
            raise UsageError(f'Model "{self.model}" is a delegate and doesn\'t support upsert')
        if not self._involves_delegate(self.model):
            return await self.target.upsert(args)

        args = clone(args)
        self._inject_where_hierarchy(self.model, args["where"])
        self._inject_select_include_hierarchy(self.model, args)
        self._process_create_payload(self.model, args["create"])
        self._process_update_payload(self.model, args["update"])
        self.log_query("delegate", "upsert", self.model, args)
        result = await self.target.upsert(args)
        return self.assemble_hierarchy(self.model, result)

    async def _do_update(self, db: DbClient, model: str, args: dict[str, Any]) -> Any:
        args = await self._inject_update_hierarchy(db, model, args)
        self._inject_select_include_hierarchy(model, args)
        self.log_query("delegate", "update", model, args)
        result = await db.model(model).update(args)
        return self.assemble_hierarchy(model, result)

    def _is_simple_update_many(self, model: str, args: dict[str, Any], check_where: bool = True) -> bool:
        """Whether an update_many can run as one statement on the model's own level."""
        data = args.get("data") or {}
        if any(self._is_inherited(self.meta.resolve_field(model, key)) for key in data):
            return False
        if self.meta.updated_at_from_delegate_bases(model):
            return False
        if check_where:
            where = args.get("where") or {}
            return not any(self._is_inherited(self.meta.resolve_field(model, key)) for key in where)
        return True

    async def _do_update_many(self, db: DbClient, model: str, args: dict[str, Any], simple: bool) -> dict[str, int]:
        if simple:
            args = await self._inject_update_hierarchy(db, model, args)
            self.log_query("delegate", "update_many", model, args)
            return await db.model(model).update_many(args)

        # base fields are written through the nested base relation, one entity at a time
        find_args = {"where": clone(args.get("where") or {}), "select": self.query_utils.make_id_selection(model)}
        self._inject_where_hierarchy(model, find_args["where"])
        self.log_query("delegate", "update_many candidates", model, find_args)
        entities = await db.model(model).find_many(find_args)
        logger.debug("[delegate] update_many %s writes base fields, updating %d entities one by one", model, len(entities))

        update_payload = await self._inject_update_hierarchy(
            db, model, {"data": clone(args["data"]), "select": self.query_utils.make_id_selection(model)}
        )
        for entity in entities:
            update_args = {"where": self._unique_filter(model, entity), **update_payload}
            self.log_query("delegate", "update", model, update_args)
            await db.model(model).update(update_args)
        return {"count": len(entities)}

    async def _inject_update_hierarchy(self, db: DbClient, model: str, args: dict[str, Any]) -> dict[str, Any]:
        def on_update(model, args, context):
            if isinstance(args, dict) and isinstance(args.get("data"), dict):
                self._inject_where_hierarchy(model, args.get("where"))
                self._process_update_payload(model, args["data"])
            else:
                self._process_update_payload(model, args)

        async def on_update_many(model, args, context):
            if self._is_simple_update_many(model, args):
                self._inject_where_hierarchy(model, args.get("where"))
                self._process_update_payload(model, args.get("data"))
                return True
            where = await self.query_utils.build_reversed_query(db, context.nesting_path)
            await self._do_update_many(db, model, {**args, "where": where}, False)
            remove_from_parent(context.parent, "updateMany", args)
            return False

        def on_upsert(model, args, context):
            self._inject_where_hierarchy(model, args.get("where"))
            self._process_create_payload(model, args.get("create"))
            self._process_update_payload(model, args.get("update"))

        def on_create(model, args, context):
            if not _through_aux(context):
                self._reject_delegate_creation(model)
            self._process_create_payload(model, args)

        def on_create_many(model, args, context):
            if self.meta.is_delegate_or_descendant(model):
                return self._convert_create_many(model, args, context)
            return True

        def on_filter(model, args, context):
            self._inject_where_hierarchy(model, args)

        def on_connect_or_create(model, args, context):
            self._inject_where_hierarchy(model, args.get("where"))
            self._process_create_payload(model, args.get("create"))

        async def on_delete(model, args, context):
            if not self._involves_delegate(model):
                return
            # base rows have to go too, which a nested delete can't express
            where = await self.query_utils.build_reversed_query(db, context.nesting_path)
            await self._do_delete(db, model, {"where": where}, read_back=False)
            remove_from_parent(context.parent, "delete", args)

        async def on_delete_many(model, args, context):
            if not self._involves_delegate(model):
                return
            where = await self.query_utils.build_reversed_query(db, context.nesting_path)
            await self._do_delete_many(db, model, where)
            remove_from_parent(context.parent, "deleteMany", args)

        visitor = NestedWriteVisitor(
            self.meta,
            update=on_update,
            update_many=on_update_many,
            upsert=on_upsert,
            create=on_create,
            create_many=on_create_many,
            connect=on_filter,
            disconnect=on_filter,
            set=on_filter,
            connect_or_create=on_connect_or_create,
            delete=on_delete,
            delete_many=on_delete_many,
        )
        return await visitor.visit(model, "update", args)

    def _process_update_payload(self, model: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        for key in list(data):
            field_info = self.meta.resolve_field(model, key)
            if self._is_inherited(field_info):
                self._inject_base_field_data(model, field_info, data[key], data, "update")
                del data[key]

        # any write bumps @updatedAt fields stored on delegate bases
        if data:
            for field_info in self.meta.updated_at_from_delegate_bases(model):
                self._inject_base_field_data(model, field_info, datetime.now(timezone.utc), data, "update")

    # ==================================================================
    # Delete
    # ==================================================================

    @translate_errors
    async def delete(self, args=None):
        require_args(args, "where")
        if not self._involves_delegate(self.model):
            return await self.target.delete(args)

        async def run(tx: DbClient):
            delete_args = clone(args)
            if isinstance(delete_args.get("select"), dict):
                for id_field in self.query_utils.id_fields(self.model):
                    delete_args["select"].setdefault(id_field.name, True)
            return await self._do_delete(tx, self.model, delete_args)

        return await self.query_utils.transaction(self.db, run)

    @translate_errors
    async def delete_many(self, args=None):
        if not self._involves_delegate(self.model):
            return await self.target.delete_many(args)
        where = (args or {}).get("where")
        return await self.query_utils.transaction(self.db, lambda tx: self._do_delete_many(tx, self.model, where))

    async def _do_delete_many(self, db: DbClient, model: str, where: Any) -> dict[str, int]:
        find_args = {"where": clone(where or {}), "select": self.query_utils.make_id_selection(model)}
        self._inject_where_hierarchy(model, find_args["where"])
        self.log_query("delegate", "delete_many candidates", model, find_args)
        entities = await db.model(model).find_many(find_args)
        for entity in entities:
            await self._do_delete(db, model, {"where": self._unique_filter(model, entity)}, read_back=False)
        return {"count": len(entities)}

    async def _do_delete(self, db: DbClient, model: str, args: dict[str, Any], read_back: bool = True) -> Any:
        self._inject_where_hierarchy(model, args.get("where"))
        self._inject_select_include_hierarchy(model, args)

        # dependents cascading from this entity must lose their base rows as well
        cascade_deletes = await self._relation_entities_for_cascade_delete(db, model, args["where"])
        result = None
        if cascade_deletes:
            if read_back:
                read_args = {k: v for k, v in args.items() if k in ("where", "select", "include")}
                result = self.assemble_hierarchy(model, await db.model(model).find_first(read_args))
            for related_model, entity in cascade_deletes:
                await self._do_delete(db, related_model, {"where": self._unique_filter(related_model, entity)}, False)

        self.log_query("delegate", "delete", model, args)
        deleted = await db.model(model).delete(args)
        if result is None:
            result = self.assemble_hierarchy(model, deleted)

        ids = self.query_utils.get_entity_ids(model, deleted)
        await self._delete_base_recursively(db, model, ids)
        return result

    async def _delete_base_recursively(self, db: DbClient, model: str, ids: dict[str, Any]) -> None:
        base = self.meta.base_model(model)
        while base is not None:
            where = self._unique_filter(base.name, ids)
            self.log_query("delegate", "delete", base.name, {"where": where})
            await db.model(base.name).delete({"where": where})
            base = self.meta.base_model(base.name)

    async def _relation_entities_for_cascade_delete(
        self, db: DbClient, model: str, where: Any
    ) -> list[tuple[str, dict[str, Any]]]:
        if not where:
            raise UsageError("where clause is required for cascade delete")

        result = await self._cascade_dependents(db, model, self.meta.get_fields(model).values(), where)

        descendants = self._descendants(model)
        if descendants:
            # lower levels go with the storage cascade, their own dependents need explicit deletes
            entity = await db.model(model).find_first(
                {"where": clone(where), "select": self.query_utils.make_id_selection(model)}
            )
            if entity is not None:
                ids = self.query_utils.get_entity_ids(model, entity)
                for sub in descendants:
                    own_fields = [f for f in self.meta.get_fields(sub).values() if not f.inherited_from]
                    result.extend(await self._cascade_dependents(db, sub, own_fields, self._unique_filter(sub, ids)))
        return result

    async def _cascade_dependents(
        self, db: DbClient, model: str, fields: Iterable[FieldInfo], where: Any
    ) -> list[tuple[str, dict[str, Any]]]:
        result = []
        for field_info in fields:
            if not field_info.is_data_model or field_info.is_relation_owner or not field_info.back_link:
                continue
            if _is_aux(field_info.name):
                # lower levels are removed by the storage cascade
                continue
            back_link = self.meta.resolve_field(field_info.type, field_info.back_link)
            if back_link is None or not back_link.is_relation_owner or back_link.on_delete_action != "Cascade":
                continue
            if not self.meta.get_model(field_info.type).base_types:
                continue

            find_where = {back_link.name: clone(where)}
            self._inject_where_hierarchy(field_info.type, find_where)
            entities = await db.model(field_info.type).find_many(
                {"where": find_where, "select": self.query_utils.make_id_selection(field_info.type)}
            )
            result.extend((field_info.type, entity) for entity in entities)
        return result

    def _descendants(self, model: str) -> list[str]:
        result = []
        for sub in self.meta.sub_models.get(model, []):
            result.append(sub)
            result.extend(self._descendants(sub))
        return result

    # ==================================================================
    # Aggregation
    # ==================================================================

    @translate_errors
    async def aggregate(self, args=None):
        require_args(args)
        if not self._involves_delegate(self.model):
            return await self.target.aggregate(args)
        self._check_aggregation_args("aggregate", args)

        args = clone(args)
        self._inject_where_hierarchy(self.model, args.get("cursor"))
        for item in enumerate_items(args.get("orderBy")):
            self._inject_where_hierarchy(self.model, item)
        self._inject_where_hierarchy(self.model, args.get("where"))
        self.log_query("delegate", "aggregate", self.model, args)
        return await self.target.aggregate(args)

    @translate_errors
    async def count(self, args=None):
        if not self._involves_delegate(self.model):
            return await self.target.count(args)
        self._check_aggregation_args("count", args)

        args = clone(args) if args else {}
        self._inject_where_hierarchy(self.model, args.get("cursor"))
        self._inject_where_hierarchy(self.model, args.get("where"))
        self.log_query("delegate", "count", self.model, args)
        return await self.target.count(args)

    @translate_errors
    async def group_by(self, args=None):
        require_args(args, "by")
        if not self._involves_delegate(self.model):
            return await self.target.group_by(args)
        self._check_aggregation_args("group_by", args)
        for by in enumerate_items(args["by"]):
            if self._is_inherited(self.meta.resolve_field(self.model, by)):
                raise UsageError(f'group_by with fields from base type is not supported yet: "{by}"')

        args = clone(args)
        self._inject_where_hierarchy(self.model, args.get("where"))
        self.log_query("delegate", "group_by", self.model, args)
        return await self.target.group_by(args)

    def _check_aggregation_args(self, operation: str, args: dict[str, Any] | None) -> None:
        for key in AGGREGATION_KEYS:
            value = (args or {}).get(key)
            if not isinstance(value, dict):
                continue
            for field_name in value:
                if self._is_inherited(self.meta.resolve_field(self.model, field_name)):
                    raise UsageError(f'{operation} with fields from base type is not supported yet: "{field_name}"')


def _count_select(select_include: Any) -> Any:
    if not isinstance(select_include, dict):
        return None
    count = select_include.get("_count")
    return count.get("select") if isinstance(count, dict) else None


def _through_aux(context: VisitorContext) -> bool:
    return context.field is not None and _is_aux(context.field.name)
