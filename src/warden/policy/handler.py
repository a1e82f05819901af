"""Policy enforcement layer.

Reads are filtered by read guards. Writes run pre-checks, the mutation and
post-checks in one transaction, then read the result back under read guards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable

from warden.client.contract import DbClient, require_args
from warden.client.proxy import ProxyHandler, translate_errors
from warden.config import EnhancementOptions
from warden.errors import DataValidationError, DeniedByPolicyError, NotFoundError, UsageError
from warden.metadata.types import FieldInfo
from warden.nested_write import (
    NestedWriteVisitor,
    VisitorContext,
    merge_to_parent,
    remove_from_parent,
    visit_model_data,
)
from warden.policy.constraint import all_of, field_value_constraints
from warden.policy.guard import PolicyUtil
from warden.policy.solver import ConstraintSolver
from warden.policy.types import CRUD_KINDS
from warden.query.logic import and_, is_false, is_true
from warden.utils import clone, enumerate_items, upper_first

logger = logging.getLogger(__name__)


@dataclass
class PostWriteCheck:
    """A policy check to run against an entity after the mutation."""

    model: str
    operation: str
    unique_filter: dict[str, Any]
    pre_value: dict[str, Any] | None = None


def _entity_key(model: str, ids: dict[str, Any]) -> str:
    return f"{upper_first(model)}#" + "_".join(f"{k}:{ids[k]}" for k in sorted(ids))


class PolicyProxyHandler(ProxyHandler):
    """Model handle enforcing access policies on top of the layer beneath."""

    def __init__(
        self,
        db: DbClient,
        model: str,
        options: EnhancementOptions | None,
        util: PolicyUtil,
        solver: ConstraintSolver | None = None,
    ):
        super().__init__(db, model, options)
        self.util = util
        self.meta = util.meta
        self.solver = solver or ConstraintSolver()

    # ==================================================================
    # Find
    # ==================================================================

    # Entities failing read guards behave as if they don't exist.

    @translate_errors
    async def find_unique(self, args=None):
        require_args(args, "where")
        return await self._do_find("find_unique", args, lambda: None)

    @translate_errors
    async def find_unique_or_throw(self, args=None):
        require_args(args, "where")
        return await self._do_find("find_unique_or_throw", args, self._not_found)

    @translate_errors
    async def find_first(self, args=None):
        return await self._do_find("find_first", args, lambda: None)

    @translate_errors
    async def find_first_or_throw(self, args=None):
        return await self._do_find("find_first_or_throw", args, self._not_found)

    @translate_errors
    async def find_many(self, args=None):
        return await self._do_find("find_many", args, lambda: [])

    def _not_found(self):
        raise NotFoundError(self.model)

    async def _do_find(self, operation: str, args: dict[str, Any] | None, on_rejection: Callable[[], Any]) -> Any:
        original = args or {}
        query = clone(original)
        if not self.util.inject_for_read(self.model, query):
            logger.debug("[policy] `%s` %s: unconditionally denied", operation, self.model)
            return on_rejection()
        self.util.inject_read_check_select(self.model, query)
        self.log_query("policy", operation, self.model, query)
        result = await getattr(self.target, operation)(query)
        return await self.util.post_process_for_read(self.db, self.model, result, original)

    # ==================================================================
    # Create
    # ==================================================================

    @translate_errors
    async def create(self, args=None):
        require_args(args, "data")
        self.util.try_reject(self.model, "create")
        original = args
        args = clone(args)

        input_check = self.util.check_input_guard(self.model, args["data"], "create")
        if input_check is False:
            raise DeniedByPolicyError(self.model, "create")

        if input_check is True and not await self._has_nested_create_or_connect(args):
            # decided by the payload alone and nothing nested to verify
            self.util.validate_input(self.model, "create", args["data"])
            create_args = {"data": args["data"], "select": self.util.make_id_selection(self.model)}
            self.log_query("policy", "create", self.model, create_args)
            created = await self.target.create(create_args)
            result, error = await self.util.read_back(self.db, self.model, original, created)
        else:

            async def run(tx: DbClient):
                created, checks = await self._do_create(self.model, args, tx)
                await self._run_post_write_checks(checks, tx)
                return await self.util.read_back(tx, self.model, original, created)

            result, error = await self.util.transaction(self.db, run)

        if error is not None:
            raise error
        return result

    async def _do_create(
        self, model: str, args: dict[str, Any], db: DbClient
    ) -> tuple[dict[str, Any], list[PostWriteCheck]]:
        """Create with nested writes, collecting post-create checks for every created entity."""
        id_selections: list[tuple[list[str], list[str]]] = []
        connected: set[str] = set()

        def push_id_fields(model: str, context: VisitorContext) -> None:
            path = [item.field.name for item in context.nesting_path if item.field is not None]
            id_selections.append((path, [f.name for f in self.util.id_fields(model)]))

        async def on_create(model, data, context):
            self.util.validate_input(model, "create", data)
            push_id_fields(model, context)

        async def on_create_many(model, args, context):
            for item in enumerate_items(args.get("data")):
                self.util.validate_input(model, "create", item)
            push_id_fields(model, context)

        async def on_connect_or_create(model, args, context):
            if not args.get("where"):
                raise UsageError("'where' field is required for connectOrCreate")
            if args.get("create"):
                self.util.validate_input(model, "create", args["create"])

            existing = await self.util.check_existence(db, model, args["where"])
            if existing is not None:
                if self._back_link_owns_relation(model, context.field):
                    # the connected side holds the foreign key, so it's being updated
                    await self.util.check_policy_for_unique(model, args["where"], "update", db)
                merge_to_parent(context.parent, "connect", args["where"])
                connected.add(_entity_key(model, existing))
                remove_from_parent(context.parent, "connectOrCreate", args)
                return False

            push_id_fields(model, context)
            merge_to_parent(context.parent, "create", args.get("create"))
            remove_from_parent(context.parent, "connectOrCreate", args)
            # keep visiting the create payload for nested creates
            return args.get("create") or False

        async def on_connect(model, args, context):
            if not isinstance(args, dict) or not args:
                raise UsageError("'connect' field must be an non-empty object")
            if self._back_link_owns_relation(model, context.field):
                await self.util.check_existence(db, model, args, throw_if_not_found=True)
                await self.util.check_policy_for_unique(model, args, "update", db)

        visitor = NestedWriteVisitor(
            self.meta,
            create=on_create,
            create_many=on_create_many,
            connect_or_create=on_connect_or_create,
            connect=on_connect,
        )
        payload = await visitor.visit(model, "create", args)

        select: dict[str, Any] = {}
        for path, ids in id_selections:
            current = select
            for name in path:
                current = current.setdefault(name, {"select": {}})["select"]
            for id_field in ids:
                current[id_field] = True

        create_args = {"data": payload["data"], "select": select or None}
        self.log_query("policy", "create", model, create_args)
        result = await db.model(model).create(create_args)

        checks: dict[str, PostWriteCheck] = {}

        def collect(entity_model: str, _entity: dict[str, Any], scalars: dict[str, Any]) -> None:
            ids = self.util.get_entity_ids(entity_model, scalars)
            key = _entity_key(entity_model, ids)
            # entities that were connected rather than created aren't post-checked
            if key not in connected and key not in checks:
                checks[key] = PostWriteCheck(entity_model, "create", ids)

        visit_model_data(self.meta, model, result, collect)
        return self.util.get_entity_ids(model, result), list(checks.values())

    async def _has_nested_create_or_connect(self, args: dict[str, Any]) -> bool:
        found = False

        def on_create(_model, _args, context):
            nonlocal found
            if context.field is not None:
                found = True
                return False
            return True

        def on_nested(*_):
            nonlocal found
            found = True
            return False

        visitor = NestedWriteVisitor(
            self.meta,
            create=on_create,
            create_many=on_nested,
            connect=on_nested,
            connect_or_create=on_nested,
        )
        await visitor.visit(self.model, "create", args)
        return found

    def _validate_create_items(self, args: dict[str, Any]) -> bool:
        """Validate every create item; return whether any needs a post-create check."""
        need_post_check = False
        for item in enumerate_items(args["data"]):
            self.util.validate_input(self.model, "create", item)
            input_check = self.util.check_input_guard(self.model, item, "create")
            if input_check is False:
                raise DeniedByPolicyError(self.model, "create")
            if input_check is None:
                need_post_check = True
        return need_post_check

    @translate_errors
    async def create_many(self, args=None):
        require_args(args, "data")
        self.util.try_reject(self.model, "create")
        args = clone(args)

        if not self._validate_create_items(args):
            self.log_query("policy", "create_many", self.model, args)
            return await self.target.create_many(args)

        async def run(tx: DbClient):
            created, checks = await self._do_create_many(self.model, args, tx)
            await self._run_post_write_checks(checks, tx)
            return {"count": len(created)}

        return await self.util.transaction(self.db, run)

    @translate_errors
    async def create_many_and_return(self, args=None):
        require_args(args, "data")
        self.util.try_reject(self.model, "create")
        original = args
        args = clone(args)

        if not self._validate_create_items(args):
            self.log_query("policy", "create_many_and_return", self.model, args)
            created = await self.target.create_many_and_return(
                {"data": args["data"], "skipDuplicates": args.get("skipDuplicates")}
            )
            results = [
                await self.util.read_back(self.db, self.model, original, self.util.get_entity_ids(self.model, item))
                for item in created
            ]
        else:

            async def run(tx: DbClient):
                created, checks = await self._do_create_many(self.model, args, tx)
                await self._run_post_write_checks(checks, tx)
                return [await self.util.read_back(tx, self.model, original, item) for item in created]

            results = await self.util.transaction(self.db, run)

        for _, error in results:
            if error is not None:
                raise error
        return [result for result, _ in results]

    async def _do_create_many(
        self, model: str, args: dict[str, Any], db: DbClient
    ) -> tuple[list[dict[str, Any]], list[PostWriteCheck]]:
        # items are created one by one so each can be post-checked
        created = []
        for item in enumerate_items(args["data"]):
            if args.get("skipDuplicates") and await self._has_duplicated_unique_constraint(model, item, None, db):
                logger.debug("[policy] `create_many` %s: skipping duplicate %r", model, item)
                continue
            self.log_query("policy", "create", model, item)
            created.append(await db.model(model).create({"data": item, "select": self.util.make_id_selection(model)}))
        return created, [PostWriteCheck(model, "create", item) for item in created]

    async def _has_duplicated_unique_constraint(
        self,
        model: str,
        data: dict[str, Any],
        upstream_query: dict[str, Any] | None,
        db: DbClient,
    ) -> bool:
        for constraint in self.meta.unique_constraints(model).values():
            unique_filter: dict[str, Any] = {}
            remaining = set(constraint.fields)
            for key, value in data.items():
                if value is not None and key in remaining:
                    unique_filter[key] = value
                    remaining.discard(key)

            for key, value in (upstream_query or {}).items():
                if value is None:
                    continue
                if key in remaining:
                    unique_filter[key] = value
                    remaining.discard(key)
                    continue
                field_info = self.meta.resolve_field(model, key)
                if field_info is None or not field_info.is_data_model:
                    continue
                # an upstream relation condition covers its foreign keys
                unique_filter[key] = value
                for fk in (field_info.foreign_key_mapping or {}).values():
                    remaining.discard(fk)

            if not remaining and await self.util.check_existence(db, model, unique_filter):
                return True
        return False

    # ==================================================================
    # Update & upsert
    # ==================================================================

    # "update" and "upsert" reject when the unique entity fails the guard;
    # "update_many" silently skips entities failing it.

    @translate_errors
    async def update(self, args=None):
        require_args(args, "where", "data")
        args = clone(args)

        async def run(tx: DbClient):
            result, checks = await self._do_update(args, tx)
            await self._run_post_write_checks(checks, tx)
            return await self.util.read_back(tx, self.model, args, result)

        result, error = await self.util.transaction(self.db, run)
        if error is not None:
            raise error
        return result

    async def _do_update(self, args: dict[str, Any], db: DbClient) -> tuple[dict[str, Any], list[PostWriteCheck]]:
        checks: list[PostWriteCheck] = []
        processed_sets: set[int] = set()
        util = self.util

        async def register_post_update_check(model: str, pre_filter: dict[str, Any], post_filter: dict[str, Any]):
            if not util.needs_post_update_check(model):
                return
            pre_value = None
            pre_value_select = util.get_pre_value_select(model)
            if pre_value_select:
                pre_value = await db.model(model).find_first({"where": pre_filter, "select": pre_value_select})
            checks.append(PostWriteCheck(model, "postUpdate", post_filter, pre_value))

        async def create_nested(model: str, data: dict[str, Any], context: VisitorContext) -> dict[str, Any]:
            # a nested create is executed on its own, linked to its upstream entity
            create_data = data
            field_info = context.field
            if field_info is not None and field_info.back_link:
                unsafe = self._is_unsafe_mutate(model, data)
                reversed_query = await util.build_reversed_query(db, context.nesting_path, True, unsafe)
                back_link = self.meta.require_field(model, field_info.back_link)
                if (not unsafe or field_info.is_relation_owner) and reversed_query.get(back_link.name):
                    create_data = {**create_data, back_link.name: {"connect": reversed_query[back_link.name]}}
                else:
                    mapping = back_link.foreign_key_mapping or {}
                    fk_values = {fk: reversed_query.get(fk) for fk in mapping.values()}
                    if all(v is not None for v in fk_values.values()):
                        create_data = {**create_data, **fk_values}
                    else:
                        # the upstream entity has no unique filter yet, look it up
                        upstream_query = {
                            "where": reversed_query.get(back_link.name),
                            "select": util.make_id_selection(back_link.type),
                        }
                        self.log_query("policy", "find_unique_or_throw", back_link.type, upstream_query)
                        upstream = await db.model(back_link.type).find_unique_or_throw(upstream_query)
                        create_data = {**create_data, **{fk: upstream[i] for i, fk in mapping.items()}}

            created, sub_checks = await self._do_create(model, {"data": create_data}, db)
            checks.extend(sub_checks)
            return created

        async def guard_owner_update(model: str, unique_filter: dict[str, Any], context: VisitorContext):
            if self._back_link_owns_relation(model, context.field):
                # the related side holds the foreign key, so it's being updated
                await util.check_policy_for_unique(model, unique_filter, "update", db)
                await register_post_update_check(model, unique_filter, unique_filter)

        async def on_update(model, args, context):
            unique_filter = await util.build_reversed_query(db, context.nesting_path)
            existing = await util.check_existence(db, model, unique_filter, throw_if_not_found=True)
            payload = args["data"] if isinstance(args.get("data"), dict) else args
            util.validate_input(model, "update", payload)

            if self._writes_own_fields(model, payload):
                util.try_reject(model, "update")
                await util.check_policy_for_unique(model, unique_filter, "update", db)
                await util.check_field_update_guard(db, model, unique_filter, payload)
                post_ids = self._post_update_ids(existing, payload)
                await register_post_update_check(model, existing, post_ids)

        async def on_update_many(model, args, context):
            if util.needs_post_update_check(model):
                pre_value_select = util.get_pre_value_select(model)
                select = {**util.make_id_selection(model), **(pre_value_select or {})}
                current_query = {"select": select, "where": await util.build_reversed_query(db, context.nesting_path)}
                util.inject_auth_guard_as_where(model, current_query, "read")
                self.log_query("policy", "find_many", model, current_query)
                for entity in await db.model(model).find_many(current_query):
                    checks.append(
                        PostWriteCheck(
                            model,
                            "postUpdate",
                            util.get_entity_ids(model, entity),
                            entity if pre_value_select else None,
                        )
                    )

            util.validate_input(model, "update", args.get("data"))
            guard = and_(util.get_auth_guard(model, "update"), util.get_field_update_guard(model, args.get("data")))
            if is_true(guard) or is_false(guard):
                util.inject_auth_guard_as_where(model, args, "update")
            else:
                # relation filters in the guard can't go into a nested update_many
                where = and_(await util.build_reversed_query(db, context.nesting_path), guard)
                self.log_query("policy", "update_many", model, {"where": where, "data": args.get("data")})
                await db.model(model).update_many({"where": where, "data": args.get("data")})
                remove_from_parent(context.parent, "updateMany", args)

        async def on_create(model, args, context):
            await create_nested(model, args, context)
            remove_from_parent(context.parent, "create", args)
            return False

        async def on_create_many(model, args, context):
            for item in enumerate_items(args.get("data")):
                if args.get("skipDuplicates"):
                    upstream_query = await util.build_reversed_query(db, context.nesting_path)
                    if await self._has_duplicated_unique_constraint(model, item, upstream_query, db):
                        logger.debug("[policy] `create_many` %s: skipping duplicate %r", model, item)
                        continue
                await create_nested(model, item, context)
            context.parent.pop("createMany", None)
            return False

        async def on_upsert(model, args, context):
            unique_filter = await util.build_reversed_query(db, context.nesting_path)
            existing = await util.check_existence(db, model, unique_filter)
            if existing is not None:
                await util.check_policy_for_unique(model, existing, "update", db)
                post_ids = self._post_update_ids(existing, args.get("update") or {})
                await register_post_update_check(model, existing, post_ids)
                util.validate_input(model, "update", args.get("update"))

                converted: dict[str, Any] = {"data": args.get("update") or {}}
                if args.get("where") is not None:
                    converted["where"] = args["where"]
                merge_to_parent(context.parent, "update", converted)
                remove_from_parent(context.parent, "upsert", args)
                return converted["data"]

            await create_nested(model, args.get("create") or {}, context)
            remove_from_parent(context.parent, "upsert", args)
            return False

        async def on_connect(model, args, context):
            await guard_owner_update(model, args, context)

        async def on_disconnect(model, args, context):
            if not self._back_link_owns_relation(model, context.field):
                return
            # a disconnect filter isn't necessarily unique, locate the entity first
            reversed_query = await util.build_reversed_query(db, context.nesting_path)
            found = await db.model(model).find_first(
                {"where": reversed_query, "select": util.make_id_selection(model)}
            )
            if found is not None:
                await guard_owner_update(model, util.get_entity_ids(model, found), context)

        async def on_set(model, args, context):
            if id(context.parent) not in processed_sets:
                processed_sets.add(id(context.parent))
                # every entity currently in the relation is disconnected
                parent_path = (*context.nesting_path[:-1], replace(context.nesting_path[-1], where={}))
                current_query = {
                    "select": util.make_id_selection(model),
                    "where": await util.build_reversed_query(db, parent_path),
                }
                self.log_query("policy", "find_many", model, current_query)
                for entity in await db.model(model).find_many(current_query):
                    await guard_owner_update(model, util.get_entity_ids(model, entity), context)
            await guard_owner_update(model, args, context)

        async def on_connect_or_create(model, args, context):
            existing = await util.check_existence(db, model, args["where"])
            if existing is not None:
                await guard_owner_update(model, args["where"], context)
                return False

            created = await create_nested(model, args.get("create") or {}, context)
            if len(context.nesting_path) >= 2 and context.field is not None:
                upper = context.nesting_path[-2]
                if isinstance(upper.where, dict) and upper.where:
                    self._override_foreign_key_fields(upper.model, upper.where, context.field, created)
            remove_from_parent(context.parent, "connectOrCreate", args)
            return False

        async def on_delete(model, args, context):
            unique_filter = await util.build_reversed_query(db, context.nesting_path)
            await util.check_existence(db, model, unique_filter, throw_if_not_found=True)
            await util.check_policy_for_unique(model, unique_filter, "delete", db)

        async def on_delete_many(model, args, context):
            guard = util.get_auth_guard(model, "delete")
            if is_true(guard) or is_false(guard):
                guarded = and_(args, guard)
                current = context.parent.get("deleteMany")
                if current is args:
                    context.parent["deleteMany"] = guarded
                elif isinstance(current, list):
                    context.parent["deleteMany"] = [guarded if item is args else item for item in current]
            else:
                where = and_(await util.build_reversed_query(db, context.nesting_path), guard)
                self.log_query("policy", "delete_many", model, {"where": where})
                await db.model(model).delete_many({"where": where})
                remove_from_parent(context.parent, "deleteMany", args)

        visitor = NestedWriteVisitor(
            self.meta,
            update=on_update,
            update_many=on_update_many,
            create=on_create,
            create_many=on_create_many,
            upsert=on_upsert,
            connect=on_connect,
            connect_or_create=on_connect_or_create,
            disconnect=on_disconnect,
            set=on_set,
            delete=on_delete,
            delete_many=on_delete_many,
        )
        payload = await visitor.visit(self.model, "update", args)

        update_args = {
            "where": payload["where"],
            "data": payload["data"],
            "select": util.make_id_selection(self.model),
        }
        self.log_query("policy", "update", self.model, update_args)
        result = await db.model(self.model).update(update_args)
        return result, checks

    @translate_errors
    async def update_many(self, args=None):
        require_args(args, "data")
        self.util.try_reject(self.model, "update")
        args = clone(args)
        self.util.inject_auth_guard_as_where(self.model, args, "update")
        self.util.validate_input(self.model, "update", args["data"])
        field_guard = self.util.get_field_update_guard(self.model, args["data"])
        if not is_true(field_guard):
            args["where"] = and_(args["where"], field_guard)

        if not self.util.needs_post_update_check(self.model):
            self.log_query("policy", "update_many", self.model, args)
            return await self.target.update_many(args)

        async def run(tx: DbClient):
            pre_value_select = self.util.get_pre_value_select(self.model)
            select = {**self.util.make_id_selection(self.model), **(pre_value_select or {})}
            candidates = await tx.model(self.model).find_many({"select": select, "where": args["where"]})
            checks = [
                PostWriteCheck(
                    self.model,
                    "postUpdate",
                    self.util.get_entity_ids(self.model, entity),
                    entity if pre_value_select else None,
                )
                for entity in candidates
            ]
            self.log_query("policy", "update_many", self.model, args)
            result = await tx.model(self.model).update_many(args)
            await self._run_post_write_checks(checks, tx)
            return result

        return await self.util.transaction(self.db, run)

    @translate_errors
    async def upsert(self, args=None):
        require_args(args, "where", "create", "update")
        self.util.try_reject(self.model, "create")
        self.util.try_reject(self.model, "update")
        args = clone(args)

        # decomposed so the matching post-write checks can run
        async def run(tx: DbClient):
            rest = {k: v for k, v in args.items() if k not in ("where", "create", "update", "select", "include")}
            existing = await self.util.check_existence(tx, self.model, args["where"])
            if existing is not None:
                where = self.util.compose_compound_unique_field(self.model, existing)
                result, checks = await self._do_update({"where": where, "data": args["update"], **rest}, tx)
                await self._run_post_write_checks(checks, tx)
                return await self.util.read_back(tx, self.model, args, result)
            result, checks = await self._do_create(self.model, {"data": args["create"], **rest}, tx)
            await self._run_post_write_checks(checks, tx)
            return await self.util.read_back(tx, self.model, args, result)

        result, error = await self.util.transaction(self.db, run)
        if error is not None:
            raise error
        return result

    # ==================================================================
    # Delete
    # ==================================================================

    @translate_errors
    async def delete(self, args=None):
        require_args(args, "where")
        self.util.try_reject(self.model, "delete")

        async def run(tx: DbClient):
            # read first so a permitted caller still gets the deleted entity
            read, error = await self.util.read_back(tx, self.model, args, args["where"])
            await self.util.check_existence(tx, self.model, args["where"], throw_if_not_found=True)
            await self.util.check_policy_for_unique(self.model, args["where"], "delete", tx)
            self.log_query("policy", "delete", self.model, args)
            await tx.model(self.model).delete({"where": args["where"]})
            return read, error

        result, error = await self.util.transaction(self.db, run)
        if error is not None:
            raise error
        return result

    @translate_errors
    async def delete_many(self, args=None):
        self.util.try_reject(self.model, "delete")
        args = clone(args) if args else {}
        self.util.inject_auth_guard_as_where(self.model, args, "delete")
        self.log_query("policy", "delete_many", self.model, args)
        return await self.target.delete_many(args)

    # ==================================================================
    # Aggregation
    # ==================================================================

    @translate_errors
    async def aggregate(self, args=None):
        args = clone(require_args(args))
        self.util.inject_auth_guard_as_where(self.model, args, "read")
        self.log_query("policy", "aggregate", self.model, args)
        return await self.target.aggregate(args)

    @translate_errors
    async def group_by(self, args=None):
        args = clone(require_args(args, "by"))
        self.util.inject_auth_guard_as_where(self.model, args, "read")
        self.log_query("policy", "group_by", self.model, args)
        return await self.target.group_by(args)

    @translate_errors
    async def count(self, args=None):
        args = clone(args) if args else {}
        self.util.inject_auth_guard_as_where(self.model, args, "read")
        self.log_query("policy", "count", self.model, args)
        return await self.target.count(args)

    # ==================================================================
    # Permission check
    # ==================================================================

    @translate_errors
    async def check(self, args=None):
        """Check whether an operation is possibly allowed, without querying storage.

        Args:
            args: ``{"operation": "create" | "read" | "update" | "delete",
                "where": {field: value}}``. ``where`` pins scalar fields to
                values and is combined with the policy constraints.

        Returns:
            True if some state of the entity could satisfy the policy.
        """
        require_args(args, "operation")
        operation = args["operation"]
        if operation not in CRUD_KINDS:
            raise UsageError(f'Invalid "operation" {operation}')

        constraint = self.util.get_checker_constraint(self.model, operation)
        extra = field_value_constraints(self.meta, self.model, args.get("where"))
        if extra:
            constraint = all_of(constraint, *extra)
        result = self.solver.solve(constraint)
        logger.debug("[policy] check %s %s: %s", operation, self.model, result)
        return result

    # ==================================================================
    # Helpers
    # ==================================================================

    async def _run_post_write_checks(self, checks: list[PostWriteCheck], db: DbClient) -> None:
        for check in checks:
            try:
                await self.util.check_policy_for_unique(
                    check.model, check.unique_filter, check.operation, db, check.pre_value
                )
            except (DeniedByPolicyError, DataValidationError):
                logger.info(
                    "[policy] post-%s check failed for %s %r, rolling back",
                    check.operation,
                    check.model,
                    check.unique_filter,
                )
                raise

    def _back_link_owns_relation(self, model: str, field_info: FieldInfo | None) -> bool:
        if field_info is None or not field_info.back_link:
            return False
        back_link = self.meta.resolve_field(model, field_info.back_link)
        return bool(back_link and back_link.is_relation_owner)

    def _writes_own_fields(self, model: str, payload: Any) -> bool:
        """Whether an update payload writes scalars or foreign keys of the model itself."""
        if not isinstance(payload, dict):
            return False
        for key in payload:
            field_info = self.meta.resolve_field(model, key)
            if field_info is not None and (not field_info.is_data_model or field_info.is_relation_owner):
                return True
        return False

    def _is_unsafe_mutate(self, model: str, data: Any) -> bool:
        """Whether a payload assigns foreign keys or auto-increment ids directly."""
        if not isinstance(data, dict):
            return False
        for key in data:
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                continue
            if field_info.is_foreign_key:
                return True
            default = field_info.get_attribute("@default")
            if field_info.is_id and default is not None and default.arg() == "autoincrement()":
                return True
        return False

    @staticmethod
    def _post_update_ids(current_ids: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
        result = clone(current_ids)
        for key in current_ids:
            value = payload.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                result[key] = value
        return result

    def _override_foreign_key_fields(
        self,
        model: str,
        payload: dict[str, Any],
        relation: FieldInfo,
        new_ids: dict[str, Any],
    ) -> None:
        mapping = relation.foreign_key_mapping or {}
        if not mapping:
            return
        for id_field, fk in mapping.items():
            if payload.get(fk) is not None and new_ids.get(id_field) is not None:
                payload[fk] = new_ids[id_field]
        for name, constraint in self.meta.unique_constraints(model).items():
            target = payload.get(name)
            if len(constraint.fields) > 1 and isinstance(target, dict):
                for id_field, fk in mapping.items():
                    if target.get(fk) is not None and new_ids.get(id_field) is not None:
                        target[fk] = new_ids[id_field]
