"""Guard computation and injection for the policy enhancement."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from warden.client.contract import DbClient
from warden.config import EnhancementOptions
from warden.errors import DataValidationError, DeniedByPolicyError, NotFoundError, ResultNotReadableError
from warden.metadata.types import FieldInfo, ModelMeta
from warden.policy.constraint import Constraint, GuardTranslator, from_dict
from warden.policy.templates import resolve_template
from warden.policy.types import PolicyDef, QueryContext
from warden.query.filters import FilterEvaluator, referenced_fields
from warden.query.logic import and_, is_false, is_true, make_false, make_true, merge_where, not_, reduce
from warden.query.utils import QueryUtils
from warden.utils import clone, enumerate_items, is_selected

logger = logging.getLogger(__name__)


class PolicyUtil(QueryUtils):
    """Policy helpers bound to one schema, policy definition and query context."""

    def __init__(
        self,
        meta: ModelMeta,
        policy: PolicyDef,
        context: QueryContext | None = None,
        options: EnhancementOptions | None = None,
    ):
        super().__init__(meta, options)
        self.policy = policy
        self.context = context or QueryContext()
        self.evaluator = FilterEvaluator(meta)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def get_auth_guard(self, model: str, operation: str, pre_value: dict[str, Any] | None = None) -> dict[str, Any]:
        """Resolve the guard of a model operation into a filter.

        A missing guard denies, except for ``postUpdate`` which allows.
        """
        entry = self.policy.guard_entry(model, operation)
        if entry is None:
            return make_true() if operation == "postUpdate" else make_false()

        context = self.context.with_pre_value(pre_value) if pre_value is not None else self.context
        return self._resolve_guard(entry, context)

    def get_field_guard(self, model: str, field_name: str, operation: str) -> dict[str, Any]:
        """Resolve a field-level guard into a filter; a field without one is allowed."""
        entry = self.policy.field_guard_entry(model, field_name, operation)
        if entry is None:
            return make_true()
        return self._resolve_guard(entry, self.context)

    @staticmethod
    def _resolve_guard(entry: Any, context: QueryContext) -> dict[str, Any]:
        if callable(entry):
            resolved = entry(context)
        elif isinstance(entry, dict):
            resolved = resolve_template(entry, context.user, context.pre_value)
        else:
            resolved = entry
        return reduce(resolved)

    def has_auth_guard(self, model: str, operation: str) -> bool:
        """Whether an operation has a guard other than a literal ``true``."""
        entry = self.policy.guard_entry(model, operation)
        if entry is None:
            return operation != "postUpdate"
        return entry is not True

    def try_reject(self, model: str, operation: str) -> None:
        """Raise if the operation is denied unconditionally."""
        if is_false(self.get_auth_guard(model, operation)):
            logger.debug("[policy] %s %s: unconditionally denied", operation, model)
            raise DeniedByPolicyError(model, operation)

    def get_checker_constraint(self, model: str, operation: str) -> Constraint:
        """Constraint form of an operation's policy, for the permission checker.

        An explicit checker entry wins; otherwise the resolved guard is translated.
        """
        entry = self.policy.checker.get(model, {}).get(operation)
        if entry is None:
            return GuardTranslator(self.meta, model).translate(self.get_auth_guard(model, operation))
        if callable(entry):
            entry = entry(self.context)
        if isinstance(entry, (bool, dict)):
            return from_dict(entry)
        return entry

    def check_input_guard(self, model: str, data: dict[str, Any], operation: str = "create") -> bool | None:
        """Decide a create guard from the input payload alone.

        Returns:
            True or False when the payload decides the guard, None when a
            post-create check against the stored row is needed.
        """
        checker = self.policy.input_checker.get(model, {}).get(operation)
        if checker is not None:
            return bool(checker(data, self.context))

        guard = self.get_auth_guard(model, operation)
        if is_true(guard):
            return True
        if is_false(guard):
            return False

        fields = referenced_fields(self.meta, model, guard)
        if fields is None or not isinstance(data, dict):
            return None
        if any(f not in data or isinstance(data[f], dict) for f in fields):
            return None
        return self.evaluator.matches(model, data, guard)

    # ------------------------------------------------------------------
    # Field-level guards
    # ------------------------------------------------------------------

    def get_field_update_guard(self, model: str, payload: Any) -> dict[str, Any]:
        """Combined update guard of the fields an update payload writes.

        Writing an owned relation counts as writing its foreign keys.

        Raises:
            DeniedByPolicyError: If a written field can't be updated at all.
        """
        if not self.policy.has_field_guards(model, "update") or not isinstance(payload, dict):
            return make_true()
        guards = []
        for key in payload:
            field_info = self.meta.resolve_field(model, key)
            if field_info is None:
                continue
            if not field_info.is_data_model:
                names = [key]
            elif field_info.is_relation_owner:
                names = list((field_info.foreign_key_mapping or {}).values())
            else:
                names = []
            for name in names:
                guard = self.get_field_guard(model, name, "update")
                if is_false(guard):
                    logger.debug("[policy] update %s: field %s is not updatable", model, name)
                    raise DeniedByPolicyError(model, "update", meta={"field": name})
                guards.append(guard)
        return and_(*guards)

    async def check_field_update_guard(
        self, db: DbClient, model: str, unique_filter: dict[str, Any], payload: Any
    ) -> None:
        """Check an entity against the field-level update guards of a payload."""
        guard = self.get_field_update_guard(model, payload)
        if is_true(guard):
            return
        where = and_(self.flatten_generated_unique_field(model, clone(unique_filter)), guard)
        self.log_query("find_first", model, {"where": where})
        if await db.model(model).find_first({"where": where, "select": self.make_id_selection(model)}) is None:
            raise DeniedByPolicyError(model, "update", meta={"filter": unique_filter})

    async def _strip_unreadable_fields(self, db: DbClient, model: str, entity: dict[str, Any]) -> None:
        full = dict(entity)
        for field_name, guards in self.policy.field_guard.get(model, {}).items():
            if "read" not in guards or field_name not in entity:
                continue
            guard = self.get_field_guard(model, field_name, "read")
            if not await self._entity_satisfies(db, model, full, guard):
                logger.debug("[policy] dropping unreadable field %s.%s", model, field_name)
                del entity[field_name]

    async def _entity_satisfies(self, db: DbClient, model: str, entity: dict[str, Any], guard: Any) -> bool:
        if is_true(guard):
            return True
        if is_false(guard):
            return False
        fields = referenced_fields(self.meta, model, guard)
        if fields is not None and all(f in entity and not isinstance(entity[f], (dict, list)) for f in fields):
            return self.evaluator.matches(model, entity, guard)
        ids = self.get_entity_ids(model, entity)
        if any(v is None for v in ids.values()):
            return False
        found = await db.model(model).find_first({"where": and_(ids, guard), "select": self.make_id_selection(model)})
        return found is not None

    # ------------------------------------------------------------------
    # Injection
    # ------------------------------------------------------------------

    def inject_auth_guard_as_where(self, model: str, args: dict[str, Any], operation: str) -> bool:
        """AND the operation guard into ``args["where"]``.

        Relation conditions already present in the filter get the related
        model's guard too. Returns False if the guard is unconditionally false.
        """
        guard = self.get_auth_guard(model, operation)
        if is_false(guard):
            args["where"] = make_false()
            return False
        if args.get("where"):
            self._inject_guard_for_relation_fields(model, args["where"], operation)
        args["where"] = and_(args.get("where"), guard)
        return True

    def _inject_guard_for_relation_fields(self, model: str, payload: dict[str, Any], operation: str) -> None:
        for field_name, sub_payload in list(payload.items()):
            if not sub_payload:
                continue
            field_info = self.meta.resolve_field(model, field_name)
            if field_info is None or not field_info.is_data_model:
                continue
            if field_info.is_array:
                self._inject_guard_for_to_many(field_info, sub_payload, operation)
            else:
                self._inject_guard_for_to_one(field_info, sub_payload, operation)

    def _inject_guard_for_to_many(self, field_info: FieldInfo, payload: dict[str, Any], operation: str) -> None:
        guard = self.get_auth_guard(field_info.type, operation)
        if payload.get("some"):
            self._inject_guard_for_relation_fields(field_info.type, payload["some"], operation)
            payload["some"] = and_(payload["some"], guard)
        if payload.get("none"):
            self._inject_guard_for_relation_fields(field_info.type, payload["none"], operation)
            payload["none"] = and_(payload["none"], guard)
        every = payload.get("every")
        if isinstance(every, dict) and every:
            # every(X) == none(guard AND NOT X); an empty collection satisfies both
            self._inject_guard_for_relation_fields(field_info.type, every, operation)
            payload["none"] = and_(payload.get("none") or {}, guard, not_(every))
            del payload["every"]

    def _inject_guard_for_to_one(self, field_info: FieldInfo, payload: dict[str, Any], operation: str) -> None:
        guard = self.get_auth_guard(field_info.type, operation)
        if payload.get("is") or payload.get("isNot"):
            if payload.get("is"):
                self._inject_guard_for_relation_fields(field_info.type, payload["is"], operation)
            if payload.get("isNot"):
                self._inject_guard_for_relation_fields(field_info.type, payload["isNot"], operation)
            payload["is"] = and_(payload.get("is"), guard)
        else:
            self._inject_guard_for_relation_fields(field_info.type, payload, operation)
            combined = and_(clone(payload), guard)
            payload.clear()
            payload["is"] = combined

    def inject_for_read(self, model: str, args: dict[str, Any]) -> bool:
        """Inject read guards into a find-style argument object, recursively.

        Returns False if the model's read guard is unconditionally false.
        """
        injected: dict[str, Any] = {"select": args.get("select"), "include": args.get("include")}
        if not self.inject_auth_guard_as_where(model, injected, "read"):
            return False

        if args.get("where"):
            self._inject_guard_for_relation_fields(model, args["where"], "read")

        if injected.get("where") and not is_true(injected["where"]):
            args["where"] = merge_where(args.get("where"), injected["where"]) if args.get("where") else injected["where"]

        hoisted = self._inject_nested_read_conditions(model, args)
        if hoisted:
            args["where"] = merge_where(args.get("where"), and_(*hoisted)) if args.get("where") else and_(*hoisted)
        return True

    def _inject_nested_read_conditions(self, model: str, args: Any) -> list[Any]:
        # a relation read with a bare ``True`` has no nested select/include
        if not isinstance(args, dict):
            return []
        target = args.get("select") or args.get("include")
        if not isinstance(target, dict):
            return []

        if target.get("_count") is not None and target.get("_count") is not False:
            if target["_count"] is True:
                target["_count"] = {
                    "select": {
                        f.name: {} for f in self.meta.get_fields(model).values() if f.is_data_model and f.is_array
                    }
                }
            count_select = target["_count"].get("select", {}) if isinstance(target["_count"], dict) else {}
            for field_name in list(count_select):
                if not isinstance(count_select[field_name], dict):
                    count_select[field_name] = {}
                field_info = self.meta.resolve_field(model, field_name)
                if field_info is not None:
                    self.inject_auth_guard_as_where(field_info.type, count_select[field_name], "read")

        hoisted_conditions = []
        for field_name in list(target):
            if field_name == "_count" or not is_selected(target[field_name]):
                continue
            field_info = self.meta.resolve_field(model, field_name)
            if field_info is None or not field_info.is_data_model:
                continue

            if field_info.is_array:
                if not isinstance(target[field_name], dict):
                    target[field_name] = {}
                self.inject_auth_guard_as_where(field_info.type, target[field_name], "read")
                sub_hoisted = self._inject_nested_read_conditions(field_info.type, target[field_name])
                if sub_hoisted:
                    target[field_name]["where"] = and_(target[field_name].get("where"), *sub_hoisted)
            elif field_info.is_optional:
                # verified against its guard after the query, see post_process_for_read
                self._inject_nested_read_conditions(field_info.type, target[field_name])
            else:
                # a required to-one relation can't be nulled out, its guard applies to the parent
                hoisted = self.get_auth_guard(field_info.type, "read")
                sub_hoisted = self._inject_nested_read_conditions(field_info.type, target[field_name])
                if sub_hoisted:
                    hoisted = and_(hoisted, *sub_hoisted)
                if not is_true(hoisted):
                    hoisted_conditions.append({field_name: hoisted})
        return hoisted_conditions

    def inject_read_check_select(self, model: str, args: dict[str, Any]) -> None:
        """Make sure entities read with an explicit ``select`` carry the ids their checks need.

        Optional to-one relations are verified by id after the query, and so are
        field-level read guards.
        """
        select = args.get("select")
        if isinstance(select, dict) and self.policy.has_field_guards(model, "read"):
            for id_field in self.id_fields(model):
                select.setdefault(id_field.name, True)
        target = select or args.get("include")
        if not isinstance(target, dict):
            return
        for field_name, value in target.items():
            if field_name == "_count" or not isinstance(value, dict):
                continue
            field_info = self.meta.resolve_field(model, field_name)
            if field_info is None or not field_info.is_data_model:
                continue
            if not field_info.is_array and field_info.is_optional and isinstance(value.get("select"), dict):
                for id_field in self.id_fields(field_info.type):
                    value["select"].setdefault(id_field.name, True)
            self.inject_read_check_select(field_info.type, value)

    # ------------------------------------------------------------------
    # Post-processing of read results
    # ------------------------------------------------------------------

    async def post_process_for_read(self, db: DbClient, model: str, data: Any, args: dict[str, Any] | None) -> Any:
        """Null out unreadable optional to-one relations and strip omitted or unreadable fields.

        Args:
            db: Client used to verify to-one relations.
            model: Model of ``data``.
            data: Query result, an entity, a list of entities or None.
            args: The caller's original (uninjected) query arguments.
        """
        for entity in enumerate_items(data):
            if isinstance(entity, dict):
                await self._post_process_entity(db, model, entity, args or {})
        return data

    async def _post_process_entity(self, db: DbClient, model: str, entity: dict[str, Any], args: dict[str, Any]) -> None:
        select = args.get("select") if isinstance(args.get("select"), dict) else None
        if self.policy.has_field_guards(model, "read"):
            await self._strip_unreadable_fields(db, model, entity)
            if select is not None:
                for id_field in self.id_fields(model):
                    if select.get(id_field.name) is not True:
                        entity.pop(id_field.name, None)

        for field_info in self.meta.get_fields(model).values():
            if field_info.has_attribute("@omit") and field_info.name in entity:
                if not (select and select.get(field_info.name) is True):
                    del entity[field_info.name]

        target = select or args.get("include") or {}
        if not isinstance(target, dict):
            return
        for field_name, spec in target.items():
            if field_name == "_count" or not is_selected(spec):
                continue
            field_info = self.meta.resolve_field(model, field_name)
            if field_info is None or not field_info.is_data_model:
                continue
            value = entity.get(field_name)
            if value is None:
                continue
            sub_args = spec if isinstance(spec, dict) else {}

            if not field_info.is_array and field_info.is_optional:
                if not await self._is_readable(db, field_info.type, value, sub_args):
                    logger.debug("[policy] %s.%s: related entity not readable", model, field_name)
                    entity[field_name] = None
                    continue
                sub_select = sub_args.get("select")
                if isinstance(sub_select, dict):
                    for id_field in self.id_fields(field_info.type):
                        if not sub_select.get(id_field.name):
                            value.pop(id_field.name, None)
            await self.post_process_for_read(db, field_info.type, value, sub_args)

    async def _is_readable(self, db: DbClient, model: str, entity: dict[str, Any], args: dict[str, Any]) -> bool:
        guard = self.get_auth_guard(model, "read")
        hoisted = self._inject_nested_read_conditions(model, clone(args))
        if hoisted:
            guard = and_(guard, *hoisted)
        if is_true(guard):
            return True
        if is_false(guard):
            return False
        ids = self.get_entity_ids(model, entity)
        if any(v is None for v in ids.values()):
            return False
        found = await db.model(model).find_first({"where": and_(ids, guard), "select": self.make_id_selection(model)})
        return found is not None

    # ------------------------------------------------------------------
    # Entity checks
    # ------------------------------------------------------------------

    async def check_policy_for_unique(
        self,
        model: str,
        unique_filter: dict[str, Any],
        operation: str,
        db: DbClient,
        pre_value: dict[str, Any] | None = None,
    ) -> None:
        """Check a single entity against an operation's guard (and schema for create/postUpdate).

        Raises:
            DeniedByPolicyError: If the entity doesn't satisfy the guard.
            DataValidationError: If the entity fails the model's validation schema.
        """
        guard = self.get_auth_guard(model, operation, pre_value)
        if is_false(guard):
            raise DeniedByPolicyError(model, operation, meta={"filter": unique_filter})

        schemas = self.policy.schemas(model) if operation in ("create", "postUpdate") else None
        schema = schemas.full if schemas else None
        if is_true(guard) and schema is None:
            return

        where = and_(self.flatten_generated_unique_field(model, clone(unique_filter)), guard)
        query: dict[str, Any] = {"where": where}
        if schema is None:
            query["select"] = self.make_id_selection(model)
        self.log_query("find_first", model, query)
        result = await db.model(model).find_first(query)
        if result is None:
            logger.debug("[policy] %s %s: entity %r failed policy check", operation, model, unique_filter)
            raise DeniedByPolicyError(model, operation, meta={"filter": unique_filter})

        if schema is not None:
            try:
                schema.model_validate(result)
            except ValidationError as err:
                raise DataValidationError(model, str(err)) from err

    async def check_existence(
        self,
        db: DbClient,
        model: str,
        unique_filter: dict[str, Any],
        throw_if_not_found: bool = False,
    ) -> dict[str, Any] | None:
        """Look up an entity's ids, bypassing read guards of this layer."""
        where = self.flatten_generated_unique_field(model, clone(unique_filter))
        existing = await db.model(model).find_first({"where": where, "select": self.make_id_selection(model)})
        if existing is None and throw_if_not_found:
            raise NotFoundError(model)
        return existing

    async def read_back(
        self,
        db: DbClient,
        model: str,
        select_include: dict[str, Any] | None,
        unique_filter: dict[str, Any],
    ) -> tuple[Any, ResultNotReadableError | None]:
        """Read a written entity back under read guards.

        Returns:
            ``(result, None)`` on success, ``(None, error)`` if the entity isn't readable.
        """
        original = {k: v for k, v in (select_include or {}).items() if k in ("select", "include")}
        read_args = clone(original)
        read_args["where"] = self.flatten_generated_unique_field(model, clone(unique_filter))
        error = ResultNotReadableError(model)

        if not self.inject_for_read(model, read_args):
            return None, error
        self.inject_read_check_select(model, read_args)
        self.log_query("find_first", model, read_args)
        result = await db.model(model).find_first(read_args)
        if result is None:
            return None, error
        await self.post_process_for_read(db, model, result, original)
        return result, None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def has_validation(self, model: str) -> bool:
        schemas = self.policy.schemas(model)
        return bool(schemas and schemas.full)

    def needs_post_update_check(self, model: str) -> bool:
        return self.has_auth_guard(model, "postUpdate") or self.has_validation(model)

    def validate_input(self, model: str, kind: str, data: Any) -> None:
        """Validate a create or update payload against the model's input schema.

        Only literal values are validated for updates; atomic operations and
        nested writes are skipped.

        Raises:
            DataValidationError: If the payload fails validation.
        """
        if not isinstance(data, dict):
            return
        schemas = self.policy.schemas(model)
        schema = schemas.for_kind(kind) if schemas else None
        if schema is None:
            return
        payload = {k: v for k, v in data.items() if not isinstance(v, (dict, list))}
        try:
            schema.model_validate(payload)
        except ValidationError as err:
            raise DataValidationError(model, f"input failed validation: {err}") from err

    def get_pre_value_select(self, model: str) -> dict[str, Any] | None:
        return self.policy.pre_value_select.get(model) or None

    def log_query(self, operation: str, model: str, args: Any) -> None:
        if self.options.log_queries:
            logger.debug("[policy] `%s` %s: %r", operation, model, args)

