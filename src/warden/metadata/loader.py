"""Load model metadata and policies from a YAML schema document.

A document looks like::

    authModel: User
    models:
      User:
        fields:
          id: {type: Int, id: true, default: autoincrement()}
          email: {type: String, unique: true, validate: {maxLength: 100}}
          posts: {type: Post, list: true, backLink: author}
        policy:
          read: true
          update: {id: {$auth: id}}
      Post:
        fields:
          id: {type: Int, id: true, default: autoincrement()}
          title: String
          author:
            type: User
            backLink: posts
            relation: {fields: [authorId], references: [id], onDelete: Cascade}
          authorId: Int
        policy:
          read: {OR: [{published: true}, {authorId: {$auth: id}}]}

Field shorthands: ``String`` is a required scalar, ``String?`` optional and
``Post[]`` a to-many relation. ``extends: Base`` copies the base's fields into
the sub model (marked as inherited); ``delegate: field`` makes a model a
polymorphic base discriminated by ``field``.
A scalar field may carry its own ``policy: {read: ..., update: ...}`` guards,
checked on top of the model guards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Optional

import yaml
from pydantic import BaseModel, Field, create_model

from warden.errors import UsageError
from warden.metadata.types import SCALAR_TYPES, FieldAttribute, FieldInfo, ModelInfo, ModelMeta, UniqueConstraint
from warden.policy.types import FIELD_POLICY_OPERATIONS, POLICY_OPERATIONS, ModelSchemas, PolicyDef

logger = logging.getLogger(__name__)

_PYTHON_TYPES: dict[str, Any] = {
    "String": str,
    "Int": int,
    "BigInt": int,
    "Float": float,
    "Decimal": float,
    "Boolean": bool,
    "DateTime": datetime,
    "Json": Any,
    "Bytes": bytes,
}

# validate: key -> pydantic Field keyword
_CONSTRAINTS = {
    "min": "ge",
    "max": "le",
    "minLength": "min_length",
    "maxLength": "max_length",
    "pattern": "pattern",
}


@dataclass
class LoadedSchema:
    """Result of loading a schema document."""

    meta: ModelMeta
    policy: PolicyDef


class SchemaLoader:
    """Builds ``ModelMeta`` and the declarative ``PolicyDef`` from YAML."""

    def __init__(self, path: Path | None = None):
        self.path = path

    def load(self) -> LoadedSchema:
        """Load the document at ``self.path``."""
        if self.path is None:
            raise UsageError("SchemaLoader has no path to load from")
        with open(self.path) as f:
            data = yaml.safe_load(f)
        return self.load_document(data)

    def load_string(self, text: str) -> LoadedSchema:
        return self.load_document(yaml.safe_load(text))

    def load_document(self, data: Any) -> LoadedSchema:
        """Resolve a parsed document.

        Raises:
            UsageError: If the document is malformed or violates a model invariant.
        """
        if not isinstance(data, dict) or not isinstance(data.get("models"), dict):
            raise UsageError("Schema document must contain a 'models' mapping")

        raw_models: dict[str, dict[str, Any]] = {name: spec or {} for name, spec in data["models"].items()}
        names = set(raw_models)

        resolved: dict[str, ModelInfo] = {}
        for name in self._inheritance_order(raw_models):
            resolved[name] = self._resolve_model(name, raw_models[name], names, resolved)

        meta = ModelMeta.build(resolved)
        policy = PolicyDef(auth_model=data.get("authModel"))
        for name in self._inheritance_order(raw_models):
            self._resolve_policy(name, raw_models, policy, meta)

        if policy.auth_model and not meta.has_model(policy.auth_model):
            raise UsageError(f"authModel '{policy.auth_model}' is not a defined model")

        logger.info("Loaded %d models from schema%s", len(resolved), f" {self.path}" if self.path else "")
        return LoadedSchema(meta=meta, policy=policy)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def _inheritance_order(self, raw_models: dict[str, dict[str, Any]]) -> list[str]:
        """Model names ordered so every base comes before its sub models."""
        ordered: list[str] = []
        visiting: set[str] = set()

        def visit(name: str) -> None:
            if name in ordered:
                return
            if name in visiting:
                raise UsageError(f"Inheritance cycle through model '{name}'")
            visiting.add(name)
            base = raw_models[name].get("extends")
            if base is not None:
                if base not in raw_models:
                    raise UsageError(f"Model '{name}' extends unknown model '{base}'")
                visit(base)
            visiting.discard(name)
            ordered.append(name)

        for name in raw_models:
            visit(name)
        return ordered

    def _resolve_model(
        self,
        name: str,
        spec: dict[str, Any],
        model_names: set[str],
        resolved: dict[str, ModelInfo],
    ) -> ModelInfo:
        info = ModelInfo(name=name)

        base_name = spec.get("extends")
        if base_name:
            info.base_types = [base_name]
            for base_field in resolved[base_name].fields.values():
                if base_field.name.startswith("delegate_aux"):
                    continue
                info.fields[base_field.name] = FieldInfo(
                    **{
                        **base_field.__dict__,
                        "attributes": list(base_field.attributes),
                        "inherited_from": base_field.inherited_from or base_name,
                    }
                )

        for field_name, field_spec in (spec.get("fields") or {}).items():
            if field_name in info.fields:
                raise UsageError(f"Field '{name}.{field_name}' redefines an inherited field")
            info.fields[field_name] = self._resolve_field(field_name, field_spec, model_names)

        # foreign key scalars point back at the relation they implement
        for f in list(info.fields.values()):
            if f.inherited_from or not f.foreign_key_mapping:
                continue
            for fk in f.foreign_key_mapping.values():
                fk_field = info.fields.get(fk)
                if fk_field is None:
                    raise UsageError(f"Relation '{name}.{f.name}' uses undefined foreign key '{fk}'")
                fk_field.is_foreign_key = True
                fk_field.relation_field = f.name

        for f in info.fields.values():
            if f.has_attribute("@unique") and not f.inherited_from:
                info.unique_constraints[f.name] = UniqueConstraint(name=f.name, fields=[f.name])
        for fields in spec.get("unique") or []:
            key = "_".join(fields)
            info.unique_constraints[key] = UniqueConstraint(name=key, fields=list(fields))

        if spec.get("delegate"):
            info.attributes.append(FieldAttribute("@@delegate", [{"value": spec["delegate"]}]))
            info.discriminator = spec["delegate"]
        return info

    def _resolve_field(self, name: str, spec: Any, model_names: set[str]) -> FieldInfo:
        if isinstance(spec, str):
            spec = _parse_shorthand(spec)
        field_type = spec["type"]
        if field_type not in SCALAR_TYPES and field_type not in model_names:
            raise UsageError(f"Field '{name}' has unknown type '{field_type}'")

        attributes: list[FieldAttribute] = []
        if "default" in spec:
            attributes.append(FieldAttribute("@default", [{"value": spec["default"]}]))
        if spec.get("updatedAt"):
            attributes.append(FieldAttribute("@updatedAt"))
        if spec.get("omit"):
            attributes.append(FieldAttribute("@omit"))
        if spec.get("unique"):
            attributes.append(FieldAttribute("@unique"))
        if spec.get("validate"):
            attributes.append(FieldAttribute("@validate", [{"value": dict(spec["validate"])}]))

        relation = spec.get("relation")
        foreign_key_mapping = None
        on_delete = None
        if relation:
            if len(relation["fields"]) != len(relation["references"]):
                raise UsageError(f"Relation '{name}': fields and references differ in length")
            foreign_key_mapping = dict(zip(relation["references"], relation["fields"]))
            on_delete = relation.get("onDelete")

        return FieldInfo(
            name=name,
            type=field_type,
            is_id=bool(spec.get("id")),
            is_array=bool(spec.get("list")),
            is_data_model=field_type in model_names,
            is_optional=bool(spec.get("optional")),
            foreign_key_mapping=foreign_key_mapping,
            back_link=spec.get("backLink"),
            on_delete_action=on_delete,
            attributes=attributes,
        )

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def _resolve_policy(
        self,
        name: str,
        raw_models: dict[str, dict[str, Any]],
        policy: PolicyDef,
        meta: ModelMeta,
    ) -> None:
        spec = raw_models[name]

        # sub models start from the base's policy
        base_name = spec.get("extends")
        guards: dict[str, Any] = dict(policy.guard.get(base_name, {})) if base_name else {}
        own = dict(spec.get("policy") or {})
        if "all" in own:
            shared = own.pop("all")
            for operation in ("create", "read", "update", "delete"):
                own.setdefault(operation, shared)
        unknown = set(own) - set(POLICY_OPERATIONS)
        if unknown:
            raise UsageError(f"Model '{name}': unknown policy operations {sorted(unknown)}")
        guards.update(own)
        if guards:
            policy.guard[name] = guards

        field_guards = {f: dict(g) for f, g in policy.field_guard.get(base_name, {}).items()} if base_name else {}
        for field_name, field_spec in (spec.get("fields") or {}).items():
            if not isinstance(field_spec, dict) or not field_spec.get("policy"):
                continue
            unknown = set(field_spec["policy"]) - set(FIELD_POLICY_OPERATIONS)
            if unknown:
                raise UsageError(f"Field '{name}.{field_name}': unknown policy operations {sorted(unknown)}")
            if meta.require_field(name, field_name).is_data_model:
                raise UsageError(f"Field '{name}.{field_name}': policies are only supported on scalar fields")
            field_guards[field_name] = dict(field_spec["policy"])
        if field_guards:
            policy.field_guard[name] = field_guards

        pre_value_select = spec.get("preValueSelect")
        if pre_value_select:
            policy.pre_value_select[name] = dict(pre_value_select)

        schemas = build_model_schemas(meta, name)
        if schemas is not None:
            policy.validation[name] = schemas


def _parse_shorthand(value: str) -> dict[str, Any]:
    if value.endswith("[]"):
        return {"type": value[:-2], "list": True}
    if value.endswith("?"):
        return {"type": value[:-1], "optional": True}
    return {"type": value}


# ----------------------------------------------------------------------
# Validation schemas
# ----------------------------------------------------------------------


def build_model_schemas(meta: ModelMeta, model: str) -> ModelSchemas | None:
    """Build pydantic models for the ``validate`` rules of a model's fields.

    Returns None when no field of the model carries rules.
    """
    full: dict[str, Any] = {}
    partial: dict[str, Any] = {}
    for f in meta.get_fields(model).values():
        rules = f.get_attribute("@validate")
        if rules is None or f.is_data_model:
            continue
        constraints = {_CONSTRAINTS[k]: v for k, v in rules.arg().items() if k in _CONSTRAINTS}
        constrained = Annotated[_PYTHON_TYPES[f.type], Field(**constraints)]
        if f.is_optional:
            full[f.name] = (Optional[constrained], None)
        else:
            full[f.name] = (constrained, ...)
        partial[f.name] = (Optional[constrained], None)

    if not full:
        return None
    return ModelSchemas(
        full=_schema_model(f"{model}Schema", full),
        create=_schema_model(f"{model}CreateSchema", partial),
        update=_schema_model(f"{model}UpdateSchema", partial),
    )


def _schema_model(name: str, fields: dict[str, Any]) -> type[BaseModel]:
    return create_model(name, **fields)
