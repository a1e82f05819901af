"""Schema metadata: models, fields, and the derived lookups built on top of them.

``ModelMeta.build()`` is the single place where derived information is
computed: synthetic delegate relations, id unique constraints, the sub-model
index and attribute usage. Nothing is computed lazily afterwards.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from warden.errors import UsageError
from warden.utils import lower_first

logger = logging.getLogger(__name__)

DELEGATE_AUX_RELATION_PREFIX = "delegate_aux"

# Scalar types understood by the storage client and the constraint solver
SCALAR_TYPES = {
    "String",
    "Int",
    "BigInt",
    "Float",
    "Decimal",
    "Boolean",
    "DateTime",
    "Json",
    "Bytes",
}


@dataclass
class FieldAttribute:
    """An attribute attached to a field or model, e.g. ``@default(uuid())``."""

    name: str
    args: list[dict[str, Any]] = field(default_factory=list)

    def arg(self, index: int = 0, default: Any = None) -> Any:
        if index < len(self.args):
            return self.args[index].get("value", default)
        return default


@dataclass
class FieldInfo:
    name: str
    type: str
    is_id: bool = False
    is_array: bool = False
    is_data_model: bool = False
    is_optional: bool = False
    is_foreign_key: bool = False
    relation_field: str | None = None  # for FK scalars: the relation field they back
    foreign_key_mapping: dict[str, str] | None = None  # related id field -> local fk field
    back_link: str | None = None
    inherited_from: str | None = None
    on_delete_action: str | None = None  # "Cascade" | "SetNull" | "Restrict"
    attributes: list[FieldAttribute] = field(default_factory=list)

    @property
    def is_relation_owner(self) -> bool:
        return bool(self.is_data_model and self.foreign_key_mapping)

    def has_attribute(self, name: str) -> bool:
        return any(attr.name == name for attr in self.attributes)

    def get_attribute(self, name: str) -> FieldAttribute | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None


@dataclass
class UniqueConstraint:
    name: str
    fields: list[str]


@dataclass
class ModelInfo:
    name: str
    fields: dict[str, FieldInfo] = field(default_factory=dict)
    base_types: list[str] = field(default_factory=list)
    unique_constraints: dict[str, UniqueConstraint] = field(default_factory=dict)
    attributes: list[FieldAttribute] = field(default_factory=list)
    discriminator: str | None = None

    @property
    def is_delegate(self) -> bool:
        return any(attr.name == "@@delegate" for attr in self.attributes)


def aux_relation_name(model: str) -> str:
    """Name of the synthetic relation linking a hierarchy level to ``model``."""
    return f"{DELEGATE_AUX_RELATION_PREFIX}_{lower_first(model)}"


class ModelMeta:
    """Immutable view over all models of a schema."""

    def __init__(
        self,
        models: dict[str, ModelInfo],
        sub_models: dict[str, list[str]],
        attribute_usage: set[str],
    ):
        self.models = models
        self.sub_models = sub_models
        self.attribute_usage = attribute_usage

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, models: Iterable[ModelInfo] | dict[str, ModelInfo]) -> "ModelMeta":
        """Validate model definitions and compute derived metadata.

        Args:
            models: Model definitions, as a list or keyed by model name.

        Returns:
            A fully resolved ModelMeta.

        Raises:
            UsageError: If the definitions violate a structural invariant.
        """
        items = list(models.values()) if isinstance(models, dict) else list(models)
        resolved = {m.name: copy.deepcopy(m) for m in items}

        for model in resolved.values():
            if len(model.base_types) > 1:
                raise UsageError(f"Model '{model.name}': multi-inheritance is not supported")
            for base in model.base_types:
                if base not in resolved:
                    raise UsageError(f"Model '{model.name}' extends unknown model '{base}'")
            if model.is_delegate and not model.discriminator:
                delegate_attr = next(a for a in model.attributes if a.name == "@@delegate")
                model.discriminator = delegate_attr.arg()
            if model.discriminator and model.discriminator not in model.fields:
                raise UsageError(
                    f"Model '{model.name}': discriminator field '{model.discriminator}' is not defined"
                )

        sub_models: dict[str, list[str]] = {name: [] for name in resolved}
        for model in resolved.values():
            for base in model.base_types:
                sub_models[base].append(model.name)
                _add_aux_relations(resolved[base], model)

        for model in resolved.values():
            for f in model.fields.values():
                if not f.is_data_model:
                    continue
                if f.type not in resolved:
                    raise UsageError(f"Field '{model.name}.{f.name}' references unknown model '{f.type}'")
                if f.back_link and f.back_link not in resolved[f.type].fields:
                    raise UsageError(
                        f"Field '{model.name}.{f.name}' names missing back-link '{f.type}.{f.back_link}'"
                    )

        meta = cls(resolved, sub_models, set())
        for model in resolved.values():
            ids = meta.id_fields(model.name)
            if not ids and not model.is_delegate:
                raise UsageError(f"Model '{model.name}' has no id fields")
            own_ids = [f.name for f in model.fields.values() if f.is_id]
            if own_ids:
                key = "_".join(own_ids)
                model.unique_constraints.setdefault(key, UniqueConstraint(name=key, fields=own_ids))
            for f in model.fields.values():
                meta.attribute_usage.update(a.name for a in f.attributes)

        logger.debug("Resolved %d models (%d with sub-models)", len(resolved), sum(1 for v in sub_models.values() if v))
        return meta

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_model(self, model: str) -> ModelInfo:
        info = self.models.get(model)
        if info is None:
            raise UsageError(f"Unknown model '{model}'")
        return info

    def has_model(self, model: str) -> bool:
        return model in self.models

    def get_fields(self, model: str) -> dict[str, FieldInfo]:
        return self.get_model(model).fields

    def resolve_field(self, model: str, field_name: str) -> FieldInfo | None:
        info = self.models.get(model)
        if info is None:
            return None
        return info.fields.get(field_name)

    def require_field(self, model: str, field_name: str) -> FieldInfo:
        info = self.resolve_field(model, field_name)
        if info is None:
            raise UsageError(f"Unknown field '{field_name}' on model '{model}'")
        return info

    def id_fields(self, model: str) -> list[FieldInfo]:
        """Id fields of a model, falling back to the base model's."""
        info = self.get_model(model)
        ids = [f for f in info.fields.values() if f.is_id]
        if ids:
            return ids
        base = self.base_model(model)
        return self.id_fields(base.name) if base else []

    def unique_constraints(self, model: str) -> dict[str, UniqueConstraint]:
        return self.get_model(model).unique_constraints

    def base_model(self, model: str) -> ModelInfo | None:
        info = self.get_model(model)
        if not info.base_types:
            return None
        if len(info.base_types) > 1:
            raise UsageError("Multi-inheritance is not supported")
        return self.get_model(info.base_types[0])

    def is_delegate(self, model: str) -> bool:
        info = self.models.get(model)
        return bool(info and info.is_delegate)

    def is_delegate_or_descendant(self, model: str) -> bool:
        if self.is_delegate(model):
            return True
        info = self.models.get(model)
        if info is None:
            return False
        return any(self.is_delegate_or_descendant(base) for base in info.base_types)

    def involves_delegate(self, model: str, visited: set[str] | None = None) -> bool:
        """Whether the model, or any model reachable through its relations, is in a hierarchy."""
        if self.is_delegate_or_descendant(model):
            return True
        visited = visited if visited is not None else set()
        if model in visited:
            return False
        visited.add(model)
        return any(
            f.is_data_model and self.involves_delegate(f.type, visited)
            for f in self.get_fields(model).values()
        )

    def updated_at_from_delegate_bases(self, model: str) -> list[FieldInfo]:
        return [
            f
            for f in self.get_fields(model).values()
            if f.has_attribute("@updatedAt") and f.inherited_from and self.is_delegate(f.inherited_from)
        ]

    def uses_attribute(self, name: str) -> bool:
        return name in self.attribute_usage

    def relation_for_foreign_key(self, model: str, fk: str) -> tuple[FieldInfo, str] | None:
        """Find the relation field backed by a foreign key, and the related id field it maps to."""
        for f in self.get_fields(model).values():
            if f.foreign_key_mapping:
                for id_field, fk_field in f.foreign_key_mapping.items():
                    if fk_field == fk:
                        return f, id_field
        return None


def _add_aux_relations(base: ModelInfo, sub: ModelInfo) -> None:
    base_relation = aux_relation_name(base.name)
    sub_relation = aux_relation_name(sub.name)
    id_names = [f.name for f in base.fields.values() if f.is_id]
    sub.fields.setdefault(
        base_relation,
        FieldInfo(
            name=base_relation,
            type=base.name,
            is_data_model=True,
            foreign_key_mapping={name: name for name in id_names},
            back_link=sub_relation,
            on_delete_action="Cascade",
        ),
    )
    base.fields.setdefault(
        sub_relation,
        FieldInfo(
            name=sub_relation,
            type=sub.name,
            is_data_model=True,
            is_optional=True,
            back_link=base_relation,
        ),
    )
