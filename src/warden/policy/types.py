"""Policy definitions consumed by the policy enhancement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from pydantic import BaseModel

# Operations a guard can be declared for
POLICY_OPERATIONS = ("create", "read", "update", "postUpdate", "delete")

# Operations accepted by the `check` API
CRUD_KINDS = ("create", "read", "update", "delete")

# Operations a field-level guard can be declared for
FIELD_POLICY_OPERATIONS = ("read", "update")


@dataclass(frozen=True)
class QueryContext:
    """Per-call principal and, for post-update checks, the pre-update image."""

    user: dict[str, Any] | None = None
    pre_value: dict[str, Any] | None = None

    def with_pre_value(self, pre_value: dict[str, Any] | None) -> QueryContext:
        return QueryContext(user=self.user, pre_value=pre_value)


@dataclass
class ModelSchemas:
    """Validation schemas of a model.

    ``full`` validates a whole entity, ``create`` and ``update`` validate
    input payloads. Any of them may be absent.
    """

    full: type[BaseModel] | None = None
    create: type[BaseModel] | None = None
    update: type[BaseModel] | None = None

    def for_kind(self, kind: str) -> type[BaseModel] | None:
        return getattr(self, kind, None)


# A guard is a constant, a filter template, or a function of the query context
# returning a filter (or constant).
Guard = bool | dict[str, Any] | Callable[[QueryContext], Any]

InputChecker = Callable[[dict[str, Any], QueryContext], bool]


@dataclass
class PolicyDef:
    """Declarative policies for every model of a schema.

    Attributes:
        guard: model -> operation -> guard. An operation without a guard is
            denied, except ``postUpdate`` which is allowed.
        validation: model -> validation schemas.
        pre_value_select: model -> selection of fields to snapshot before an
            update, for ``postUpdate`` guards comparing against old values.
        checker: model -> operation -> constraint (or function of the context
            returning one) used by the permission checker. Derived from the
            guard when absent.
        input_checker: model -> ``create`` -> function deciding a create guard
            from the input payload alone.
        field_guard: model -> field -> ``read`` | ``update`` -> guard. A field
            without a guard is readable and updatable by whoever passes the
            model guard.
        auth_model: name of the model representing the principal.
    """

    guard: dict[str, dict[str, Guard]] = field(default_factory=dict)
    validation: dict[str, ModelSchemas] = field(default_factory=dict)
    pre_value_select: dict[str, dict[str, Any]] = field(default_factory=dict)
    checker: dict[str, dict[str, Any]] = field(default_factory=dict)
    input_checker: dict[str, dict[str, InputChecker]] = field(default_factory=dict)
    field_guard: dict[str, dict[str, dict[str, Guard]]] = field(default_factory=dict)
    auth_model: str | None = None

    def guard_entry(self, model: str, operation: str) -> Guard | None:
        return self.guard.get(model, {}).get(operation)

    def field_guard_entry(self, model: str, field_name: str, operation: str) -> Guard | None:
        return self.field_guard.get(model, {}).get(field_name, {}).get(operation)

    def has_field_guards(self, model: str, operation: str) -> bool:
        return any(operation in guards for guards in self.field_guard.get(model, {}).values())

    def iter_guards(self) -> Iterator[tuple[str, str, Guard]]:
        """Yield ``(model, location, guard)`` for every model and field-level guard."""
        for model, guards in self.guard.items():
            for operation, guard in guards.items():
                yield model, f"policy/{operation}", guard
        for model, fields in self.field_guard.items():
            for field_name, guards in fields.items():
                for operation, guard in guards.items():
                    yield model, f"fields/{field_name}/policy/{operation}", guard

    def schemas(self, model: str) -> ModelSchemas | None:
        return self.validation.get(model)
