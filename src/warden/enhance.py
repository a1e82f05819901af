"""Compose enhancement layers over a storage client."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from warden.client.contract import DbClient
from warden.client.proxy import EnhancedClient, ProxyHandler
from warden.config import EnhancementOptions
from warden.delegate import DelegateProxyHandler
from warden.errors import UsageError
from warden.metadata.types import ModelMeta
from warden.policy.guard import PolicyUtil
from warden.policy.handler import PolicyProxyHandler
from warden.policy.solver import ConstraintSolver
from warden.policy.templates import iter_references, lookup_path
from warden.policy.types import PolicyDef, QueryContext

logger = logging.getLogger(__name__)

ENHANCEMENT_KINDS = ("policy", "delegate")


def enhance(
    client: DbClient,
    model_meta: ModelMeta,
    policy: PolicyDef | None = None,
    user: dict[str, Any] | None = None,
    options: EnhancementOptions | None = None,
    kinds: Iterable[str] = ENHANCEMENT_KINDS,
    solver: ConstraintSolver | None = None,
) -> DbClient:
    """Wrap a client with the requested enhancements.

    The delegate layer sits directly on the storage client and the policy
    layer on top of it, so policies see the flattened polymorphic models.

    Args:
        client: The storage client.
        model_meta: Resolved model metadata.
        policy: Policy definitions, required for the ``policy`` kind.
        user: The principal, or None for anonymous access.
        options: Enhancement options, defaults to ``EnhancementOptions()``.
        kinds: Enhancements to apply.
        solver: Constraint solver used by ``check``.

    Returns:
        A client exposing the same contract as ``client``.

    Raises:
        UsageError: If ``kinds`` names an unknown enhancement, the policy is
            missing, or the user context lacks the auth model's id fields.
    """
    options = options or EnhancementOptions()
    kinds = tuple(kinds)
    unknown = set(kinds) - set(ENHANCEMENT_KINDS)
    if unknown:
        raise UsageError(f"Unknown enhancement kinds: {sorted(unknown)}")

    result = client
    if "delegate" in kinds and any(model_meta.is_delegate(name) for name in model_meta.models):

        def delegate_handler(db: DbClient, model: str) -> ProxyHandler:
            model_meta.get_model(model)
            return DelegateProxyHandler(db, model, options, model_meta)

        result = EnhancedClient(result, delegate_handler, "delegate")

    if "policy" in kinds:
        if policy is None:
            raise UsageError("The policy enhancement requires a policy definition")
        validate_user_context(model_meta, policy, user)
        util = PolicyUtil(model_meta, policy, QueryContext(user=user), options)
        solver = solver or ConstraintSolver()

        def policy_handler(db: DbClient, model: str) -> ProxyHandler:
            model_meta.get_model(model)
            return PolicyProxyHandler(db, model, options, util, solver)

        result = EnhancedClient(result, policy_handler, "policy")

    logger.debug("Enhanced client with %s", ", ".join(k for k in ENHANCEMENT_KINDS if k in kinds))
    return result


def validate_user_context(model_meta: ModelMeta, policy: PolicyDef, user: dict[str, Any] | None) -> None:
    """Check the user carries the auth model's ids, warning on missing referenced attributes.

    Raises:
        UsageError: If the user lacks an id field of the auth model.
    """
    if user is None:
        return
    if not isinstance(user, dict):
        raise UsageError("Invalid user context: expected a mapping")

    if policy.auth_model and model_meta.has_model(policy.auth_model):
        for id_field in model_meta.id_fields(policy.auth_model):
            if user.get(id_field.name) is None:
                raise UsageError(f"Invalid user context: must have valid ID field '{id_field.name}'")

    missing = set()
    for _, _, guard in policy.iter_guards():
        if callable(guard):
            continue
        for path in iter_references(guard):
            try:
                lookup_path(user, path)
            except KeyError:
                missing.add(path)
    for path in sorted(missing):
        logger.warning("User context has no value for '%s' referenced by access policies", path)
