"""Access policy enforcement and permission checking."""

from warden.policy.guard import PolicyUtil
from warden.policy.handler import PolicyProxyHandler
from warden.policy.solver import ConstraintSolver, SatBackend, Z3Backend
from warden.policy.types import ModelSchemas, PolicyDef, QueryContext

__all__ = [
    "ConstraintSolver",
    "ModelSchemas",
    "PolicyDef",
    "PolicyProxyHandler",
    "PolicyUtil",
    "QueryContext",
    "SatBackend",
    "Z3Backend",
]
