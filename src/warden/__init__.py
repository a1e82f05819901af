"""Warden: access policies and polymorphic models over a CRUD client.

Usage:
    from warden import SchemaLoader, MemoryClient, enhance

    loaded = SchemaLoader(Path("schema.yaml")).load()
    db = enhance(MemoryClient(loaded.meta), loaded.meta, loaded.policy, user={"id": 1})
    posts = await db.model("Post").find_many()
"""

from warden.client.memory import MemoryClient
from warden.config import EnhancementOptions, TransactionOptions
from warden.enhance import enhance
from warden.errors import (
    DataValidationError,
    DeniedByPolicyError,
    ErrorCode,
    ForeignKeyConstraintError,
    KnownRequestError,
    NotFoundError,
    ResultNotReadableError,
    UniqueConstraintError,
    UnknownRequestError,
    UsageError,
    WardenError,
)
from warden.metadata.loader import SchemaLoader
from warden.metadata.types import ModelMeta
from warden.policy.types import PolicyDef, QueryContext

__all__ = [
    "DataValidationError",
    "DeniedByPolicyError",
    "EnhancementOptions",
    "ErrorCode",
    "ForeignKeyConstraintError",
    "KnownRequestError",
    "MemoryClient",
    "ModelMeta",
    "NotFoundError",
    "PolicyDef",
    "QueryContext",
    "ResultNotReadableError",
    "SchemaLoader",
    "TransactionOptions",
    "UniqueConstraintError",
    "UnknownRequestError",
    "UsageError",
    "WardenError",
    "enhance",
]
