"""Enhancement layering.

Each enhancement is a ``ProxyHandler`` subclass bound to one model. An
``EnhancedClient`` resolves ``model(name)`` into that handler, with the layer
beneath as the handler's ``db``. Transaction handles of the layer beneath are
re-wrapped, so work done inside ``transaction(...)`` is governed by the same
enhancement.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, TypeVar

from warden.client.contract import CrudOperations, DbClient
from warden.config import EnhancementOptions
from warden.errors import UnknownRequestError, WardenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

HandlerFactory = Callable[[DbClient, str], "ProxyHandler"]


def translate_errors(fn):
    """Wrap unexpected collaborator failures into UnknownRequestError."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except WardenError:
            raise
        except Exception as err:
            logger.error("Unexpected error in %s.%s: %r", self.model, fn.__name__, err)
            raise UnknownRequestError(err) from err

    return wrapper


class ProxyHandler:
    """Pass-through handler forwarding every operation to the layer beneath."""

    def __init__(self, db: DbClient, model: str, options: EnhancementOptions | None = None):
        self.db = db
        self.model = model
        self.options = options or EnhancementOptions()

    @property
    def target(self) -> CrudOperations:
        return self.db.model(self.model)

    @translate_errors
    async def find_unique(self, args=None):
        return await self.target.find_unique(args)

    @translate_errors
    async def find_unique_or_throw(self, args=None):
        return await self.target.find_unique_or_throw(args)

    @translate_errors
    async def find_first(self, args=None):
        return await self.target.find_first(args)

    @translate_errors
    async def find_first_or_throw(self, args=None):
        return await self.target.find_first_or_throw(args)

    @translate_errors
    async def find_many(self, args=None):
        return await self.target.find_many(args)

    @translate_errors
    async def create(self, args=None):
        return await self.target.create(args)

    @translate_errors
    async def create_many(self, args=None):
        return await self.target.create_many(args)

    @translate_errors
    async def create_many_and_return(self, args=None):
        return await self.target.create_many_and_return(args)

    @translate_errors
    async def update(self, args=None):
        return await self.target.update(args)

    @translate_errors
    async def update_many(self, args=None):
        return await self.target.update_many(args)

    @translate_errors
    async def upsert(self, args=None):
        return await self.target.upsert(args)

    @translate_errors
    async def delete(self, args=None):
        return await self.target.delete(args)

    @translate_errors
    async def delete_many(self, args=None):
        return await self.target.delete_many(args)

    @translate_errors
    async def aggregate(self, args=None):
        return await self.target.aggregate(args)

    @translate_errors
    async def group_by(self, args=None):
        return await self.target.group_by(args)

    @translate_errors
    async def count(self, args=None):
        return await self.target.count(args)

    def log_query(self, layer: str, operation: str, model: str, args: Any) -> None:
        if self.options.log_queries:
            logger.debug("[%s] `%s` %s: %r", layer, operation, model, args)


class EnhancedClient:
    """A DbClient whose per-model handles are produced by a handler factory."""

    def __init__(self, inner: DbClient, factory: HandlerFactory, name: str = "enhanced"):
        self.inner = inner
        self.factory = factory
        self.name = name

    @property
    def in_transaction(self) -> bool:
        return self.inner.in_transaction

    def model(self, name: str) -> ProxyHandler:
        return self.factory(self.inner, name)

    async def transaction(
        self,
        fn: Callable[[DbClient], Awaitable[T]],
        *,
        isolation_level: str | None = None,
        max_wait: float | None = None,
        timeout: float | None = None,
    ) -> T:
        async def run(tx: DbClient) -> T:
            return await fn(EnhancedClient(tx, self.factory, self.name))

        return await self.inner.transaction(
            run, isolation_level=isolation_level, max_wait=max_wait, timeout=timeout
        )

    def __repr__(self) -> str:
        return f"EnhancedClient({self.name!r}, inner={self.inner!r})"
