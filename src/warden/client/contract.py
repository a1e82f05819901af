"""CRUD contract shared by the storage client and every enhancement layer."""

from typing import Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from warden.errors import UsageError

T = TypeVar("T")

Args = dict[str, Any]

CRUD_OPERATIONS = (
    "find_unique",
    "find_unique_or_throw",
    "find_first",
    "find_first_or_throw",
    "find_many",
    "create",
    "create_many",
    "create_many_and_return",
    "update",
    "update_many",
    "upsert",
    "delete",
    "delete_many",
    "aggregate",
    "group_by",
    "count",
)


@runtime_checkable
class CrudOperations(Protocol):
    """Operations available on a per-model handle.

    Every operation takes one structured argument dict (``where``, ``select``,
    ``include``, ``data``, ``orderBy``, ``cursor``...) and returns data shaped
    by ``select``/``include``.
    """

    model: str

    async def find_unique(self, args: Args | None = None) -> dict[str, Any] | None: ...

    async def find_unique_or_throw(self, args: Args | None = None) -> dict[str, Any]: ...

    async def find_first(self, args: Args | None = None) -> dict[str, Any] | None: ...

    async def find_first_or_throw(self, args: Args | None = None) -> dict[str, Any]: ...

    async def find_many(self, args: Args | None = None) -> list[dict[str, Any]]: ...

    async def create(self, args: Args | None = None) -> dict[str, Any]: ...

    async def create_many(self, args: Args | None = None) -> dict[str, int]: ...

    async def create_many_and_return(self, args: Args | None = None) -> list[dict[str, Any]]: ...

    async def update(self, args: Args | None = None) -> dict[str, Any]: ...

    async def update_many(self, args: Args | None = None) -> dict[str, int]: ...

    async def upsert(self, args: Args | None = None) -> dict[str, Any]: ...

    async def delete(self, args: Args | None = None) -> dict[str, Any]: ...

    async def delete_many(self, args: Args | None = None) -> dict[str, int]: ...

    async def aggregate(self, args: Args | None = None) -> dict[str, Any]: ...

    async def group_by(self, args: Args | None = None) -> list[dict[str, Any]]: ...

    async def count(self, args: Args | None = None) -> Any: ...


@runtime_checkable
class DbClient(Protocol):
    """A data-access client: per-model handles plus a transaction primitive."""

    in_transaction: bool

    def model(self, name: str) -> CrudOperations: ...

    async def transaction(
        self,
        fn: Callable[["DbClient"], Awaitable[T]],
        *,
        isolation_level: str | None = None,
        max_wait: float | None = None,
        timeout: float | None = None,
    ) -> T: ...


def require_args(args: Args | None, *keys: str) -> Args:
    """Reject a missing argument object or missing required keys before any I/O."""
    if not args:
        raise UsageError("query argument is required")
    for key in keys:
        if args.get(key) is None:
            raise UsageError(f"'{key}' field is required in query argument")
    return args
