"""PersistenceAdapter Protocol: shared interface for all storage backends."""

from typing import Any, Protocol, runtime_checkable

from servforge.metadata.model import EntityDefinition


class ConflictError(Exception):
    """Raised by an adapter's commit() when concurrent changes collide.

    The transaction manager maps this to a CommitFailed service error.
    """


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Interface all persistence adapters must implement.

    Every data call takes the adapter-level transaction handle returned
    by ``begin()``. Data calls are awaitable; they are the pipeline's
    suspension points.

    Error contract:
        insert  raises DuplicateKey when the key already exists
        update  raises NotFound when the key is absent
        delete  raises NotFound when the key is absent
        commit  raises ConflictError on a concurrency conflict
        rollback may raise; callers treat it as best-effort
    """

    def initialize_entity(self, entity: EntityDefinition) -> None: ...

    async def begin(self) -> Any: ...

    async def commit(self, tx: Any) -> None: ...

    async def rollback(self, tx: Any) -> None: ...

    async def insert(
        self, tx: Any, entity: EntityDefinition, record: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def read(
        self,
        tx: Any,
        entity: EntityDefinition,
        filter: dict[str, Any] | None = None,
        orderby: list[dict[str, str]] | None = None,
        top: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]: ...

    async def update(
        self,
        tx: Any,
        entity: EntityDefinition,
        key: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def delete(
        self, tx: Any, entity: EntityDefinition, key: dict[str, Any]
    ) -> None: ...

    def close(self) -> None: ...
