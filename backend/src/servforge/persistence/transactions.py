"""Request-scoped transactions.

A Transaction is bound 1:1 to a request. It owns the adapter handle and
a log of the persistence operations issued through it. Exactly one of
commit() or rollback() ends it; the transaction is terminal afterwards.
"""

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from servforge.errors import CommitFailed, TransactionClosed
from servforge.metadata.model import EntityDefinition
from servforge.persistence.adapter import ConflictError, PersistenceAdapter

logger = logging.getLogger(__name__)


class TxState(Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled-back"


@dataclass(frozen=True)
class PendingOperation:
    """One persistence call issued inside a transaction."""

    kind: str  # insert | update | delete
    entity: str
    key: tuple[tuple[str, Any], ...]


class Transaction:
    """A unit of work bound to a single request.

    Data calls delegate to the persistence adapter with this
    transaction's handle. Handlers reach it as ``ctx.tx``.
    """

    def __init__(
        self,
        tx_id: int,
        adapter: PersistenceAdapter,
        handle: Any,
        request_id: str | None = None,
    ):
        self.id = tx_id
        self.request_id = request_id
        self.state = TxState.OPEN
        self.operations: list[PendingOperation] = []
        self._adapter = adapter
        self._handle = handle

    @property
    def is_open(self) -> bool:
        return self.state is TxState.OPEN

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------

    async def insert(self, entity: EntityDefinition, record: dict[str, Any]) -> dict[str, Any]:
        self._check_open()
        created = await self._adapter.insert(self._handle, entity, record)
        self._log("insert", entity, entity.key_of(created))
        return created

    async def read(
        self,
        entity: EntityDefinition,
        filter: dict[str, Any] | None = None,
        orderby: list[dict[str, str]] | None = None,
        top: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        self._check_open()
        return await self._adapter.read(
            self._handle, entity, filter, orderby=orderby, top=top, skip=skip
        )

    async def update(
        self, entity: EntityDefinition, key: dict[str, Any], patch: dict[str, Any]
    ) -> dict[str, Any]:
        self._check_open()
        updated = await self._adapter.update(self._handle, entity, key, patch)
        self._log("update", entity, key)
        return updated

    async def delete(self, entity: EntityDefinition, key: dict[str, Any]) -> None:
        self._check_open()
        await self._adapter.delete(self._handle, entity, key)
        self._log("delete", entity, key)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        """Commit the transaction.

        Raises:
            TransactionClosed: If the transaction already ended
            CommitFailed: If the adapter reports a conflict
        """
        self._check_open()
        try:
            await self._adapter.commit(self._handle)
        except ConflictError as e:
            self.state = TxState.ROLLED_BACK
            await self._discard()
            raise CommitFailed(f"Commit failed: {e}") from e
        except Exception:
            self.state = TxState.ROLLED_BACK
            await self._discard()
            raise
        self.state = TxState.COMMITTED
        logger.debug(
            "Transaction %d committed (%d operations)", self.id, len(self.operations)
        )

    async def rollback(self) -> None:
        """Roll back the transaction. Best-effort: adapter failures are logged.

        Raises:
            TransactionClosed: If the transaction already ended
        """
        self._check_open()
        self.state = TxState.ROLLED_BACK
        await self._discard()
        logger.debug("Transaction %d rolled back", self.id)

    async def _discard(self) -> None:
        try:
            await self._adapter.rollback(self._handle)
        except Exception:
            logger.warning("Rollback of transaction %d failed", self.id, exc_info=True)

    # ------------------------------------------------------------------

    def _log(self, kind: str, entity: EntityDefinition, key: dict[str, Any]) -> None:
        self.operations.append(
            PendingOperation(kind=kind, entity=entity.name, key=tuple(sorted(key.items())))
        )

    def _check_open(self) -> None:
        if self.state is not TxState.OPEN:
            raise TransactionClosed(
                f"Transaction {self.id} is already {self.state.value}"
            )

    def __repr__(self) -> str:
        return f"Transaction(id={self.id}, state={self.state.value})"


class TransactionManager:
    """Opens request-scoped transactions against a persistence adapter."""

    def __init__(self, adapter: PersistenceAdapter):
        self.adapter = adapter
        self._ids = itertools.count(1)

    async def open(self, request_id: str | None = None) -> Transaction:
        handle = await self.adapter.begin()
        tx = Transaction(next(self._ids), self.adapter, handle, request_id=request_id)
        logger.debug("Transaction %d opened for request %s", tx.id, request_id)
        return tx
