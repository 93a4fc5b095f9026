"""In-memory persistence adapter.

Committed rows live in per-entity dicts keyed by the key tuple. Each
transaction writes into its own overlay; commit applies the overlay
atomically after checking that no row it touched was changed by a
transaction that committed in the meantime (optimistic concurrency).
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

from servforge.errors import DuplicateKey, NotFound
from servforge.metadata.model import EntityDefinition
from servforge.persistence.adapter import ConflictError
from servforge.persistence.filters import matches, normalize_filter

logger = logging.getLogger(__name__)

KeyTuple = tuple[Any, ...]
RowId = tuple[str, KeyTuple]

# Marker for rows deleted inside a transaction overlay
_DELETED = object()


@dataclass
class MemoryTransaction:
    id: int
    # (entity, key) -> record dict or _DELETED
    writes: dict[RowId, Any] = field(default_factory=dict)
    # (entity, key) -> committed version when first touched (0 = absent)
    versions: dict[RowId, int] = field(default_factory=dict)
    closed: bool = False


class InMemoryAdapter:
    """Process-local persistence adapter, mainly for tests and development."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[KeyTuple, dict[str, Any]]] = {}
        self._versions: dict[RowId, int] = {}
        self._tx_ids = itertools.count(1)

    def initialize_entity(self, entity: EntityDefinition) -> None:
        self._tables.setdefault(entity.name, {})

    def close(self) -> None:
        self._tables.clear()
        self._versions.clear()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def begin(self) -> MemoryTransaction:
        return MemoryTransaction(id=next(self._tx_ids))

    async def commit(self, tx: MemoryTransaction) -> None:
        self._check_open(tx)
        for row_id, seen_version in tx.versions.items():
            if self._versions.get(row_id, 0) != seen_version:
                tx.closed = True
                raise ConflictError(
                    f"{row_id[0]} {row_id[1]!r} was modified by another transaction"
                )

        for (entity_name, key), value in tx.writes.items():
            table = self._tables.setdefault(entity_name, {})
            if value is _DELETED:
                table.pop(key, None)
            else:
                table[key] = value
            row_id = (entity_name, key)
            self._versions[row_id] = self._versions.get(row_id, 0) + 1

        tx.closed = True
        logger.debug("Memory transaction %d committed %d writes", tx.id, len(tx.writes))

    async def rollback(self, tx: MemoryTransaction) -> None:
        tx.writes.clear()
        tx.versions.clear()
        tx.closed = True

    # ------------------------------------------------------------------
    # Data operations
    # ------------------------------------------------------------------

    async def insert(
        self, tx: MemoryTransaction, entity: EntityDefinition, record: dict[str, Any]
    ) -> dict[str, Any]:
        self._check_open(tx)
        key = self._key(entity, record)
        if self._current(tx, entity, key) is not None:
            raise DuplicateKey(
                f"{entity.name} with key {self._format_key(entity, key)} already exists"
            )
        row = {f.name: record.get(f.name) for f in entity.fields}
        self._write(tx, entity, key, row)
        return copy.deepcopy(row)

    async def read(
        self,
        tx: MemoryTransaction,
        entity: EntityDefinition,
        filter: dict[str, Any] | None = None,
        orderby: list[dict[str, str]] | None = None,
        top: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        self._check_open(tx)
        normalized = normalize_filter(filter)

        rows: dict[KeyTuple, dict[str, Any]] = dict(self._tables.get(entity.name, {}))
        for (entity_name, key), value in tx.writes.items():
            if entity_name != entity.name:
                continue
            if value is _DELETED:
                rows.pop(key, None)
            else:
                rows[key] = value

        result = [copy.deepcopy(r) for r in rows.values() if matches(r, normalized)]

        for order in reversed(orderby or []):
            name = order["field"]
            result.sort(
                key=lambda r: (r.get(name) is None, r.get(name)),
                reverse=order.get("direction") == "desc",
            )

        if skip:
            result = result[skip:]
        if top is not None:
            result = result[:top]
        return result

    async def update(
        self,
        tx: MemoryTransaction,
        entity: EntityDefinition,
        key: dict[str, Any],
        patch: dict[str, Any],
    ) -> dict[str, Any]:
        self._check_open(tx)
        key_tuple = self._key(entity, key)
        current = self._current(tx, entity, key_tuple)
        if current is None:
            raise NotFound(
                f"{entity.name} with key {self._format_key(entity, key_tuple)} not found"
            )
        row = dict(current)
        for name in entity.field_names:
            if name in patch and name not in entity.keys:
                row[name] = patch[name]
        self._write(tx, entity, key_tuple, row)
        return copy.deepcopy(row)

    async def delete(
        self, tx: MemoryTransaction, entity: EntityDefinition, key: dict[str, Any]
    ) -> None:
        self._check_open(tx)
        key_tuple = self._key(entity, key)
        if self._current(tx, entity, key_tuple) is None:
            raise NotFound(
                f"{entity.name} with key {self._format_key(entity, key_tuple)} not found"
            )
        self._write(tx, entity, key_tuple, _DELETED)

    # ------------------------------------------------------------------

    def _current(
        self, tx: MemoryTransaction, entity: EntityDefinition, key: KeyTuple
    ) -> dict[str, Any] | None:
        row_id = (entity.name, key)
        if row_id in tx.writes:
            value = tx.writes[row_id]
            return None if value is _DELETED else value
        return self._tables.get(entity.name, {}).get(key)

    def _write(
        self, tx: MemoryTransaction, entity: EntityDefinition, key: KeyTuple, value: Any
    ) -> None:
        row_id = (entity.name, key)
        tx.versions.setdefault(row_id, self._versions.get(row_id, 0))
        tx.writes[row_id] = value

    def _key(self, entity: EntityDefinition, record: dict[str, Any]) -> KeyTuple:
        return tuple(record.get(k) for k in entity.keys)

    def _format_key(self, entity: EntityDefinition, key: KeyTuple) -> str:
        return ", ".join(f"{k}={v!r}" for k, v in zip(entity.keys, key))

    def _check_open(self, tx: MemoryTransaction) -> None:
        if tx.closed:
            raise RuntimeError(f"Memory transaction {tx.id} is closed")
