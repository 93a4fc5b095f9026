"""Persistence layer - adapter interface, reference adapters and transactions."""

from servforge.persistence.adapter import ConflictError, PersistenceAdapter
from servforge.persistence.config import DatabaseConfig, create_adapter
from servforge.persistence.transactions import Transaction, TransactionManager, TxState

__all__ = [
    "ConflictError",
    "DatabaseConfig",
    "PersistenceAdapter",
    "Transaction",
    "TransactionManager",
    "TxState",
    "create_adapter",
]
