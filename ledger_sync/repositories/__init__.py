"""
Repository layer for data access.

The sync engine and the session monitor go through ``LedgerStoreGateway``
for every read and write, which keeps query logic in one place and lets
services be tested against a real in-memory database or a mock.

Usage:
    from ledger_sync.repositories import LedgerStoreGateway
    from ledger_sync.core.database import SessionLocal

    db = SessionLocal()
    gateway = LedgerStoreGateway(db)
    cursor = gateway.get_last_external_id(partner_id, "invest")
    db.close()
"""

from ledger_sync.repositories.base import BaseRepository
from ledger_sync.repositories.ledger_gateway import LedgerStoreGateway, UpsertResult

__all__ = [
    "BaseRepository",
    "LedgerStoreGateway",
    "UpsertResult",
]
