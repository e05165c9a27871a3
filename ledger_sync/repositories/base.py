"""
Base repository class for data access layer.

Repositories own every query against the ledger tables so that services
(the sync engine, the session monitor, the admin routes) never build
SQLAlchemy queries themselves. The base class holds the session and the
unit-of-work helpers every repository shares.
"""
from typing import TypeVar, Generic, Type

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_sync.core.exceptions import LedgerStoreError

T = TypeVar("T")


class BaseRepository(Generic[T]):
    """
    Session holder for one primary model.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    def save(self) -> None:
        """
        Commit pending changes.

        Raises:
            LedgerStoreError: if the commit fails (the session is rolled back)
        """
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerStoreError(f"commit failed: {e}") from e

    def flush(self) -> None:
        """Flush pending changes without committing."""
        self.db.flush()

    def rollback(self) -> None:
        """Rollback pending changes."""
        self.db.rollback()
