"""
Ledger store gateway: every read and write the sync engine makes.

Write rules:
- ``game_records`` is append-only. A uniqueness violation on
  (partner_id, api_type, external_txid) is a normal outcome and is reported
  as ``duplicate=True``, never raised.
- A balance is never written without its ``partner_balance_logs`` entry.
  ``update_account_balance`` and ``update_user_balance`` write both in one
  commit.
- Every other store failure surfaces as ``LedgerStoreError`` so the caller
  can give up on the current cycle and retry on the next tick.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_sync.core.exceptions import LedgerStoreError
from ledger_sync.core.logging import get_logger
from ledger_sync.models import (
    ApiConfig, GameLaunchSession, GameRecord, PartnerBalanceLog,
    SyncMetadata, UserAccount,
)
from ledger_sync.models.schemas import BetRecord, ResolvedUser
from ledger_sync.repositories.base import BaseRepository
from ledger_sync.utils.timezone import utc_now

logger = get_logger(__name__)

# Lookups are chunked to stay below driver bind-parameter limits
USERNAME_CHUNK_SIZE = 500

SESSION_TIMESTAMP_FIELDS = frozenset({
    "last_bet_at", "last_bet_checked_at", "last_activity_at", "ended_at",
})


@dataclass
class UpsertResult:
    """Outcome of one ``upsert_bet_record`` call."""
    inserted: bool
    duplicate: bool
    record_id: Optional[int] = None


def _is_unique_violation(error: IntegrityError) -> bool:
    pgcode = getattr(error.orig, "pgcode", None)
    if pgcode is not None:
        return pgcode == "23505"
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message


class LedgerStoreGateway(BaseRepository[GameRecord]):
    """Facade over users, partners, api_configs, game_records, balance logs and sessions."""

    def __init__(self, db: Session):
        super().__init__(GameRecord, db)

    # ========================================================================
    # Bet records
    # ========================================================================

    def get_last_external_id(self, partner_id: str, api_type: str) -> int:
        """Highest stored external_txid for the pair, or 0 when nothing is stored."""
        try:
            value = self.db.query(func.max(GameRecord.external_txid)).filter(
                GameRecord.partner_id == partner_id,
                GameRecord.api_type == api_type,
            ).scalar()
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"cursor lookup failed for {api_type}/{partner_id}: {e}") from e
        return int(value or 0)

    def get_last_played_at(self, partner_id: str, api_type: str) -> Optional[datetime]:
        """played_at of the record holding the cursor, or None when nothing is stored."""
        try:
            return self.db.query(GameRecord.played_at).filter(
                GameRecord.partner_id == partner_id,
                GameRecord.api_type == api_type,
            ).order_by(GameRecord.external_txid.desc()).limit(1).scalar()
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"cursor lookup failed for {api_type}/{partner_id}: {e}") from e

    def upsert_bet_record(self, partner_id: str, user_id: str, record: BetRecord) -> UpsertResult:
        """
        Insert one bet record.

        Returns:
            UpsertResult with ``inserted=True``, or ``duplicate=True`` when the
            record was already stored

        Raises:
            LedgerStoreError: on any failure other than the uniqueness violation
        """
        row = GameRecord(
            partner_id=partner_id,
            api_type=record.api_type,
            external_txid=record.external_id,
            user_id=user_id,
            username=record.username,
            game_id=record.game_id,
            provider_id=record.provider_id,
            provider_name=record.provider_name,
            game_title=record.game_title,
            round_id=record.round_id,
            bet_amount=record.bet_amount,
            win_amount=record.win_amount,
            balance_before=record.balance_before,
            balance_after=record.balance_after,
            played_at=record.played_at or utc_now(),
            created_at=utc_now(),
        )
        self.db.add(row)

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if _is_unique_violation(e):
                return UpsertResult(inserted=False, duplicate=True)
            raise LedgerStoreError(f"bet record {record.external_id} rejected: {e.orig}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerStoreError(f"bet record {record.external_id} not stored: {e}") from e

        return UpsertResult(inserted=True, duplicate=False, record_id=row.id)

    def latest_bet_played_at(self, user_id: str, since: Optional[datetime] = None) -> Optional[datetime]:
        """Most recent ``played_at`` for a user, optionally bounded below by ``since``."""
        query = self.db.query(func.max(GameRecord.played_at)).filter(GameRecord.user_id == user_id)
        if since is not None:
            query = query.filter(GameRecord.played_at >= since)
        return query.scalar()

    # ========================================================================
    # Users
    # ========================================================================

    def resolve_users_by_username(self, usernames: Iterable[str]) -> Dict[str, ResolvedUser]:
        """
        Map provider usernames to internal accounts in bulk.

        Unknown usernames are simply absent from the result.
        """
        wanted = sorted({name for name in usernames if name})
        resolved: Dict[str, ResolvedUser] = {}

        try:
            for start in range(0, len(wanted), USERNAME_CHUNK_SIZE):
                chunk = wanted[start:start + USERNAME_CHUNK_SIZE]
                rows = self.db.query(
                    UserAccount.id, UserAccount.username, UserAccount.referrer_id
                ).filter(UserAccount.username.in_(chunk)).all()
                for user_id, username, referrer_id in rows:
                    resolved[username] = ResolvedUser(
                        user_id=user_id, username=username, referrer_id=referrer_id
                    )
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"user lookup failed: {e}") from e

        return resolved

    def update_user_balance(
        self,
        user_id: str,
        new_balance: float,
        partner_id: str,
        api_provider: Optional[str] = None,
        reason: str = "provider_sync",
        actor_id: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> Optional[PartnerBalanceLog]:
        """
        Write a player's balance and its audit entry together.

        The row is locked for the read-modify-write (no-op on SQLite). A
        concurrent writer outside this service loses to the later write;
        the log keeps both before and after values so the race is visible.

        Returns:
            The log entry, or None when the balance was already ``new_balance``
        """
        try:
            user = self.db.query(UserAccount).filter(
                UserAccount.id == user_id
            ).with_for_update().one_or_none()
            if user is None:
                raise LedgerStoreError(f"user {user_id} not found")

            before = float(user.balance or 0.0)
            if before == new_balance:
                self.db.commit()  # release the row lock
                return None

            user.balance = new_balance
            user.updated_at = utc_now()
            entry = self.append_balance_change_log(
                partner_id=partner_id,
                balance_before=before,
                balance_after=new_balance,
                reason=reason,
                user_id=user_id,
                api_provider=api_provider,
                actor_id=actor_id,
                memo=memo,
                commit=False,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerStoreError(f"balance update failed for user {user_id}: {e}") from e

        return entry

    # ========================================================================
    # Operator balances (api_configs.balance)
    # ========================================================================

    def update_account_balance(
        self,
        partner_id: str,
        provider: str,
        new_balance: float,
        reason: str = "provider_sync",
        actor_id: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> Optional[PartnerBalanceLog]:
        """
        Write an operator's provider balance and its audit entry together.

        ``balance_updated_at`` is refreshed even when the amount is unchanged;
        no log entry is written in that case.

        Returns:
            The log entry, or None when the amount did not change
        """
        try:
            config = self.db.query(ApiConfig).filter(
                ApiConfig.partner_id == partner_id,
                ApiConfig.api_provider == provider,
            ).with_for_update().one_or_none()
            if config is None:
                raise LedgerStoreError(f"no api_config for {provider}/{partner_id}")

            now = utc_now()
            before = float(config.balance or 0.0)
            config.balance_updated_at = now

            entry = None
            if before != new_balance:
                config.balance = new_balance
                config.updated_at = now
                entry = self.append_balance_change_log(
                    partner_id=partner_id,
                    balance_before=before,
                    balance_after=new_balance,
                    reason=reason,
                    api_provider=provider,
                    actor_id=actor_id,
                    memo=memo,
                    commit=False,
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerStoreError(f"balance update failed for {provider}/{partner_id}: {e}") from e

        return entry

    def append_balance_change_log(
        self,
        partner_id: str,
        balance_before: float,
        balance_after: float,
        reason: str,
        user_id: Optional[str] = None,
        api_provider: Optional[str] = None,
        actor_id: Optional[str] = None,
        memo: Optional[str] = None,
        commit: bool = True,
    ) -> PartnerBalanceLog:
        """Append one audit entry; ``amount`` is the signed delta."""
        entry = PartnerBalanceLog(
            partner_id=partner_id,
            user_id=user_id,
            api_provider=api_provider,
            balance_before=balance_before,
            balance_after=balance_after,
            amount=balance_after - balance_before,
            transaction_type=reason,
            processed_by=actor_id,
            memo=memo,
            created_at=utc_now(),
        )
        self.db.add(entry)
        if commit:
            self.save()
        return entry

    # ========================================================================
    # Provider configuration
    # ========================================================================

    def get_api_config(self, partner_id: str, api_type: str) -> Optional[ApiConfig]:
        return self.db.query(ApiConfig).filter(
            ApiConfig.partner_id == partner_id,
            ApiConfig.api_provider == api_type,
        ).first()

    def list_active_api_configs(self, api_type: Optional[str] = None) -> List[ApiConfig]:
        """Active configs, optionally for one provider, in a stable order."""
        query = self.db.query(ApiConfig).filter(ApiConfig.is_active.is_(True))
        if api_type:
            query = query.filter(ApiConfig.api_provider == api_type)
        return query.order_by(ApiConfig.api_provider, ApiConfig.partner_id).all()

    def save_token_state(self, partner_id: str, api_type: str, token: str, expires_at: Optional[datetime]) -> None:
        """Persist a refreshed provider token so other workers can reuse it."""
        config = self.get_api_config(partner_id, api_type)
        if config is None:
            return
        if config.token == token and config.token_expires_at == expires_at:
            return
        config.token = token
        config.token_expires_at = expires_at
        config.updated_at = utc_now()
        self.save()

    # ========================================================================
    # Game sessions
    # ========================================================================

    def list_sessions(self, statuses: Sequence[str]) -> List[GameLaunchSession]:
        return self.db.query(GameLaunchSession).filter(
            GameLaunchSession.status.in_(list(statuses))
        ).all()

    def user_ids_with_sessions(self, statuses: Sequence[str] = ("active", "paused")) -> set:
        rows = self.db.query(GameLaunchSession.user_id).filter(
            GameLaunchSession.status.in_(list(statuses))
        ).distinct().all()
        return {row[0] for row in rows}

    def update_game_session_state(self, session_id: str, new_state: str, **timestamps) -> Optional[GameLaunchSession]:
        """
        Set a session's status and any of its bookkeeping timestamps.

        Accepted timestamps: last_bet_at, last_bet_checked_at,
        last_activity_at, ended_at.
        """
        unknown = set(timestamps) - SESSION_TIMESTAMP_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")

        session = self.db.get(GameLaunchSession, session_id)
        if session is None:
            return None

        session.status = new_state
        for field, value in timestamps.items():
            setattr(session, field, value)
        self.save()
        return session

    # ========================================================================
    # Sync health
    # ========================================================================

    def get_or_create_sync_metadata(self, partner_id: str, api_type: str) -> SyncMetadata:
        metadata = self.db.query(SyncMetadata).filter(
            SyncMetadata.partner_id == partner_id,
            SyncMetadata.api_type == api_type,
        ).first()

        if not metadata:
            metadata = SyncMetadata(
                id=str(uuid.uuid4()),
                partner_id=partner_id,
                api_type=api_type,
                records_processed=0,
                records_inserted=0,
                records_duplicate=0,
                records_skipped=0,
            )
            self.db.add(metadata)
            self.flush()

        return metadata

    def list_sync_metadata(self) -> List[SyncMetadata]:
        return self.db.query(SyncMetadata).order_by(SyncMetadata.api_type, SyncMetadata.partner_id).all()
