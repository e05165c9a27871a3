"""
Database models for the partner ledger.

The schema mirrors the tables the admin dashboard already uses, so column
names follow the existing store (``external_txid``, ``referrer_id``,
``api_provider``...). All timestamps are naive UTC.
"""
from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from ledger_sync.utils.timezone import utc_now

Base = declarative_base()


class Partner(Base):
    """Operator in the referral hierarchy (1 = system admin ... 6 = store)."""
    __tablename__ = "partners"

    id = Column(String(36), primary_key=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    nickname = Column(String(100), nullable=True)
    level = Column(Integer, nullable=False, default=6)
    parent_id = Column(String(36), ForeignKey("partners.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="active")
    balance = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    parent = relationship("Partner", remote_side=[id], backref="children")
    api_configs = relationship("ApiConfig", back_populates="partner", cascade="all, delete-orphan")


class UserAccount(Base):
    """End customer; ``balance`` is the internal spendable ledger."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    nickname = Column(String(100), nullable=True)
    referrer_id = Column(String(36), ForeignKey("partners.id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="active")
    balance = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    referrer = relationship("Partner")


class ApiConfig(Base):
    """Per-partner, per-provider credentials, cached token and cached provider balance.

    The ``balance`` / ``balance_updated_at`` pair is the operator's provider
    balance. It is only written through the ledger gateway, which logs every
    change to ``partner_balance_logs``.
    """
    __tablename__ = "api_configs"

    id = Column(String(36), primary_key=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False, index=True)
    api_provider = Column(String(32), nullable=False)  # invest, oroplay, familyapi, honorapi
    is_active = Column(Boolean, nullable=False, default=True)

    # Credentials (which ones are used depends on the provider)
    api_key = Column(String(255), nullable=True)
    client_id = Column(String(255), nullable=True)
    client_secret = Column(String(255), nullable=True)
    opcode = Column(String(100), nullable=True)
    secret_key = Column(String(255), nullable=True)

    # Cached bearer token
    token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    # Operator balance held at the provider
    balance = Column(Float, nullable=False, default=0.0)
    balance_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    partner = relationship("Partner", back_populates="api_configs")

    __table_args__ = (
        UniqueConstraint('partner_id', 'api_provider', name='uq_api_configs_partner_provider'),
    )


class GameRecord(Base):
    """One settled wager reported by a provider. Append-only."""
    __tablename__ = "game_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False)
    api_type = Column(String(32), nullable=False)
    external_txid = Column(BigInteger, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String(100), nullable=False)
    game_id = Column(String(100), nullable=True)
    provider_id = Column(String(100), nullable=True)
    provider_name = Column(String(100), nullable=True)
    game_title = Column(String(255), nullable=True)
    round_id = Column(String(100), nullable=True)
    bet_amount = Column(Float, nullable=False, default=0.0)
    win_amount = Column(Float, nullable=False, default=0.0)
    balance_before = Column(Float, nullable=False, default=0.0)
    balance_after = Column(Float, nullable=False, default=0.0)
    played_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('partner_id', 'api_type', 'external_txid', name='uq_game_records_partner_api_txid'),
        Index('ix_game_records_user_played', 'user_id', 'played_at'),
    )


class PartnerBalanceLog(Base):
    """Audit trail entry written alongside every balance mutation."""
    __tablename__ = "partner_balance_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)  # Set for player balance pushes
    api_provider = Column(String(32), nullable=True)
    balance_before = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)  # balance_after - balance_before
    transaction_type = Column(String(50), nullable=False)  # reason
    processed_by = Column(String(36), nullable=True)  # actor; None means the sync engine
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class GameLaunchSession(Base):
    """Live-play marker for one user, created when a game window opens."""
    __tablename__ = "game_launch_sessions"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    partner_id = Column(String(36), ForeignKey("partners.id"), nullable=True)
    api_type = Column(String(32), nullable=True)
    game_id = Column(String(100), nullable=True)
    status = Column(String(16), nullable=False, default="active", index=True)  # ready, active, paused, ended
    launched_at = Column(DateTime, nullable=False, default=utc_now)
    last_bet_at = Column(DateTime, nullable=True)
    last_bet_checked_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)


class SyncMetadata(Base):
    """Health of the last sync cycle per (partner, provider).

    Observability only. The sync cursor is always recomputed from
    ``game_records`` and never read from here.
    """
    __tablename__ = "sync_metadata"

    id = Column(String(36), primary_key=True)
    partner_id = Column(String(36), nullable=False)
    api_type = Column(String(32), nullable=False)
    last_sync_started_at = Column(DateTime, nullable=True)
    last_sync_completed_at = Column(DateTime, nullable=True, index=True)
    last_sync_status = Column(String(16), nullable=True, index=True)  # success, partial, failed, in_progress
    records_processed = Column(Integer, nullable=False, default=0)
    records_inserted = Column(Integer, nullable=False, default=0)
    records_duplicate = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    sync_duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint('partner_id', 'api_type', name='uq_sync_metadata_partner_api'),
    )
