"""
Ledger models.

Usage:
    from ledger_sync.models import GameRecord, UserAccount
"""

from ledger_sync.models.models import (
    Base,
    Partner,
    UserAccount,
    ApiConfig,
    GameRecord,
    PartnerBalanceLog,
    GameLaunchSession,
    SyncMetadata,
)

__all__ = [
    "Base",
    "Partner",
    "UserAccount",
    "ApiConfig",
    "GameRecord",
    "PartnerBalanceLog",
    "GameLaunchSession",
    "SyncMetadata",
]
