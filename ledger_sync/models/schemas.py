"""Normalized provider data models shared by provider clients and the ledger gateway."""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class BetRecord(BaseModel):
    """One settled wager as reported by a provider, before attribution.

    ``external_id`` is None when the provider's id was missing or not a
    positive integer; the sync engine skips such records.
    """
    api_type: str
    external_id: Optional[int] = None
    raw_external_id: Any = None
    username: str = ""
    game_id: Optional[str] = None
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    game_title: Optional[str] = None
    round_id: Optional[str] = None
    bet_amount: float = 0.0
    win_amount: float = 0.0
    balance_before: float = 0.0
    balance_after: float = 0.0
    balance_reported: bool = True  # False when the provider sends no running balance
    played_at: Optional[datetime] = None


class ResolvedUser(BaseModel):
    """Internal account a provider username maps to."""
    user_id: str
    username: str
    referrer_id: Optional[str] = None
