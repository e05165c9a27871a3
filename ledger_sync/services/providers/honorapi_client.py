"""
HonorAPI provider client.

The operator's API key is a static bearer token. History comes from
``/transactions``, walking UTC windows of at most one hour from the
requested start up to now. ``bet`` rows define records and ``win`` rows of
the same round and user are added as the win amount. Bets are sent as negative amounts.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger
from ledger_sync.models.schemas import BetRecord
from ledger_sync.services.providers.base_client import BaseProviderClient, ProviderCallError, ProviderError
from ledger_sync.utils.parsing import parse_amount, parse_external_id
from ledger_sync.utils.timezone import format_utc, parse_provider_timestamp, utc_now

logger = get_logger(__name__)

MAX_WINDOW_MINUTES = 60
MAX_PAGES = 5


class HonorApiClient(BaseProviderClient):
    """HonorAPI (time-window history, per-player balance, static bearer key)."""

    api_type = "honorapi"
    base_url = settings.HONORAPI_BASE_URL
    max_history_limit = 1000
    requires_token = False
    required_credentials = ("api_key",)

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.credentials['api_key']}", "Accept": "application/json"}

    async def _get(self, operation: str, path: str, params: Optional[dict] = None) -> Any:
        data = await self._request(operation, "GET", path, headers=self._auth_headers(), params=params)
        if self.proxy_rejected(data):
            message = self.rejection_message(data)
            if self.is_no_records(message):
                return None
            raise ProviderCallError(ProviderError("rejection", message))
        return data

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _fetch_history(self, since_id: int, limit: int, start: Optional[datetime]) -> List[BetRecord]:
        end = utc_now()
        if start is None:
            start = end - timedelta(minutes=min(settings.HISTORY_LOOKBACK_MINUTES, MAX_WINDOW_MINUTES))
        transactions: List[dict] = []
        fresh = 0

        window_start = min(start, end - timedelta(minutes=1))
        while window_start < end and fresh < limit:
            window_end = min(window_start + timedelta(minutes=MAX_WINDOW_MINUTES), end)
            rows = await self._fetch_window(window_start, window_end, limit)
            transactions.extend(rows)
            fresh += sum(1 for tx in rows if tx.get("type") == "bet" and self._is_newer(tx, since_id))
            window_start = window_end

        return self.pair_transactions(transactions)

    async def _fetch_window(self, start: datetime, end: datetime, limit: int) -> List[dict]:
        rows: List[dict] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self._get("history", "/transactions", params={
                "start": format_utc(start),
                "end": format_utc(end),
                "page": page,
                "perPage": limit,
                "withDetails": 1,
            })
            page_rows = self._transaction_rows(data)
            rows.extend(page_rows)
            if len(page_rows) < limit:
                break
        return rows

    @staticmethod
    def _is_newer(tx: dict, since_id: int) -> bool:
        external_id = parse_external_id(tx.get("id"))
        return external_id is not None and external_id > since_id

    @staticmethod
    def _transaction_rows(data: Any) -> List[dict]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            return data["data"]
        return []

    @staticmethod
    def _round_key(tx: dict) -> Optional[Tuple[str, str]]:
        game = (tx.get("details") or {}).get("game")
        if not game or game.get("round") is None:
            return None
        return str(game["round"]), str((tx.get("user") or {}).get("username") or "")

    @classmethod
    def pair_transactions(cls, transactions: List[dict]) -> List[BetRecord]:
        """One record per ``bet`` row that carries game details."""
        wins: Dict[Tuple[str, str], float] = defaultdict(float)
        for tx in transactions:
            key = cls._round_key(tx)
            if tx.get("type") == "win" and key is not None:
                wins[key] += parse_amount(tx.get("amount"))

        records = []
        for tx in transactions:
            if tx.get("type") != "bet":
                continue
            key = cls._round_key(tx)
            if key is None:
                logger.debug(f"[honorapi] bet {tx.get('id')} has no game details; ignored")
                continue
            records.append(cls.normalize_record(tx, wins.get(key, 0.0)))
        return records

    @classmethod
    def normalize_record(cls, tx: dict, win_amount: float = 0.0) -> BetRecord:
        game = (tx.get("details") or {}).get("game") or {}
        bet = abs(parse_amount(tx.get("amount")))
        before = parse_amount(tx.get("before"))
        game_id = str(game["id"]) if game.get("id") is not None else None

        return BetRecord(
            api_type=cls.api_type,
            external_id=parse_external_id(tx.get("id")),
            raw_external_id=tx.get("id"),
            username=str((tx.get("user") or {}).get("username") or "").strip(),
            game_id=game_id,
            provider_name=game.get("vendor"),
            game_title=game.get("title") or game_id,
            round_id=str(game["round"]) if game.get("round") is not None else None,
            bet_amount=bet,
            win_amount=win_amount,
            balance_before=before,
            balance_after=before - bet + win_amount,
            played_at=parse_provider_timestamp(tx.get("processed_at")),
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _fetch_player_balance(self, username: str) -> Optional[float]:
        data = await self._get("player_balance", "/user", params={"username": username})
        return self.extract_balance(data)

    async def _fetch_operator_balance(self) -> Optional[float]:
        data = await self._get("operator_balance", "/my-info")
        return self.extract_balance(data)
