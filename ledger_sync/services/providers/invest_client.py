"""
Invest provider client.

Authentication is a static per-operator token plus MD5 request signatures:

    history: md5(opcode + year + month + index + secret_key)
    balance: md5(opcode + username + token + secret_key)

History is paged by a numeric index (``/api/game/historyindex``) which is
exactly the ``external_id`` cursor the sync engine keeps.

Timestamps: invest sends its UTC wall clock labeled ``+09:00``. The offset
is stripped, not applied (see ``strip_mislabeled_offset``). This was
observed against the live API and should be re-verified when the provider
changes its docs.
"""
import hashlib
from datetime import datetime
from typing import Any, List, Optional

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger
from ledger_sync.models.schemas import BetRecord
from ledger_sync.services.providers.base_client import (
    BaseProviderClient, ProviderCallError, ProviderError, TokenState,
)
from ledger_sync.utils.parsing import first_present, parse_amount, parse_external_id
from ledger_sync.utils.timezone import strip_mislabeled_offset, utc_now

logger = get_logger(__name__)

DEFAULT_PROVIDER_BASE = 410000  # Provider id fallback derives from game_id // 1000


def md5_signature(*parts: Any) -> str:
    """Invest signature: MD5 hex digest of the UTF-8 concatenation of ``parts``."""
    return hashlib.md5("".join(str(p) for p in parts).encode("utf-8")).hexdigest()


class InvestClient(BaseProviderClient):
    """Invest API (index-paged history, per-player balance, static token)."""

    api_type = "invest"
    base_url = settings.INVEST_BASE_URL
    max_history_limit = 4000
    required_credentials = ("opcode", "secret_key")

    @property
    def opcode(self) -> str:
        return self.credentials["opcode"]

    @property
    def secret_key(self) -> str:
        return self.credentials["secret_key"]

    async def _request_token(self) -> TokenState:
        # The operator token is issued out of band and stored in api_configs
        token = self.token_state.token if self.token_state else self.credentials.get("api_key")
        if not token:
            raise ProviderCallError(ProviderError("rejection", "invest api token is not configured"))
        return TokenState(token=token, expires_at=None)

    async def _call(self, operation: str, path: str, params: dict) -> Any:
        # The proxy turns the body of a GET into query parameters
        data = await self._request(operation, "GET", path, body=params)
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
        now = utc_now()
        year, month = str(now.year), str(now.month)

        data = await self._call("history", "/api/game/historyindex", {
            "opcode": self.opcode,
            "year": year,
            "month": month,
            "index": since_id,
            "limit": limit,
            "signature": md5_signature(self.opcode, year, month, since_id, self.secret_key),
        })
        return [self.normalize_record(item) for item in self._history_items(data)]

    @staticmethod
    def _history_items(data: Any) -> list:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("DATA", "data"):
                items = data.get(key)
                if isinstance(items, list):
                    return items
                if isinstance(items, dict) and isinstance(items.get("DATA"), list):
                    return items["DATA"]
        return []

    @classmethod
    def normalize_record(cls, item: dict) -> BetRecord:
        bet = parse_amount(first_present(item, "bet", "bet_amount"))
        win = parse_amount(first_present(item, "win", "win_amount"))
        balance_after = parse_amount(first_present(item, "balance", "balance_after"))

        game_id = first_present(item, "game_id")
        provider_id = first_present(item, "provider_id")
        if provider_id is None:
            numeric_game = parse_external_id(game_id)
            provider_id = (numeric_game or DEFAULT_PROVIDER_BASE) // 1000

        played_raw = first_present(item, "create_at", "played_at", "created_at")

        return BetRecord(
            api_type=cls.api_type,
            external_id=parse_external_id(item.get("id")),
            raw_external_id=item.get("id"),
            username=str(item.get("username") or "").strip(),
            game_id=str(game_id) if game_id is not None else None,
            provider_id=str(provider_id),
            provider_name=first_present(item, "provider_name", "vendor"),
            game_title=first_present(item, "game_title", "game_name"),
            round_id=str(item["round_id"]) if item.get("round_id") is not None else None,
            bet_amount=bet,
            win_amount=win,
            balance_before=balance_after - (win - bet),
            balance_after=balance_after,
            played_at=strip_mislabeled_offset(str(played_raw)) if played_raw else None,
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _fetch_player_balance(self, username: str) -> Optional[float]:
        token = self.token_state.token
        data = await self._call("player_balance", "/api/account/balance", {
            "opcode": self.opcode,
            "username": username,
            "token": token,
            "signature": md5_signature(self.opcode, username, token, self.secret_key),
        })
        return self.parse_balance(data)

    async def _fetch_operator_balance(self) -> Optional[float]:
        # /api/info (operator balance) was retired by the provider
        raise ProviderCallError(ProviderError("unsupported", "invest has no operator balance endpoint"))

    @classmethod
    def parse_balance(cls, data: Any) -> Optional[float]:
        """Accepts ``balance``, ``amount``, ``DATA.balance``, ``DATA.amount``, ``current_balance`` or text."""
        return cls.extract_balance(data)
