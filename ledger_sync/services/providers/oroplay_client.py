"""
OroPlay provider client.

- Bearer token from ``/auth/createtoken`` (clientId/clientSecret), expiry in
  epoch seconds; refreshed 5 minutes early.
- History is date-paged (``/betting/history/by-date-v2``). The client asks
  from the window start and filters on ``id > since_id``; only settled bets
  (``status == 1``) are returned.
- Strict quota of one call per second: every request goes through the
  shared ``oroplay`` rate limiter.
- Every answer carries ``errorCode`` (0 = ok, 5 = no records) and the useful
  payload under ``message``.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger
from ledger_sync.models.schemas import BetRecord
from ledger_sync.services.providers.base_client import (
    BaseProviderClient, ProviderCallError, ProviderError, TokenState,
)
from ledger_sync.utils.parsing import first_present, parse_amount, parse_external_id
from ledger_sync.utils.timezone import lookback_start, parse_provider_timestamp, utc_now

logger = get_logger(__name__)

ERROR_NO_RECORDS = 5
STATUS_SETTLED = 1
MAX_PAGES = 5


class OroPlayClient(BaseProviderClient):
    """OroPlay API v2 (date-paged history, per-player balance, expiring token)."""

    api_type = "oroplay"
    base_url = settings.OROPLAY_BASE_URL
    max_history_limit = 4000
    required_credentials = ("client_id", "client_secret")

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token_state.token}"}

    def _unwrap(self, data: Any, operation: str) -> Any:
        """Return ``message`` (or the whole payload) after checking ``errorCode``."""
        if not isinstance(data, dict):
            return data

        if self.proxy_rejected(data):
            message = self.rejection_message(data)
            if self.is_no_records(message):
                return None
            raise ProviderCallError(ProviderError("rejection", message))

        error_code = data.get("errorCode")
        if error_code not in (None, 0, "0"):
            if operation == "history" and str(error_code) == str(ERROR_NO_RECORDS):
                return None
            raise ProviderCallError(ProviderError("rejection", f"{operation} failed: errorCode {error_code}"))

        message = data.get("message")
        return message if message is not None else data

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    async def _request_token(self) -> TokenState:
        data = await self._request("token", "POST", "/auth/createtoken", body={
            "clientId": self.credentials["client_id"],
            "clientSecret": self.credentials["client_secret"],
        })
        payload = self._unwrap(data, "token")

        for candidate in (payload, data):
            if isinstance(candidate, dict) and candidate.get("token"):
                expires_at = parse_provider_timestamp(candidate.get("expiration"))
                return TokenState(token=candidate["token"], expires_at=expires_at)

        raise ProviderCallError(ProviderError("rejection", "invalid token response format"))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _fetch_history(self, since_id: int, limit: int, start: Optional[datetime]) -> List[BetRecord]:
        if start is None:
            start = lookback_start(utc_now(), settings.HISTORY_LOOKBACK_MINUTES)
        start_date = start.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")
        records: List[BetRecord] = []

        for _ in range(MAX_PAGES):
            data = await self._request("history", "POST", "/betting/history/by-date-v2",
                                       headers=self._auth_headers(), body={
                                           "vendorCode": settings.OROPLAY_VENDOR_CODE or None,
                                           "startDate": start_date,
                                           "limit": limit,
                                       })
            page = self._unwrap(data, "history")
            histories = page.get("histories", []) if isinstance(page, dict) else []

            records.extend(
                self.normalize_record(item)
                for item in histories
                if self.is_settled(item)
            )

            next_start = page.get("nextStartDate") if isinstance(page, dict) else None
            if len(histories) < limit or not next_start or next_start == start_date:
                break
            start_date = next_start

        return records

    @staticmethod
    def is_settled(item: dict) -> bool:
        """Rows without a status are settled; the status may arrive as text."""
        return str(item.get("status", STATUS_SETTLED)).strip() == str(STATUS_SETTLED)

    @classmethod
    def normalize_record(cls, item: dict) -> BetRecord:
        return BetRecord(
            api_type=cls.api_type,
            external_id=parse_external_id(item.get("id")),
            raw_external_id=item.get("id"),
            username=str(item.get("userCode") or "").strip(),
            game_id=str(item["gameCode"]) if item.get("gameCode") is not None else None,
            provider_id=str(item["vendorCode"]) if item.get("vendorCode") is not None else None,
            provider_name=str(item["vendorCode"]) if item.get("vendorCode") is not None else None,
            game_title=first_present(item, "gameName", "gameTitle"),
            round_id=str(item["roundId"]) if item.get("roundId") is not None else None,
            bet_amount=parse_amount(item.get("betAmount")),
            win_amount=parse_amount(item.get("winAmount")),
            balance_before=parse_amount(item.get("beforeBalance")),
            balance_after=parse_amount(item.get("afterBalance")),
            played_at=parse_provider_timestamp(item.get("createdAt")),
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _fetch_player_balance(self, username: str) -> Optional[float]:
        data = await self._request("player_balance", "POST", "/user/balance",
                                   headers=self._auth_headers(), body={"userCode": username})
        return self.parse_balance(self._unwrap(data, "player_balance"))

    async def _fetch_operator_balance(self) -> Optional[float]:
        data = await self._request("operator_balance", "GET", "/agent/balance", headers=self._auth_headers())
        return self.parse_balance(self._unwrap(data, "operator_balance"))

    @classmethod
    def parse_balance(cls, message: Any) -> Optional[float]:
        """``message`` is a number, a numeric string, or (rarely) an object."""
        if message is None:
            return None
        return cls.extract_balance(message)
