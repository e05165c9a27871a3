"""
FamilyAPI provider client.

- Session token from ``/api/getToken`` (``Authorization: <api_key>``), cached
  for ``settings.FAMILYAPI_TOKEN_TTL_SECONDS``.
- ``/api/p1/transaction`` returns one row per wallet movement. A wager is a
  ``debit`` row plus zero or more ``credit`` rows sharing a ``betId``; they
  are folded into one ``BetRecord`` keyed by the debit's ``tranId``.
- Operator credit only (``/api/p1/agentBalance``); there is no per-player
  balance and transactions carry no running balance.
- Every answer has ``resultCode`` ("0" = ok, message in ``resultMessage``).
"""
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ledger_sync.core.config import settings
from ledger_sync.core.logging import get_logger
from ledger_sync.models.schemas import BetRecord
from ledger_sync.services.providers.base_client import (
    BaseProviderClient, ProviderCallError, ProviderError, TokenState,
)
from ledger_sync.utils.parsing import parse_amount, parse_external_id
from ledger_sync.utils.timezone import format_utc, lookback_start, parse_provider_timestamp, utc_now

logger = get_logger(__name__)

RESULT_OK = "0"
RESULT_UNAVAILABLE = "9999"  # Token error or vendor unavailable; agent balance reads as 0

TRAN_DEBIT = "debit"
TRAN_CREDIT = "credit"


class FamilyApiClient(BaseProviderClient):
    """FamilyAPI (date-cursor transactions, operator balance only, cached token)."""

    api_type = "familyapi"
    base_url = settings.FAMILYAPI_BASE_URL
    max_history_limit = 3000
    supports_player_balance = False
    required_credentials = ("api_key",)

    @property
    def api_key(self) -> str:
        return self.credentials["api_key"]

    def _auth_headers(self) -> dict:
        return {"Authorization": self.api_key, "token": self.token_state.token}

    @staticmethod
    def _result_code(data: Any) -> Optional[str]:
        if isinstance(data, dict) and data.get("resultCode") is not None:
            return str(data["resultCode"])
        return None

    def _check(self, data: Any, operation: str) -> Any:
        """Return ``data.data`` or raise on a non-zero ``resultCode``."""
        if self.proxy_rejected(data):
            raise ProviderCallError(ProviderError("rejection", self.rejection_message(data)))

        code = self._result_code(data)
        if code is not None and code != RESULT_OK:
            message = data.get("resultMessage") or "unknown error"
            raise ProviderCallError(ProviderError("rejection", f"{operation} failed (resultCode {code}): {message}"))

        return data.get("data") if isinstance(data, dict) else data

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    async def _request_token(self) -> TokenState:
        data = await self._request("token", "POST", "/api/getToken", headers={"Authorization": self.api_key})
        payload = self._check(data, "token")

        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise ProviderCallError(ProviderError("rejection", "token missing from getToken response"))

        expires_at = utc_now() + timedelta(seconds=settings.FAMILYAPI_TOKEN_TTL_SECONDS)
        return TokenState(token=token, expires_at=expires_at)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _fetch_history(self, since_id: int, limit: int, start: Optional[datetime]) -> List[BetRecord]:
        if start is None:
            start = lookback_start(utc_now(), settings.HISTORY_LOOKBACK_MINUTES)
        data = await self._request("history", "POST", "/api/p1/transaction", headers=self._auth_headers(), body={
            "memberId": "",
            "vendorKey": "",
            "startDate": format_utc(start),
            "endDate": "",
            "count": limit,
            "isDetail": "N",
        })
        payload = self._check(data, "history")
        items = payload.get("list", []) if isinstance(payload, dict) else []
        return self.pair_transactions(items)

    @classmethod
    def pair_transactions(cls, items: List[dict]) -> List[BetRecord]:
        """
        Fold debit/credit rows into one record per ``betId``.

        Cancelled rows are ignored. Credits without a debit in the same page
        are dropped; the debit defines the record and its external id.
        """
        bets: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

        for item in items:
            if str(item.get("isCancel", "N")).upper() == "Y":
                continue
            bet_id = str(item.get("betId") or item.get("tranId") or "")
            if not bet_id:
                continue

            entry = bets.setdefault(bet_id, {"debit": None, "win": 0.0})
            tran_type = item.get("tranType")
            if tran_type == TRAN_DEBIT and entry["debit"] is None:
                entry["debit"] = item
            elif tran_type == TRAN_CREDIT:
                entry["win"] += parse_amount(item.get("amount"))

        return [
            cls.normalize_record(entry["debit"], entry["win"])
            for entry in bets.values()
            if entry["debit"] is not None
        ]

    @classmethod
    def normalize_record(cls, debit: dict, win_amount: float = 0.0) -> BetRecord:
        raw_id = debit.get("tranId")
        return BetRecord(
            api_type=cls.api_type,
            external_id=parse_external_id(raw_id),
            raw_external_id=raw_id,
            username=str(debit.get("memberId") or "").strip(),
            game_id=debit.get("gameName"),
            provider_id=str(debit["vendorKey"]) if debit.get("vendorKey") is not None else None,
            provider_name=debit.get("vendorName"),
            game_title=debit.get("gameName"),
            round_id=str(debit["betId"]) if debit.get("betId") is not None else None,
            bet_amount=abs(parse_amount(debit.get("amount"))),
            win_amount=win_amount,
            balance_reported=False,
            played_at=parse_provider_timestamp(debit.get("regDate")),
        )

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def _fetch_operator_balance(self) -> Optional[float]:
        data = await self._request("operator_balance", "POST", "/api/p1/agentBalance", headers=self._auth_headers())
        if self._result_code(data) == RESULT_UNAVAILABLE:
            logger.warning(f"[{self.api_type}] agentBalance answered 9999 for partner {self.partner_id}; reading as 0")
            return 0.0
        return self.parse_balance(self._check(data, "operator_balance"))

    @classmethod
    def parse_balance(cls, payload: Any) -> Optional[float]:
        """Agent balance lives in ``data.credit``."""
        if isinstance(payload, dict) and payload.get("credit") is not None:
            return parse_amount(payload["credit"])
        return cls.extract_balance(payload)
