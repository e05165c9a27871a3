"""
Base provider client.

Every game provider is reached through the same outbound proxy: the client
POSTs ``{url, method, headers, body}`` to ``settings.PROVIDER_PROXY_URL`` and
the proxy relays the call. This module owns what all providers share:

- the httpx client and the proxy envelope
- retry policy (tenacity): transport errors and 5xx/empty responses are
  retried with exponential backoff capped at 5 seconds; 4xx is returned
  immediately
- token lifecycle: ``ensure_token()`` refreshes proactively when the cached
  token is missing or within the refresh margin of expiry
- result types: expected failures come back as ``ProviderError`` values,
  never as exceptions

Subclasses implement the provider-specific calls and payload normalization.
Clients never touch the database; the sync engine persists refreshed tokens
from ``token_state``.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ledger_sync.core.config import settings
from ledger_sync.core.exceptions import ProviderConfigError, RateLimiterCleared
from ledger_sync.core.logging import get_logger
from ledger_sync.core.metrics import record_provider_request, record_token_refresh
from ledger_sync.models.schemas import BetRecord
from ledger_sync.services.core.rate_limiter import RateLimiter
from ledger_sync.utils.parsing import largest_number_in_text, parse_amount
from ledger_sync.utils.timezone import utc_now

logger = get_logger(__name__)

# Proxy/provider messages that mean "nothing to return" rather than failure
NO_RECORD_MARKERS = (
    "게임기록이 존재하지 않습니다",
    "no record",
    "no data",
)

# Keys probed, in order, when pulling a balance out of a JSON payload
BALANCE_KEYS = ("balance", "amount", "current_balance", "credit")
WRAPPER_KEYS = ("DATA", "data", "result", "message")


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ProviderError:
    """Expected provider failure.

    kind:
        transport   - timeout, network error, 5xx after retries
        rejection   - 4xx or the provider said no (bad credentials, RESULT=false)
        unsupported - the provider cannot answer this kind of request
    """
    kind: str
    message: str
    status_code: Optional[int] = None

    def __str__(self) -> str:
        status = f" ({self.status_code})" if self.status_code else ""
        return f"{self.kind}{status}: {self.message}"


@dataclass
class BetHistoryResult:
    records: List[BetRecord] = field(default_factory=list)
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BalanceResult:
    balance: Optional[float] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.balance is not None


@dataclass
class TokenState:
    token: str
    expires_at: Optional[datetime] = None  # None means the token never expires

    def needs_refresh(self, now: datetime, margin_seconds: int) -> bool:
        if not self.token:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at - timedelta(seconds=margin_seconds) <= now


@dataclass
class ProviderResponse:
    status_code: int
    data: Any  # parsed JSON, or the raw text when the body is not JSON


class ProviderCallError(Exception):
    """Raised inside a client to abort an operation with a ``ProviderError``.

    Public operations catch it and return the error in their result;
    ``refresh_token()`` lets it propagate.
    """

    def __init__(self, error: ProviderError):
        self.error = error
        super().__init__(str(error))


class _RetryableResponse(Exception):
    """5xx or empty body from the proxy; retried by tenacity."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# BASE CLIENT
# =============================================================================

class BaseProviderClient(ABC):
    """
    Common plumbing for one provider and one operator (partner).

    Attributes:
        api_type: Provider key stored in ``game_records.api_type``
        max_history_limit: Largest page the provider accepts
        supports_player_balance: Whether ``fetch_balance(username)`` is possible
        requires_token: Whether calls need a bearer token from ``refresh_token``
    """

    api_type: str = ""
    base_url: str = ""
    max_history_limit: int = 4000
    supports_player_balance: bool = True
    requires_token: bool = True
    required_credentials: Iterable[str] = ()

    def __init__(
        self,
        api_config,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        proxy_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
    ):
        """
        Initialize the client from an ``api_configs`` row.

        Args:
            api_config: ApiConfig model (values are copied, the row is not kept)
            rate_limiter: Optional limiter every provider call is queued through
            http_client: Injected client (tests); otherwise created lazily
            proxy_url: Override for settings.PROVIDER_PROXY_URL
            max_retries: Override for settings.PROVIDER_MAX_RETRIES
            retry_base_seconds: Override for settings.PROVIDER_RETRY_BASE_SECONDS

        Raises:
            ProviderConfigError: if a required credential is missing
        """
        self.partner_id = api_config.partner_id
        self.credentials: Dict[str, Optional[str]] = {
            "api_key": api_config.api_key,
            "client_id": api_config.client_id,
            "client_secret": api_config.client_secret,
            "opcode": api_config.opcode,
            "secret_key": api_config.secret_key,
        }
        missing = [name for name in self.required_credentials if not self.credentials.get(name)]
        if missing:
            raise ProviderConfigError(self.api_type, f"missing credentials: {', '.join(missing)}")

        self.token_state: Optional[TokenState] = (
            TokenState(api_config.token, api_config.token_expires_at) if api_config.token else None
        )
        self.token_refreshed = False

        self.rate_limiter = rate_limiter
        self.proxy_url = proxy_url or settings.PROVIDER_PROXY_URL
        self.max_retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_seconds = (
            settings.PROVIDER_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self._client = http_client
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            timeout = httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS)
            limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
            self._client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                headers={"Accept": "application/json, text/plain, */*"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _post_proxy(self, envelope: Dict[str, Any]) -> ProviderResponse:
        client = await self._get_client()
        response = await client.post(self.proxy_url, json=envelope)

        if response.status_code >= 500:
            raise _RetryableResponse(response.status_code, response.text[:200])

        text = response.text
        if not text.strip():
            if response.status_code >= 400:
                return ProviderResponse(response.status_code, "")
            raise _RetryableResponse(response.status_code, "empty response")

        try:
            data = response.json()
        except ValueError:
            data = text
        return ProviderResponse(response.status_code, data)

    async def _send(self, envelope: Dict[str, Any]) -> ProviderResponse:
        """POST through the proxy, retrying transient failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_base_seconds, max=settings.PROVIDER_RETRY_MAX_SECONDS),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"[{self.api_type}] retry {attempt.retry_state.attempt_number - 1}/{self.max_retries} "
                        f"{envelope['method']} {envelope['url']}"
                    )
                return await self._post_proxy(envelope)

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        """
        Perform one provider call and return its payload.

        Query ``params`` are appended to the target URL; ``body`` is relayed
        as-is by the proxy.

        Raises:
            ProviderCallError: transport failure after retries, or a 4xx
        """
        url = f"{self.base_url}{path}"
        if params:
            url = str(httpx.URL(url, params=params))

        envelope = {
            "url": url,
            "method": method,
            "headers": {"Content-Type": "application/json", **(headers or {})},
        }
        if body is not None:
            envelope["body"] = body

        started = time.monotonic()
        try:
            if self.rate_limiter is not None:
                response = await self.rate_limiter.enqueue(lambda: self._send(envelope))
            else:
                response = await self._send(envelope)
        except RateLimiterCleared as e:
            record_provider_request(self.api_type, operation, "transport", time.monotonic() - started)
            logger.warning(f"[{self.api_type}] {operation} dropped from rate limiter queue")
            raise ProviderCallError(ProviderError("transport", str(e) or "rate limiter cleared")) from e
        except (httpx.TransportError, _RetryableResponse) as e:
            status = getattr(e, "status_code", None)
            record_provider_request(self.api_type, operation, "transport", time.monotonic() - started)
            logger.warning(f"[{self.api_type}] {operation} failed after retries: {e!r}")
            raise ProviderCallError(ProviderError("transport", str(e) or type(e).__name__, status)) from e

        if response.status_code >= 400:
            record_provider_request(self.api_type, operation, "rejection", time.monotonic() - started)
            message = response.data if isinstance(response.data, str) else str(response.data)[:200]
            raise ProviderCallError(ProviderError("rejection", message or "request rejected", response.status_code))

        record_provider_request(self.api_type, operation, "success", time.monotonic() - started)
        return response.data

    # ------------------------------------------------------------------
    # Payload helpers
    # ------------------------------------------------------------------

    @staticmethod
    def is_no_records(message: Any) -> bool:
        text = str(message or "").lower()
        return any(marker.lower() in text for marker in NO_RECORD_MARKERS)

    @staticmethod
    def proxy_rejected(data: Any) -> bool:
        """True when the proxy or provider wrapped the answer in RESULT=false."""
        return isinstance(data, dict) and (data.get("RESULT") is False or data.get("result") is False)

    @staticmethod
    def rejection_message(data: Any) -> str:
        if isinstance(data, dict):
            for key in ("message", "msg", "error", "DATA", "data"):
                value = data.get(key)
                if isinstance(value, dict):
                    value = value.get("message") or value.get("msg")
                if value:
                    return str(value)
        return str(data)[:200]

    @classmethod
    def extract_balance(cls, payload: Any, _depth: int = 0) -> Optional[float]:
        """
        Pull a numeric balance out of any of the shapes providers return.

        Handles flat JSON (``{"balance": 1000}``), nested wrappers
        (``{"DATA": {"balance": ...}}``, ``{"data": {"credit": ...}}``,
        ``{"message": 1000}``), lists of such objects, bare numbers, numeric
        strings and free text.
        """
        if payload is None or _depth > 4 or isinstance(payload, bool):
            return None

        if isinstance(payload, (int, float)):
            return float(payload)

        if isinstance(payload, str):
            stripped = payload.strip().replace(",", "")
            try:
                return float(stripped)
            except ValueError:
                return largest_number_in_text(payload)

        if isinstance(payload, list):
            return cls.extract_balance(payload[0], _depth + 1) if payload else None

        if isinstance(payload, dict):
            for key in BALANCE_KEYS:
                value = payload.get(key)
                if value is not None and value != "" and not isinstance(value, (dict, list)):
                    return parse_amount(value)
            for key in WRAPPER_KEYS:
                if key in payload:
                    found = cls.extract_balance(payload[key], _depth + 1)
                    if found is not None:
                        return found
        return None

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def ensure_token(self) -> Optional[str]:
        """Return a usable token, refreshing first if it is missing or about to expire."""
        if not self.requires_token:
            return None
        if self.token_state is None or self.token_state.needs_refresh(
            utc_now(), settings.TOKEN_REFRESH_MARGIN_SECONDS
        ):
            await self.refresh_token()
        return self.token_state.token

    async def refresh_token(self) -> TokenState:
        """
        Obtain a new token from the provider.

        Raises:
            ProviderCallError: if the provider refuses or cannot be reached
        """
        try:
            state = await self._request_token()
        except ProviderCallError:
            record_token_refresh(self.api_type, success=False)
            raise

        record_token_refresh(self.api_type, success=True)
        self.token_state = state
        self.token_refreshed = True
        logger.info(f"[{self.api_type}] token refreshed for partner {self.partner_id}, expires {state.expires_at}")
        return state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def fetch_bet_history(self, since_id: int, limit: Optional[int] = None,
                                start: Optional[datetime] = None) -> BetHistoryResult:
        """
        Fetch settled bets newer than ``since_id``.

        ``start`` is the earliest play time date-windowed providers query
        from (naive UTC). Index-paged providers ignore it. Defaults to
        ``HISTORY_LOOKBACK_MINUTES`` before now.

        Records come back in ascending ``external_id`` order, de-duplicated,
        at most ``limit`` of them. Records whose id could not be parsed are
        passed through (``external_id=None``) so the caller can count them.
        """
        limit = min(limit or self.max_history_limit, self.max_history_limit)
        try:
            await self.ensure_token()
            raw_records = await self._fetch_history(since_id, limit, start)
        except ProviderCallError as e:
            return BetHistoryResult(error=e.error)

        return BetHistoryResult(records=self._normalize_batch(raw_records, since_id, limit))

    async def fetch_balance(self, identifier: Optional[str] = None) -> BalanceResult:
        """
        Fetch a balance: the operator's when ``identifier`` is None, else the player's.
        """
        if identifier and not self.supports_player_balance:
            return BalanceResult(error=ProviderError("unsupported", f"{self.api_type} has no per-player balance"))

        try:
            await self.ensure_token()
            if identifier:
                balance = await self._fetch_player_balance(identifier)
            else:
                balance = await self._fetch_operator_balance()
        except ProviderCallError as e:
            return BalanceResult(error=e.error)

        if balance is None:
            return BalanceResult(error=ProviderError("rejection", "balance not found in response"))
        return BalanceResult(balance=balance)

    def _normalize_batch(self, records: List[BetRecord], since_id: int, limit: int) -> List[BetRecord]:
        seen = set()
        valid: List[BetRecord] = []
        invalid: List[BetRecord] = []

        for record in records:
            if record.external_id is None:
                invalid.append(record)
            elif record.external_id > since_id and record.external_id not in seen:
                seen.add(record.external_id)
                valid.append(record)

        valid.sort(key=lambda r: r.external_id)
        return valid[:limit] + invalid

    # ------------------------------------------------------------------
    # Provider-specific hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch_history(self, since_id: int, limit: int, start: Optional[datetime]) -> List[BetRecord]:
        """
        Return normalized records (may include ids <= since_id; they are filtered).

        Date-windowed providers read from ``start``, or from
        ``HISTORY_LOOKBACK_MINUTES`` ago when it is None.
        """

    @abstractmethod
    async def _fetch_operator_balance(self) -> Optional[float]:
        ...

    async def _fetch_player_balance(self, username: str) -> Optional[float]:
        raise ProviderCallError(ProviderError("unsupported", f"{self.api_type} has no per-player balance"))

    async def _request_token(self) -> TokenState:
        raise ProviderCallError(ProviderError("unsupported", f"{self.api_type} does not issue tokens"))

