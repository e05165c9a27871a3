"""Shared pytest fixtures for ledger sync tests."""
import json
import os
import uuid
from datetime import datetime
from typing import AsyncGenerator, Generator
from unittest.mock import AsyncMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Settings are read at import time; keep tests off any real database
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

from ledger_sync.models import ApiConfig, Base, GameLaunchSession, Partner, UserAccount  # noqa: E402
from ledger_sync.models.schemas import BetRecord  # noqa: E402
from ledger_sync.services.providers.base_client import BalanceResult, BetHistoryResult  # noqa: E402
from ledger_sync.utils.timezone import utc_now  # noqa: E402

PARTNER_ID = "partner-0001"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create fresh test database session with isolated in-memory database."""
    # StaticPool keeps a single connection so every session sees the same data
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestSessionLocal = sessionmaker(bind=engine, autoflush=False)
    session = TestSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture(autouse=True)
def reset_sync_state():
    """Forget shared rate limiters and in-flight markers between tests."""
    from ledger_sync.services.core.rate_limiter import reset_rate_limiters
    from ledger_sync.services.sync import orchestrator

    yield
    reset_rate_limiters()
    orchestrator._in_flight.clear()


@pytest.fixture
def partner(db_session: Session) -> Partner:
    """A store-level partner."""
    partner = Partner(
        id=PARTNER_ID,
        username="store01",
        nickname="Store 01",
        level=6,
        created_at=utc_now(),
        updated_at=utc_now(),
    )
    db_session.add(partner)
    db_session.commit()
    return partner


@pytest.fixture
def users(db_session: Session, partner: Partner) -> dict:
    """Three players referred by the sample partner, keyed by username."""
    accounts = {}
    for username, balance in [("alice", 1000.0), ("bob", 500.0), ("carol", 0.0)]:
        account = UserAccount(
            id=str(uuid.uuid4()),
            username=username,
            referrer_id=partner.id,
            balance=balance,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        db_session.add(account)
        accounts[username] = account
    db_session.commit()
    return accounts


@pytest.fixture
def make_api_config(db_session: Session, partner: Partner):
    """Factory for api_configs rows of the sample partner."""

    def _make(api_provider: str = "invest", **fields) -> ApiConfig:
        defaults = {
            "invest": {"opcode": "OP01", "secret_key": "s3cret", "api_key": "invest-token"},
            "oroplay": {"client_id": "client", "client_secret": "secret"},
            "familyapi": {"api_key": "family-key"},
            "honorapi": {"api_key": "honor-key"},
        }.get(api_provider, {})
        config = ApiConfig(
            id=str(uuid.uuid4()),
            partner_id=partner.id,
            api_provider=api_provider,
            **{"is_active": True, **defaults, **fields},
        )
        db_session.add(config)
        db_session.commit()
        return config

    return _make


@pytest.fixture
def make_session(db_session: Session, partner: Partner):
    """Factory for game launch sessions."""

    def _make(user: UserAccount, status: str, launched_at: datetime, **fields) -> GameLaunchSession:
        session = GameLaunchSession(
            id=str(uuid.uuid4()),
            user_id=user.id,
            partner_id=partner.id,
            api_type="invest",
            status=status,
            launched_at=launched_at,
            **fields,
        )
        db_session.add(session)
        db_session.commit()
        return session

    return _make


def bet_record(external_id, username="alice", api_type="invest", **fields) -> BetRecord:
    """Build a normalized bet record for tests."""
    values = {
        "api_type": api_type,
        "external_id": external_id,
        "raw_external_id": external_id,
        "username": username,
        "game_id": "410001",
        "provider_id": "410",
        "bet_amount": 100.0,
        "win_amount": 0.0,
        "balance_before": 1000.0,
        "balance_after": 900.0,
        "played_at": datetime(2025, 10, 20, 5, 30),
    }
    values.update(fields)
    return BetRecord(**values)


def fake_client(records=None, history_error=None, player_balances=None, operator_balance=None,
                max_history_limit=4000):
    """
    Stand-in provider client for sync engine tests.

    ``player_balances`` maps username -> BalanceResult; unknown usernames
    get an "unsupported" error. ``operator_balance`` is a BalanceResult.
    """
    from ledger_sync.services.providers.base_client import ProviderError

    client = AsyncMock()
    client.max_history_limit = max_history_limit
    client.token_refreshed = False
    client.token_state = None
    client.fetch_bet_history.return_value = BetHistoryResult(records=list(records or []), error=history_error)

    balances = player_balances or {}

    async def fetch_balance(identifier=None):
        if identifier is None:
            return operator_balance or BalanceResult(error=ProviderError("unsupported", "no operator balance"))
        return balances.get(identifier, BalanceResult(error=ProviderError("unsupported", "no player balance")))

    client.fetch_balance.side_effect = fetch_balance
    return client


@pytest.fixture(scope="function")
async def async_client(db_session: Session) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for testing FastAPI endpoints."""
    from ledger_sync.core.database import get_db
    from ledger_sync.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as client:
        yield client

    app.dependency_overrides.clear()


# ----------------------------------------------------------------------------
# Provider HTTP stubs
# ----------------------------------------------------------------------------
# Every provider call is a POST of {url, method, headers, body} to the
# outbound proxy, so one httpx.MockTransport stands in for all providers.

@pytest.fixture
async def proxy():
    """Factory: ``proxy(responder) -> (http_client, calls)``; responders get the decoded envelope."""
    clients = []

    def _make(responder):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            envelope = json.loads(request.content)
            calls.append(envelope)
            return responder(envelope)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client, calls

    yield _make

    for client in clients:
        await client.aclose()


def api_config(api_provider: str, **fields) -> ApiConfig:
    """Unsaved api_configs row for building provider clients."""
    return ApiConfig(partner_id=PARTNER_ID, api_provider=api_provider, is_active=True, **fields)


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def query_params(envelope: dict) -> dict:
    return dict(httpx.URL(envelope["url"]).params)
