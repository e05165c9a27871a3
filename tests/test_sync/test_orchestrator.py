"""Integration tests for SyncEngine.

Test Strategy:
1. The cursor advances to the highest stored external id
2. Re-running a cycle over the same records only produces duplicates
3. Records are attributed, skipped or counted as errors per record
4. Balance reconciliation failures stay local to one user
5. Provider and configuration failures end the cycle as 'failed'
6. Overlapping cycles for one pair are skipped, not queued
7. get_sync_status() aggregates the health rows

Each test follows the pattern:
- Given: Database with a partner, its players and a stubbed provider client
- When: SyncEngine method is called
- Then: Correct cycle result and database state
"""
import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import PARTNER_ID, bet_record, fake_client  # noqa: E402
from ledger_sync.core.config import settings  # noqa: E402
from ledger_sync.core.exceptions import ProviderConfigError, RateLimiterCleared  # noqa: E402
from ledger_sync.models import ApiConfig, GameRecord, PartnerBalanceLog, SyncMetadata, UserAccount  # noqa: E402
from ledger_sync.repositories.ledger_gateway import LedgerStoreGateway  # noqa: E402
from ledger_sync.services.providers.base_client import BalanceResult, ProviderError, TokenState  # noqa: E402
from ledger_sync.services.sync import orchestrator  # noqa: E402
from ledger_sync.services.sync.orchestrator import SyncEngine  # noqa: E402
from ledger_sync.utils.timezone import utc_now  # noqa: E402


def engine_for(db_session, client):
    return SyncEngine(db_session, client_factory=lambda config: client)


def balance_of(db_session, user):
    db_session.expire_all()
    return db_session.get(UserAccount, user.id).balance


class TestCursorAndIdempotency:
    """Fetch/ingest phases."""

    @pytest.mark.asyncio
    async def test_cursor_advances_to_max_stored_id(self, db_session: Session, users, make_api_config):
        """Given records {5, 9, 12}, the next fetch asks for ids above 12."""
        make_api_config("invest")
        client = fake_client([bet_record(5), bet_record(9, username="bob"), bet_record(12)])
        engine = engine_for(db_session, client)

        first = await engine.run_cycle(PARTNER_ID, "invest")
        await engine.run_cycle(PARTNER_ID, "invest")

        assert first.status == "success"
        assert first.since_id == 0
        assert first.success_count == 3
        assert client.fetch_bet_history.await_args_list[0].args == (0, 4000)
        assert client.fetch_bet_history.await_args_list[1].args == (12, 4000)

    @pytest.mark.asyncio
    async def test_rerun_only_reports_duplicates(self, db_session: Session, users, make_api_config):
        make_api_config("invest")
        client = fake_client([bet_record(1), bet_record(2)])
        engine = engine_for(db_session, client)

        await engine.run_cycle(PARTNER_ID, "invest")
        second = await engine.run_cycle(PARTNER_ID, "invest")

        assert second.status == "success"
        assert second.success_count == 0
        assert second.duplicate_count == 2
        assert db_session.query(GameRecord).count() == 2

    @pytest.mark.asyncio
    async def test_arrival_order_does_not_change_stored_set(self, db_session: Session, users, make_api_config):
        """The same batch in any order yields the same rows."""
        make_api_config("invest")
        engine = engine_for(db_session, fake_client([bet_record(30), bet_record(10), bet_record(20)]))

        await engine.run_cycle(PARTNER_ID, "invest")

        stored = sorted(r.external_txid for r in db_session.query(GameRecord).all())
        assert stored == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_skipped_records_are_counted_by_reason(self, db_session: Session, users, make_api_config):
        """Given 10 records of which 4 are unusable, 6 are stored and 4 skipped."""
        make_api_config("invest")
        records = [bet_record(i, username="alice" if i % 2 else "bob") for i in range(1, 7)]
        records += [
            bet_record(7, username=""),
            bet_record(8, username="mallory"),
            bet_record(9, username="trudy"),
            bet_record(None, raw_external_id="abc"),
        ]
        engine = engine_for(db_session, fake_client(records))

        result = await engine.run_cycle(PARTNER_ID, "invest")

        assert result.fetched == 10
        assert result.success_count == 6
        assert result.skipped == 4
        assert result.skip_counts["missing_username"] == 1
        assert result.skip_counts["unresolved_user"] == 2
        assert result.skip_counts["invalid_external_id"] == 1
        assert result.status == "success"

        metadata = db_session.query(SyncMetadata).one()
        assert metadata.records_processed == 10
        assert metadata.records_inserted == 6
        assert metadata.records_skipped == 4

    @pytest.mark.asyncio
    async def test_store_error_on_one_record_makes_cycle_partial(
        self, db_session: Session, users, make_api_config, monkeypatch
    ):
        from ledger_sync.core.exceptions import LedgerStoreError
        from ledger_sync.repositories.ledger_gateway import LedgerStoreGateway

        make_api_config("invest")
        original = LedgerStoreGateway.upsert_bet_record

        def flaky(self, partner_id, user_id, record):
            if record.external_id == 2:
                raise LedgerStoreError("disk full")
            return original(self, partner_id, user_id, record)

        monkeypatch.setattr(LedgerStoreGateway, "upsert_bet_record", flaky)
        engine = engine_for(db_session, fake_client([bet_record(1), bet_record(2), bet_record(3)]))

        result = await engine.run_cycle(PARTNER_ID, "invest")

        assert result.status == "partial"
        assert result.success_count == 2
        assert result.skip_counts["error"] == 1


    @pytest.mark.asyncio
    async def test_history_start_reaches_back_before_newest_stored_bet(
        self, db_session: Session, users, make_api_config
    ):
        """After a five hour outage the window opens before the last stored bet."""
        make_api_config("oroplay")
        played_at = utc_now() - timedelta(hours=5)
        LedgerStoreGateway(db_session).upsert_bet_record(
            PARTNER_ID, users["alice"].id, bet_record(100, api_type="oroplay", played_at=played_at)
        )
        client = fake_client([])

        await engine_for(db_session, client).run_cycle(PARTNER_ID, "oroplay")

        call = client.fetch_bet_history.await_args
        assert call.args == (100, 4000)
        assert call.kwargs["start"] == played_at - timedelta(minutes=settings.HISTORY_OVERLAP_MINUTES)

    @pytest.mark.asyncio
    async def test_history_start_without_records_uses_fallback(self, db_session: Session, users, make_api_config):
        make_api_config("honorapi")
        client = fake_client([])

        before = utc_now()
        await engine_for(db_session, client).run_cycle(PARTNER_ID, "honorapi")
        after = utc_now()

        start = client.fetch_bet_history.await_args.kwargs["start"]
        fallback = timedelta(hours=settings.HISTORY_FALLBACK_HOURS)
        assert before - fallback <= start <= after - fallback

    @pytest.mark.asyncio
    async def test_history_start_is_capped(self, db_session: Session, users, make_api_config):
        make_api_config("oroplay")
        LedgerStoreGateway(db_session).upsert_bet_record(
            PARTNER_ID, users["alice"].id,
            bet_record(7, api_type="oroplay", played_at=utc_now() - timedelta(days=30)),
        )
        client = fake_client([])

        before = utc_now()
        await engine_for(db_session, client).run_cycle(PARTNER_ID, "oroplay")

        start = client.fetch_bet_history.await_args.kwargs["start"]
        assert start >= before - timedelta(hours=settings.HISTORY_MAX_LOOKBACK_HOURS)

    @pytest.mark.asyncio
    async def test_recent_cursor_still_reads_the_regular_lookback(
        self, db_session: Session, users, make_api_config
    ):
        make_api_config("oroplay")
        LedgerStoreGateway(db_session).upsert_bet_record(
            PARTNER_ID, users["alice"].id, bet_record(7, api_type="oroplay", played_at=utc_now())
        )
        client = fake_client([])

        lookback = timedelta(minutes=settings.HISTORY_LOOKBACK_MINUTES)
        before = utc_now()
        await engine_for(db_session, client).run_cycle(PARTNER_ID, "oroplay")
        after = utc_now()

        start = client.fetch_bet_history.await_args.kwargs["start"]
        assert before - lookback <= start <= after - lookback


class TestReconciliation:
    """Balance push after ingestion."""

    @pytest.mark.asyncio
    async def test_provider_balance_is_written_with_log(self, db_session: Session, users, make_api_config):
        make_api_config("oroplay")
        client = fake_client(
            [bet_record(1, api_type="oroplay")],
            player_balances={"alice": BalanceResult(balance=777.0)},
            operator_balance=BalanceResult(balance=50000.0),
        )
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "oroplay")

        assert result.reconciled_users == 1
        assert result.operator_balance == 50000.0
        assert balance_of(db_session, users["alice"]) == 777.0
        logs = db_session.query(PartnerBalanceLog).order_by(PartnerBalanceLog.id).all()
        assert [(log.user_id, log.amount) for log in logs] == [
            (users["alice"].id, 777.0 - 1000.0),
            (None, 50000.0),
        ]
        assert db_session.query(ApiConfig).one().balance == 50000.0

    @pytest.mark.asyncio
    async def test_one_failed_balance_does_not_block_others(self, db_session: Session, users, make_api_config):
        """Given alice's balance fails, bob is still reconciled and the cycle is partial."""
        make_api_config("oroplay")
        client = fake_client(
            [bet_record(1, username="alice", api_type="oroplay"), bet_record(2, username="bob", api_type="oroplay")],
            player_balances={
                "alice": BalanceResult(error=ProviderError("transport", "timeout")),
                "bob": BalanceResult(balance=650.0),
            },
        )
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "oroplay")

        assert result.status == "partial"
        assert result.reconcile_failures == 1
        assert result.reconciled_users == 1
        assert balance_of(db_session, users["alice"]) == 1000.0
        assert balance_of(db_session, users["bob"]) == 650.0
        assert db_session.query(GameRecord).count() == 2

    @pytest.mark.asyncio
    async def test_unsupported_balance_falls_back_to_latest_record(
        self, db_session: Session, users, make_api_config
    ):
        """The running balance of the user's newest record is used."""
        make_api_config("invest")
        client = fake_client([
            bet_record(5, balance_after=900.0),
            bet_record(9, balance_after=850.0),
            bet_record(7, balance_after=875.0),
        ])
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "invest")

        assert result.status == "success"
        assert balance_of(db_session, users["alice"]) == 850.0

    @pytest.mark.asyncio
    async def test_provider_without_running_balance_leaves_users_alone(
        self, db_session: Session, users, make_api_config
    ):
        make_api_config("familyapi")
        client = fake_client([bet_record(1, api_type="familyapi", balance_reported=False, balance_after=0.0)])
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "familyapi")

        assert result.status == "success"
        assert result.reconciled_users == 0
        assert balance_of(db_session, users["alice"]) == 1000.0
        assert db_session.query(PartnerBalanceLog).count() == 0

    @pytest.mark.asyncio
    async def test_no_reconcile_when_nothing_was_inserted(self, db_session: Session, users, make_api_config):
        make_api_config("oroplay")
        client = fake_client([], player_balances={"alice": BalanceResult(balance=1.0)})
        engine = engine_for(db_session, client)

        await engine.run_cycle(PARTNER_ID, "oroplay")

        client.fetch_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_users_with_sessions_when_configured(
        self, db_session: Session, users, make_api_config, make_session, monkeypatch
    ):
        from ledger_sync.core.config import settings

        monkeypatch.setattr(settings, "RECONCILE_ACTIVE_SESSIONS_ONLY", True)
        make_api_config("oroplay")
        make_session(users["bob"], "active", launched_at=datetime(2025, 10, 20, 5, 0))
        client = fake_client(
            [bet_record(1, username="alice", api_type="oroplay"), bet_record(2, username="bob", api_type="oroplay")],
            player_balances={"alice": BalanceResult(balance=1.0), "bob": BalanceResult(balance=2.0)},
        )
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "oroplay")

        assert result.reconciled_users == 1
        assert balance_of(db_session, users["alice"]) == 1000.0
        assert balance_of(db_session, users["bob"]) == 2.0


    @pytest.mark.asyncio
    async def test_balance_call_that_raises_stays_local_to_one_user(
        self, db_session: Session, users, make_api_config
    ):
        """An exception from alice's balance call leaves bob's reconcile and the records intact."""
        make_api_config("oroplay")
        client = fake_client(
            [bet_record(1, username="alice", api_type="oroplay"), bet_record(2, username="bob", api_type="oroplay")],
        )

        async def fetch_balance(identifier=None):
            if identifier == "alice":
                raise RateLimiterCleared("oroplay queue cleared")
            if identifier == "bob":
                return BalanceResult(balance=650.0)
            return BalanceResult(error=ProviderError("unsupported", "no operator balance"))

        client.fetch_balance.side_effect = fetch_balance
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "oroplay")

        assert result.status == "partial"
        assert result.reconcile_failures == 1
        assert result.reconciled_users == 1
        assert balance_of(db_session, users["bob"]) == 650.0
        assert db_session.query(GameRecord).count() == 2

    @pytest.mark.asyncio
    async def test_reconcile_uses_session_monitor_eligibility(
        self, db_session: Session, users, make_api_config, monkeypatch
    ):
        monkeypatch.setattr(settings, "RECONCILE_ACTIVE_SESSIONS_ONLY", True)
        monkeypatch.setattr(
            orchestrator.SessionStateMonitor, "eligible_user_ids", lambda self: {users["alice"].id}
        )
        make_api_config("oroplay")
        client = fake_client(
            [bet_record(1, username="alice", api_type="oroplay"), bet_record(2, username="bob", api_type="oroplay")],
            player_balances={"alice": BalanceResult(balance=1.0), "bob": BalanceResult(balance=2.0)},
        )

        result = await engine_for(db_session, client).run_cycle(PARTNER_ID, "oroplay")

        assert result.reconciled_users == 1
        assert balance_of(db_session, users["alice"]) == 1.0
        assert balance_of(db_session, users["bob"]) == 500.0


class TestFailures:

    @pytest.mark.asyncio
    async def test_fetch_error_fails_cycle_and_records_health(self, db_session: Session, users, make_api_config):
        make_api_config("invest")
        client = fake_client(history_error=ProviderError("transport", "read timeout"))
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "invest")

        assert result.status == "failed"
        assert "read timeout" in result.error
        metadata = db_session.query(SyncMetadata).one()
        assert metadata.last_sync_status == "failed"
        assert "read timeout" in metadata.error_message
        assert metadata.last_sync_completed_at is not None
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_cycle_and_records_health(
        self, db_session: Session, users, make_api_config
    ):
        """An exception out of the provider client is reported, never raised."""
        make_api_config("oroplay")
        client = fake_client()
        client.fetch_bet_history.side_effect = RateLimiterCleared("oroplay queue cleared")
        engine = engine_for(db_session, client)

        result = await engine.run_cycle(PARTNER_ID, "oroplay")

        assert result.status == "failed"
        assert "RateLimiterCleared" in result.error
        metadata = db_session.query(SyncMetadata).one()
        assert metadata.last_sync_status == "failed"
        assert orchestrator.is_in_flight(PARTNER_ID, "oroplay") is False
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_config_is_reported_without_health_row(self, db_session: Session, partner):
        engine = engine_for(db_session, fake_client())

        result = await engine.run_cycle(PARTNER_ID, "invest")

        assert result.status == "no_config"
        assert db_session.query(SyncMetadata).count() == 0

    @pytest.mark.asyncio
    async def test_inactive_config_is_treated_as_missing(self, db_session: Session, partner, make_api_config):
        make_api_config("invest", is_active=False)

        result = await engine_for(db_session, fake_client()).run_cycle(PARTNER_ID, "invest")

        assert result.status == "no_config"

    @pytest.mark.asyncio
    async def test_bad_credentials_fail_the_cycle(self, db_session: Session, partner, make_api_config):
        make_api_config("invest")

        def factory(config):
            raise ProviderConfigError("invest", "missing credentials: secret_key")

        result = await SyncEngine(db_session, client_factory=factory).run_cycle(PARTNER_ID, "invest")

        assert result.status == "failed"
        assert "secret_key" in result.error

    @pytest.mark.asyncio
    async def test_refreshed_token_is_persisted(self, db_session: Session, users, make_api_config):
        make_api_config("oroplay", token="old")
        client = fake_client()
        client.token_refreshed = True
        client.token_state = TokenState("fresh", datetime(2025, 10, 21, 0, 0))

        await engine_for(db_session, client).run_cycle(PARTNER_ID, "oroplay")

        config = db_session.query(ApiConfig).one()
        assert config.token == "fresh"
        assert config.token_expires_at == datetime(2025, 10, 21, 0, 0)


class TestInFlightGuard:

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, db_session: Session, users, make_api_config):
        """A tick for a pair whose cycle is running returns at once."""
        make_api_config("invest")
        release = asyncio.Event()
        client = fake_client([bet_record(1)])
        history = client.fetch_bet_history.return_value

        async def slow_history(since_id, limit, start=None):
            await release.wait()
            return history

        client.fetch_bet_history.side_effect = slow_history
        engine = engine_for(db_session, client)

        first = asyncio.create_task(engine.run_cycle(PARTNER_ID, "invest"))
        while not orchestrator.is_in_flight(PARTNER_ID, "invest"):
            await asyncio.sleep(0)

        second = await engine.run_cycle(PARTNER_ID, "invest")
        release.set()
        first_result = await first

        assert second.status == "skipped_in_flight"
        assert first_result.status == "success"
        assert not orchestrator.is_in_flight(PARTNER_ID, "invest")
        assert client.fetch_bet_history.await_count == 1


class TestBatchAndStatus:

    @pytest.mark.asyncio
    async def test_sync_all_runs_every_active_config(self, db_session: Session, users, make_api_config):
        make_api_config("invest")
        make_api_config("oroplay")
        clients = {
            "invest": fake_client([bet_record(1)]),
            "oroplay": fake_client(history_error=ProviderError("rejection", "bad token", 401)),
        }
        engine = SyncEngine(db_session, client_factory=lambda config: clients[config.api_provider])

        results = await engine.sync_all()

        assert [(r.api_type, r.status) for r in results] == [("invest", "success"), ("oroplay", "failed")]

        status = engine.get_sync_status()
        assert status["health_status"] == "degraded"
        assert status["total_jobs"] == 2
        assert status["success_count"] == 1
        assert status["status_by_job"] == {"success": 1, "failed": 1}
        assert status["totals"]["inserted"] == 1

    @pytest.mark.asyncio
    async def test_sync_all_for_one_provider(self, db_session: Session, users, make_api_config):
        make_api_config("invest")
        make_api_config("oroplay")
        engine = engine_for(db_session, fake_client())

        results = await engine.sync_all("oroplay")

        assert [r.api_type for r in results] == ["oroplay"]

    def test_status_without_history_is_healthy(self, db_session: Session, partner):
        status = SyncEngine(db_session).get_sync_status()

        assert status["health_status"] == "healthy"
        assert status["total_jobs"] == 0

    @pytest.mark.asyncio
    async def test_refresh_operator_balances(self, db_session: Session, partner, make_api_config):
        make_api_config("familyapi")
        make_api_config("invest")
        clients = {
            "familyapi": fake_client(operator_balance=BalanceResult(balance=1234.0)),
            "invest": fake_client(),
        }
        engine = SyncEngine(db_session, client_factory=lambda config: clients[config.api_provider])

        balances = await engine.refresh_operator_balances()

        assert balances == {f"familyapi:{PARTNER_ID}": 1234.0, f"invest:{PARTNER_ID}": None}
        config = db_session.query(ApiConfig).filter(ApiConfig.api_provider == "familyapi").one()
        assert config.balance == 1234.0
