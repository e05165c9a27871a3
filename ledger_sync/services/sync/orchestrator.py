"""Sync engine: pulls settled bets from game providers into the ledger.

One cycle for a (partner, provider) pair:
- Fetch: history newer than the highest stored external id; date-windowed
  providers read from a little before that record's play time
- Ingest: attribute each record to an internal user and insert it
  idempotently (duplicates are normal)
- Reconcile: push provider balances onto the users that just played, then
  refresh the operator's provider balance
- Record: persist any refreshed token and the pair's health row

Cycles never raise. Every failure ends the cycle with ``status='failed'``
and the next scheduled tick simply tries again; nothing is lost because
the cursor is recomputed from ``game_records``.

Intervals (see ``settings.SYNC_INTERVAL_*``):
- invest: 30s
- oroplay: 3s (the provider allows one call per second)
- familyapi: 4s
- honorapi: 34s
"""
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledger_sync.core.config import settings
from ledger_sync.core.exceptions import LedgerStoreError, ProviderConfigError
from ledger_sync.core.logging import correlation_scope, get_logger, new_cycle_id
from ledger_sync.core.metrics import record_ingestion, record_reconciliation, record_sync_cycle
from ledger_sync.models.schemas import BetRecord, ResolvedUser
from ledger_sync.repositories.ledger_gateway import LedgerStoreGateway
from ledger_sync.services.providers import BaseProviderClient, get_provider_client
from ledger_sync.services.sync.session_monitor import SessionStateMonitor
from ledger_sync.utils.timezone import utc_now

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SKIPPED_IN_FLIGHT = "skipped_in_flight"
STATUS_NO_CONFIG = "no_config"

SKIP_MISSING_USERNAME = "missing_username"
SKIP_UNRESOLVED_USER = "unresolved_user"
SKIP_INVALID_EXTERNAL_ID = "invalid_external_id"
SKIP_ERROR = "error"
SKIP_REASONS = (SKIP_MISSING_USERNAME, SKIP_UNRESOLVED_USER, SKIP_INVALID_EXTERNAL_ID, SKIP_ERROR)

BALANCE_SYNC_REASON = "provider_sync"

# Pairs with a cycle currently running in this process
_in_flight: Set[Tuple[str, str]] = set()

ClientFactory = Callable[..., BaseProviderClient]


@dataclass
class SyncCycleResult:
    """Outcome of one ``run_cycle``; also what the admin API returns."""
    partner_id: str
    api_type: str
    status: str
    cycle_id: str = ""
    since_id: int = 0
    fetched: int = 0
    success_count: int = 0
    duplicate_count: int = 0
    skip_counts: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(SKIP_REASONS, 0))
    reconciled_users: int = 0
    reconcile_failures: int = 0
    operator_balance: Optional[float] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def skipped(self) -> int:
        return sum(self.skip_counts.values())

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["skipped"] = self.skipped
        return data


def is_in_flight(partner_id: str, api_type: str) -> bool:
    return (partner_id, api_type) in _in_flight


class SyncEngine:
    """
    Runs sync cycles against the ledger.

    Usage:
        engine = SyncEngine(db)
        result = await engine.run_cycle(partner_id, "oroplay")
    """

    def __init__(self, db: Session, client_factory: ClientFactory = get_provider_client):
        """
        Args:
            db: SQLAlchemy session used for the whole engine lifetime
            client_factory: Builds a provider client from an ``ApiConfig``
        """
        self.db = db
        self.gateway = LedgerStoreGateway(db)
        self.client_factory = client_factory

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, partner_id: str, api_type: str) -> SyncCycleResult:
        """
        Run one fetch/ingest/reconcile cycle for a pair.

        Returns immediately with ``skipped_in_flight`` when a cycle for the
        same pair is already running.
        """
        key = (partner_id, api_type)
        if key in _in_flight:
            logger.info(f"[{api_type}] cycle for partner {partner_id} still running; tick skipped")
            return SyncCycleResult(partner_id, api_type, STATUS_SKIPPED_IN_FLIGHT)

        _in_flight.add(key)
        started = time.monotonic()
        try:
            with correlation_scope(new_cycle_id(partner_id, api_type)) as cycle_id:
                result = SyncCycleResult(partner_id, api_type, STATUS_SUCCESS, cycle_id=cycle_id)
                try:
                    await self._run_phases(result)
                except (LedgerStoreError, SQLAlchemyError) as e:
                    self.gateway.rollback()
                    result.status = STATUS_FAILED
                    result.error = str(e)
                    logger.error(f"[{api_type}] ledger store failure, retrying next tick: {e}")
                except Exception as e:
                    self.gateway.rollback()
                    result.status = STATUS_FAILED
                    result.error = f"{type(e).__name__}: {e}"
                    logger.exception(f"[{api_type}] cycle aborted, retrying next tick")

                result.duration_ms = int((time.monotonic() - started) * 1000)
                if result.status != STATUS_NO_CONFIG:
                    self._record_health(result)
                    record_sync_cycle(api_type, result.status, result.duration_ms / 1000)

                logger.info(
                    f"[{api_type}] cycle {result.status}: fetched={result.fetched} "
                    f"inserted={result.success_count} duplicate={result.duplicate_count} "
                    f"skipped={result.skipped} reconciled={result.reconciled_users} "
                    f"({result.duration_ms}ms)",
                    extra={"partner_id": partner_id, "api_type": api_type},
                )
                return result
        finally:
            _in_flight.discard(key)

    async def _run_phases(self, result: SyncCycleResult) -> None:
        partner_id, api_type = result.partner_id, result.api_type

        config = self.gateway.get_api_config(partner_id, api_type)
        if config is None or not config.is_active:
            result.status = STATUS_NO_CONFIG
            result.error = f"no active {api_type} config for partner {partner_id}"
            logger.warning(result.error)
            return

        try:
            client = self.client_factory(config)
        except ProviderConfigError as e:
            result.status = STATUS_FAILED
            result.error = str(e)
            logger.error(f"[{api_type}] cannot build client: {e}")
            return

        # Committed up front: a duplicate insert rolls back the session
        metadata = self.gateway.get_or_create_sync_metadata(partner_id, api_type)
        metadata.last_sync_started_at = utc_now()
        metadata.last_sync_status = "in_progress"
        self.gateway.save()

        try:
            result.since_id = self.gateway.get_last_external_id(partner_id, api_type)
            start = self._history_start(partner_id, api_type)
            history = await client.fetch_bet_history(result.since_id, client.max_history_limit, start=start)

            if not history.ok:
                result.status = STATUS_FAILED
                result.error = str(history.error)
                logger.warning(f"[{api_type}] fetch failed after cursor {result.since_id}: {history.error}")
            else:
                result.fetched = len(history.records)
                inserted = self._ingest(result, history.records)

                if result.success_count > 0:
                    await self._reconcile_users(client, result, inserted)
                    result.operator_balance = await self._refresh_operator_balance(client, partner_id, api_type)

                if result.skip_counts[SKIP_ERROR] or result.reconcile_failures:
                    result.status = STATUS_PARTIAL

            self._persist_token(client, partner_id, api_type)
        finally:
            await client.close()

    def _history_start(self, partner_id: str, api_type: str) -> datetime:
        """
        Earliest play time date-windowed providers are asked for.

        Reaches back to a little before the newest stored bet so that bets
        missed during an outage are picked up, never less than the regular
        lookback and never more than ``HISTORY_MAX_LOOKBACK_HOURS``.
        """
        now = utc_now()
        last_played_at = self.gateway.get_last_played_at(partner_id, api_type)
        if last_played_at is None:
            return now - timedelta(hours=settings.HISTORY_FALLBACK_HOURS)

        start = min(
            last_played_at - timedelta(minutes=settings.HISTORY_OVERLAP_MINUTES),
            now - timedelta(minutes=settings.HISTORY_LOOKBACK_MINUTES),
        )
        return max(start, now - timedelta(hours=settings.HISTORY_MAX_LOOKBACK_HOURS))

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _ingest(self, result: SyncCycleResult, records: List[BetRecord]) -> Dict[str, Tuple[ResolvedUser, BetRecord]]:
        """
        Insert records one by one and tally outcomes.

        Returns:
            username -> (user, that user's inserted record with the largest external id)
        """
        api_type = result.api_type
        users = self.gateway.resolve_users_by_username(r.username for r in records)
        inserted: Dict[str, Tuple[ResolvedUser, BetRecord]] = {}

        for record in records:
            if not record.username:
                reason = SKIP_MISSING_USERNAME
            elif record.username not in users:
                reason = SKIP_UNRESOLVED_USER
            elif record.external_id is None:
                reason = SKIP_INVALID_EXTERNAL_ID
            else:
                reason = None

            if reason is not None:
                result.skip_counts[reason] += 1
                logger.debug(f"[{api_type}] record {record.raw_external_id!r} skipped: {reason}")
                continue

            user = users[record.username]
            try:
                outcome = self.gateway.upsert_bet_record(result.partner_id, user.user_id, record)
            except Exception as e:
                result.skip_counts[SKIP_ERROR] += 1
                logger.error(f"[{api_type}] record {record.external_id} not stored: {e}")
                continue

            if outcome.duplicate:
                result.duplicate_count += 1
                continue

            result.success_count += 1
            current = inserted.get(record.username)
            if current is None or record.external_id > current[1].external_id:
                inserted[record.username] = (user, record)

        record_ingestion(api_type, "inserted", result.success_count)
        record_ingestion(api_type, "duplicate", result.duplicate_count)
        for reason, count in result.skip_counts.items():
            record_ingestion(api_type, reason, count)

        return inserted

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def _reconcile_users(
        self,
        client: BaseProviderClient,
        result: SyncCycleResult,
        inserted: Dict[str, Tuple[ResolvedUser, BetRecord]],
    ) -> None:
        """Push the provider's view of each player's balance onto the internal account."""
        api_type = result.api_type
        eligible = None
        if settings.RECONCILE_ACTIVE_SESSIONS_ONLY:
            eligible = SessionStateMonitor(self.db).eligible_user_ids()

        for username, (user, latest) in inserted.items():
            if eligible is not None and user.user_id not in eligible:
                continue

            try:
                balance = await client.fetch_balance(username)
            except Exception as e:
                result.reconcile_failures += 1
                record_reconciliation(api_type, "user", "failure")
                logger.error(f"[{api_type}] balance fetch for {username} raised: {e!r}")
                continue

            if balance.ok:
                new_balance = balance.balance
            elif balance.error.kind == "unsupported":
                if not latest.balance_reported:
                    record_reconciliation(api_type, "user", "skipped")
                    continue
                new_balance = latest.balance_after
            else:
                result.reconcile_failures += 1
                record_reconciliation(api_type, "user", "failure")
                logger.warning(f"[{api_type}] balance for {username} unavailable: {balance.error}")
                continue

            try:
                self.gateway.update_user_balance(
                    user.user_id,
                    new_balance,
                    partner_id=result.partner_id,
                    api_provider=api_type,
                    reason=BALANCE_SYNC_REASON,
                    memo=f"cycle {result.cycle_id}",
                )
            except LedgerStoreError as e:
                result.reconcile_failures += 1
                record_reconciliation(api_type, "user", "failure")
                logger.error(f"[{api_type}] balance write for {username} failed: {e}")
                continue

            result.reconciled_users += 1
            record_reconciliation(api_type, "user", "success")

    async def _refresh_operator_balance(
        self, client: BaseProviderClient, partner_id: str, api_type: str
    ) -> Optional[float]:
        balance = await client.fetch_balance()
        if not balance.ok:
            outcome = "skipped" if balance.error and balance.error.kind == "unsupported" else "failure"
            record_reconciliation(api_type, "operator", outcome)
            if outcome == "failure":
                logger.warning(f"[{api_type}] operator balance for {partner_id} unavailable: {balance.error}")
            return None

        try:
            self.gateway.update_account_balance(partner_id, api_type, balance.balance, reason=BALANCE_SYNC_REASON)
        except LedgerStoreError as e:
            record_reconciliation(api_type, "operator", "failure")
            logger.error(f"[{api_type}] operator balance write for {partner_id} failed: {e}")
            return None

        record_reconciliation(api_type, "operator", "success")
        return balance.balance

    def _persist_token(self, client: BaseProviderClient, partner_id: str, api_type: str) -> None:
        if client.token_refreshed and client.token_state is not None:
            self.gateway.save_token_state(
                partner_id, api_type, client.token_state.token, client.token_state.expires_at
            )

    def _record_health(self, result: SyncCycleResult) -> None:
        try:
            metadata = self.gateway.get_or_create_sync_metadata(result.partner_id, result.api_type)
            metadata.last_sync_completed_at = utc_now()
            metadata.last_sync_status = result.status
            metadata.records_processed = result.fetched
            metadata.records_inserted = result.success_count
            metadata.records_duplicate = result.duplicate_count
            metadata.records_skipped = result.skipped
            metadata.error_message = result.error
            metadata.sync_duration_ms = result.duration_ms
            self.gateway.save()
        except LedgerStoreError as e:
            logger.error(f"[{result.api_type}] health row not updated: {e}")

    # ------------------------------------------------------------------
    # Batch entry points
    # ------------------------------------------------------------------

    async def sync_all(self, api_type: Optional[str] = None) -> List[SyncCycleResult]:
        """Run one cycle for every active config, optionally for one provider only."""
        try:
            configs = self.gateway.list_active_api_configs(api_type)
        except SQLAlchemyError as e:
            logger.error(f"cannot list api configs: {e}")
            return []

        pairs = [(c.partner_id, c.api_provider) for c in configs]
        results = []
        for partner_id, provider in pairs:
            results.append(await self.run_cycle(partner_id, provider))
        return results

    async def force_sync(self, partner_id: str, api_type: str) -> SyncCycleResult:
        """Manual trigger from the admin API; same guard as scheduled ticks."""
        logger.info(f"[{api_type}] manual sync requested for partner {partner_id}")
        return await self.run_cycle(partner_id, api_type)

    async def refresh_operator_balance(self, partner_id: str, api_type: str) -> Optional[float]:
        """Refresh one operator balance outside a sync cycle."""
        config = self.gateway.get_api_config(partner_id, api_type)
        if config is None or not config.is_active:
            logger.warning(f"no active {api_type} config for partner {partner_id}")
            return None

        try:
            client = self.client_factory(config)
        except ProviderConfigError as e:
            logger.error(f"[{api_type}] cannot build client: {e}")
            return None

        try:
            balance = await self._refresh_operator_balance(client, partner_id, api_type)
            self._persist_token(client, partner_id, api_type)
        except LedgerStoreError as e:
            self.gateway.rollback()
            logger.error(f"[{api_type}] token not saved for {partner_id}: {e}")
            balance = None
        finally:
            await client.close()
        return balance

    async def refresh_operator_balances(self, api_type: Optional[str] = None) -> Dict[str, Optional[float]]:
        """
        Refresh every active operator balance.

        Returns:
            ``"{api_type}:{partner_id}"`` -> new balance (None when unavailable)
        """
        pairs = [(c.partner_id, c.api_provider) for c in self.gateway.list_active_api_configs(api_type)]
        balances = {}
        for partner_id, provider in pairs:
            balances[f"{provider}:{partner_id}"] = await self.refresh_operator_balance(partner_id, provider)
        return balances

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_sync_status(self) -> Dict:
        """
        Aggregate the health rows of every pair.

        Returns:
            Dict with overall health, counts by status and per-pair details
        """
        all_metadata = self.gateway.list_sync_metadata()

        status_counts: Dict[str, int] = {}
        pairs = []
        for m in all_metadata:
            status = m.last_sync_status or "never"
            status_counts[status] = status_counts.get(status, 0) + 1
            pairs.append({
                "partner_id": m.partner_id,
                "api_type": m.api_type,
                "status": status,
                "in_flight": is_in_flight(m.partner_id, m.api_type),
                "last_sync_started_at": m.last_sync_started_at.isoformat() if m.last_sync_started_at else None,
                "last_sync_completed_at": m.last_sync_completed_at.isoformat() if m.last_sync_completed_at else None,
                "records_processed": m.records_processed,
                "records_inserted": m.records_inserted,
                "records_duplicate": m.records_duplicate,
                "records_skipped": m.records_skipped,
                "error_message": m.error_message,
                "sync_duration_ms": m.sync_duration_ms,
            })

        total_jobs = len(all_metadata)
        success_count = sum(1 for m in all_metadata if m.last_sync_status == STATUS_SUCCESS)
        if total_jobs == 0 or success_count == total_jobs:
            health_status = "healthy"
        elif success_count > 0:
            health_status = "degraded"
        else:
            health_status = "unhealthy"

        return {
            "health_status": health_status,
            "total_jobs": total_jobs,
            "success_count": success_count,
            "status_by_job": status_counts,
            "pairs": pairs,
            "totals": {
                "processed": sum(m.records_processed or 0 for m in all_metadata),
                "inserted": sum(m.records_inserted or 0 for m in all_metadata),
                "duplicate": sum(m.records_duplicate or 0 for m in all_metadata),
                "skipped": sum(m.records_skipped or 0 for m in all_metadata),
            },
        }
