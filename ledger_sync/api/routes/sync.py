"""Sync API routes for ledger sync health and manual control.

Provides endpoints for:
- Sync health monitoring
- Manual sync and operator balance triggers
- Running the session monitor on demand
- Rate limiter and scheduler diagnostics
"""
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ledger_sync.core.auth import require_admin
from ledger_sync.core.database import get_db
from ledger_sync.core.logging import get_logger
from ledger_sync.core.scheduler import get_scheduler
from ledger_sync.services.core.rate_limiter import get_rate_limiter_status
from ledger_sync.services.providers import SUPPORTED_PROVIDERS
from ledger_sync.services.sync.orchestrator import STATUS_NO_CONFIG, SyncEngine
from ledger_sync.services.sync.session_monitor import SessionStateMonitor

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_engine(db: Session = Depends(get_db)) -> SyncEngine:
    """Dependency to get a sync engine instance."""
    return SyncEngine(db)


def _check_provider(api_type: str) -> None:
    if api_type not in SUPPORTED_PROVIDERS:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown provider '{api_type}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )


@router.get("/status")
async def get_sync_status(engine: SyncEngine = Depends(get_engine)) -> Dict:
    """
    Get overall sync health status dashboard.

    Returns aggregated status from all (partner, provider) pairs including:
    - Health status (healthy, degraded, unhealthy)
    - Last sync times and record counts per pair
    - Whether a cycle is currently running
    """
    return engine.get_sync_status()


@router.get("/rate-limiters")
async def rate_limiter_status() -> Dict:
    """Queue length and pacing of every provider rate limiter."""
    return {"rate_limiters": get_rate_limiter_status()}


@router.get("/scheduler/status")
async def get_scheduler_status() -> Dict:
    """Current state of the automation scheduler and its jobs."""
    scheduler = get_scheduler()
    if scheduler is None:
        return {
            'running': False,
            'message': 'Scheduler not initialized'
        }
    return scheduler.status()


@router.post("/sessions/monitor")
async def run_session_monitor(
    db: Session = Depends(get_db),
    _admin: str = Depends(require_admin),
) -> Dict:
    """
    Run one pass of the game session state monitor.

    Returns:
        Transition counts (checked, activated, paused, refreshed)
    """
    counts = SessionStateMonitor(db).run()
    logger.info(f"Manual session monitor run: {counts}")
    return {'message': 'Session monitor completed', 'results': counts}


@router.post("/{partner_id}/{api_type}")
async def trigger_sync(
    partner_id: str,
    api_type: str,
    engine: SyncEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> Dict:
    """
    Manually trigger one sync cycle for a partner and provider.

    A cycle already running for the pair is not interrupted; the response
    reports ``skipped_in_flight`` instead.
    """
    _check_provider(api_type)
    result = await engine.force_sync(partner_id, api_type)

    if result.status == STATUS_NO_CONFIG:
        raise HTTPException(status_code=404, detail=result.error)

    return {
        'message': f'Sync {result.status}',
        'results': result.to_dict()
    }


@router.post("/{partner_id}/{api_type}/balance")
async def trigger_operator_balance(
    partner_id: str,
    api_type: str,
    engine: SyncEngine = Depends(get_engine),
    _admin: str = Depends(require_admin),
) -> Dict:
    """
    Refresh one operator's balance held at a provider.

    Returns:
        The new balance, or 502 when the provider could not supply one
    """
    _check_provider(api_type)
    if engine.gateway.get_api_config(partner_id, api_type) is None:
        raise HTTPException(status_code=404, detail=f"No {api_type} config for partner {partner_id}")

    balance = await engine.refresh_operator_balance(partner_id, api_type)
    if balance is None:
        raise HTTPException(status_code=502, detail=f"{api_type} did not return an operator balance")

    return {
        'partner_id': partner_id,
        'api_type': api_type,
        'balance': balance
    }
