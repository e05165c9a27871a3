"""
Ledger sync layer.

Key components:
- Orchestrator: ``SyncEngine`` runs fetch/ingest/reconcile cycles per
  (partner, provider) pair
- Session monitor: moves game launch sessions between active and paused
"""
