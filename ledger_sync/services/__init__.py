"""
Services for the partner ledger sync.

- core: provider-agnostic building blocks (rate limiter)
- providers: one client per game provider
- sync: sync engine and game session monitor
"""
