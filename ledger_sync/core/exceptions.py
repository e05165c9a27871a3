"""Exception hierarchy for the ledger sync service.

Expected provider failures (timeouts, 4xx/5xx, rejected credentials) are
NOT raised. Provider clients return them as ``ProviderError`` values so a
failing provider can never crash a sync cycle. Exceptions here are reserved
for configuration mistakes and store-level faults.
"""


class LedgerSyncError(Exception):
    """Base class for all ledger sync errors."""


class ProviderConfigError(LedgerSyncError):
    """A provider client was built with missing or invalid credentials."""

    def __init__(self, api_type: str, message: str):
        self.api_type = api_type
        super().__init__(f"[{api_type}] {message}")


class UnknownProviderError(ProviderConfigError):
    """No client is registered for the requested api_type."""

    def __init__(self, api_type: str):
        super().__init__(api_type, f"no provider client registered for '{api_type}'")


class LedgerStoreError(LedgerSyncError):
    """A ledger store operation failed; the cycle should be retried next tick."""


class RateLimiterCleared(LedgerSyncError):
    """A queued task was dropped by ``RateLimiter.clear()`` before it started."""
