"""
Core services shared by every provider.

- rate_limiter: FIFO call pacing for providers with strict quotas
"""
from ledger_sync.services.core.rate_limiter import RateLimiter, get_rate_limiter

__all__ = ["RateLimiter", "get_rate_limiter"]
