"""
Game provider clients.

One client per provider, all built on ``BaseProviderClient``:
- invest_client: index-paged history, MD5 signatures, static token
- oroplay_client: date-paged history, expiring bearer token, 1 call/s
- familyapi_client: debit/credit transactions, operator balance only
- honorapi_client: hourly transaction windows, static bearer key

Use ``get_provider_client`` rather than instantiating clients directly so
rate limiters are shared per provider.
"""
from typing import Dict, Optional, Type

from ledger_sync.core.exceptions import UnknownProviderError
from ledger_sync.services.core.rate_limiter import RateLimiter, get_rate_limiter
from ledger_sync.services.providers.base_client import (
    BalanceResult,
    BaseProviderClient,
    BetHistoryResult,
    ProviderError,
    TokenState,
)
from ledger_sync.services.providers.familyapi_client import FamilyApiClient
from ledger_sync.services.providers.honorapi_client import HonorApiClient
from ledger_sync.services.providers.invest_client import InvestClient
from ledger_sync.services.providers.oroplay_client import OroPlayClient

PROVIDER_CLIENTS: Dict[str, Type[BaseProviderClient]] = {
    InvestClient.api_type: InvestClient,
    OroPlayClient.api_type: OroPlayClient,
    FamilyApiClient.api_type: FamilyApiClient,
    HonorApiClient.api_type: HonorApiClient,
}

SUPPORTED_PROVIDERS = tuple(PROVIDER_CLIENTS)


def get_provider_client(api_config, rate_limiter: Optional[RateLimiter] = None, **kwargs) -> BaseProviderClient:
    """
    Build the client for an ``api_configs`` row.

    The provider's shared rate limiter is used unless one is passed in.

    Raises:
        UnknownProviderError: if ``api_config.api_provider`` has no client
        ProviderConfigError: if the config lacks required credentials
    """
    client_cls = PROVIDER_CLIENTS.get(api_config.api_provider)
    if client_cls is None:
        raise UnknownProviderError(api_config.api_provider)

    if rate_limiter is None:
        rate_limiter = get_rate_limiter(api_config.api_provider)
    return client_cls(api_config, rate_limiter=rate_limiter, **kwargs)


__all__ = [
    "BalanceResult",
    "BaseProviderClient",
    "BetHistoryResult",
    "ProviderError",
    "TokenState",
    "InvestClient",
    "OroPlayClient",
    "FamilyApiClient",
    "HonorApiClient",
    "PROVIDER_CLIENTS",
    "SUPPORTED_PROVIDERS",
    "get_provider_client",
]
