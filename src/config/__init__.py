"""
Configuration package.

Frozen msgspec structs for every config section plus the YAML/.env loader.
"""

from .config_manager import HftConfig, get_config
from .structs import (
    NetworkConfig,
    WebSocketConfig,
    ExchangeCredentials,
    VenueConfig,
    GatewayConnectionConfig,
    ContractConfig,
    BalanceConfig,
    RateLimitConfig,
    CacheConfig,
    IbkrConfig,
)

__all__ = [
    'HftConfig',
    'get_config',
    'NetworkConfig',
    'WebSocketConfig',
    'ExchangeCredentials',
    'VenueConfig',
    'GatewayConnectionConfig',
    'ContractConfig',
    'BalanceConfig',
    'RateLimitConfig',
    'CacheConfig',
    'IbkrConfig',
]
