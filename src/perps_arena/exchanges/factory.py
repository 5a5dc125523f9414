"""Builds a perps data provider from a competition's data source configuration."""

import logging
from typing import Any, Dict

from perps_arena.config import config
from perps_arena.exceptions import InvalidConfigurationError
from perps_arena.exchanges.base import PerpsDataProvider

logger = logging.getLogger(__name__)

DATA_SOURCE_TYPES = ("external_api", "onchain_indexing", "hybrid")


def validate_provider_config(provider_config: Any) -> Dict[str, Any]:
    """
    Check the shape of a data source configuration.

    ``type`` must be one of external_api, onchain_indexing or hybrid, and
    external_api sources must name a ``provider``.
    """
    if not isinstance(provider_config, dict):
        raise InvalidConfigurationError("Provider configuration must be an object")

    source_type = provider_config.get("type")
    if source_type not in DATA_SOURCE_TYPES:
        raise InvalidConfigurationError(f"Invalid data source type: {source_type!r}")

    if source_type == "external_api" and not isinstance(provider_config.get("provider"), str):
        raise InvalidConfigurationError("external_api data sources require a provider name")

    return provider_config


def create_provider(provider_config: Dict[str, Any], timeout: float = 30.0) -> PerpsDataProvider:
    """
    Create the provider named by a validated data source configuration.

    Args:
        provider_config: ``{"type": ..., "provider": ..., "api_url": ...}``
        timeout: Per-request timeout passed to the provider

    Raises:
        InvalidConfigurationError: Malformed configuration or unsupported provider
    """
    validate_provider_config(provider_config)

    if provider_config["type"] != "external_api":
        raise InvalidConfigurationError(
            f"Data source type {provider_config['type']} is not supported yet"
        )

    name = provider_config["provider"].lower()

    if name == "hyperliquid":
        from perps_arena.exchanges.hyperliquid import HyperliquidPerpsProvider
        return HyperliquidPerpsProvider(
            api_url=provider_config.get("api_url") or config.hyperliquid_api_url,
            timeout=timeout
        )

    if name == "binance":
        from perps_arena.exchanges.binance_client import BinanceFuturesProvider
        try:
            api_key, secret_key = config.get_binance_credentials()
        except ValueError as e:
            raise InvalidConfigurationError(str(e)) from e
        return BinanceFuturesProvider(
            api_key=api_key,
            secret_key=secret_key,
            testnet=provider_config.get("testnet", config.binance_testnet),
            timeout=timeout
        )

    raise InvalidConfigurationError(f"Unknown perps provider: {provider_config['provider']}")
