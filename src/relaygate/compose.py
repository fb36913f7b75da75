"""Composition helpers for running the gateway.

Configuration priority:
1. Function arguments (highest)
2. Environment variables (RELAYGATE_*)
3. YAML config file (``config_file`` or RELAYGATE_CONFIG)
4. GatewayConfig defaults
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from relaygate.gateway.admission import RateLimitPolicy
from relaygate.gateway.server import GatewayConfig, GatewayServer

logger = logging.getLogger(__name__)

# Settings that can only come from the config file
FILE_ONLY_KEYS = (
    "api_version",
    "default_embeddings_model",
    "connect_timeout",
    "read_timeout",
    "retry_attempts",
    "retry_base_delay",
    "max_body_size",
    "scan_threshold",
    "scan_window",
    "block_duration",
    "models_cache_ttl",
    "embeddings_cache_ttl",
    "cache_max_entries",
)


async def _load_gateway_config(
    config_file: str | None,
    env_config_key: str = "RELAYGATE_CONFIG",
) -> tuple[dict[str, Any], Callable[[Any, str, str, Any], Any]]:
    """Load the YAML config file and return (file_config, get_value_fn).

    The get_value function resolves one setting with priority
    arg > env > file > default.
    """
    file_config: dict[str, Any] = {}
    config_path = config_file or os.environ.get(env_config_key)
    if config_path:
        try:
            content = await asyncio.to_thread(Path(config_path).read_text)
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_path)
        else:
            loaded = yaml.safe_load(content) or {}
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {config_path} must contain a mapping")
            file_config = loaded

    def get_value(arg: Any, env_key: str, file_key: str, default: Any) -> Any:
        if arg is not None:
            return arg
        env_val = os.environ.get(env_key)
        if env_val:
            return env_val
        file_val = file_config.get(file_key)
        if file_val is not None:
            return file_val
        return default

    return file_config, get_value


def _rate_limits(raw: Any) -> dict[str, RateLimitPolicy] | None:
    """``{class: {max_requests: N, window: S}}`` -> policies."""
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ValueError("rate_limits must be a mapping of endpoint class to policy")
    return {
        name: RateLimitPolicy(
            max_requests=int(policy["max_requests"]),
            window=float(policy.get("window", 60.0)),
        )
        for name, policy in raw.items()
    }


async def load_gateway_config(
    host: str | None = None,
    port: int | None = None,
    upstream_url: str | None = None,
    default_model: str | None = None,
    admin_token: str | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
) -> GatewayConfig:
    """Build a GatewayConfig from arguments, environment and config file."""
    file_config, get_value = await _load_gateway_config(config_file)
    defaults = GatewayConfig()

    config = GatewayConfig(
        host=get_value(host, "RELAYGATE_HOST", "host", defaults.host),
        port=int(get_value(port, "RELAYGATE_PORT", "port", defaults.port)),
        upstream_base_url=get_value(
            upstream_url, "RELAYGATE_UPSTREAM_URL", "upstream_base_url", defaults.upstream_base_url
        ),
        default_model=get_value(
            default_model, "RELAYGATE_DEFAULT_MODEL", "default_model", defaults.default_model
        ),
        admin_token=get_value(admin_token, "RELAYGATE_ADMIN_TOKEN", "admin_token", None),
        debug_dir=get_value(debug_dir, "RELAYGATE_DEBUG_DIR", "debug_dir", None),
    )

    overrides: dict[str, Any] = {
        key: type(getattr(defaults, key))(file_config[key])
        for key in FILE_ONLY_KEYS
        if file_config.get(key) is not None
    }
    rate_limits = _rate_limits(file_config.get("rate_limits"))
    if rate_limits:
        overrides["rate_limits"] = {**defaults.rate_limits, **rate_limits}

    return dataclasses.replace(config, **overrides) if overrides else config


async def create_gateway(
    host: str | None = None,
    port: int | None = None,
    upstream_url: str | None = None,
    default_model: str | None = None,
    admin_token: str | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
) -> None:
    """Create and run the gateway until stopped.

    Example:
        >>> # export RELAYGATE_PORT=8080
        >>> await create_gateway()
        >>>
        >>> # Or with explicit arguments
        >>> await create_gateway(port=8080, admin_token="secret")
    """
    config = await load_gateway_config(
        host=host,
        port=port,
        upstream_url=upstream_url,
        default_model=default_model,
        admin_token=admin_token,
        debug_dir=debug_dir,
        config_file=config_file,
    )
    server = GatewayServer(config=config)
    await server.serve()
