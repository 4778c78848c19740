"""
Core configuration constants for the DUT posix server.

Single source of truth for the RPC listen address and runtime limits.
"""

import os
from ipaddress import ip_address
from typing import Dict, Any


# Default configuration - all required keys with correct types
CONFIG = {
    # RPC transport (TCP, newline-delimited JSON)
    "RPC_HOST": "127.0.0.1",
    "RPC_PORT": 40000,       # 0 lets the OS pick an ephemeral port
    "RPC_BACKLOG": 16,

    # Requests in flight per driver connection before the reader stops pulling lines.
    "RPC_MAX_INFLIGHT": 64,

    # Longest request line accepted from a driver; longer lines drop the connection.
    "RPC_MAX_LINE_BYTES": 1 << 20,

    # Upper bound for Recv/GetSockOpt buffer lengths requested by a driver.
    "RECV_MAX_LEN": 1 << 20,

    # Log every dispatched call at INFO instead of DEBUG.
    "LOG_CALLS": False,

    # Period of --status-file snapshots (seconds)
    "STATUS_INTERVAL_S": 5.0,
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "RPC_HOST": str,
    "RPC_PORT": int,
    "RPC_BACKLOG": int,
    "RPC_MAX_INFLIGHT": int,
    "RPC_MAX_LINE_BYTES": int,
    "RECV_MAX_LEN": int,
    "LOG_CALLS": bool,
    "STATUS_INTERVAL_S": float,
}

# Keys that can be overridden by environment variables
_ENV_OVERRIDABLE = {
    "RPC_HOST",
    "RPC_PORT",
    "RPC_MAX_INFLIGHT",
    "RPC_MAX_LINE_BYTES",
    "RECV_MAX_LEN",
    "LOG_CALLS",
}


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise NotImplementedError("<reason>") on any violation.
    No return value on success.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise NotImplementedError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if expected_type is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise NotImplementedError(
                    f"CONFIG[{key}] must be float seconds, got {type(value).__name__}"
                )
            continue
        # bool is an int subclass; reject it where an int is expected
        if expected_type is int and isinstance(value, bool):
            raise NotImplementedError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise NotImplementedError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    if not (0 <= cfg["RPC_PORT"] <= 65535):
        raise NotImplementedError(f"CONFIG[RPC_PORT] must be valid port (0-65535), got {cfg['RPC_PORT']}")

    if cfg["RPC_BACKLOG"] < 1:
        raise NotImplementedError(f"CONFIG[RPC_BACKLOG] must be >= 1, got {cfg['RPC_BACKLOG']}")

    if cfg["RPC_MAX_INFLIGHT"] < 1:
        raise NotImplementedError(f"CONFIG[RPC_MAX_INFLIGHT] must be >= 1, got {cfg['RPC_MAX_INFLIGHT']}")

    if cfg["RPC_MAX_LINE_BYTES"] < 1024:
        raise NotImplementedError(
            f"CONFIG[RPC_MAX_LINE_BYTES] must be >= 1024, got {cfg['RPC_MAX_LINE_BYTES']}"
        )

    if cfg["RECV_MAX_LEN"] < 1:
        raise NotImplementedError(f"CONFIG[RECV_MAX_LEN] must be >= 1, got {cfg['RECV_MAX_LEN']}")

    if cfg["STATUS_INTERVAL_S"] <= 0:
        raise NotImplementedError(
            f"CONFIG[STATUS_INTERVAL_S] must be positive, got {cfg['STATUS_INTERVAL_S']}"
        )

    host = cfg["RPC_HOST"]
    if not host:
        raise NotImplementedError(f"CONFIG[RPC_HOST] must be non-empty string, got {repr(host)}")
    try:
        ip_address(host)
    except ValueError as exc:
        raise NotImplementedError(f"CONFIG[RPC_HOST] must be a valid IP address: {exc}")


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        env_var = key
        if env_var in os.environ:
            env_value = os.environ[env_var]
            expected_type = _REQUIRED_KEYS[key]

            try:
                if expected_type == int:
                    result[key] = int(env_value)
                elif expected_type == str:
                    result[key] = str(env_value)
                elif expected_type == bool:
                    lowered = str(env_value).strip().lower()
                    if lowered in {"1", "true", "yes", "on"}:
                        result[key] = True
                    elif lowered in {"0", "false", "no", "off"}:
                        result[key] = False
                    else:
                        raise ValueError(f"invalid boolean literal: {env_value}")
                elif expected_type == float:
                    result[key] = float(env_value)
                else:
                    raise NotImplementedError(f"Unsupported type for env override: {expected_type}")
            except ValueError:
                raise NotImplementedError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
