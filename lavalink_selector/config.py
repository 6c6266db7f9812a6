import os
from copy import deepcopy
from typing import Any, Dict, Iterable, Optional, Tuple


DEFAULT_CONFIG: Dict[str, Any] = {
    "source": {
        "path": "lavalink server lis.txt",
        "request_timeout": 15,
    },
    "probe": {
        "strategy": "http",
        "timeout_ms": 5000,
        "samples": 3,
        "sample_interval_ms": 100,
        "verify_tls": True,
        "fetch_stats": True,
        "user_agent": "Lavalink-Selector/1.0",
    },
    "scheduler": {
        "batch_size": 5,
    },
    "selection": {
        "top_count": 5,
        "require_major_version": None,
    },
    "persister": {
        "env_path": ".env",
        "keys": {
            "host": "LAVALINK_HOST",
            "port": "LAVALINK_PORT",
            "password": "LAVALINK_PASSWORD",
            "secure": "LAVALINK_SECURE",
        },
        "canonical_order": [
            "DISCORD_TOKEN",
            "CLIENT_ID",
            "OWNER_ID",
            "LAVALINK_HOST",
            "LAVALINK_PORT",
            "LAVALINK_PASSWORD",
            "LAVALINK_SECURE",
            "PREFIX",
            "BOT_ACTIVITY",
            "BOT_STATUS",
            "GENIUS_CLIENT_ID",
            "API_PORT",
        ],
    },
    "runner": {
        "restart_command": None,
    },
    "logging": {
        "level": "INFO",
        "directory": "logs",
        "filename": "selector.log",
        "max_bytes": 2 * 1024 * 1024,
        "backup_count": 5,
    },
}


def _deep_update(target: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            target[key] = _deep_update(dict(target[key]), value)
        else:
            target[key] = value
    return target


def _apply_config_value(config: Dict[str, Any], path: Iterable[str], value: Any) -> None:
    keys = list(path)
    target = config
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def _env_int(name: str, minimum: Optional[int] = None) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_choice(name: str, choices: Iterable[str]) -> Optional[str]:
    value = _env_str(name)
    if value is None:
        return None
    value = value.lower()
    return value if value in choices else None


def _apply_first_env(
    config: Dict[str, Any],
    env_keys: Iterable[str],
    path: Tuple[str, ...],
    parser,
) -> None:
    for env_name in env_keys:
        parsed = parser(env_name)
        if parsed is not None:
            _apply_config_value(config, path, parsed)
            break


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    config = deepcopy(DEFAULT_CONFIG)

    if overrides:
        config = _deep_update(config, overrides)

    # Source overrides
    _apply_first_env(
        config,
        ("LAVALINK_LIST", "LAVALINK_SERVER_LIST"),
        ("source", "path"),
        _env_str,
    )

    # Probe overrides
    _apply_first_env(
        config,
        ("PING_SAMPLES", "PROBE_SAMPLES"),
        ("probe", "samples"),
        lambda key: _env_int(key, minimum=1),
    )
    _apply_first_env(
        config,
        ("HTTP_TIMEOUT", "PROBE_TIMEOUT_MS"),
        ("probe", "timeout_ms"),
        lambda key: _env_int(key, minimum=100),
    )
    _apply_first_env(
        config,
        ("PROBE_STRATEGY",),
        ("probe", "strategy"),
        lambda key: _env_choice(key, ("tcp", "http")),
    )

    # Scheduler overrides
    _apply_first_env(
        config,
        ("PROBE_BATCH_SIZE",),
        ("scheduler", "batch_size"),
        lambda key: _env_int(key, minimum=1),
    )

    # Persister overrides
    _apply_first_env(
        config,
        ("ENV_PATH",),
        ("persister", "env_path"),
        _env_str,
    )

    # Runner overrides
    _apply_first_env(
        config,
        ("RESTART_COMMAND", "LAVALINK_RESTART_COMMAND"),
        ("runner", "restart_command"),
        _env_str,
    )

    # Logging overrides
    _apply_first_env(
        config,
        ("LOG_LEVEL", "SELECTOR_LOG_LEVEL"),
        ("logging", "level"),
        _env_str,
    )

    # Command-line flags beat the environment
    if cli_overrides:
        config = _deep_update(config, cli_overrides)

    # Keep numeric settings within usable bounds
    probe_cfg = config["probe"]
    if int(probe_cfg["timeout_ms"]) < 100:
        probe_cfg["timeout_ms"] = 100
    if int(probe_cfg["samples"]) < 1:
        probe_cfg["samples"] = 1
    if int(probe_cfg["sample_interval_ms"]) < 0:
        probe_cfg["sample_interval_ms"] = 0

    if int(config["scheduler"]["batch_size"]) < 1:
        config["scheduler"]["batch_size"] = 1

    if int(config["selection"]["top_count"]) < 1:
        config["selection"]["top_count"] = 1

    return config
