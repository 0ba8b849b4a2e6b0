"""Load paperdesk.yaml and apply whitelisted env overrides."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
import os
from typing import Any, Dict, Optional, Tuple

import yaml

from env_utils import PAPERDESK_CONFIG_FILE, env_float, env_present, env_str


PathKey = Tuple[str, ...]

# Env overrides only cover connectivity and runtime plumbing.
# Agent/manager tuning comes from paperdesk.yaml.
ALLOWED_ENV_OVERRIDES = {
    "PAPERDESK_DB_PATH",
    "PAPERDESK_LLM_TIMEOUT_SEC",
    "PAPERDESK_HTTP_TIMEOUT_SEC",
    "PAPERDESK_GECKO_BASE_URL",
    "PAPERDESK_DEXSCREENER_BASE_URL",
    "OPENROUTER_API_KEY",
}

# Read by env_utils / logging_utils directly, never treated as overrides.
_PLUMBING_ENV = {
    "PAPERDESK_ROOT",
    "PAPERDESK_RUNTIME_DIR",
    "PAPERDESK_CONFIG_FILE",
    "PAPERDESK_LOG_LEVEL",
}

_WARNED_IGNORED_ENV_OVERRIDES = False

DEFAULT_CONFIG: Dict[str, Any] = {
    "config": {
        "db_path": None,
        "llm": {
            "base_url": "https://openrouter.ai/api/v1",
            "api_key": "",
            "timeout_sec": 60.0,
            "max_output_tokens": 2048,
        },
        "market_data": {
            "gecko_base_url": "https://api.geckoterminal.com/api/v2",
            "dexscreener_base_url": "https://api.dexscreener.com/latest/dex",
            "network": "base",
            "http_timeout_sec": 10.0,
            "cache_ttl_sec": 30.0,
            "ohlcv_limit": 48,
        },
        "scheduler": {
            "first_tick_max_sec": 5.0,
            "auto_heal_grace_sec": 10.0,
            "auto_heal_delay_sec": 3.0,
            "deciding_stale_sec": 900.0,
            "snapshot_every_ticks": 6,
        },
        "agent_defaults": {
            "name": "Paper Agent",
            "autonomy_level": "guided",
            "llm_model": "nvidia/nemotron-3-nano-30b-a3b:free",
            "llm_fallback": "nvidia/nemotron-3-nano-30b-a3b:free",
            "allow_fallback": False,
            "temperature": 0.7,
            "pairs": ["WETH/USDC"],
            "dexes": ["aerodrome", "uniswap-v3"],
            "strategies": ["combined"],
            "analysis_interval": "1h",
            "paper_balance": 10000.0,
            "max_position_size_pct": 5.0,
            "max_open_positions": 3,
            "stop_loss_pct": 5.0,
            "take_profit_pct": 7.0,
            "slippage_simulation": 0.3,
            "max_daily_loss_pct": 10.0,
            "cooldown_after_loss_minutes": 30.0,
            "chain": "base",
        },
        "manager_defaults": {
            "llm_model": "nvidia/nemotron-3-nano-30b-a3b:free",
            "temperature": 0.7,
            "decision_interval": "1h",
            "risk_params": {
                "max_total_drawdown": 0.2,
                "max_agents": 3,
                "max_correlated_positions": 3,
            },
        },
    }
}


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    sorted_names = sorted(names)
    preview = ", ".join(sorted_names[:12])
    extra = len(sorted_names) - 12
    if extra > 0:
        preview = f"{preview}, +{extra} more"
    print(
        "Config warning: ignoring non-whitelisted PAPERDESK env overrides "
        "(YAML-first mode). "
        f"Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for key, value in (extra or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = deepcopy(value)
    return out


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}
    ignored_env_overrides: set[str] = set()

    def override(path: PathKey, env_name: str, as_float: bool = False) -> None:
        if not env_present(env_name):
            return
        if env_name not in ALLOWED_ENV_OVERRIDES:
            ignored_env_overrides.add(env_name)
            return
        default = _get_path(cfg, path)
        if as_float:
            value: Any = env_float(env_name, float(default) if default is not None else 0.0)
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "db_path"), "PAPERDESK_DB_PATH")
    override(("config", "llm", "api_key"), "OPENROUTER_API_KEY")
    override(("config", "llm", "timeout_sec"), "PAPERDESK_LLM_TIMEOUT_SEC", as_float=True)
    override(("config", "market_data", "http_timeout_sec"), "PAPERDESK_HTTP_TIMEOUT_SEC", as_float=True)
    override(("config", "market_data", "gecko_base_url"), "PAPERDESK_GECKO_BASE_URL")
    override(("config", "market_data", "dexscreener_base_url"), "PAPERDESK_DEXSCREENER_BASE_URL")

    # Tuning knobs that look like overrides but are YAML-only.
    for name in os.environ:
        if name.startswith("PAPERDESK_") and name not in ALLOWED_ENV_OVERRIDES and name not in _PLUMBING_ENV:
            if env_present(name):
                ignored_env_overrides.add(name)

    _warn_ignored_env_overrides_once(ignored_env_overrides)
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML config merged over built-in defaults, then env overrides."""
    cfg_path = Path(path or PAPERDESK_CONFIG_FILE)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        with cfg_path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if isinstance(loaded, dict):
            raw = loaded
    return apply_env_overrides(deep_merge(DEFAULT_CONFIG, raw))


def get_param(config: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    """Read ``config.<dotted.path>`` from a loaded config."""
    path = ("config",) + tuple(p for p in dotted.split(".") if p)
    return _get_path(config, path, default)
