import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_PROFILES_PATH = os.path.join("data", "profiles.json")


@dataclass
class BotConfig:
    token: str
    log_level: str = "INFO"
    guild_id: Optional[int] = None
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 3000
    broadcast_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 60.0
    sample_interval_seconds: float = 60.0
    html_refresh_seconds: int = 20
    profiles_path: str = DEFAULT_PROFILES_PATH
    error_log_size: int = 100
    runtime_sample_size: int = 1440
    manager_role_id: Optional[int] = None
    bypass_user_ids: List[int] = field(default_factory=list)
    state_rollup_dedupe: bool = False


def _optional_int(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be an integer id") from None


def _positive(data: dict, key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{key}' must be a number") from None
    if number <= 0:
        raise ValueError(f"Config '{key}' must be greater than zero")
    return number


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    dashboard_port = int(_positive(data, "dashboard_port", 3000))
    if dashboard_port > 65535:
        raise ValueError(f"Invalid dashboard_port {dashboard_port}")

    bypass_user_ids: List[int] = []
    for raw in data.get("bypass_user_ids") or []:
        try:
            bypass_user_ids.append(int(raw))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid bypass user id '{raw}'") from None

    html_refresh = data.get("html_refresh_seconds", 20)
    try:
        html_refresh_seconds = max(int(html_refresh or 0), 0)
    except (TypeError, ValueError):
        raise ValueError("Config 'html_refresh_seconds' must be an integer") from None

    return BotConfig(
        token=token,
        log_level=log_level,
        guild_id=_optional_int(data, "guild_id"),
        dashboard_host=str(data.get("dashboard_host") or "0.0.0.0"),
        dashboard_port=dashboard_port,
        broadcast_interval_seconds=_positive(data, "broadcast_interval_seconds", 5.0),
        heartbeat_interval_seconds=_positive(data, "heartbeat_interval_seconds", 60.0),
        sample_interval_seconds=_positive(data, "sample_interval_seconds", 60.0),
        html_refresh_seconds=html_refresh_seconds,
        profiles_path=str(data.get("profiles_path") or DEFAULT_PROFILES_PATH),
        error_log_size=int(_positive(data, "error_log_size", 100)),
        runtime_sample_size=int(_positive(data, "runtime_sample_size", 1440)),
        manager_role_id=_optional_int(data, "manager_role_id"),
        bypass_user_ids=bypass_user_ids,
        state_rollup_dedupe=bool(data.get("state_rollup_dedupe", False)),
    )
