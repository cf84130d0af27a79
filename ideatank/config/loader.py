from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

_DEFAULT_SESSION_ID = "idea-live-event"
_DEFAULT_ACCESS_GATE = {
    "enabled": True,
    "max_failures": 3,
    "lockout_seconds": 30,
}
_DEFAULT_ADMIN_LOGIN = {
    "enabled": True,
    "max_failures": 3,
    "lockout_seconds": 30,
    "state_path": "state/admin_lockout.json",
    "username": "admin",
    "password_hash": "",
    "token_expire_minutes": 240,
}
_DEFAULT_SUBMISSION_LIMITS = {
    "name_max_length": 50,
    "content_min_length": 5,
    "content_max_length": 500,
    "cooldown_seconds": 60,
}
_DEFAULT_SESSION_TIMING = {
    "closing_countdown_seconds": 10,
    "tick_seconds": 1.0,
    "score_step": 2,
    "score_tick_seconds": 0.03,
    "reveal_countdown_seconds": 5,
    "max_analysis_reruns": 2,
}
_DEFAULT_AI = {
    "base_url": "https://api.cerebras.ai/v1",
    "primary_model": "llama-3.3-70b",
    "fallback_model": "",
    "request_timeout_seconds": 120,
    "progress_time_constant_seconds": 8.0,
}
_DEFAULT_API = {
    "allowed_origins": ["*"],
    "rate_limit_max_requests": 100,
    "rate_limit_window_seconds": 15 * 60,
    "max_body_bytes": 1024 * 1024,
    "trusted_proxies": [],
}


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    try:
        with _CONFIG_PATH.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning(
                "Config file %s is not a mapping; using defaults.", _CONFIG_PATH
            )
            return {}
    except FileNotFoundError:
        logging.warning(
            "Configuration file %s not found; using defaults.", _CONFIG_PATH
        )
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", _CONFIG_PATH, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_positive_float(value: Any, fallback: float) -> float:
    try:
        candidate = float(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_str(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    text = str(value).strip()
    return text if text else fallback


def _env_override(name: str, value: Any) -> Any:
    env_value = os.getenv(name)
    if env_value is None:
        return value
    return env_value


def get_default_session_id() -> str:
    """Return the session id used when the admin does not name one."""
    config = load_config()
    value = _env_override("IDEATANK_SESSION_ID", config.get("default_session_id"))
    return _coerce_str(value, _DEFAULT_SESSION_ID)


def get_access_gate_settings() -> Dict[str, Any]:
    """Return participant access-code throttling settings."""
    config = load_config()
    section = config.get("access_gate") or {}
    defaults = dict(_DEFAULT_ACCESS_GATE)
    return {
        "enabled": _coerce_bool(section.get("enabled"), defaults["enabled"]),
        "max_failures": _coerce_positive_int(
            section.get("max_failures"), defaults["max_failures"]
        ),
        "lockout_seconds": _coerce_positive_int(
            section.get("lockout_seconds"), defaults["lockout_seconds"]
        ),
    }


def get_admin_login_settings() -> Dict[str, Any]:
    """
    Return admin login throttling and credential settings.

    Priority for each key:
    1) IDEATANK_ADMIN_* env var
    2) config.yaml admin_login section
    3) default
    """
    config = load_config()
    section = config.get("admin_login") or {}
    defaults = dict(_DEFAULT_ADMIN_LOGIN)

    enabled = _env_override("IDEATANK_ADMIN_LOCKOUT_ENABLED", section.get("enabled"))
    max_failures = _env_override(
        "IDEATANK_ADMIN_MAX_FAILURES", section.get("max_failures")
    )
    lockout_seconds = _env_override(
        "IDEATANK_ADMIN_LOCKOUT_SECONDS", section.get("lockout_seconds")
    )
    state_path = _env_override("IDEATANK_ADMIN_STATE_PATH", section.get("state_path"))
    username = _env_override("IDEATANK_ADMIN_USERNAME", section.get("username"))
    password_hash = _env_override(
        "IDEATANK_ADMIN_PASSWORD_HASH", section.get("password_hash")
    )

    return {
        "enabled": _coerce_bool(enabled, defaults["enabled"]),
        "max_failures": _coerce_positive_int(max_failures, defaults["max_failures"]),
        "lockout_seconds": _coerce_positive_int(
            lockout_seconds, defaults["lockout_seconds"]
        ),
        "state_path": _coerce_str(state_path, defaults["state_path"]),
        "username": _coerce_str(username, defaults["username"]),
        "password_hash": _coerce_str(password_hash, defaults["password_hash"]),
        "token_expire_minutes": _coerce_positive_int(
            section.get("token_expire_minutes"), defaults["token_expire_minutes"]
        ),
    }


def get_submission_limits() -> Dict[str, int]:
    """Return idea submission limits sourced from config with safe defaults."""
    config = load_config()
    section = config.get("submission") or {}
    limits = dict(_DEFAULT_SUBMISSION_LIMITS)
    for key in ("name_max_length", "content_min_length", "content_max_length"):
        limits[key] = _coerce_positive_int(section.get(key), limits[key])

    # Zero is meaningful here: it disables the cooldown.
    try:
        cooldown = int(section.get("cooldown_seconds", limits["cooldown_seconds"]))
        limits["cooldown_seconds"] = max(0, cooldown)
    except (TypeError, ValueError):
        pass

    if limits["content_max_length"] < limits["content_min_length"]:
        limits["content_max_length"] = _DEFAULT_SUBMISSION_LIMITS["content_max_length"]
        limits["content_min_length"] = _DEFAULT_SUBMISSION_LIMITS["content_min_length"]
    return limits


def get_session_timing_settings() -> Dict[str, Any]:
    """Return countdown and ticker timings for the admin session controller."""
    config = load_config()
    section = config.get("session_timing") or {}
    defaults = dict(_DEFAULT_SESSION_TIMING)
    return {
        "closing_countdown_seconds": _coerce_positive_int(
            section.get("closing_countdown_seconds"),
            defaults["closing_countdown_seconds"],
        ),
        "tick_seconds": _coerce_positive_float(
            section.get("tick_seconds"), defaults["tick_seconds"]
        ),
        "score_step": _coerce_positive_int(
            section.get("score_step"), defaults["score_step"]
        ),
        "score_tick_seconds": _coerce_positive_float(
            section.get("score_tick_seconds"), defaults["score_tick_seconds"]
        ),
        "reveal_countdown_seconds": _coerce_positive_int(
            section.get("reveal_countdown_seconds"),
            defaults["reveal_countdown_seconds"],
        ),
        "max_analysis_reruns": _coerce_positive_int(
            section.get("max_analysis_reruns"), defaults["max_analysis_reruns"]
        ),
    }


def get_ai_settings() -> Dict[str, Any]:
    """Return generation provider settings; the API key only ever comes from env."""
    config = load_config()
    section = config.get("ai") or {}
    defaults = dict(_DEFAULT_AI)

    base_url = _env_override("IDEATANK_AI_BASE_URL", section.get("base_url"))
    primary = _env_override("IDEATANK_AI_MODEL", section.get("primary_model"))
    fallback = _env_override("IDEATANK_AI_MODEL_FALLBACK", section.get("fallback_model"))

    return {
        "base_url": _coerce_str(base_url, defaults["base_url"]).rstrip("/"),
        "api_key": (os.getenv("IDEATANK_AI_API_KEY") or "").strip(),
        "primary_model": _coerce_str(primary, defaults["primary_model"]),
        "fallback_model": _coerce_str(fallback, defaults["fallback_model"]),
        "request_timeout_seconds": _coerce_positive_float(
            section.get("request_timeout_seconds"),
            defaults["request_timeout_seconds"],
        ),
        "progress_time_constant_seconds": _coerce_positive_float(
            section.get("progress_time_constant_seconds"),
            defaults["progress_time_constant_seconds"],
        ),
    }


def _string_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = value
    else:
        return list(default)
    cleaned = [str(item).strip() for item in items if str(item).strip()]
    return cleaned or list(default)


def get_api_settings() -> Dict[str, Any]:
    """Return HTTP surface settings: CORS origins, proxies, rate limit and body cap."""
    config = load_config()
    section = config.get("api") or {}
    defaults = dict(_DEFAULT_API)
    origins = _env_override("IDEATANK_ALLOWED_ORIGINS", section.get("allowed_origins"))
    proxies = _env_override("IDEATANK_TRUSTED_PROXIES", section.get("trusted_proxies"))
    return {
        "allowed_origins": _string_list(origins, defaults["allowed_origins"]),
        "trusted_proxies": _string_list(proxies, defaults["trusted_proxies"]),
        "rate_limit_max_requests": _coerce_positive_int(
            section.get("rate_limit_max_requests"),
            defaults["rate_limit_max_requests"],
        ),
        "rate_limit_window_seconds": _coerce_positive_int(
            section.get("rate_limit_window_seconds"),
            defaults["rate_limit_window_seconds"],
        ),
        "max_body_bytes": _coerce_positive_int(
            section.get("max_body_bytes"), defaults["max_body_bytes"]
        ),
    }


def get_database_url(fallback: str) -> str:
    config = load_config()
    url = _env_override("IDEATANK_DATABASE_URL", config.get("database_url"))
    return _coerce_str(url, fallback)


def get_store_backend() -> str:
    """Return which Session Store backs the app: ``memory`` or ``sql``."""
    config = load_config()
    value = _env_override("IDEATANK_STORE_BACKEND", config.get("store_backend"))
    backend = _coerce_str(value, "memory").lower()
    return backend if backend in {"memory", "sql"} else "memory"
