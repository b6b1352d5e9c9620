"""
Config loader for khojbox.
Reads config.yaml once at startup. All other modules import from here.

Values resolve in three layers: built-in defaults, then config.yaml
(with ${ENV_VAR} expansion), then the KHOJ_* / PORT environment
variables the provider has always honoured.
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_AGENT_SLUG = "sonnet-short-025716"

DEFAULTS: dict = {
    "server": {
        "host": "127.0.0.1",
        "port": 3002,
    },
    "khoj": {
        "api_base": "https://app.khoj.dev",
        "api_key": "",
        "timeout": 120,
        "require_api_key": False,
        "client_id": "khoj-provider-continue",
        "max_attempts": 3,
        "backoff_seconds": 2,
        "session_timeout": 30,
    },
    "conversation": {
        "state_file": "conversation_state.json",
        "default_agent": DEFAULT_AGENT_SLUG,
    },
    "translator": {
        "model_id": "khoj-chat",
        "attachment_threshold": 10000,
        "attachment_markers": ["<!DOCTYPE html>", "<html"],
        "chunk_size": 50,
        "chunk_delay_ms": 5,
    },
    "cli": {
        "ask_timeout": 30,
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}

_config: dict | None = None


class ConfigError(Exception):
    """Configuration is unusable (bad duration, missing required key)."""


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value) -> float:
    """
    Parse a timeout into seconds.

    Accepts plain numbers (seconds) and Go-style duration strings
    such as "90s", "2m", "1m30s" or "500ms".
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _apply_env_overrides(cfg: dict) -> dict:
    """KHOJ_API_BASE / KHOJ_API_KEY / KHOJ_TIMEOUT / PORT win over the file."""
    if os.environ.get("KHOJ_API_BASE"):
        cfg["khoj"]["api_base"] = os.environ["KHOJ_API_BASE"]
    if os.environ.get("KHOJ_API_KEY"):
        cfg["khoj"]["api_key"] = os.environ["KHOJ_API_KEY"]
    if os.environ.get("PORT"):
        try:
            cfg["server"]["port"] = int(os.environ["PORT"])
        except ValueError:
            logger.warning("Ignoring non-numeric PORT=%r", os.environ["PORT"])
    timeout = os.environ.get("KHOJ_TIMEOUT")
    if timeout:
        try:
            cfg["khoj"]["timeout"] = parse_duration(timeout)
        except ConfigError:
            # Bad value keeps the configured timeout
            logger.warning("Ignoring unparseable KHOJ_TIMEOUT=%r", timeout)
    return cfg


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over the defaults."""
    global _config
    if _config is not None:
        return _config

    config_path = path or Path(os.environ.get("KHOJBOX_CONFIG", _CONFIG_PATH))
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    else:
        logger.debug("Config not found at %s, using defaults", config_path)

    cfg = _merge(DEFAULTS, _walk_and_resolve(raw))
    cfg = _apply_env_overrides(cfg)
    cfg["khoj"]["timeout"] = parse_duration(cfg["khoj"]["timeout"])
    cfg["khoj"]["api_base"] = str(cfg["khoj"]["api_base"]).rstrip("/")

    _config = cfg
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads it."""
    global _config
    _config = None


def check_api_key(cfg: dict) -> None:
    """In strict deployments a missing API key is fatal."""
    khoj = cfg["khoj"]
    if khoj.get("require_api_key") and not khoj.get("api_key"):
        raise ConfigError("KHOJ_API_KEY not set")
