"""Configuration loader for posse-bridge.

Loads YAML config files with environment variable overrides.
All env vars use the BRIDGE_ prefix.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from posse_bridge.errors import ValidationError

ENV_PREFIX = "BRIDGE_"


@dataclass
class BridgeConfig:
    """Unified configuration for the publish bridge, importer and HTTP surface."""
    live_mode: bool = False
    data_dir: str = "data"
    log_level: str = "INFO"
    admin_token: str = ""
    http_timeout: float = 30.0
    # Ghost
    ghost_webhook_secret: str = ""
    # Bluesky / AT Protocol OAuth
    default_account_id: str = "default"
    oauth_client_id: str = ""
    token_endpoint: str = ""
    bluesky_service_url: str = "https://bsky.social"
    refresh_skew: float = 60.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 60.0
    # Mobilize importer
    mobilize_api_url: str = "https://api.mobilize.us/v1"
    mobilize_org_ids: list[int] = field(default_factory=lambda: [93])
    import_pages_per_second: float = 1.0
    import_max_workers: int = 4
    import_max_attempts: int = 3

    def store_path(self, name: str) -> Path | None:
        """Path of a JSON store under data_dir; None keeps the store in memory."""
        return Path(self.data_dir) / name if self.data_dir else None


def load_config(path: Path | None = None) -> BridgeConfig:
    """Load config from YAML file with env var overrides.

    Env vars override YAML values. Mapping:
      BRIDGE_LIVE_MODE → live_mode
      BRIDGE_DATA_DIR → data_dir
      BRIDGE_LOG_LEVEL → log_level
      BRIDGE_ADMIN_TOKEN → admin_token
      BRIDGE_GHOST_WEBHOOK_SECRET → ghost.webhook_secret
      BRIDGE_BLUESKY_ACCOUNT_ID → bluesky.account_id
      BRIDGE_OAUTH_CLIENT_ID → bluesky.client_id
      BRIDGE_TOKEN_ENDPOINT → bluesky.token_endpoint
      BRIDGE_BLUESKY_SERVICE_URL → bluesky.service_url
      BRIDGE_MOBILIZE_ORG_IDS → mobilize.org_ids (comma-separated)
    """
    raw: dict[str, Any] = {}
    if path and path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        raw = loaded if isinstance(loaded, dict) else {}

    ghost = raw.get("ghost") or {}
    bluesky = raw.get("bluesky") or {}
    mobilize = raw.get("mobilize") or {}
    defaults = BridgeConfig()

    org_ids = _env_or("MOBILIZE_ORG_IDS", "")
    cfg = BridgeConfig(
        live_mode=_env_bool("LIVE_MODE", bool(raw.get("live_mode", False))),
        data_dir=_env_or("DATA_DIR", str(raw.get("data_dir", defaults.data_dir))),
        log_level=_env_or("LOG_LEVEL", str(raw.get("log_level", defaults.log_level))).upper(),
        admin_token=_env_or("ADMIN_TOKEN", str(raw.get("admin_token", ""))),
        http_timeout=float(raw.get("http_timeout", defaults.http_timeout)),
        ghost_webhook_secret=_env_or(
            "GHOST_WEBHOOK_SECRET",
            str(ghost.get("webhook_secret", "")),
        ),
        default_account_id=_env_or(
            "BLUESKY_ACCOUNT_ID",
            str(bluesky.get("account_id", defaults.default_account_id)),
        ),
        oauth_client_id=_env_or(
            "OAUTH_CLIENT_ID",
            str(bluesky.get("client_id", "")),
        ),
        token_endpoint=_env_or(
            "TOKEN_ENDPOINT",
            str(bluesky.get("token_endpoint", "")),
        ),
        bluesky_service_url=_env_or(
            "BLUESKY_SERVICE_URL",
            str(bluesky.get("service_url", defaults.bluesky_service_url)),
        ),
        refresh_skew=float(bluesky.get("refresh_skew", defaults.refresh_skew)),
        circuit_failure_threshold=int(
            bluesky.get("circuit_failure_threshold", defaults.circuit_failure_threshold)),
        circuit_reset_timeout=float(
            bluesky.get("circuit_reset_timeout", defaults.circuit_reset_timeout)),
        mobilize_api_url=str(mobilize.get("api_url", defaults.mobilize_api_url)),
        mobilize_org_ids=_parse_org_ids(org_ids) if org_ids
        else _parse_org_ids(mobilize.get("org_ids", defaults.mobilize_org_ids)),
        import_pages_per_second=float(
            mobilize.get("pages_per_second", defaults.import_pages_per_second)),
        import_max_workers=int(mobilize.get("max_workers", defaults.import_max_workers)),
        import_max_attempts=int(mobilize.get("max_attempts", defaults.import_max_attempts)),
    )

    if cfg.import_pages_per_second <= 0:
        raise ValidationError("mobilize.pages_per_second must be positive")
    return cfg


def _parse_org_ids(value: Any) -> list[int]:
    items = value.split(",") if isinstance(value, str) else list(value or [])
    try:
        return [int(str(item).strip()) for item in items if str(item).strip()]
    except ValueError as exc:
        raise ValidationError(f"Invalid Mobilize organization id list: {value!r}") from exc


def _env_or(suffix: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{suffix}", default)


def _env_bool(suffix: str, default: bool) -> bool:
    val = os.environ.get(f"{ENV_PREFIX}{suffix}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")
