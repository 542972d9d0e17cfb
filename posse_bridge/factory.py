"""Factory for building a wired Bridge from BridgeConfig.

Shared by the CLI and the FastAPI app to avoid duplicated construction
logic. Tests pass a fake transport to keep every HTTP call in-process.
"""

from __future__ import annotations

from dataclasses import dataclass

from posse_bridge.civic_actions import CivicActionStore
from posse_bridge.config import BridgeConfig
from posse_bridge.credentials import CredentialStore
from posse_bridge.http import HttpClient, Transport
from posse_bridge.importer import EventImporter
from posse_bridge.mobilize import MobilizeClient
from posse_bridge.oauth import OAuthClient
from posse_bridge.pipeline import PublishPipeline
from posse_bridge.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RateLimiter,
    RateLimiterConfig,
    RetryConfig,
)
from posse_bridge.session import SessionManager
from posse_bridge.sync_log import SyncLog
from posse_bridge.watermark import SettingsStore


@dataclass
class Bridge:
    """Every long-lived component of one bridge instance."""
    config: BridgeConfig
    credentials: CredentialStore
    sessions: SessionManager
    sync_log: SyncLog
    pipeline: PublishPipeline
    civic_actions: CivicActionStore
    settings: SettingsStore
    importer: EventImporter


def build_bridge(cfg: BridgeConfig, transport: Transport | None = None) -> Bridge:
    """Build a Bridge from a BridgeConfig.

    Args:
        cfg: Bridge configuration; store files live under cfg.data_dir.
        transport: Optional HTTP transport replacing urllib.

    Returns:
        A fully wired Bridge.
    """
    http = HttpClient(timeout=cfg.http_timeout, transport=transport)

    credentials = CredentialStore(cfg.store_path("credentials.json"))
    sessions = SessionManager(
        credentials,
        OAuthClient(cfg.oauth_client_id, http=http),
        http=http,
        live=cfg.live_mode,
        skew=cfg.refresh_skew,
    )
    sync_log = SyncLog(cfg.store_path("sync_log.json"))
    pipeline = PublishPipeline(
        sessions,
        sync_log,
        webhook_secret=cfg.ghost_webhook_secret,
        circuit_breaker=CircuitBreaker(
            "bluesky",
            CircuitBreakerConfig(
                failure_threshold=cfg.circuit_failure_threshold,
                reset_timeout=cfg.circuit_reset_timeout,
            ),
        ),
    )

    civic_actions = CivicActionStore(cfg.store_path("civic_actions.json"))
    settings = SettingsStore(cfg.store_path("settings.json"))
    importer = EventImporter(
        MobilizeClient(cfg.mobilize_api_url, http=http),
        civic_actions,
        settings,
        org_ids=cfg.mobilize_org_ids,
        rate_limiter=RateLimiter(RateLimiterConfig(
            tokens_per_second=cfg.import_pages_per_second,
            max_tokens=1.0,
        )),
        retry_config=RetryConfig(max_attempts=cfg.import_max_attempts),
        max_workers=cfg.import_max_workers,
    )

    return Bridge(
        config=cfg,
        credentials=credentials,
        sessions=sessions,
        sync_log=sync_log,
        pipeline=pipeline,
        civic_actions=civic_actions,
        settings=settings,
        importer=importer,
    )
