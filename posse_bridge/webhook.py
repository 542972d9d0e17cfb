"""Inbound HTTP surface: the Ghost webhook and the admin API.

Endpoints:
- POST /webhooks/ghost/published - Ghost `post.published` webhook
- POST /api/publish - Admin-triggered publish
- POST /api/import - Run the Mobilize importer
- GET /api/civic-actions - Approved civic actions in display order
- GET /api/civic-actions/{id} - One approved civic action
- POST /api/civic-actions[/{id}/approve|reject|pin|priority] - Moderation
- GET /api/sync-logs[/{source_id}] - Publish history, newest first
- GET /health - Liveness

Publishes run in the threadpool. A client that disconnects mid-request
does not stop the worker thread, so the outcome still reaches the sync log
and the in-flight claim is still released.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from posse_bridge import __version__
from posse_bridge.errors import (
    ModerationError,
    NotFoundError,
    PublishInProgressError,
    RetryablePublishError,
    UnauthorizedError,
    ValidationError,
)
from posse_bridge.factory import Bridge
from posse_bridge.ghost import SIGNATURE_HEADER
from posse_bridge.pipeline import PublishTrigger
from posse_bridge.sync_log import SyncLogEntry
from posse_bridge.transform import Article

logger = logging.getLogger(__name__)


# --- Request Models ---


class PublishRequest(BaseModel):
    source_id: str = Field(..., min_length=1)
    title: str
    url: str
    excerpt: str = ""
    account_id: str | None = None


class ImportRequest(BaseModel):
    org_ids: list[int] | None = None


class SubmitActionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    event_type: str | None = None
    event_date: str | None = None
    location: str | None = None
    external_url: str | None = None


class ApproveRequest(BaseModel):
    pinned: bool = False


class RejectRequest(BaseModel):
    reason: str = ""


class PriorityRequest(BaseModel):
    priority: int


# --- Helper Functions ---


def outcome_response(entry: SyncLogEntry) -> JSONResponse:
    """200 for a success entry, 500 for a logged error entry."""
    body: dict[str, Any] = {
        "status": entry.status,
        "source_id": entry.source_id,
        "entry_id": entry.entry_id,
    }
    if entry.is_success:
        body.update(entry.target_ref or {})
        return JSONResponse(body, status_code=status.HTTP_200_OK)
    body.update({"error": entry.error, "error_kind": entry.error_kind,
                 "retry_count": entry.retry_count})
    return JSONResponse(body, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def _in_progress(exc: PublishInProgressError) -> JSONResponse:
    return JSONResponse({"status": "in_progress", "source_id": exc.source_id},
                        status_code=status.HTTP_200_OK)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status_code)


def create_app(bridge: Bridge) -> FastAPI:
    app = FastAPI(title="posse-bridge", version=__version__)
    app.state.bridge = bridge

    @app.exception_handler(UnauthorizedError)
    async def _unauthorized(request: Request, exc: UnauthorizedError) -> JSONResponse:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
        return _error(status.HTTP_401_UNAUTHORIZED, exc)

    @app.exception_handler(ValidationError)
    async def _invalid(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ModerationError)
    async def _conflict(request: Request, exc: ModerationError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    def require_admin(authorization: str | None = Header(default=None)) -> None:
        token = bridge.config.admin_token
        if not token:
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin API disabled (no admin_token)")
        if not authorization or not hmac.compare_digest(authorization, f"Bearer {token}"):
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid admin token")

    @app.post("/webhooks/ghost/published")
    async def ghost_published(request: Request, account_id: str | None = None) -> JSONResponse:
        body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        account = account_id or bridge.config.default_account_id
        try:
            entry = await run_in_threadpool(
                bridge.pipeline.handle_webhook, body, signature, account,
            )
        except PublishInProgressError as exc:
            return _in_progress(exc)
        except RetryablePublishError as exc:
            return outcome_response(exc.entry)
        return outcome_response(entry)

    @app.post("/api/publish", dependencies=[Depends(require_admin)])
    def publish(req: PublishRequest) -> JSONResponse:
        trigger = PublishTrigger(
            source_id=req.source_id,
            account_id=req.account_id or bridge.config.default_account_id,
            article=Article(source_id=req.source_id, title=req.title, url=req.url,
                            excerpt=req.excerpt),
        )
        try:
            entry = bridge.pipeline.publish(trigger)
        except PublishInProgressError as exc:
            return _in_progress(exc)
        except RetryablePublishError as exc:
            return outcome_response(exc.entry)
        return outcome_response(entry)

    @app.post("/api/import", dependencies=[Depends(require_admin)])
    def run_import(req: ImportRequest | None = None) -> dict[str, int]:
        org_ids = req.org_ids if req is not None else None
        return bridge.importer.import_events(org_ids).to_dict()

    @app.get("/api/civic-actions")
    def civic_actions() -> list[dict[str, Any]]:
        return [asdict(a) for a in bridge.civic_actions.list_approved()]

    @app.get("/api/civic-actions/{action_id}")
    def civic_action(action_id: str) -> dict[str, Any]:
        action = bridge.civic_actions.get(action_id)
        if not action.is_public:
            raise NotFoundError(f"Civic action {action_id!r} not found")
        return asdict(action)

    @app.get("/api/sync-logs", dependencies=[Depends(require_admin)])
    def sync_logs(failures: bool = False,
                  limit: int = Query(default=100, ge=1, le=1000)) -> list[dict[str, Any]]:
        """Newest entries first."""
        log = bridge.sync_log
        entries = log.get_failures() if failures else log.all_records
        return [asdict(e) for e in reversed(entries[-limit:])]

    @app.get("/api/sync-logs/{source_id}", dependencies=[Depends(require_admin)])
    def sync_logs_for_source(source_id: str) -> list[dict[str, Any]]:
        return [asdict(e) for e in reversed(bridge.sync_log.get_by_source(source_id))]

    @app.post("/api/civic-actions", status_code=status.HTTP_201_CREATED,
              dependencies=[Depends(require_admin)])
    def submit_action(req: SubmitActionRequest) -> dict[str, Any]:
        fields = req.model_dump(exclude={"title", "description"}, exclude_none=True)
        return asdict(bridge.civic_actions.submit(req.title, req.description, **fields))

    @app.post("/api/civic-actions/{action_id}/approve", dependencies=[Depends(require_admin)])
    def approve_action(action_id: str, req: ApproveRequest | None = None) -> dict[str, Any]:
        pinned = req.pinned if req is not None else False
        return asdict(bridge.civic_actions.approve(action_id, pinned=pinned))

    @app.post("/api/civic-actions/{action_id}/reject", dependencies=[Depends(require_admin)])
    def reject_action(action_id: str, req: RejectRequest | None = None) -> dict[str, Any]:
        reason = req.reason if req is not None else ""
        return asdict(bridge.civic_actions.reject(action_id, reason))

    @app.post("/api/civic-actions/{action_id}/pin", dependencies=[Depends(require_admin)])
    def pin_action(action_id: str) -> dict[str, Any]:
        return asdict(bridge.civic_actions.toggle_pin(action_id))

    @app.post("/api/civic-actions/{action_id}/priority", dependencies=[Depends(require_admin)])
    def prioritize_action(action_id: str, req: PriorityRequest) -> dict[str, Any]:
        return asdict(bridge.civic_actions.set_priority(action_id, req.priority))

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "posse-bridge",
            "live_mode": bridge.config.live_mode,
            "accounts": len(bridge.credentials.account_ids),
        }

    return app
