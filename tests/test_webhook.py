"""Tests for the HTTP surface."""

from __future__ import annotations

import json
import time

import pytest
from fastapi.testclient import TestClient

from posse_bridge.bluesky import BlueskyClient
from posse_bridge.config import BridgeConfig
from posse_bridge.errors import TransientError
from posse_bridge.factory import build_bridge
from posse_bridge.ghost import SIGNATURE_HEADER, sign_body
from posse_bridge.sync_log import STATUS_ERROR, STATUS_SUCCESS, SyncLogEntry
from posse_bridge.webhook import create_app

from conftest import json_response

SECRET = "ghost-secret"
ADMIN = {"Authorization": "Bearer admin-secret"}
MOBILIZE = "https://api.mobilize.test/v1"


def _body(source_id="p1", **post) -> bytes:
    current = {"id": source_id, "title": "Hello", "url": "https://blog.example.com/hello/",
               "status": "published", "excerpt": "Excerpt"}
    current.update(post)
    return json.dumps({"post": {"current": current}}).encode()


@pytest.fixture
def bridge(transport, make_grant):
    cfg = BridgeConfig(
        data_dir="",
        ghost_webhook_secret=SECRET,
        admin_token="admin-secret",
        mobilize_api_url=MOBILIZE,
        mobilize_org_ids=[93],
        import_pages_per_second=1000.0,
    )
    bridge = build_bridge(cfg, transport=transport)
    bridge.sessions.link(make_grant(account_id="default", expires_at=time.time() + 3600))
    return bridge


@pytest.fixture
def client(bridge) -> TestClient:
    return TestClient(create_app(bridge))


def _post_webhook(client, body, signature=None, **params):
    headers = {"Content-Type": "application/json",
               SIGNATURE_HEADER: signature or sign_body(SECRET, body)}
    return client.post("/webhooks/ghost/published", content=body, headers=headers, params=params)


class TestGhostWebhook:
    def test_published(self, client):
        resp = _post_webhook(client, _body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "success"
        assert data["uri"].startswith("at://did:plc:alice/app.bsky.feed.post/")
        assert data["cid"]

    def test_duplicate_delivery(self, client, bridge):
        first = _post_webhook(client, _body()).json()
        second = _post_webhook(client, _body())
        assert second.status_code == 200
        assert second.json()["entry_id"] == first["entry_id"]
        assert len([r for r in bridge.sync_log.all_records if r.is_success]) == 1

    def test_tampered_body_rejected(self, client, bridge):
        signature = sign_body(SECRET, _body())
        resp = _post_webhook(client, _body(title="Tampered"), signature=signature)
        assert resp.status_code == 401
        assert bridge.sync_log.total_records == 0

    def test_missing_signature(self, client):
        resp = client.post("/webhooks/ghost/published", content=_body())
        assert resp.status_code == 401

    def test_malformed_body(self, client):
        assert _post_webhook(client, b"not json").status_code == 400

    def test_unpublished_post(self, client):
        assert _post_webhook(client, _body(status="draft")).status_code == 400

    def test_unlinked_account(self, client):
        resp = _post_webhook(client, _body(), account_id="nobody")
        assert resp.status_code == 500
        assert resp.json()["error_kind"] == "auth"

    def test_in_progress(self, client, bridge):
        bridge.sync_log.claim("p1")
        resp = _post_webhook(client, _body())
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_progress"

    def test_transient_failure(self, client, monkeypatch):
        def down(self, post):
            raise TransientError("PDS unavailable", status=503)

        monkeypatch.setattr(BlueskyClient, "create_post", down)
        resp = _post_webhook(client, _body())
        assert resp.status_code == 500
        assert resp.json()["error_kind"] == "retryable"


class TestAdminApi:
    def test_publish_requires_token(self, client):
        resp = client.post("/api/publish", json={"source_id": "p1", "title": "T", "url": "https://u.test"})
        assert resp.status_code == 401

    def test_publish(self, client):
        resp = client.post("/api/publish", headers=ADMIN,
                           json={"source_id": "p1", "title": "T", "url": "https://u.test"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "success"

    def test_publish_invalid_article(self, client):
        resp = client.post("/api/publish", headers=ADMIN,
                           json={"source_id": "p1", "title": "", "url": "https://u.test"})
        assert resp.status_code == 400

    def test_admin_disabled_without_token(self, bridge):
        bridge.config.admin_token = ""
        resp = TestClient(create_app(bridge)).post("/api/import", headers=ADMIN)
        assert resp.status_code == 403

    def test_import(self, client, transport):
        transport.on("GET", f"{MOBILIZE}/organizations/93/events", [json_response(200, {
            "count": 1, "next": None, "previous": None,
            "data": [{"id": 1, "title": "Canvass", "description": "",
                      "timeslots": [{"start_date": int(time.time()) + 86400}],
                      "location": {"address_lines": []}}],
        })])
        resp = client.post("/api/import", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json() == {"synced": 1, "skipped": 0, "errors": 0}

        listed = client.get("/api/civic-actions").json()
        assert [a["title"] for a in listed] == ["Canvass"]

    def test_moderation_flow(self, client):
        created = client.post("/api/civic-actions", headers=ADMIN,
                              json={"title": "Town hall", "event_date": "2026-05-01T18:00:00Z"})
        assert created.status_code == 201
        action_id = created.json()["action_id"]
        assert client.get("/api/civic-actions").json() == []

        approved = client.post(f"/api/civic-actions/{action_id}/approve", headers=ADMIN,
                               json={"pinned": True})
        assert approved.json()["is_pinned"] is True

        prioritized = client.post(f"/api/civic-actions/{action_id}/priority", headers=ADMIN,
                                  json={"priority": 500})
        assert prioritized.json()["priority"] == 100

        again = client.post(f"/api/civic-actions/{action_id}/reject", headers=ADMIN)
        assert again.status_code == 409
        assert client.post("/api/civic-actions/missing/pin", headers=ADMIN).status_code == 404
        assert [a["action_id"] for a in client.get("/api/civic-actions").json()] == [action_id]

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["accounts"] == 1


class TestReadApi:
    def _seed(self, bridge):
        log = bridge.sync_log
        log.append(SyncLogEntry(source_id="p1", account_id="default", status=STATUS_ERROR,
                                error="HTTP 503", error_kind="retryable"))
        log.append_success(SyncLogEntry(source_id="p1", account_id="default",
                                        status=STATUS_SUCCESS,
                                        target_ref={"uri": "at://x/p/1", "cid": "c1"}))
        log.append(SyncLogEntry(source_id="p2", account_id="default", status=STATUS_ERROR,
                                error="HTTP 400", error_kind="terminal"))

    def test_sync_logs_require_token(self, client):
        assert client.get("/api/sync-logs").status_code == 401
        assert client.get("/api/sync-logs/p1").status_code == 401

    def test_sync_logs_newest_first(self, client, bridge):
        self._seed(bridge)
        resp = client.get("/api/sync-logs", headers=ADMIN)
        assert resp.status_code == 200
        assert [(e["source_id"], e["status"]) for e in resp.json()] == [
            ("p2", "error"), ("p1", "success"), ("p1", "error")]

    def test_sync_logs_limit(self, client, bridge):
        self._seed(bridge)
        entries = client.get("/api/sync-logs", headers=ADMIN, params={"limit": 1}).json()
        assert [e["source_id"] for e in entries] == ["p2"]
        assert client.get("/api/sync-logs", headers=ADMIN, params={"limit": 0}).status_code == 422

    def test_sync_logs_failures_only(self, client, bridge):
        self._seed(bridge)
        entries = client.get("/api/sync-logs", headers=ADMIN, params={"failures": "true"}).json()
        assert [e["error_kind"] for e in entries] == ["terminal", "retryable"]

    def test_sync_logs_for_source(self, client, bridge):
        self._seed(bridge)
        entries = client.get("/api/sync-logs/p1", headers=ADMIN).json()
        assert [e["status"] for e in entries] == ["success", "error"]
        assert entries[0]["target_ref"] == {"uri": "at://x/p/1", "cid": "c1"}
        assert client.get("/api/sync-logs/unknown", headers=ADMIN).json() == []

    def test_single_civic_action_only_when_approved(self, client):
        created = client.post("/api/civic-actions", headers=ADMIN,
                              json={"title": "Town hall", "event_date": "2026-05-01T18:00:00Z"})
        action_id = created.json()["action_id"]
        assert client.get(f"/api/civic-actions/{action_id}").status_code == 404

        client.post(f"/api/civic-actions/{action_id}/approve", headers=ADMIN, json={})
        resp = client.get(f"/api/civic-actions/{action_id}")
        assert resp.status_code == 200
        assert resp.json()["title"] == "Town hall"

    def test_rejected_civic_action_hidden(self, client):
        created = client.post("/api/civic-actions", headers=ADMIN,
                              json={"title": "Rally", "event_date": "2026-05-01T18:00:00Z"})
        action_id = created.json()["action_id"]
        client.post(f"/api/civic-actions/{action_id}/reject", headers=ADMIN)
        assert client.get(f"/api/civic-actions/{action_id}").status_code == 404
        assert client.get("/api/civic-actions/missing").status_code == 404
