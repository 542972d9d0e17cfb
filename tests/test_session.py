"""Tests for the session manager."""

import threading
import time

import pytest

from posse_bridge.credentials import CredentialStore
from posse_bridge.errors import (
    NoGrantError,
    RefreshFailedError,
    RefreshUnavailableError,
    TransientError,
)
from posse_bridge.http import HttpClient
from posse_bridge.oauth import OAuthClient
from posse_bridge.session import SessionManager

from conftest import DID, TOKEN_ENDPOINT, json_response

NOW = 1000.0


def _token_ok(**extra):
    body = {"access_token": "access-2", "refresh_token": "refresh-2", "sub": DID, "expires_in": 3600}
    body.update(extra)
    return json_response(200, body)


class TestSessionManager:
    def _manager(self, transport, store=None) -> SessionManager:
        http = HttpClient(transport=transport)
        return SessionManager(
            store or CredentialStore(),
            OAuthClient("cid", http=http, clock=lambda: NOW),
            http=http,
            clock=lambda: NOW,
        )

    def test_no_grant(self, transport):
        with pytest.raises(NoGrantError):
            self._manager(transport).acquire_client("nobody")

    def test_fresh_token_used_without_refresh(self, transport, make_grant):
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW + 3600))
        client = manager.acquire_client("alice")
        assert client.grant.access_token == "access-1"
        assert transport.requests == []

    def test_expiring_token_refreshed_and_stored(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [_token_ok()])
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW + 30))  # inside the 60s skew
        client = manager.acquire_client("alice")
        assert client.grant.access_token == "access-2"
        stored = manager.store.get("alice")
        assert stored.refresh_token == "refresh-2"
        assert stored.expires_at == NOW + 3600

    def test_concurrent_acquire_refreshes_once(self, transport, make_grant):
        def slow_token(request):
            time.sleep(0.05)
            return _token_ok()

        transport.on("POST", TOKEN_ENDPOINT, slow_token)
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW))

        tokens = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            tokens.append(manager.acquire_client("alice").grant.access_token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(transport.calls("POST", TOKEN_ENDPOINT)) == 1
        assert tokens == ["access-2"] * 8

    def test_invalid_grant_deletes_grant(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(400, {"error": "invalid_grant"})])
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW))
        with pytest.raises(RefreshFailedError) as excinfo:
            manager.acquire_client("alice")
        assert excinfo.value.reason == "invalid_grant"
        assert manager.store.get("alice") is None
        with pytest.raises(NoGrantError):
            manager.acquire_client("alice")

    def test_transient_refresh_failure_keeps_grant(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(503, {})])
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW))
        with pytest.raises(TransientError):
            manager.acquire_client("alice")
        assert manager.store.get("alice").refresh_token == "refresh-1"

    def test_misconfigured_endpoint_keeps_grant(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(404, {"message": "Not Found"})])
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW))
        with pytest.raises(RefreshUnavailableError):
            manager.acquire_client("alice")
        assert manager.store.get("alice").refresh_token == "refresh-1"

    def test_grant_without_endpoint_keeps_grant(self, transport, make_grant):
        manager = self._manager(transport)
        manager.link(make_grant(expires_at=NOW, token_endpoint=""))
        with pytest.raises(RefreshUnavailableError):
            manager.acquire_client("alice")
        assert manager.store.get("alice") is not None
        assert transport.requests == []

    def test_refresh_sees_tokens_written_by_another_process(self, tmp_path, transport, make_grant):
        path = tmp_path / "credentials.json"
        manager = self._manager(transport, store=CredentialStore(path))
        manager.link(make_grant(expires_at=NOW))
        CredentialStore(path).update_tokens("alice", "access-9", "refresh-9", NOW + 3600)

        client = manager.acquire_client("alice")
        assert client.grant.access_token == "access-9"
        assert transport.calls("POST", TOKEN_ENDPOINT) == []

    def test_disconnect_revokes_and_deletes(self, transport, make_grant):
        transport.on("POST", "https://auth.test/oauth/revoke", [json_response(200, {})])
        manager = self._manager(transport)
        manager.link(make_grant())
        assert manager.disconnect("alice") is True
        assert manager.store.get("alice") is None
        assert len(transport.calls("POST", "https://auth.test/oauth/revoke")) == 1

    def test_disconnect_deletes_even_if_revocation_fails(self, transport, make_grant):
        transport.on("POST", "https://auth.test/oauth/revoke", [json_response(500, {})])
        manager = self._manager(transport)
        manager.link(make_grant())
        assert manager.disconnect("alice") is True
        assert manager.store.get("alice") is None

    def test_disconnect_unknown_account(self, transport):
        assert self._manager(transport).disconnect("nobody") is False
