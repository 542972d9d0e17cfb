"""Shared fixtures: an in-process HTTP transport and linked grants."""

from __future__ import annotations

import json
import threading
from typing import Any, Callable

import pytest

from posse_bridge.credentials import AuthGrant
from posse_bridge.dpop import ProofKey
from posse_bridge.http import HttpRequest, HttpResponse

TOKEN_ENDPOINT = "https://auth.test/oauth/token"
SERVICE_URL = "https://pds.test"
DID = "did:plc:alice"


def json_response(status: int, body: Any, headers: dict[str, str] | None = None) -> HttpResponse:
    return HttpResponse(
        status=status,
        headers={k.lower(): v for k, v in (headers or {}).items()},
        body=json.dumps(body).encode("utf-8"),
    )


class FakeTransport:
    """Answers requests from per-URL handlers and records every request.

    A route is either a callable (request -> response) or a list of
    responses served in order, the last one repeating.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[HttpRequest] = []
        self._lock = threading.Lock()

    def on(self, method: str, url: str, handler: Callable[[HttpRequest], HttpResponse] | list[HttpResponse]) -> None:
        self.routes[(method, url)] = handler

    def calls(self, method: str, url: str) -> list[HttpRequest]:
        return [r for r in self.requests if r.method == method and r.url.split("?")[0] == url]

    def __call__(self, request: HttpRequest) -> HttpResponse:
        with self._lock:
            self.requests.append(request)
            handler = self.routes.get((request.method, request.url.split("?")[0]))
            if handler is None:
                return json_response(404, {"error": "NotFound"})
            if isinstance(handler, list):
                return handler.pop(0) if len(handler) > 1 else handler[0]
        return handler(request)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def proof_key() -> ProofKey:
    return ProofKey.generate()


@pytest.fixture
def make_grant(proof_key: ProofKey) -> Callable[..., AuthGrant]:
    def _make(account_id: str = "alice", expires_at: float = 10_000.0, **kwargs: Any) -> AuthGrant:
        fields: dict[str, Any] = {
            "account_id": account_id,
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "proof_key": proof_key.to_jwk(),
            "subject": DID,
            "expires_at": expires_at,
            "token_endpoint": TOKEN_ENDPOINT,
            "service_url": SERVICE_URL,
        }
        fields.update(kwargs)
        return AuthGrant(**fields)
    return _make
