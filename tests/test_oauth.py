"""Tests for the token endpoint client."""

import json
import urllib.parse

import pytest

from posse_bridge.errors import ProtocolError, RefreshUnavailableError, TransientError
from posse_bridge.http import HttpClient
from posse_bridge.oauth import OAuthClient

from conftest import DID, TOKEN_ENDPOINT, json_response
from test_dpop import decode

REVOKE_ENDPOINT = "https://auth.test/oauth/revoke"


def _form(request) -> dict:
    return dict(urllib.parse.parse_qsl(request.body.decode()))


class TestRefresh:
    def _client(self, transport) -> OAuthClient:
        return OAuthClient("https://app.test/client-metadata.json",
                           http=HttpClient(transport=transport), clock=lambda: 1000.0)

    def test_refresh_success(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(200, {
            "access_token": "access-2", "refresh_token": "refresh-2", "sub": DID,
            "expires_in": 3600, "token_type": "DPoP",
        })])
        tokens = self._client(transport).refresh(make_grant())
        assert tokens.access_token == "access-2"
        assert tokens.refresh_token == "refresh-2"
        assert tokens.expires_at == 4600.0

        request = transport.calls("POST", TOKEN_ENDPOINT)[0]
        assert _form(request) == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "https://app.test/client-metadata.json",
        }
        _, claims, _, _ = decode(request.headers["DPoP"])
        assert claims["htm"] == "POST"
        assert claims["htu"] == TOKEN_ENDPOINT
        assert "ath" not in claims

    def test_nonce_challenge_replayed_once(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [
            json_response(400, {"error": "use_dpop_nonce"}, {"DPoP-Nonce": "n-1"}),
            json_response(200, {"access_token": "a2", "refresh_token": "r2", "sub": DID}),
        ])
        tokens = self._client(transport).refresh(make_grant())
        assert tokens.access_token == "a2"
        calls = transport.calls("POST", TOKEN_ENDPOINT)
        assert len(calls) == 2
        assert decode(calls[1].headers["DPoP"])[1]["nonce"] == "n-1"

    def test_repeated_nonce_challenge_not_looped(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [
            json_response(400, {"error": "use_dpop_nonce"}, {"DPoP-Nonce": "n-1"}),
        ])
        with pytest.raises(RefreshUnavailableError):
            self._client(transport).refresh(make_grant())
        assert len(transport.calls("POST", TOKEN_ENDPOINT)) == 2

    def test_invalid_grant_is_protocol_error(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(400, {"error": "invalid_grant"})])
        with pytest.raises(ProtocolError) as excinfo:
            self._client(transport).refresh(make_grant())
        assert excinfo.value.error == "invalid_grant"

    def test_not_found_is_not_a_token_rejection(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(404, {"message": "Not Found"})])
        with pytest.raises(RefreshUnavailableError) as excinfo:
            self._client(transport).refresh(make_grant())
        assert "404" in excinfo.value.reason

    def test_bad_proof_is_not_a_token_rejection(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(400, {"error": "invalid_dpop_proof"})])
        with pytest.raises(RefreshUnavailableError):
            self._client(transport).refresh(make_grant())

    def test_missing_token_endpoint(self, transport, make_grant):
        with pytest.raises(RefreshUnavailableError):
            self._client(transport).refresh(make_grant(token_endpoint=""))
        assert transport.requests == []

    def test_unreadable_success_body(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(200, ["not", "a", "dict"])])
        with pytest.raises(RefreshUnavailableError):
            self._client(transport).refresh(make_grant())

    def test_server_error_is_transient(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(503, {})])
        with pytest.raises(TransientError):
            self._client(transport).refresh(make_grant())

    def test_changed_subject_rejected(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(200, {
            "access_token": "a", "refresh_token": "r", "sub": "did:plc:mallory",
        })])
        with pytest.raises(RefreshUnavailableError):
            self._client(transport).refresh(make_grant())

    def test_default_expiry(self, transport, make_grant):
        transport.on("POST", TOKEN_ENDPOINT, [json_response(200, {
            "access_token": "a", "refresh_token": "r",
        })])
        assert self._client(transport).refresh(make_grant()).expires_at == 1300.0


class TestRevoke:
    def test_revoke_posts_refresh_token(self, transport, make_grant):
        transport.on("POST", REVOKE_ENDPOINT, [json_response(200, {})])
        OAuthClient("cid", http=HttpClient(transport=transport)).revoke(make_grant())
        assert _form(transport.calls("POST", REVOKE_ENDPOINT)[0])["token"] == "refresh-1"

    def test_explicit_revocation_endpoint(self, transport, make_grant):
        transport.on("POST", "https://auth.test/revoke-here", [json_response(200, {})])
        grant = make_grant(extra={"revocation_endpoint": "https://auth.test/revoke-here"})
        OAuthClient("cid", http=HttpClient(transport=transport)).revoke(grant)
        assert len(transport.calls("POST", "https://auth.test/revoke-here")) == 1

    def test_no_known_endpoint_skips_revocation(self, transport, make_grant):
        grant = make_grant(token_endpoint="")
        OAuthClient("cid", http=HttpClient(transport=transport)).revoke(grant)
        assert transport.requests == []
