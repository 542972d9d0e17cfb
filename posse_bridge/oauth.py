"""Token endpoint client for DPoP-bound AT Protocol OAuth.

Covers the two calls the bridge makes after the interactive authorization
flow has produced a grant: the refresh_token exchange and token revocation.
Both are signed with the grant's proof key.
"""

from __future__ import annotations

import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Callable

from posse_bridge.credentials import AuthGrant
from posse_bridge.dpop import ProofKey
from posse_bridge.errors import ProtocolError, RefreshUnavailableError
from posse_bridge.http import HttpClient, HttpResponse, error_code, raise_for_status

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 300


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: float
    scope: str = ""
    subject: str = ""


# DPoP negotiation errors say nothing about the refresh token.
_PROOF_ERRORS = frozenset({"use_dpop_nonce", "invalid_dpop_proof"})


def is_token_rejection(exc: ProtocolError) -> bool:
    """True when the authorization server refused the refresh token itself.

    That is an OAuth error body on a 400/401. A bare 404, an HTML error page
    or a proof complaint is not a verdict on the token.
    """
    return exc.status in (400, 401) and bool(exc.error) and exc.error not in _PROOF_ERRORS


def _origin(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class OAuthClient:
    """Talks to the authorization server's token and revocation endpoints."""

    def __init__(
        self,
        client_id: str,
        http: HttpClient | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.client_id = client_id
        self._http = http or HttpClient()
        self._clock = clock or time.time
        self._nonces: dict[str, str] = {}

    def _post_with_dpop(self, url: str, form: dict[str, str], key: ProofKey) -> HttpResponse:
        """POST a form with a DPoP proof, answering one use_dpop_nonce challenge."""
        origin = _origin(url)
        response = self._send(url, form, key, origin)
        if response.header("dpop-nonce") and response.status in (400, 401) \
                and error_code(response) == "use_dpop_nonce":
            response = self._send(url, form, key, origin)
        return response

    def _send(self, url: str, form: dict[str, str], key: ProofKey, origin: str) -> HttpResponse:
        proof = key.proof("POST", url, nonce=self._nonces.get(origin), now=self._clock())
        response = self._http.post(url, form=form, headers={"DPoP": proof})
        nonce = response.header("dpop-nonce")
        if nonce:
            self._nonces[origin] = nonce
        return response

    def refresh(self, grant: AuthGrant) -> TokenSet:
        """Exchange the grant's refresh token for a new token pair.

        Raises:
            TransientError: timeout, connection failure, 429 or 5xx.
            ProtocolError: the server rejected the refresh token (an OAuth
                error such as invalid_grant on a 400/401).
            RefreshUnavailableError: anything else that stopped the refresh;
                the refresh token itself may still be good.
        """
        if not grant.token_endpoint:
            raise RefreshUnavailableError(grant.account_id, "grant has no token endpoint")
        response = self._post_with_dpop(
            grant.token_endpoint,
            {
                "grant_type": "refresh_token",
                "refresh_token": grant.refresh_token,
                "client_id": self.client_id,
            },
            grant.signing_key(),
        )
        try:
            raise_for_status(response, "Token endpoint")
        except ProtocolError as exc:
            if is_token_rejection(exc):
                raise
            raise RefreshUnavailableError(grant.account_id, str(exc)) from exc

        try:
            data = response.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise RefreshUnavailableError(grant.account_id, "token response is not JSON") from exc
        if not isinstance(data, dict) or not data.get("access_token") or not data.get("refresh_token"):
            raise RefreshUnavailableError(grant.account_id, "malformed token response")
        subject = data.get("sub", grant.subject)
        if subject != grant.subject:
            raise RefreshUnavailableError(grant.account_id, f"token subject changed to {subject!r}")
        expires_in = float(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._clock() + expires_in,
            scope=data.get("scope", grant.scope),
            subject=subject,
        )

    def revoke(self, grant: AuthGrant) -> None:
        """Revoke the grant's refresh token at the authorization server."""
        endpoint = grant.extra.get("revocation_endpoint")
        if not endpoint and grant.token_endpoint:
            endpoint = grant.token_endpoint.rsplit("/", 1)[0] + "/revoke"
        if not endpoint:
            logger.warning("No revocation endpoint known for %s, skipping", grant.account_id)
            return
        response = self._post_with_dpop(
            endpoint,
            {"token": grant.refresh_token, "client_id": self.client_id},
            grant.signing_key(),
        )
        raise_for_status(response, "Revocation endpoint")
        logger.info("Revoked refresh token for %s", grant.account_id)
