"""Session manager: hands out authenticated Bluesky clients per account.

Tokens that are expired or about to expire are refreshed before the client
is built. Refreshes are serialized per account, and across processes by
the credential store lock: AT Protocol refresh tokens are single-use, so
two concurrent refreshes would see the second one rejected and the whole
grant revoked by the server.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from posse_bridge.bluesky import BlueskyClient
from posse_bridge.credentials import AuthGrant, CredentialStore
from posse_bridge.errors import (
    NoGrantError,
    ProtocolError,
    RefreshFailedError,
    RefreshUnavailableError,
    TransientError,
)
from posse_bridge.http import HttpClient
from posse_bridge.oauth import OAuthClient

logger = logging.getLogger(__name__)

DEFAULT_SKEW = 60.0


class SessionManager:
    """Wraps the CredentialStore and keeps grants fresh."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: OAuthClient,
        http: HttpClient | None = None,
        live: bool = False,
        skew: float = DEFAULT_SKEW,
        clock: Callable[[], float] | None = None,
        client_factory: Callable[[AuthGrant], BlueskyClient] | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._http = http or HttpClient()
        self._live = live
        self._skew = skew
        self._clock = clock or time.time
        self._client_factory = client_factory or self._default_client
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def store(self) -> CredentialStore:
        return self._store

    def _default_client(self, grant: AuthGrant) -> BlueskyClient:
        return BlueskyClient(grant, http=self._http, live=self._live, clock=self._clock)

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def acquire_client(self, account_id: str) -> BlueskyClient:
        """Return a client whose access token is valid for at least `skew` seconds.

        Raises:
            NoGrantError: the account was never linked (or was unlinked).
            RefreshFailedError: the refresh token was rejected; grant deleted.
            RefreshUnavailableError: refresh failed for another reason; grant kept.
            TransientError: the authorization server could not be reached.
        """
        grant = self._store.get(account_id)
        if grant is None:
            raise NoGrantError(account_id)

        if grant.is_expiring(self._clock(), self._skew):
            with self._lock_for(account_id), self._store.exclusive():
                # Another caller, possibly another process, may have refreshed while we waited.
                grant = self._store.get(account_id)
                if grant is None:
                    raise NoGrantError(account_id)
                if grant.is_expiring(self._clock(), self._skew):
                    grant = self._refresh(grant)

        return self._client_factory(grant)

    def _refresh(self, grant: AuthGrant) -> AuthGrant:
        logger.info("Refreshing tokens for %s", grant.account_id)
        try:
            tokens = self._oauth.refresh(grant)
        except TransientError as exc:
            logger.warning("Transient refresh failure for %s: %s", grant.account_id, exc)
            raise
        except RefreshUnavailableError as exc:
            logger.error("Refresh for %s could not complete, grant kept: %s", grant.account_id, exc.reason)
            raise
        except ProtocolError as exc:
            logger.error("Refresh rejected for %s, deleting grant: %s", grant.account_id, exc)
            self._store.delete(grant.account_id)
            raise RefreshFailedError(grant.account_id, exc.error or str(exc)) from exc

        return self._store.update_tokens(
            grant.account_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scope=tokens.scope or None,
        )

    def link(self, grant: AuthGrant) -> None:
        with self._lock_for(grant.account_id):
            self._store.link(grant)

    def disconnect(self, account_id: str) -> bool:
        """Revoke (best effort) and delete the account's grant."""
        with self._lock_for(account_id):
            grant = self._store.get(account_id)
            if grant is None:
                return False
            try:
                self._oauth.revoke(grant)
            except (TransientError, ProtocolError) as exc:
                logger.warning("Revocation failed for %s, deleting grant anyway: %s", account_id, exc)
            return self._store.delete(account_id)
