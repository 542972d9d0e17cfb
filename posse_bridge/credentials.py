"""Credential store for linked Bluesky accounts.

Holds one AuthGrant per account: the DPoP-bound token pair, the private
proof key the tokens are bound to, and the access token expiry. Only the
token fields change after a grant is linked; the proof key is fixed for
the grant's lifetime.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ContextManager

from posse_bridge.dpop import ProofKey
from posse_bridge.errors import NoGrantError, ValidationError
from posse_bridge.storage import JsonDocument

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "atproto transition:generic"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuthGrant:
    """OAuth credentials for one linked account."""
    account_id: str
    access_token: str
    refresh_token: str
    proof_key: dict[str, str]  # private JWK, never transmitted
    subject: str  # the account DID
    expires_at: float  # Unix seconds
    scope: str = DEFAULT_SCOPE
    token_endpoint: str = ""
    service_url: str = ""
    token_type: str = "DPoP"
    created_at: str = ""
    updated_at: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = _now_iso()
        if not self.updated_at:
            self.updated_at = self.created_at

    def is_expiring(self, now: float, skew: float = 0.0) -> bool:
        return now >= self.expires_at - skew

    def signing_key(self) -> ProofKey:
        return ProofKey.from_jwk(self.proof_key)

    @classmethod
    def from_token_response(
        cls,
        account_id: str,
        token: dict[str, Any],
        proof_key: ProofKey,
        token_endpoint: str,
        service_url: str,
        now: float,
    ) -> AuthGrant:
        """Build a grant from a successful authorization-code token response."""
        for required in ("access_token", "refresh_token", "sub"):
            if not token.get(required):
                raise ValidationError(f"Token response missing {required!r}")
        if not token_endpoint:
            raise ValidationError("A token endpoint is required to refresh the grant")
        return cls(
            account_id=account_id,
            access_token=token["access_token"],
            refresh_token=token["refresh_token"],
            proof_key=proof_key.to_jwk(),
            subject=token["sub"],
            expires_at=now + float(token.get("expires_in", 0)),
            scope=token.get("scope", DEFAULT_SCOPE),
            token_endpoint=token_endpoint,
            service_url=service_url,
            token_type=token.get("token_type", "DPoP"),
        )


class CredentialStore:
    """JSON file-backed AuthGrant store keyed by account id."""

    def __init__(self, path: Path | None = None) -> None:
        self._doc = JsonDocument(path, on_load=self._apply)
        self._grants: dict[str, AuthGrant] = {}
        self._doc.refresh()

    def _apply(self, data: dict[str, Any]) -> None:
        try:
            self._grants = {
                account_id: AuthGrant(**raw)
                for account_id, raw in data.get("grants", {}).items()
            }
        except TypeError:
            logger.error("Unreadable grant store %s, starting empty", self._doc.path)
            self._grants = {}

    def _save(self) -> None:
        self._doc.save({"grants": {k: asdict(g) for k, g in self._grants.items()}})

    @staticmethod
    def _copy(grant: AuthGrant) -> AuthGrant:
        return replace(grant, proof_key=dict(grant.proof_key), extra=dict(grant.extra))

    def exclusive(self) -> ContextManager[None]:
        """Hold the store, across processes, for a multi-step update."""
        return self._doc.locked()

    def get(self, account_id: str) -> AuthGrant | None:
        with self._doc.locked():
            grant = self._grants.get(account_id)
            return self._copy(grant) if grant else None

    def link(self, grant: AuthGrant) -> None:
        """Store a freshly authorized grant, replacing any previous one."""
        with self._doc.locked():
            previous = self._grants.get(grant.account_id)
            if previous and previous.proof_key != grant.proof_key:
                logger.info("Proof key rotated for %s, previous grant replaced", grant.account_id)
            self._grants[grant.account_id] = self._copy(grant)
            self._save()
        logger.info("Linked account %s (%s)", grant.account_id, grant.subject)

    def update_tokens(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: float,
        scope: str | None = None,
    ) -> AuthGrant:
        """Replace the token fields of an existing grant in one write."""
        with self._doc.locked():
            grant = self._grants.get(account_id)
            if grant is None:
                raise NoGrantError(account_id)
            grant.access_token = access_token
            grant.refresh_token = refresh_token
            grant.expires_at = expires_at
            if scope:
                grant.scope = scope
            grant.updated_at = _now_iso()
            self._save()
            return self._copy(grant)

    def delete(self, account_id: str) -> bool:
        with self._doc.locked():
            if self._grants.pop(account_id, None) is None:
                return False
            self._save()
        logger.info("Deleted grant for %s", account_id)
        return True

    @property
    def account_ids(self) -> list[str]:
        with self._doc.locked():
            return sorted(self._grants)
