"""Bluesky (AT Protocol) client bound to one linked account.

Follows the live/mock pattern: in mock mode posts are recorded locally
without API calls. In live mode every XRPC request carries the grant's
access token as `Authorization: DPoP <token>` plus a fresh DPoP proof
signed with the grant's proof key.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from posse_bridge.credentials import AuthGrant
from posse_bridge.errors import ProtocolError, ValidationError
from posse_bridge.http import HttpClient, HttpResponse, raise_for_status
from posse_bridge.transform import MAX_CHARS

logger = logging.getLogger(__name__)

POST_COLLECTION = "app.bsky.feed.post"
DEFAULT_SERVICE_URL = "https://bsky.social"


@dataclass
class BlueskyPost:
    text: str
    created_at: str = ""
    reply_to: dict[str, Any] | None = None

    def validate(self) -> bool:
        return 0 < len(self.text) <= MAX_CHARS

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": self.text,
            "createdAt": self.created_at or datetime.now(timezone.utc).isoformat(),
        }
        if self.reply_to:
            record["reply"] = self.reply_to
        return record


@dataclass
class PostRef:
    """Where a created post lives: its at:// URI and content hash (CID)."""
    uri: str
    cid: str

    def to_dict(self) -> dict[str, str]:
        return {"uri": self.uri, "cid": self.cid}


class BlueskyClient:
    """Posts to one account's PDS with DPoP-bound OAuth credentials."""

    def __init__(
        self,
        grant: AuthGrant,
        http: HttpClient | None = None,
        live: bool = False,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.grant = grant
        self._key = grant.signing_key()
        self._http = http or HttpClient()
        self._live = live
        self._clock = clock or time.time
        self._nonce = ""
        self._posted: list[dict[str, Any]] = []

    @property
    def did(self) -> str:
        return self.grant.subject

    @property
    def service_url(self) -> str:
        return (self.grant.service_url or DEFAULT_SERVICE_URL).rstrip("/")

    def _send(self, method: str, url: str, **kwargs: Any) -> HttpResponse:
        proof = self._key.proof(
            method, url,
            nonce=self._nonce or None,
            access_token=self.grant.access_token,
            now=self._clock(),
        )
        headers = {
            "Authorization": f"DPoP {self.grant.access_token}",
            "DPoP": proof,
        }
        response = self._http.request(method, url, headers=headers, **kwargs)
        nonce = response.header("dpop-nonce")
        if nonce:
            self._nonce = nonce
        return response

    def _xrpc(self, method: str, nsid: str, **kwargs: Any) -> HttpResponse:
        """Call an XRPC method, replaying once if the PDS demands a DPoP nonce."""
        url = f"{self.service_url}/xrpc/{nsid}"
        response = self._send(method, url, **kwargs)
        if response.status == 401 and "use_dpop_nonce" in response.header("www-authenticate") \
                and response.header("dpop-nonce"):
            response = self._send(method, url, **kwargs)
        raise_for_status(response, "Bluesky")
        return response

    def create_post(self, post: BlueskyPost) -> PostRef:
        """Create a feed post (live or mock) and return its URI and CID."""
        if not post.validate():
            raise ValidationError("Post text exceeds character limit or is empty")

        record = post.to_record()
        if self._live:
            response = self._xrpc("POST", "com.atproto.repo.createRecord", json_body={
                "repo": self.did,
                "collection": POST_COLLECTION,
                "record": record,
            })
            try:
                data = response.json()
                ref = PostRef(uri=data["uri"], cid=data["cid"])
            except (ValueError, KeyError, TypeError) as exc:
                raise ProtocolError(response.status, response.text, "malformed createRecord response") from exc
        else:
            n = len(self._posted) + 1
            ref = PostRef(uri=f"at://{self.did}/{POST_COLLECTION}/mock{n}", cid=f"mock-cid-{n}")

        self._posted.append({**ref.to_dict(), "value": record})
        logger.info("Created post %s for %s", ref.uri, self.grant.account_id)
        return ref

    def recent_posts(self, limit: int = 25) -> list[dict[str, Any]]:
        """Newest posts in the account's repo, as listRecords entries."""
        if not self._live:
            return list(reversed(self._posted))[:limit]
        response = self._xrpc("GET", "com.atproto.repo.listRecords", params={
            "repo": self.did,
            "collection": POST_COLLECTION,
            "limit": limit,
        })
        try:
            records = response.json()["records"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ProtocolError(response.status, response.text, "malformed listRecords response") from exc
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            raise ProtocolError(response.status, response.text, "malformed listRecords response")
        return records

    def find_post_by_text(self, text: str, limit: int = 25) -> PostRef | None:
        for entry in self.recent_posts(limit):
            value = entry.get("value")
            if isinstance(value, dict) and value.get("text") == text:
                try:
                    return PostRef(uri=entry["uri"], cid=entry["cid"])
                except KeyError as exc:
                    raise ProtocolError(200, "", "listRecords entry without uri/cid") from exc
        return None

    @property
    def post_count(self) -> int:
        return len(self._posted)
