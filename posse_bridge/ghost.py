"""Ghost CMS webhook handling.

Ghost signs each webhook delivery with the webhook's shared secret and
sends `X-Ghost-Signature: sha256=<hex>, t=<unix-ts>`. The hex digest is an
HMAC-SHA256 over the raw request body, so verification must run on the
exact bytes received, before any JSON parsing.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any

from posse_bridge.errors import UnauthorizedError, ValidationError
from posse_bridge.transform import Article

SIGNATURE_HEADER = "X-Ghost-Signature"


@dataclass
class WebhookSignature:
    digest: str
    timestamp: str = ""

    @classmethod
    def parse(cls, header: str) -> WebhookSignature:
        """Parse `sha256=<hex>, t=<ts>`; the timestamp part is optional."""
        fields: dict[str, str] = {}
        for part in header.split(","):
            name, sep, value = part.strip().partition("=")
            if sep:
                fields[name.strip()] = value.strip()
        digest = fields.get("sha256", "")
        if not digest:
            raise UnauthorizedError("Malformed webhook signature header")
        return cls(digest=digest.lower(), timestamp=fields.get("t", ""))

    def to_header(self) -> str:
        return f"sha256={self.digest}, t={self.timestamp}"


def body_digest(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_body(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Produce the header value Ghost would send for this body."""
    ts = timestamp if timestamp is not None else int(time.time())
    return WebhookSignature(body_digest(secret, body), str(ts)).to_header()


def verify_signature(secret: str, body: bytes, header: str | None) -> WebhookSignature:
    """Check the signature header against the raw body.

    Raises:
        UnauthorizedError: no secret configured, header missing/malformed,
            or digest mismatch.
    """
    if not secret:
        raise UnauthorizedError("No webhook secret configured")
    if not header:
        raise UnauthorizedError("Missing webhook signature")
    signature = WebhookSignature.parse(header)
    if not hmac.compare_digest(signature.digest, body_digest(secret, body)):
        raise UnauthorizedError("Webhook signature mismatch")
    return signature


def parse_article(payload: dict[str, Any]) -> Article:
    """Extract the article from a `post.published` payload.

    Ghost wraps the post as {"post": {"current": {...}, "previous": {...}}};
    a bare {"post": {...}} is accepted too.
    """
    post = payload.get("post") if isinstance(payload, dict) else None
    if isinstance(post, dict) and isinstance(post.get("current"), dict):
        post = post["current"]
    if not isinstance(post, dict):
        raise ValidationError("Webhook payload has no post")

    status = post.get("status")
    if status is not None and status != "published":
        raise ValidationError(f"Only published posts can be syndicated (status={status!r})")

    source_id = str(post.get("id") or "").strip()
    if not source_id:
        raise ValidationError("Post has no id")
    return Article(
        source_id=source_id,
        title=str(post.get("title") or ""),
        url=str(post.get("url") or ""),
        excerpt=str(post.get("custom_excerpt") or post.get("excerpt") or ""),
        published_at=str(post.get("published_at") or ""),
    )


def parse_webhook_body(body: bytes) -> Article:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Webhook body is not valid JSON: {exc}") from exc
    return parse_article(payload)
