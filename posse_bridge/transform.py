"""Article → Bluesky post transform.

Pure functions, no I/O. The post text is title, excerpt and canonical URL
separated by blank lines. When that exceeds the protocol limit the excerpt
is cut first, so the link back to the canonical article always survives
intact at the end of the post.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from posse_bridge.errors import ValidationError

MAX_CHARS = 300
ELLIPSIS = "..."
SEPARATOR = "\n\n"


@dataclass(frozen=True)
class Article:
    """The parts of a CMS article the bridge needs."""
    source_id: str
    title: str
    url: str
    excerpt: str = ""
    published_at: str = ""


@dataclass(frozen=True)
class ProtocolPost:
    text: str
    created_at: str


def _truncate_at_word(text: str, max_len: int) -> str:
    """Cut text to at most max_len characters, preferring a word boundary."""
    if len(text) <= max_len:
        return text
    cut_at = text.rfind(" ", 0, max_len + 1)
    if cut_at <= 0:
        cut_at = max_len
    return text[:cut_at].rstrip()


def compose_text(title: str, excerpt: str, url: str, limit: int = MAX_CHARS) -> str:
    """Join title, excerpt and URL, truncating the excerpt to fit `limit`."""
    title = title.strip()
    excerpt = excerpt.strip()
    url = url.strip()
    if not title:
        raise ValidationError("Article has no title")
    if not url:
        raise ValidationError("Article has no canonical URL")
    if len(url) > limit:
        raise ValidationError(f"Canonical URL longer than {limit} characters")

    text = SEPARATOR.join(p for p in (title, excerpt, url) if p)
    if len(text) <= limit:
        return text

    room = limit - len(title) - len(url) - 2 * len(SEPARATOR) - len(ELLIPSIS)
    if excerpt and room > 0:
        cut = _truncate_at_word(excerpt, room)
        if cut:
            return SEPARATOR.join((title, cut + ELLIPSIS, url))

    # No room for any excerpt: drop it, and cut the title only as a last resort.
    text = SEPARATOR.join((title, url))
    if len(text) <= limit:
        return text
    room = limit - len(url) - len(SEPARATOR) - len(ELLIPSIS)
    cut = _truncate_at_word(title, room) if room > 0 else ""
    if not cut:
        return url
    return SEPARATOR.join((cut + ELLIPSIS, url))


def to_protocol_post(article: Article, now: datetime | None = None) -> ProtocolPost:
    """Map an article to a post stamped with the current instant."""
    created = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return ProtocolPost(
        text=compose_text(article.title, article.excerpt, article.url),
        created_at=created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )
