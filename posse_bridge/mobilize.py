"""Read-only client for the Mobilize events API.

Listings are paginated with an opaque `next` URL; each page is
`{"count", "next", "previous", "data": [event, ...]}`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from posse_bridge.errors import ProtocolError
from posse_bridge.http import HttpClient, raise_for_status

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.mobilize.us/v1"


@dataclass
class MobilizePage:
    count: int
    next: str | None
    events: list[dict[str, Any]] = field(default_factory=list)


class MobilizeClient:
    """Fetches organization event listings page by page."""

    def __init__(self, api_url: str = DEFAULT_API_URL, http: HttpClient | None = None) -> None:
        self._api_url = api_url.rstrip("/")
        self._http = http or HttpClient()

    def events_url(self, org_id: int | str) -> str:
        return f"{self._api_url}/organizations/{org_id}/events"

    def first_page(self, org_id: int | str, updated_since: int) -> MobilizePage:
        return self.fetch_page(self.events_url(org_id), params={"updated_since": updated_since})

    def fetch_page(self, url: str, params: dict[str, Any] | None = None) -> MobilizePage:
        """GET one listing page.

        Raises:
            TransientError: network failure, 429 or 5xx.
            ProtocolError: other 4xx, or a body that is not a listing page.
        """
        resp = self._http.get(url, params=params)
        raise_for_status(resp, "Mobilize")
        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError) as exc:
            raise ProtocolError(resp.status, resp.text, "invalid_json") from exc
        if not isinstance(data, dict) or not isinstance(data.get("data"), list):
            raise ProtocolError(resp.status, resp.text, "invalid_page")
        return MobilizePage(
            count=int(data.get("count") or 0),
            next=data.get("next") or None,
            events=data["data"],
        )
