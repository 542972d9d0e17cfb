"""Imports upcoming Mobilize events as civic actions.

Per organization: follow the `next` cursor from the first listing page,
keep events with a timeslot starting after now, and upsert each one on
("mobilize", event id). A page that still fails after retrying ends that
organization's pass and counts one error; nothing is raised to the caller.
The watermark written at the end of a run is the `updated_since` of the
next one.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from posse_bridge.civic_actions import CivicActionStore
from posse_bridge.errors import ProtocolError, TransientError, ValidationError
from posse_bridge.mobilize import MobilizeClient
from posse_bridge.resilience import RateLimiter, RetryConfig, retry
from posse_bridge.watermark import SettingsStore, read_watermark, write_watermark

logger = logging.getLogger(__name__)

SOURCE_MOBILIZE = "mobilize"


@dataclass
class ImportResult:
    synced: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: ImportResult) -> None:
        self.synced += other.synced
        self.skipped += other.skipped
        self.errors += other.errors

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def earliest_upcoming(timeslots: Iterable[dict[str, Any]], now: float) -> datetime | None:
    """Start of the earliest timeslot strictly after now, or None."""
    upcoming = [float(t["start_date"]) for t in timeslots if float(t["start_date"]) > now]
    if not upcoming:
        return None
    return datetime.fromtimestamp(min(upcoming), tz=timezone.utc)


def build_location_string(location: dict[str, Any] | None) -> str:
    if not location:
        return ""
    address_lines = location.get("address_lines") or []
    parts = [
        location.get("venue"),
        address_lines[0] if address_lines else None,
        location.get("locality"),
        location.get("region"),
    ]
    return ", ".join(p.strip() for p in parts if isinstance(p, str) and p.strip())


def map_event(event: dict[str, Any], event_date: datetime) -> dict[str, Any]:
    """Content fields of the civic action for one Mobilize event."""
    title = event.get("title")
    if not title:
        raise ValidationError(f"Event {event.get('id')} has no title")
    location = event.get("location") or {}
    sponsor = event.get("sponsor") or {}
    return {
        "title": title,
        "description": event.get("description") or "",
        "event_type": event.get("event_type") or None,
        "event_date": event_date.isoformat(),
        "location": build_location_string(location) or None,
        "external_url": event.get("browser_url") or None,
        "image_url": event.get("featured_image_url") or None,
        "state": location.get("region") or None,
        "zipcode": location.get("postal_code") or None,
        "sponsor": sponsor.get("name") or None,
        "source_meta": {
            "sponsor": sponsor,
            "tags": event.get("tags") or [],
            "timezone": event.get("timezone"),
            "is_virtual": bool(event.get("is_virtual")),
            "all_timeslots": event.get("timeslots") or [],
            "coordinates": location.get("location"),
            "summary": event.get("summary"),
        },
    }


class EventImporter:
    """Runs Mobilize imports into a CivicActionStore."""

    def __init__(
        self,
        client: MobilizeClient,
        store: CivicActionStore,
        settings: SettingsStore,
        org_ids: Iterable[int] = (93,),
        rate_limiter: RateLimiter | None = None,
        retry_config: RetryConfig | None = None,
        max_workers: int = 4,
        clock: Callable[[], float] | None = None,
        sleep_func: Callable[[float], None] | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._org_ids = list(org_ids)
        self._limiter = rate_limiter or RateLimiter()
        self._retry_config = retry_config or RetryConfig()
        self._max_workers = max(1, max_workers)
        self._clock = clock or time.time
        self._sleep = sleep_func

    def import_events(self, org_ids: Iterable[int] | None = None) -> ImportResult:
        orgs = list(org_ids) if org_ids is not None else self._org_ids
        now = self._clock()
        updated_since = read_watermark(self._settings, now)
        logger.info("Importing events for orgs %s updated since %d", orgs, updated_since)

        total = ImportResult()
        workers = min(self._max_workers, len(orgs)) or 1
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for result in pool.map(lambda org: self._import_org(org, updated_since, now), orgs):
                total.merge(result)

        write_watermark(self._settings, self._clock())
        logger.info("Import complete: %d synced, %d skipped, %d errors",
                    total.synced, total.skipped, total.errors)
        return total

    def _import_org(self, org_id: int, updated_since: int, now: float) -> ImportResult:
        result = ImportResult()
        url: str | None = self._client.events_url(org_id)
        params: dict[str, Any] | None = {"updated_since": updated_since}
        page_count = 0
        while url:
            page_count += 1
            self._limiter.acquire()
            try:
                page = retry(self._client.fetch_page, self._retry_config, self._sleep, url, params)
            except (TransientError, ProtocolError) as exc:
                logger.error("Page %d for org %s failed, ending its pass: %s", page_count, org_id, exc)
                result.errors += 1
                break
            logger.debug("Org %s page %d: %d events (total %d)",
                         org_id, page_count, len(page.events), page.count)
            for event in page.events:
                self._import_event(event, now, result)
            url, params = page.next, None
        return result

    def _import_event(self, event: dict[str, Any], now: float, result: ImportResult) -> None:
        event_id = event.get("id") if isinstance(event, dict) else None
        try:
            if event_id is None:
                raise ValidationError("Event has no id")
            event_date = earliest_upcoming(event.get("timeslots") or [], now)
            if event_date is None:
                result.skipped += 1
                return
            content = map_event(event, event_date)
            self._store.upsert_imported(SOURCE_MOBILIZE, str(event_id), content)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.error("Could not import event %s: %s", event_id, exc)
            result.errors += 1
            return
        result.synced += 1
