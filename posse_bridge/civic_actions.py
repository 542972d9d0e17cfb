"""Civic actions and their moderation lifecycle.

A civic action is either imported from an external events source or
submitted by a user. Moderators move it from pending to approved or
rejected (one way), and may pin it or set its priority once approved.
Only approved actions are public, shown pinned first, then by priority,
then by soonest event.

Imports own the content fields; moderators own status, pin and priority.
upsert_imported never touches the moderator-owned fields of an existing
record.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from posse_bridge.errors import ModerationError, NotFoundError, ValidationError
from posse_bridge.storage import JsonDocument

logger = logging.getLogger(__name__)

SOURCE_USER = "user"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

MIN_PRIORITY = 0
MAX_PRIORITY = 100

CONTENT_FIELDS = (
    "title",
    "description",
    "event_type",
    "event_date",
    "location",
    "external_url",
    "image_url",
    "state",
    "zipcode",
    "sponsor",
    "source_meta",
)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CivicAction:
    action_id: str
    title: str
    description: str = ""
    source: str = SOURCE_USER
    external_id: str | None = None
    event_type: str | None = None
    event_date: str | None = None  # ISO 8601, UTC
    location: str | None = None
    external_url: str | None = None
    image_url: str | None = None
    state: str | None = None
    zipcode: str | None = None
    sponsor: str | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_PENDING
    is_pinned: bool = False
    priority: int = MIN_PRIORITY
    rejection_reason: str = ""
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self) -> None:
        if not self.created_at:
            self.created_at = _now_iso()
        if not self.updated_at:
            self.updated_at = self.created_at

    @property
    def is_public(self) -> bool:
        return self.status == STATUS_APPROVED

    def event_time(self) -> datetime:
        if not self.event_date:
            return _FAR_FUTURE
        try:
            parsed = datetime.fromisoformat(self.event_date.replace("Z", "+00:00"))
        except ValueError:
            return _FAR_FUTURE
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def clamp_priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Priority must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("Priority must be finite")
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


def display_order(actions: Iterable[CivicAction]) -> list[CivicAction]:
    """Approved actions: pinned first, priority descending, event date ascending.

    Undated events sort after dated ones; remaining ties keep input order.
    """
    approved = [a for a in actions if a.status == STATUS_APPROVED]
    return sorted(approved, key=lambda a: (not a.is_pinned, -a.priority, a.event_time()))


class CivicActionStore:
    """JSON file-backed civic action store, unique on (source, external_id)."""

    def __init__(self, path: Path | None = None) -> None:
        self._doc = JsonDocument(path, on_load=self._apply)
        self._actions: dict[str, CivicAction] = {}
        self._doc.refresh()

    def _apply(self, data: dict[str, Any]) -> None:
        try:
            self._actions = {
                raw["action_id"]: CivicAction(**raw) for raw in data.get("actions", [])
            }
        except (TypeError, KeyError):
            logger.error("Unreadable civic action store %s, starting empty", self._doc.path)
            self._actions = {}

    def _save(self) -> None:
        self._doc.save({"actions": [asdict(a) for a in self._actions.values()]})

    @staticmethod
    def _copy(action: CivicAction) -> CivicAction:
        return replace(action, source_meta=dict(action.source_meta))

    def _find_external(self, source: str, external_id: str) -> CivicAction | None:
        return next(
            (a for a in self._actions.values()
             if a.source == source and a.external_id == external_id),
            None,
        )

    def _require(self, action_id: str) -> CivicAction:
        action = self._actions.get(action_id)
        if action is None:
            raise NotFoundError(f"Civic action {action_id!r} not found")
        return action

    def upsert_imported(
        self, source: str, external_id: str, content: dict[str, Any],
    ) -> tuple[CivicAction, bool]:
        """Insert (pre-approved) or update the record for an external event.

        Returns (action, created).
        """
        unknown = set(content) - set(CONTENT_FIELDS)
        if unknown:
            raise ValidationError(f"Not content fields: {sorted(unknown)}")
        with self._doc.locked():
            action = self._find_external(source, external_id)
            created = action is None
            if action is None:
                action = CivicAction(
                    action_id=uuid.uuid4().hex,
                    title=content.get("title", ""),
                    source=source,
                    external_id=external_id,
                    status=STATUS_APPROVED,
                )
                self._actions[action.action_id] = action
            for name, value in content.items():
                setattr(action, name, value)
            action.updated_at = _now_iso()
            self._save()
            return self._copy(action), created

    def submit(self, title: str, description: str = "", **content: Any) -> CivicAction:
        """Create a user-submitted action awaiting moderation."""
        if not title.strip():
            raise ValidationError("Civic action needs a title")
        unknown = set(content) - set(CONTENT_FIELDS)
        if unknown:
            raise ValidationError(f"Not content fields: {sorted(unknown)}")
        action = CivicAction(action_id=uuid.uuid4().hex, title=title, description=description, **content)
        with self._doc.locked():
            self._actions[action.action_id] = action
            self._save()
        return self._copy(action)

    def get(self, action_id: str) -> CivicAction:
        with self._doc.locked():
            return self._copy(self._require(action_id))

    def find_external(self, source: str, external_id: str) -> CivicAction | None:
        with self._doc.locked():
            action = self._find_external(source, external_id)
            return self._copy(action) if action else None

    def approve(self, action_id: str, pinned: bool = False) -> CivicAction:
        with self._doc.locked():
            action = self._require(action_id)
            if action.status != STATUS_PENDING:
                raise ModerationError(f"Cannot approve a {action.status} action")
            action.status = STATUS_APPROVED
            action.is_pinned = bool(pinned)
            action.updated_at = _now_iso()
            self._save()
            logger.info("Approved civic action %s", action_id)
            return self._copy(action)

    def reject(self, action_id: str, reason: str = "") -> CivicAction:
        with self._doc.locked():
            action = self._require(action_id)
            if action.status != STATUS_PENDING:
                raise ModerationError(f"Cannot reject a {action.status} action")
            action.status = STATUS_REJECTED
            action.rejection_reason = reason
            action.updated_at = _now_iso()
            self._save()
            logger.info("Rejected civic action %s", action_id)
            return self._copy(action)

    def _require_approved(self, action_id: str) -> CivicAction:
        action = self._require(action_id)
        if action.status != STATUS_APPROVED:
            raise ModerationError("Pin and priority apply to approved actions only")
        return action

    def toggle_pin(self, action_id: str) -> CivicAction:
        with self._doc.locked():
            action = self._require_approved(action_id)
            action.is_pinned = not action.is_pinned
            action.updated_at = _now_iso()
            self._save()
            return self._copy(action)

    def set_priority(self, action_id: str, priority: Any) -> CivicAction:
        value = clamp_priority(priority)
        with self._doc.locked():
            action = self._require_approved(action_id)
            action.priority = value
            action.updated_at = _now_iso()
            self._save()
            return self._copy(action)

    def list(self, status: str | None = None) -> list[CivicAction]:
        with self._doc.locked():
            return [
                self._copy(a) for a in self._actions.values()
                if status is None or a.status == status
            ]

    def list_approved(self) -> list[CivicAction]:
        return display_order(self.list(STATUS_APPROVED))

    @property
    def total(self) -> int:
        with self._doc.locked():
            return len(self._actions)
