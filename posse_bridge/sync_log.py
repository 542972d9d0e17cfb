"""Append-only sync log for publish attempts.

Every attempt to publish a CMS post is recorded to a JSON file, enabling
idempotency, auditing, and retry of failed publishes. The log is also the
idempotency ledger: it holds at most one success entry per source id, and
append_success enforces that under the store lock (shared across
processes) rather than trusting the caller's earlier read.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from posse_bridge.storage import JsonDocument

logger = logging.getLogger(__name__)

ACTION_PUBLISH = "publish_to_bluesky"

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

KIND_AUTH = "auth"
KIND_RETRYABLE = "retryable"
KIND_TERMINAL = "terminal"

DEFAULT_CLAIM_TTL = 300.0


@dataclass
class SyncLogEntry:
    """A single publish attempt (or its outcome)."""
    source_id: str
    account_id: str
    status: str  # "pending", "success", "error"
    action: str = ACTION_PUBLISH
    target_ref: dict[str, str] | None = None  # {"uri", "cid"} on success only
    error: str = ""
    error_kind: str = ""  # "auth", "retryable", "terminal" on error only
    retry_count: int = 0
    entry_id: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.entry_id:
            self.entry_id = uuid.uuid4().hex
        if not self.created_at:
            self.created_at = datetime.now(timezone.utc).isoformat()

    @property
    def is_success(self) -> bool:
        return self.status == STATUS_SUCCESS


class SyncLog:
    """JSON file-backed, append-only publish log.

    In-flight claims live in the same document so that separate processes
    sharing a data directory see each other's claims. A claim expires after
    ``claim_ttl`` seconds, which bounds how long a crashed holder blocks
    its source id.
    """

    def __init__(
        self,
        path: Path | None = None,
        claim_ttl: float = DEFAULT_CLAIM_TTL,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._doc = JsonDocument(path, on_load=self._apply)
        self._records: list[SyncLogEntry] = []
        self._claims: dict[str, dict[str, Any]] = {}
        self._claim_ttl = claim_ttl
        self._clock = clock or time.time
        self._owner = f"{os.getpid()}-{uuid.uuid4().hex}"
        self._doc.refresh()

    def _apply(self, data: dict[str, Any]) -> None:
        try:
            self._records = [SyncLogEntry(**rec) for rec in data.get("records", [])]
        except TypeError:
            logger.error("Unreadable sync log %s, starting empty", self._doc.path)
            self._records = []
        claims = data.get("claims", {})
        self._claims = dict(claims) if isinstance(claims, dict) else {}

    def _save(self) -> None:
        self._doc.save({
            "records": [asdict(r) for r in self._records],
            "claims": self._claims,
        })

    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append a pending or error entry."""
        if entry.status == STATUS_SUCCESS:
            raise ValueError("Success entries must go through append_success")
        with self._doc.locked():
            self._records.append(entry)
            self._save()
        return entry

    def append_success(self, entry: SyncLogEntry) -> tuple[SyncLogEntry, bool]:
        """Insert a success entry unless one already exists for its source id.

        Returns (entry_in_log, created).
        """
        if entry.status != STATUS_SUCCESS:
            raise ValueError("append_success requires a success entry")
        with self._doc.locked():
            existing = self.find_success(entry.source_id)
            if existing is not None:
                logger.warning("Duplicate success for %s ignored", entry.source_id)
                return existing, False
            self._records.append(entry)
            self._save()
            return entry, True

    def claim(self, source_id: str) -> bool:
        """Take the in-flight claim for a source id; False if a live claim exists."""
        with self._doc.locked():
            now = self._clock()
            held = self._claims.get(source_id)
            if held and float(held.get("expires_at", 0)) > now:
                return False
            if held:
                logger.warning("Claim on %s by %s expired, taking over", source_id, held.get("owner"))
            self._claims[source_id] = {"owner": self._owner, "expires_at": now + self._claim_ttl}
            self._save()
            return True

    def release(self, source_id: str) -> None:
        with self._doc.locked():
            held = self._claims.get(source_id)
            if held and held.get("owner") == self._owner:
                del self._claims[source_id]
                self._save()

    def find_success(self, source_id: str) -> SyncLogEntry | None:
        with self._doc.locked():
            return next(
                (r for r in self._records if r.source_id == source_id and r.is_success),
                None,
            )

    def get_by_source(self, source_id: str) -> list[SyncLogEntry]:
        with self._doc.locked():
            return [r for r in self._records if r.source_id == source_id]

    def latest(self, source_id: str) -> SyncLogEntry | None:
        entries = self.get_by_source(source_id)
        return entries[-1] if entries else None

    def prior_failures(self, source_id: str) -> int:
        return sum(1 for r in self.get_by_source(source_id) if r.status == STATUS_ERROR)

    def get_failures(self) -> list[SyncLogEntry]:
        with self._doc.locked():
            return [r for r in self._records if r.status == STATUS_ERROR]

    def retryable(self) -> list[SyncLogEntry]:
        """Latest entry per source id, where that entry is a retryable error."""
        with self._doc.locked():
            latest: dict[str, SyncLogEntry] = {}
            for r in self._records:
                latest[r.source_id] = r
        return [
            r for r in latest.values()
            if r.status == STATUS_ERROR and r.error_kind == KIND_RETRYABLE
        ]

    @property
    def total_records(self) -> int:
        with self._doc.locked():
            return len(self._records)

    @property
    def all_records(self) -> list[SyncLogEntry]:
        with self._doc.locked():
            return list(self._records)
