"""Publish pipeline: Ghost article → Bluesky post, exactly once per article.

Implements the POSSE pattern for one target: content is authored on the
canonical Ghost site, then syndicated to Bluesky with a back-link.

Per invocation: verify → idempotency check → claim → acquire session →
transform → create post → log. The sync log is the idempotency ledger;
retrying a failed publish is simply publishing the same source id again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from posse_bridge.bluesky import BlueskyClient, BlueskyPost, PostRef
from posse_bridge.errors import (
    AuthError,
    ProtocolError,
    PublishInProgressError,
    RetryablePublishError,
    TransientError,
    ValidationError,
)
from posse_bridge.ghost import parse_webhook_body, verify_signature
from posse_bridge.resilience import CircuitBreaker
from posse_bridge.session import SessionManager
from posse_bridge.sync_log import (
    KIND_AUTH,
    KIND_RETRYABLE,
    KIND_TERMINAL,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_SUCCESS,
    SyncLog,
    SyncLogEntry,
)
from posse_bridge.transform import Article, ProtocolPost, to_protocol_post

logger = logging.getLogger(__name__)

ORIGIN_WEBHOOK = "webhook"
ORIGIN_ADMIN = "admin"


@dataclass
class PublishTrigger:
    """One request to publish one CMS post to one account."""
    source_id: str
    account_id: str
    article: Article
    origin: str = ORIGIN_ADMIN
    raw_body: bytes = b""
    signature: str | None = None


class PublishPipeline:
    """Publishes articles and records every outcome in the sync log."""

    def __init__(
        self,
        sessions: SessionManager,
        sync_log: SyncLog,
        webhook_secret: str = "",
        circuit_breaker: CircuitBreaker | None = None,
        reconcile_limit: int = 25,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._sessions = sessions
        self._sync_log = sync_log
        self._webhook_secret = webhook_secret
        self._breaker = circuit_breaker
        self._reconcile_limit = reconcile_limit
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def sync_log(self) -> SyncLog:
        return self._sync_log

    def handle_webhook(self, body: bytes, signature: str | None, account_id: str) -> SyncLogEntry:
        """Verify, parse and publish one Ghost `post.published` delivery."""
        verify_signature(self._webhook_secret, body, signature)
        article = parse_webhook_body(body)
        return self.publish(PublishTrigger(
            source_id=article.source_id,
            account_id=account_id,
            article=article,
            origin=ORIGIN_WEBHOOK,
            raw_body=body,
            signature=signature,
        ))

    def publish(self, trigger: PublishTrigger) -> SyncLogEntry:
        """Publish once; return the success entry or the logged auth/terminal error.

        Raises:
            UnauthorizedError: webhook signature invalid (nothing logged).
            ValidationError: malformed trigger or article (nothing logged).
            PublishInProgressError: a concurrent publish holds the claim.
            RetryablePublishError: transient failure, error entry logged.
        """
        if trigger.origin == ORIGIN_WEBHOOK:
            verify_signature(self._webhook_secret, trigger.raw_body, trigger.signature)
        if not trigger.source_id:
            raise ValidationError("Trigger has no source id")
        if not trigger.account_id:
            raise ValidationError("Trigger has no account id")
        post = to_protocol_post(trigger.article, self._now())

        existing = self._sync_log.find_success(trigger.source_id)
        if existing is not None:
            logger.info("Source %s already published as %s", trigger.source_id,
                        (existing.target_ref or {}).get("uri"))
            return existing

        if not self._sync_log.claim(trigger.source_id):
            raise PublishInProgressError(trigger.source_id)
        try:
            # Re-check under the claim: a concurrent publish may have just finished.
            existing = self._sync_log.find_success(trigger.source_id)
            if existing is not None:
                return existing
            latest = self._sync_log.latest(trigger.source_id)
            orphaned = latest is not None and latest.status == STATUS_PENDING
            self._sync_log.append(self._entry(trigger, STATUS_PENDING, post))
            return self._run(trigger, post, orphaned)
        finally:
            self._sync_log.release(trigger.source_id)

    def _run(self, trigger: PublishTrigger, post: ProtocolPost, orphaned: bool) -> SyncLogEntry:
        try:
            client = self._sessions.acquire_client(trigger.account_id)
        except AuthError as exc:
            return self._log_error(trigger, post, exc, KIND_AUTH)
        except TransientError as exc:
            raise RetryablePublishError(self._log_error(trigger, post, exc, KIND_RETRYABLE)) from exc

        try:
            ref = self._reconcile(client, post) if orphaned else None
            reconciled = ref is not None
            if ref is None:
                ref = self._create(client, post)
            else:
                logger.warning("Reconciled orphaned publish of %s to %s", trigger.source_id, ref.uri)
        except TransientError as exc:
            raise RetryablePublishError(self._log_error(trigger, post, exc, KIND_RETRYABLE)) from exc
        except (ProtocolError, ValidationError) as exc:
            return self._log_error(trigger, post, exc, KIND_TERMINAL)

        entry = self._entry(trigger, STATUS_SUCCESS, post)
        entry.target_ref = ref.to_dict()
        entry.metadata["reconciled"] = reconciled
        stored, created = self._sync_log.append_success(entry)
        if not created:
            logger.error("Source %s was published twice (%s and %s)", trigger.source_id,
                         (stored.target_ref or {}).get("uri"), ref.uri)
        return stored

    def _create(self, client: BlueskyClient, post: ProtocolPost) -> PostRef:
        record = BlueskyPost(text=post.text, created_at=post.created_at)
        if self._breaker is not None:
            return self._breaker.call(client.create_post, record)
        return client.create_post(record)

    def _reconcile(self, client: BlueskyClient, post: ProtocolPost) -> PostRef | None:
        """Find a post left behind by a crash between creating it and logging it."""
        return client.find_post_by_text(post.text, limit=self._reconcile_limit)

    def _entry(self, trigger: PublishTrigger, status: str, post: ProtocolPost) -> SyncLogEntry:
        return SyncLogEntry(
            source_id=trigger.source_id,
            account_id=trigger.account_id,
            status=status,
            retry_count=self._sync_log.prior_failures(trigger.source_id),
            metadata={
                "origin": trigger.origin,
                "title": trigger.article.title,
                "url": trigger.article.url,
                "excerpt": trigger.article.excerpt,
                "text": post.text,
            },
        )

    def _log_error(
        self, trigger: PublishTrigger, post: ProtocolPost, exc: Exception, kind: str,
    ) -> SyncLogEntry:
        entry = self._entry(trigger, STATUS_ERROR, post)
        entry.error = str(exc)
        entry.error_kind = kind
        self._sync_log.append(entry)
        logger.error("Publish of %s failed (%s, retry %d): %s",
                     trigger.source_id, kind, entry.retry_count, exc)
        return entry

    def retry_failed(self) -> list[SyncLogEntry]:
        """Re-publish every source id whose latest attempt failed transiently."""
        results: list[SyncLogEntry] = []
        for failed in self._sync_log.retryable():
            meta = failed.metadata
            trigger = PublishTrigger(
                source_id=failed.source_id,
                account_id=failed.account_id,
                article=Article(
                    source_id=failed.source_id,
                    title=meta.get("title", ""),
                    url=meta.get("url", ""),
                    excerpt=meta.get("excerpt", ""),
                ),
                origin=ORIGIN_ADMIN,
            )
            try:
                results.append(self.publish(trigger))
            except RetryablePublishError as exc:
                results.append(exc.entry)
            except PublishInProgressError:
                logger.info("Skipping retry of %s, publish in progress", failed.source_id)
        return results
