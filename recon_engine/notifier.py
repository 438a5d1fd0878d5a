"""
Best-effort delivery of match outcomes back to the expected events feed.

A failed ``mark_matched`` never reverts the local match. The call is
queued in ``pending_notifications`` and retried later; after
``NOTIFY_MAX_ATTEMPTS`` failed attempts the row is abandoned.
"""
from typing import Dict, Optional

from .config import FeedConfig, config
from .exceptions import EventAlreadySettledError, FeedError
from .feeds import ExpectedEventsFeed
from .logging_config import get_logger, log_notification_failed
from .models import Match, NotificationStatus, PendingNotification
from .storage import ReconStore

logger = get_logger("notifier")


class MatchNotifier:
    """Publishes matches to the collaborator and keeps an outbox of failures."""

    def __init__(self, store: ReconStore, feed: ExpectedEventsFeed, cfg: Optional[FeedConfig] = None):
        self.store = store
        self.feed = feed
        self.config = cfg or config.feed

    def notify(self, match: Match) -> bool:
        """
        Mark the matched event settled in the feed.

        Returns:
            True if the collaborator accepted the call
        """
        if not match.event_id:
            return True

        try:
            self.feed.mark_matched(match.event_id, match.transaction_id, match.matched_amount)
            return True
        except EventAlreadySettledError as e:
            self._record_conflict(match, str(e))
            return False
        except FeedError as e:
            log_notification_failed(logger, match.event_id, match.transaction_id, str(e))
            self.store.insert_notification(PendingNotification(
                match_id=match.id,
                event_id=match.event_id,
                transaction_id=match.transaction_id,
                status=NotificationStatus.PENDING,
                attempts=1,
                last_error=str(e),
            ))
            return False

    def _record_conflict(self, match: Match, reason: str, notification: PendingNotification = None):
        """The event was settled elsewhere. Keep our match and flag the line for review."""
        logger.warning(
            f"Settlement conflict on event {match.event_id}: txn {match.transaction_id} needs attention",
            extra={"extra_data": {
                "event": "settlement_conflict",
                "event_id": match.event_id,
                "transaction_id": match.transaction_id,
            }}
        )
        with self.store.transaction() as conn:
            self.store.set_requires_attention(match.transaction_id, True, conn)
            if notification is None:
                self.store.insert_notification(PendingNotification(
                    match_id=match.id,
                    event_id=match.event_id,
                    transaction_id=match.transaction_id,
                    status=NotificationStatus.CONFLICT,
                    attempts=1,
                    last_error=reason,
                ), conn)
            else:
                notification.status = NotificationStatus.CONFLICT
                notification.last_error = reason
                self.store.update_notification(notification, conn)

    def retry_pending(self, limit: int = 100) -> Dict[str, int]:
        """
        Retry queued notifications.

        Returns:
            Counts of delivered, conflict, abandoned, still pending and
            skipped (match superseded meanwhile) rows
        """
        counts = {"delivered": 0, "conflict": 0, "abandoned": 0, "pending": 0, "skipped": 0}

        for notification in self.store.list_notifications(NotificationStatus.PENDING, limit):
            match = self.store.get_match(notification.match_id)
            if match is None or not match.is_active:
                notification.status = NotificationStatus.ABANDONED
                notification.last_error = "match no longer active"
                self.store.update_notification(notification)
                counts["skipped"] += 1
                continue

            notification.attempts += 1
            try:
                self.feed.mark_matched(match.event_id, match.transaction_id, match.matched_amount)
            except EventAlreadySettledError as e:
                self._record_conflict(match, str(e), notification)
                counts["conflict"] += 1
                continue
            except FeedError as e:
                notification.last_error = str(e)
                if notification.attempts >= self.config.notify_max_attempts:
                    notification.status = NotificationStatus.ABANDONED
                    counts["abandoned"] += 1
                    logger.error(
                        f"Giving up on event {match.event_id} after {notification.attempts} attempts"
                    )
                else:
                    counts["pending"] += 1
                self.store.update_notification(notification)
                continue

            notification.status = NotificationStatus.DELIVERED
            notification.last_error = None
            self.store.update_notification(notification)
            counts["delivered"] += 1

        if any(counts.values()):
            logger.info(
                f"Notification retry | delivered={counts['delivered']} | conflict={counts['conflict']} | "
                f"pending={counts['pending']} | abandoned={counts['abandoned']}"
            )
        return counts
