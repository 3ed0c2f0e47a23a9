"""Retention and cleanup policy for the change log."""
import logging

from notifications.models import RetentionReport

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600


class RetentionPolicy:
    """Age- and count-based pruning of a NotificationQueue."""

    RATE_WINDOW_SECONDS = 300
    RATE_ALERT_THRESHOLD = 100
    DUPLICATE_WINDOW_SECONDS = 600
    DUPLICATE_THRESHOLD = 10
    BACKLOG_WARNING_THRESHOLD = 500

    def __init__(self, queue):
        self.queue = queue

    def _cutoff(self, max_age_hours: float) -> float:
        return self.queue.clock() - max_age_hours * SECONDS_PER_HOUR

    def cleanup(self, max_age_hours: float = 24, max_records: int = 1000) -> int:
        """
        Delete entries older than ``max_age_hours`` and, separately, all but
        the ``max_records`` most recent entries.

        Args:
            max_age_hours: Maximum entry age in hours
            max_records: Number of most recent entries to keep

        Returns:
            Total number of deleted entries
        """
        deleted = self.queue.delete_older_than(self._cutoff(max_age_hours))
        deleted += self.queue.trim_to(max_records)

        if deleted > 0:
            logger.info(f"Cleaned up {deleted} old calendar updates")
        return deleted

    def simple_cleanup(self, max_age_hours: float = 24) -> int:
        """Delete entries older than ``max_age_hours`` only."""
        deleted = self.queue.delete_older_than(self._cutoff(max_age_hours))

        if deleted > 0:
            logger.info(f"Simple cleanup: removed {deleted} old calendar updates")
        return deleted

    def purge_all(self) -> int:
        """Delete every entry. Emergency use only."""
        deleted = self.queue.purge()
        logger.warning(f"Cleared all calendar updates: {deleted} records")
        return deleted

    def run_scheduled(self, max_age_hours: float = 2,
                      max_records: int = 200) -> RetentionReport:
        """
        Scheduled maintenance: prune with tight thresholds, then compute
        the growth-rate and duplicate-pattern signals for alerting.

        Args:
            max_age_hours: Age threshold for this run
            max_records: Count threshold for this run

        Returns:
            RetentionReport describing what was done and observed
        """
        initial_count = self.queue.count()
        messages = []
        deleted = 0
        final_count = initial_count

        if initial_count > 0:
            messages.append(f"Starting cleanup - current records: {initial_count}")
            deleted = self.cleanup(max_age_hours, max_records)

            if deleted > 0:
                final_count = self.queue.count()
                messages.append(f"Cleaned up {deleted} old records")
                messages.append(f"Final count: {final_count} records")
            elif initial_count > self.BACKLOG_WARNING_THRESHOLD:
                messages.append(
                    f"Warning: {initial_count} records present but none cleaned "
                    "(may need manual intervention)"
                )

        recent_count = self.queue.count_since(self.RATE_WINDOW_SECONDS)
        rate_alert = recent_count > self.RATE_ALERT_THRESHOLD
        if rate_alert:
            messages.append(
                f"Alert: {recent_count} records created in last 5 minutes - "
                "possible notification loop"
            )

        duplicates = self.queue.duplicate_patterns(
            window_seconds=self.DUPLICATE_WINDOW_SECONDS,
            threshold=self.DUPLICATE_THRESHOLD
        )
        if duplicates:
            messages.append('Warning: Detected duplicate broadcasts:')
            for pattern in duplicates:
                messages.append(
                    f"  Event ID {pattern.entity_id} ({pattern.event_type}): "
                    f"{pattern.count} times"
                )

        if rate_alert or duplicates:
            logger.warning(f"Change log retention: {'; '.join(messages)}")
        elif messages:
            logger.info(f"Change log retention: {'; '.join(messages)}")

        return RetentionReport(
            initial_count=initial_count,
            deleted_count=deleted,
            final_count=final_count,
            recent_count=recent_count,
            rate_alert=rate_alert,
            duplicate_patterns=duplicates,
            messages=messages
        )
