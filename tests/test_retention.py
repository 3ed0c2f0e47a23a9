"""Tests for RetentionPolicy."""
from unittest.mock import patch

import pytest

from notifications.models import CREATE, UPDATE, DuplicatePattern

HOUR = 3600


@pytest.fixture
def policy(notification_queue):
    return notification_queue.retention


def append_at(queue, clock, age_seconds, entity_id, event_type=CREATE):
    """Append an entry created ``age_seconds`` before the clock's current time."""
    now = clock.now
    clock.now = now - age_seconds
    try:
        return queue.append(event_type, {'id': entity_id})
    finally:
        clock.now = now


class TestCleanup:
    """Test cases for the age and count based cleanups."""

    def test_simple_cleanup_removes_only_old_entries(self, notification_queue, fake_clock, policy):
        """Test that simple cleanup removes only entries past the age."""
        append_at(notification_queue, fake_clock, 25 * HOUR, 'old')
        append_at(notification_queue, fake_clock, 1 * HOUR, 'recent')
        append_at(notification_queue, fake_clock, 0, 'now')

        assert policy.simple_cleanup(24) == 1

        remaining = [entry.event_data['id'] for entry in notification_queue.poll(0)]
        assert remaining == ['recent', 'now']

    def test_cleanup_applies_age_then_count(self, notification_queue, fake_clock, policy):
        """Test that cleanup prunes by age before trimming by count."""
        append_at(notification_queue, fake_clock, 25 * HOUR, 'old')
        append_at(notification_queue, fake_clock, 1 * HOUR, 'recent')
        append_at(notification_queue, fake_clock, 0, 'now')

        assert policy.cleanup(max_age_hours=24, max_records=1) == 2
        assert [entry.event_data['id'] for entry in notification_queue.poll(0)] == ['now']

    def test_cleanup_trims_to_most_recent(self, notification_queue, policy):
        """Test that cleanup keeps the most recent entries."""
        for index in range(150):
            notification_queue.append(UPDATE, {'id': f"e{index}"})

        assert policy.cleanup(max_age_hours=24, max_records=100) == 50

        assert notification_queue.count() == 100
        assert notification_queue.poll(0, limit=1)[0].id == 51
        assert notification_queue.latest_id() == 150

    def test_cleanup_nothing_to_do(self, notification_queue, policy):
        """Test that cleanup of a small, fresh log deletes nothing."""
        notification_queue.append(CREATE, {'id': 'a'})

        assert policy.cleanup() == 0
        assert notification_queue.count() == 1

    def test_purge_all(self, notification_queue, fake_clock, policy):
        """Test that purge_all deletes every entry."""
        for index in range(5):
            append_at(notification_queue, fake_clock, index * HOUR, f"e{index}")

        assert policy.purge_all() == 5
        assert notification_queue.count() == 0
        assert policy.purge_all() == 0


class TestRunScheduled:
    """Test cases for the scheduled maintenance run."""

    def test_empty_log(self, policy):
        """Test the scheduled run on an empty log."""
        report = policy.run_scheduled()

        assert report.initial_count == 0
        assert report.deleted_count == 0
        assert report.final_count == 0
        assert report.rate_alert is False
        assert report.duplicate_patterns == []
        assert report.messages == []

    def test_prunes_with_tight_thresholds(self, notification_queue, fake_clock, policy):
        """Test the scheduled run with tight thresholds."""
        append_at(notification_queue, fake_clock, 3 * HOUR, 'old')
        append_at(notification_queue, fake_clock, 1 * HOUR, 'kept')

        report = policy.run_scheduled(max_age_hours=2, max_records=200)

        assert report.initial_count == 2
        assert report.deleted_count == 1
        assert report.final_count == 1
        assert report.messages == [
            'Starting cleanup - current records: 2',
            'Cleaned up 1 old records',
            'Final count: 1 records',
        ]

    def test_rate_alert(self, notification_queue, policy):
        """Test the alert for a high rate of recent entries."""
        with patch.object(notification_queue, 'count_since', return_value=150) as count_since:
            report = policy.run_scheduled()

        count_since.assert_called_once_with(300)
        assert report.rate_alert is True
        assert report.recent_count == 150
        assert 'possible notification loop' in report.messages[-1]

    def test_no_rate_alert_at_threshold(self, notification_queue, policy):
        """Test that a rate equal to the threshold does not alert."""
        with patch.object(notification_queue, 'count_since', return_value=100):
            assert policy.run_scheduled().rate_alert is False

    def test_duplicate_patterns_reported(self, notification_queue, policy):
        """Test that duplicate patterns appear in the report."""
        for _ in range(12):
            notification_queue.append(UPDATE, {'id': 'noisy'})

        report = policy.run_scheduled()

        assert report.duplicate_patterns == [DuplicatePattern(UPDATE, 'noisy', 12)]
        assert 'Warning: Detected duplicate broadcasts:' in report.messages
        assert '  Event ID noisy (update): 12 times' in report.messages

    def test_backlog_warning(self, notification_queue, policy):
        """Test the warning for a large remaining backlog."""
        with patch.object(notification_queue, 'count', return_value=600), \
                patch.object(policy, 'cleanup', return_value=0):
            report = policy.run_scheduled()

        assert report.deleted_count == 0
        assert report.final_count == 600
        assert any('none cleaned' in message for message in report.messages)

    def test_report_serialization(self, notification_queue, policy):
        """Test the dictionary form of a retention report."""
        for _ in range(11):
            notification_queue.append(UPDATE, {'id': 'noisy'})

        data = policy.run_scheduled().to_dict()

        assert data['initial_count'] == 11
        assert data['duplicate_patterns'] == [
            {'event_type': UPDATE, 'entity_id': 'noisy', 'count': 11}
        ]
