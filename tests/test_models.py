"""Tests for data models."""

import pytest
from datetime import datetime, timedelta

import pytz
from pydantic import ValidationError

from taskcal_sync.models import (
    CalendarSyncConfig,
    DeltaPage,
    OAuthCredentials,
    SyncDirection,
    SyncError,
    SyncResult,
    SyncRunStatus,
    SyncableEvent,
    Task,
)


class TestSyncableEvent:
    """Tests for SyncableEvent model."""

    def test_timezone_validation(self):
        """Naive datetimes are read as UTC."""
        event = SyncableEvent(
            title="Test Event",
            start=datetime(2026, 12, 1, 10, 0, 0),
            end=datetime(2026, 12, 1, 11, 0, 0),
            last_modified=datetime(2026, 11, 1, 8, 0, 0),
        )

        assert event.start.tzinfo == pytz.UTC
        assert event.end.tzinfo == pytz.UTC
        assert event.last_modified.tzinfo == pytz.UTC

    def test_end_after_start_validation(self):
        """Test that end time must be after start time."""
        start = datetime.now(pytz.UTC)

        with pytest.raises(ValidationError, match="End time"):
            SyncableEvent(title="Test Event", start=start, end=start - timedelta(hours=1))

        with pytest.raises(ValidationError):
            SyncableEvent(title="Test Event", start=start, end=start)


class TestTask:

    def test_start_prefers_scheduled_time(self):
        scheduled = datetime(2026, 5, 1, 9, tzinfo=pytz.UTC)
        due = datetime(2026, 5, 2, 17, tzinfo=pytz.UTC)

        assert Task(id='1', scheduled_at=scheduled, due_at=due).start == scheduled
        assert Task(id='1', due_at=due).start == due
        assert not Task(id='1').is_schedulable


class TestOAuthCredentials:

    def test_expires_within(self):
        now = datetime(2026, 5, 1, 12, tzinfo=pytz.UTC)
        credentials = OAuthCredentials(access_token='a', expires_at=now + timedelta(seconds=30))

        assert credentials.expires_within(60, now=now)
        assert not credentials.expires_within(10, now=now)
        assert not OAuthCredentials(access_token='a').expires_within(60, now=now)

    def test_from_expires_in(self):
        credentials = OAuthCredentials.from_expires_in('a', 'r', 3600)

        assert credentials.refresh_token == 'r'
        assert credentials.expires_at > datetime.now(pytz.UTC) + timedelta(minutes=59)
        assert OAuthCredentials.from_expires_in('a', None, None).expires_at is None

    def test_credentials_are_immutable(self):
        credentials = OAuthCredentials(access_token='a')

        with pytest.raises(ValidationError):
            credentials.access_token = 'b'


class TestCalendarSyncConfig:

    def test_defaults(self):
        config = CalendarSyncConfig()

        assert config.sync_direction == SyncDirection.TWO_WAY
        assert config.sync_interval_seconds == 900
        assert not config.auto_sync

    def test_interval_lower_bound(self):
        with pytest.raises(ValidationError):
            CalendarSyncConfig(sync_interval=10)

    def test_task_allowed(self):
        config = CalendarSyncConfig(sync_categories=['work'], calendar_mapping={'work': 'cal-a'})

        assert config.task_allowed(Task(id='1', category='work'), 'cal-a')
        assert not config.task_allowed(Task(id='1', category='work'), 'cal-b')
        assert not config.task_allowed(Task(id='1', category='home'), 'cal-a')
        assert not config.task_allowed(Task(id='1', category='work', completed=True), 'cal-a')

    def test_direction_sides(self):
        assert SyncDirection.LOCAL_TO_REMOTE.writes_remote
        assert not SyncDirection.LOCAL_TO_REMOTE.writes_local
        assert not SyncDirection.REMOTE_TO_LOCAL.writes_remote
        assert SyncDirection.TWO_WAY.writes_local and SyncDirection.TWO_WAY.writes_remote


class TestSyncResult:

    def test_counters(self):
        result = SyncResult(
            connection_id='c',
            provider='google',
            calendar_id='primary',
            local_created=1,
            remote_updated=2,
            status=SyncRunStatus.COMPLETED,
        )

        assert result.total_changes == 3
        assert result.success
        assert result.last_error is None

        result.errors.append(SyncError(kind='network', message='timed out'))
        assert result.last_error == 'timed out'


def test_delta_page_window():
    start = datetime(2026, 5, 1, tzinfo=pytz.UTC)
    page = DeltaPage(events=[], removed_ids=[], next_cursor=None, full_snapshot=True,
                     window=(start, start + timedelta(days=10)))
    inside = SyncableEvent(start=start + timedelta(days=1), end=start + timedelta(days=1, hours=1))
    outside = SyncableEvent(start=start - timedelta(days=3), end=start - timedelta(days=2))

    assert page.covers(inside)
    assert not page.covers(outside)
