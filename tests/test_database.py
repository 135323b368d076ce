"""Tests for sync state persistence."""

from datetime import datetime, timedelta

import pytz

from taskcal_sync.delta_tracker import DeltaTracker
from taskcal_sync.models import (
    CalendarConnection,
    CalendarLink,
    CalendarProvider,
    ConflictChoice,
    ConflictStatus,
    OAuthCredentials,
    SyncConflict,
    SyncableEvent,
)

SYNCED_AT = datetime(2026, 2, 1, 10, 0, tzinfo=pytz.UTC)


def make_link(task_id='t1', remote_event_id='e1', **fields):
    event = SyncableEvent(id=remote_event_id, title="x", start=SYNCED_AT, end=SYNCED_AT + timedelta(hours=1))
    values = dict(
        user_id='u',
        provider=CalendarProvider.OUTLOOK,
        calendar_id='cal',
        task_id=task_id,
        remote_event_id=remote_event_id,
        remote_etag='W/"1"',
        content_hash='h1',
        snapshot=event,
        last_synced_at=SYNCED_AT,
    )
    values.update(fields)
    return CalendarLink(**values)


class TestDeltaTracker:

    def test_persist_get_reset(self, db_manager):
        tracker = DeltaTracker(db_manager)

        assert tracker.get('u', CalendarProvider.GOOGLE, 'primary') is None
        tracker.persist('u', CalendarProvider.GOOGLE, 'primary', 'token-1')
        tracker.persist('u', CalendarProvider.GOOGLE, 'primary', 'token-2')
        tracker.persist('u', CalendarProvider.OUTLOOK, 'primary', 'delta-link')

        assert tracker.get('u', CalendarProvider.GOOGLE, 'primary').token == 'token-2'
        assert tracker.get('u', CalendarProvider.OUTLOOK, 'primary').token == 'delta-link'
        assert tracker.reset('u', CalendarProvider.GOOGLE, 'primary')
        assert not tracker.reset('u', CalendarProvider.GOOGLE, 'primary')
        assert tracker.get('u', CalendarProvider.GOOGLE, 'primary') is None


class TestConnections:

    def test_round_trip_and_credentials(self, db_manager):
        expires = datetime(2026, 9, 1, 12, tzinfo=pytz.UTC)
        connection = CalendarConnection(
            user_id='u',
            provider=CalendarProvider.OUTLOOK,
            calendar_id='cal',
            account_email='me@example.com',
            credentials=OAuthCredentials(access_token='a', refresh_token='r', expires_at=expires),
        )
        with db_manager.get_session() as session:
            db_manager.save_connection(session, connection)
            db_manager.record_connection_sync(session, connection.id, error="boom", needs_reauth=True)
            db_manager.update_connection_credentials(session, connection.id, OAuthCredentials(access_token='b'))
            stored = db_manager.get_connection(session, connection.id).to_model()

        assert stored.account_email == 'me@example.com'
        assert stored.credentials == OAuthCredentials(access_token='b')
        assert stored.last_error == "boom"
        assert not stored.needs_reauth
        assert stored.last_sync_at.tzinfo is not None

    def test_same_calendar_reuses_row(self, db_manager):
        first = CalendarConnection(user_id='u', provider=CalendarProvider.GOOGLE, calendar_id='primary')
        second = CalendarConnection(user_id='u', provider=CalendarProvider.GOOGLE, calendar_id='primary', name="Main")
        with db_manager.get_session() as session:
            db_manager.save_connection(session, first)
            db_manager.save_connection(session, second)
            rows = db_manager.get_connections(session, 'u')

            assert len(rows) == 1
            assert rows[0].id == first.id
            assert rows[0].name == "Main"
            assert db_manager.delete_connection(session, first.id)
            assert db_manager.get_connections(session) == []


class TestLinks:

    def test_save_and_lookup(self, db_manager):
        with db_manager.get_session() as session:
            db_manager.save_link(session, make_link())
            db_manager.save_link(session, make_link(content_hash='h2', remote_etag='W/"2"'))

            by_task = db_manager.get_link_by_task(session, 'u', CalendarProvider.OUTLOOK, 't1').to_model()
            by_remote = db_manager.get_link_by_remote(session, 'u', CalendarProvider.OUTLOOK, 'cal', 'e1').to_model()

            assert by_task.id == by_remote.id
            assert by_task.content_hash == 'h2'
            assert by_task.snapshot.title == "x"
            assert by_task.last_synced_at == SYNCED_AT
            assert len(db_manager.get_links(session, 'u', CalendarProvider.OUTLOOK, 'cal')) == 1
            assert db_manager.delete_link(session, by_task.id)
            assert db_manager.get_links(session, 'u', CalendarProvider.OUTLOOK, 'cal') == []


class TestConflicts:

    def test_pending_and_resolve(self, db_manager):
        conflict = SyncConflict(
            connection_id='c1',
            user_id='u',
            provider=CalendarProvider.GOOGLE,
            calendar_id='primary',
            task_id='t1',
            remote_event_id='e1',
            conflict_fields=['title'],
        )
        with db_manager.get_session() as session:
            db_manager.save_conflict(session, conflict)

            assert db_manager.get_pending_conflict(session, 'c1', None, 'e1').id == conflict.id
            assert db_manager.get_pending_conflict(session, 'c2', 't1', 'e1') is None
            assert db_manager.get_conflicts(session, 'c1')[0].to_model().conflict_fields == ['title']

            db_manager.resolve_conflict(session, conflict.id, ConflictChoice.LOCAL)
            resolved = db_manager.get_conflict(session, conflict.id).to_model()

            assert resolved.status == ConflictStatus.RESOLVED
            assert resolved.resolution == ConflictChoice.LOCAL
            assert resolved.resolved_at is not None
            assert db_manager.get_conflicts(session, 'c1') == []
            assert len(db_manager.get_conflicts(session, 'c1', status=None)) == 1
