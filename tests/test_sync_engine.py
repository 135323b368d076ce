"""Tests for the sync pass state machine."""

from datetime import timedelta

import pytest

from conftest import T0, make_task
from taskcal_sync.models import (
    CalendarProvider,
    CalendarSyncConfig,
    Classification,
    ConflictStatus,
    SyncOperation,
    SyncRunStatus,
    SyncState,
    TaskSyncStatus,
)
from taskcal_sync.services import AuthenticationError, CalendarServiceError, NetworkError, RateLimitError
from taskcal_sync.task_store import apply_change


def apply_all(tasks, result):
    by_id = {task.id: task for task in tasks}
    for change in result.local_changes:
        apply_change(by_id, change)
    return list(by_id.values())


def links_of(db_manager, connection):
    with db_manager.get_session() as session:
        return [
            row.to_model()
            for row in db_manager.get_links(session, connection.user_id, connection.provider, connection.calendar_id)
        ]


def stored_cursor(sync_manager, connection):
    cursor = sync_manager.delta_tracker.get(connection.user_id, connection.provider, connection.calendar_id)
    return cursor.token if cursor else None


async def first_pass(sync_manager, connection, config, tasks):
    result = await sync_manager.sync_calendar(connection, tasks, config=config)
    assert result.success
    return apply_all(tasks, result)


class TestPushAndImport:

    @pytest.mark.asyncio
    async def test_new_task_creates_one_event_and_link(self, sync_manager, fake_client, db_manager, connection):
        config = CalendarSyncConfig(sync_direction='local-to-remote')
        task = make_task()

        result = await sync_manager.sync_calendar(connection, [task], config=config)

        assert result.status == SyncRunStatus.COMPLETED
        assert result.state == SyncState.IDLE
        assert result.remote_created == 1
        assert len(fake_client.created) == 1
        assert fake_client.created[0].title == "Team sync"

        links = links_of(db_manager, connection)
        assert len(links) == 1
        assert links[0].task_id == task.id
        assert links[0].remote_event_id == fake_client.created[0].id

        change = result.local_changes[0]
        assert change.operation == SyncOperation.UPDATE
        assert change.fields['external_id'] == fake_client.created[0].id
        assert change.fields['sync_provider'] == CalendarProvider.GOOGLE
        assert change.fields['sync_status'] == TaskSyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, sync_manager, fake_client, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.success
        assert result.total_changes == 0
        assert result.local_changes == []
        assert result.conflicts == []
        assert len(fake_client.created) == 1
        assert fake_client.updated == []

    @pytest.mark.asyncio
    async def test_remote_only_event_is_imported(self, sync_manager, fake_client, db_manager, connection):
        fake_client.add_remote("Dentist", location="Main St")
        config = CalendarSyncConfig(calendar_mapping={'health': 'primary'})

        result = await sync_manager.sync_calendar(connection, [], config=config)

        assert result.local_created == 1
        change = result.local_changes[0]
        assert change.operation == SyncOperation.CREATE
        assert change.fields['title'] == "Dentist"
        assert change.fields['location'] == "Main St"
        assert change.fields['category'] == 'health'
        assert change.fields['external_id'] == 'remote-1'
        assert links_of(db_manager, connection)[0].task_id == change.task_id

    @pytest.mark.asyncio
    async def test_local_to_remote_does_not_import(self, sync_manager, fake_client, connection):
        fake_client.add_remote("Dentist")
        config = CalendarSyncConfig(sync_direction='local-to-remote')

        result = await sync_manager.sync_calendar(connection, [], config=config)

        assert result.success
        assert result.local_changes == []

    @pytest.mark.asyncio
    async def test_remote_to_local_does_not_push(self, sync_manager, fake_client, connection):
        config = CalendarSyncConfig(sync_direction='remote-to-local')

        result = await sync_manager.sync_calendar(connection, [make_task()], config=config)

        assert result.success
        assert fake_client.created == []

    @pytest.mark.asyncio
    async def test_task_with_external_id_is_adopted(self, sync_manager, fake_client, db_manager, connection, two_way):
        remote = fake_client.add_remote("Team sync")
        task = make_task(external_id=remote.id, sync_provider='google', sync_status='synced')

        result = await sync_manager.sync_calendar(connection, [task], config=two_way)

        assert result.success
        assert fake_client.created == []
        assert result.local_created == 0
        assert links_of(db_manager, connection)[0].remote_event_id == remote.id

    @pytest.mark.asyncio
    async def test_filters_skip_tasks(self, sync_manager, fake_client, connection):
        config = CalendarSyncConfig(
            sync_categories=['work', 'health'],
            calendar_mapping={'health': 'other-calendar'},
        )
        tasks = [
            make_task('done', category='work', completed=True),
            make_task('personal', category='personal'),
            make_task('health', category='health'),
            make_task('unscheduled', category='work', scheduled_at=None),
            make_task('work', category='work'),
        ]

        result = await sync_manager.sync_calendar(connection, tasks, config=config)

        assert result.remote_created == 1
        assert [e.title for e in fake_client.created] == ["Team sync"]
        assert result.local_changes[0].task_id == 'work'

    @pytest.mark.asyncio
    async def test_completed_tasks_included_when_configured(self, sync_manager, fake_client, connection):
        config = CalendarSyncConfig(include_completed_tasks=True)

        await sync_manager.sync_calendar(connection, [make_task(completed=True)], config=config)

        assert len(fake_client.created) == 1


class TestDeletions:

    @pytest.mark.asyncio
    async def test_remote_deletion_deletes_task_two_way(self, sync_manager, fake_client, db_manager, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        fake_client.remove_remote(fake_client.created[0].id)

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.local_deleted == 1
        assert result.local_changes[0].operation == SyncOperation.DELETE
        assert links_of(db_manager, connection) == []

    @pytest.mark.asyncio
    async def test_remote_deletion_unsyncs_task_local_to_remote(self, sync_manager, fake_client, db_manager, connection):
        config = CalendarSyncConfig(sync_direction='local-to-remote')
        tasks = await first_pass(sync_manager, connection, config, [make_task()])
        assert tasks[0].sync_status == TaskSyncStatus.SYNCED
        fake_client.remove_remote(fake_client.created[0].id)

        result = await sync_manager.sync_calendar(connection, tasks, config=config)

        change = result.local_changes[0]
        assert change.operation == SyncOperation.UPDATE
        assert change.fields == {'sync_status': TaskSyncStatus.UNSYNCED, 'external_id': None, 'sync_provider': None}
        assert links_of(db_manager, connection) == []
        tasks = apply_all(tasks, result)
        assert tasks[0].external_id is None

    @pytest.mark.asyncio
    async def test_local_deletion_deletes_remote_event(self, sync_manager, fake_client, db_manager, connection, two_way):
        await first_pass(sync_manager, connection, two_way, [make_task()])
        event_id = fake_client.created[0].id

        result = await sync_manager.sync_calendar(connection, [], config=two_way)

        assert result.remote_deleted == 1
        assert fake_client.deleted == [event_id]
        assert links_of(db_manager, connection) == []

    @pytest.mark.asyncio
    async def test_full_listing_infers_removal(self, sync_manager, fake_client, db_manager, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        fake_client.events.clear()
        fake_client.expired_cursors.add(stored_cursor(sync_manager, connection))

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.local_deleted == 1
        assert links_of(db_manager, connection) == []

    @pytest.mark.asyncio
    async def test_local_deletion_against_remote_edit_is_a_conflict(self, sync_manager, fake_client, connection, two_way):
        await first_pass(sync_manager, connection, two_way, [make_task()])
        fake_client.edit_remote(fake_client.created[0].id, at=T0 + timedelta(minutes=20), title="Moved")

        result = await sync_manager.sync_calendar(connection, [], config=two_way)

        assert result.success
        assert len(result.conflicts) == 1
        assert result.conflicts[0].conflict_fields == ['deleted']
        assert fake_client.deleted == []


class TestConflicts:

    @pytest.mark.asyncio
    async def test_local_newer_overwrites_remote(self, sync_manager, fake_client, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        event_id = fake_client.created[0].id
        # Remote timestamp moved without a change to synced content
        fake_client.edit_remote(event_id, at=T0 + timedelta(minutes=5), reminder_minutes=15)
        edited = tasks[0].model_copy(update={'title': "Team sync (moved)", 'last_modified': T0 + timedelta(minutes=10)})

        result = await sync_manager.sync_calendar(connection, [edited], config=two_way)

        assert result.conflicts == []
        assert result.remote_updated == 1
        assert fake_client.events[event_id].title == "Team sync (moved)"
        assert fake_client.updated[0][1] is not None  # sent with If-Match

    @pytest.mark.asyncio
    async def test_remote_newer_updates_task(self, sync_manager, fake_client, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        fake_client.edit_remote(fake_client.created[0].id, at=T0 + timedelta(minutes=5), title="Renamed")

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.local_updated == 1
        assert fake_client.updated == []
        tasks = apply_all(tasks, result)
        assert tasks[0].title == "Renamed"

        again = await sync_manager.sync_calendar(connection, tasks, config=two_way)
        assert again.total_changes == 0

    @pytest.mark.asyncio
    async def test_concurrent_manual_records_conflict_without_writes(
        self, sync_manager, fake_client, db_manager, connection, two_way
    ):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        event_id = fake_client.created[0].id
        fake_client.edit_remote(event_id, at=T0 + timedelta(minutes=12), title="Remote title")
        edited = tasks[0].model_copy(update={'title': "Local title", 'last_modified': T0 + timedelta(minutes=10)})

        result = await sync_manager.sync_calendar(connection, [edited], config=two_way)

        assert result.success
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.classification == Classification.CONCURRENT
        assert conflict.conflict_fields == ['title']
        assert result.local_changes == []
        assert fake_client.updated == []
        assert fake_client.events[event_id].title == "Remote title"

        # Re-running keeps one pending conflict and still writes nothing
        again = await sync_manager.sync_calendar(connection, [edited], config=two_way)
        assert len(again.conflicts) == 1
        assert again.conflicts[0].id == conflict.id
        assert fake_client.updated == []
        with db_manager.get_session() as session:
            assert len(db_manager.get_conflicts(session, connection.id, ConflictStatus.PENDING)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_local_wins(self, sync_manager, fake_client, connection):
        config = CalendarSyncConfig(conflict_resolution='local-wins')
        tasks = await first_pass(sync_manager, connection, config, [make_task()])
        event_id = fake_client.created[0].id
        fake_client.edit_remote(event_id, at=T0 + timedelta(minutes=12), title="Remote title")
        edited = tasks[0].model_copy(update={'title': "Local title", 'last_modified': T0 + timedelta(minutes=10)})

        result = await sync_manager.sync_calendar(connection, [edited], config=config)

        assert result.conflicts == []
        assert fake_client.events[event_id].title == "Local title"

    @pytest.mark.asyncio
    async def test_concurrent_merge_combines_fields(self, sync_manager, fake_client, connection):
        config = CalendarSyncConfig(conflict_resolution='merge')
        tasks = await first_pass(sync_manager, connection, config, [make_task()])
        event_id = fake_client.created[0].id
        fake_client.edit_remote(event_id, at=T0 + timedelta(minutes=12), location="Room 4")
        edited = tasks[0].model_copy(update={'title': "Local title", 'last_modified': T0 + timedelta(minutes=10)})

        result = await sync_manager.sync_calendar(connection, [edited], config=config)

        assert result.conflicts == []
        remote = fake_client.events[event_id]
        assert remote.title == "Local title"
        assert remote.location == "Room 4"
        assert result.local_changes[0].fields['location'] == "Room 4"

    @pytest.mark.asyncio
    async def test_superseded_when_one_side_reconciles(self, sync_manager, fake_client, db_manager, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        event_id = fake_client.created[0].id
        fake_client.edit_remote(event_id, at=T0 + timedelta(minutes=12), title="Same title")
        edited = tasks[0].model_copy(update={'title': "Local title", 'last_modified': T0 + timedelta(minutes=10)})
        first = await sync_manager.sync_calendar(connection, [edited], config=two_way)
        conflict_id = first.conflicts[0].id

        # The local user adopts the remote title
        agreed = edited.model_copy(update={'title': "Same title", 'last_modified': T0 + timedelta(minutes=15)})
        result = await sync_manager.sync_calendar(connection, [agreed], config=two_way)

        assert result.conflicts == []
        with db_manager.get_session() as session:
            row = db_manager.get_conflict(session, conflict_id)
            assert row.status == ConflictStatus.RESOLVED.value
            assert row.resolution == 'superseded'


class TestFailures:

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_cursor(self, sync_manager, fake_client, connection, two_way):
        await first_pass(sync_manager, connection, two_way, [])
        before = stored_cursor(sync_manager, connection)
        fake_client.add_remote("New upstream")
        fake_client.fail('fetch_delta', *(NetworkError("down") for _ in range(3)))

        result = await sync_manager.sync_calendar(connection, [], config=two_way)

        assert result.status == SyncRunStatus.FAILED
        assert result.state == SyncState.FAILED
        assert result.errors[-1].fatal
        assert stored_cursor(sync_manager, connection) == before

    @pytest.mark.asyncio
    async def test_transient_fetch_error_is_retried(self, sync_manager, fake_client, connection, two_way):
        fake_client.fail('fetch_delta', RateLimitError("slow down"))

        result = await sync_manager.sync_calendar(connection, [], config=two_way)

        assert result.success
        assert fake_client.fetch_cursors == [None, None]

    @pytest.mark.asyncio
    async def test_auth_error_aborts_pass(self, sync_manager, fake_client, connection, two_way):
        fake_client.fail('fetch_delta', AuthenticationError("revoked"))

        result = await sync_manager.sync_calendar(connection, [make_task()], config=two_way)

        assert result.status == SyncRunStatus.FAILED
        assert result.auth_failed
        assert result.errors[0].kind == 'auth'
        assert fake_client.fetch_cursors == [None]
        assert fake_client.created == []
        assert stored_cursor(sync_manager, connection) is None

    @pytest.mark.asyncio
    async def test_item_failure_does_not_fail_pass(self, sync_manager, fake_client, connection, two_way):
        fake_client.fail('create_event', CalendarServiceError("bad request"))
        tasks = [make_task('a'), make_task('b', title="Other")]

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.status == SyncRunStatus.COMPLETED
        assert result.remote_created == 1
        assert result.errors[0].item_id == 'a'
        assert result.cursor is not None
        assert stored_cursor(sync_manager, connection) == result.cursor

    @pytest.mark.asyncio
    async def test_failed_push_is_retried_after_cursor_advances(self, sync_manager, fake_client, connection, two_way):
        fake_client.fail('create_event', CalendarServiceError("bad request"))
        tasks = [make_task('a')]

        first = await sync_manager.sync_calendar(connection, tasks, config=two_way)
        second = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert first.remote_created == 0
        assert second.success
        assert second.remote_created == 1
        assert fake_client.fetch_cursors[-1] == first.cursor

    @pytest.mark.asyncio
    async def test_mapping_errors_are_recorded(self, sync_manager, fake_client, connection, two_way):
        fake_client.skipped = [('broken-1', "Malformed event")]

        result = await sync_manager.sync_calendar(connection, [], config=two_way)

        assert result.success
        assert result.errors[0].kind == 'mapping'
        assert result.errors[0].item_id == 'broken-1'

    @pytest.mark.asyncio
    async def test_expired_cursor_falls_back_to_full_sync(self, sync_manager, fake_client, connection, two_way):
        tasks = await first_pass(sync_manager, connection, two_way, [make_task()])
        cursor = stored_cursor(sync_manager, connection)
        fake_client.expired_cursors.add(cursor)

        result = await sync_manager.sync_calendar(connection, tasks, config=two_way)

        assert result.success
        assert fake_client.fetch_cursors[-2:] == [cursor, None]
        assert result.total_changes == 0

    @pytest.mark.asyncio
    async def test_cancellation_stops_before_writes(self, sync_manager, fake_client, connection, two_way):
        fake_client.on_fetch = lambda: sync_manager.cancel(connection.id)

        result = await sync_manager.sync_calendar(connection, [make_task()], config=two_way)

        assert result.status == SyncRunStatus.CANCELLED
        assert result.state == SyncState.CANCELLED
        assert fake_client.created == []
        assert stored_cursor(sync_manager, connection) is None
        assert not sync_manager.is_running(connection.id)

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self, sync_manager, fake_client, connection, two_way):
        expired = connection.credentials.model_copy(update={'expires_at': T0})

        result = await sync_manager.sync_calendar(connection, [], credentials=expired, config=two_way)

        assert result.success
        assert fake_client.refreshed == 1
        assert result.credentials.access_token == "refreshed-1"

    @pytest.mark.asyncio
    async def test_sync_run_is_recorded(self, sync_manager, db_manager, connection, two_way):
        await sync_manager.sync_calendar(connection, [make_task()], config=two_way)

        with db_manager.get_session() as session:
            runs = db_manager.get_recent_sync_runs(session, connection.id)
            stats = db_manager.get_sync_statistics(session, connection.id)
        assert len(runs) == 1
        assert runs[0].status == 'completed'
        assert runs[0].remote_created == 1
        assert stats['total_runs'] == 1
        assert stats['remote_changes'] == 1
