"""Shared fixtures: isolated settings, an in-memory provider and task store."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from taskcal_sync.config import Settings
from taskcal_sync.database import DatabaseManager
from taskcal_sync.models import (
    CalendarConnection,
    CalendarProvider,
    CalendarSyncConfig,
    DeltaPage,
    OAuthCredentials,
    SyncableEvent,
    Task,
    TaskChange,
)
from taskcal_sync.services import CursorExpiredError, EventNotFoundError, ProviderClient
from taskcal_sync.sync_engine import SyncManager
from taskcal_sync.task_store import TaskStore, apply_change

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        outlook_client_id='o' * 20,
        outlook_client_secret='s' * 20,
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        retry_backoff_seconds=0,
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeProviderClient(ProviderClient):
    """In-memory calendar with sync-token style deltas and failure injection."""

    def __init__(self, settings, provider: CalendarProvider = CalendarProvider.GOOGLE):
        super().__init__(settings, provider)
        self.events: Dict[str, SyncableEvent] = {}
        self.revisions: Dict[str, int] = {}
        self.removed: Dict[str, int] = {}
        self.revision = 0
        self.now = T0 + timedelta(minutes=1)
        self.expired_cursors = set()
        self.failures: Dict[str, List[Exception]] = {}
        self.fetch_cursors: List[Optional[str]] = []
        self.created: List[SyncableEvent] = []
        self.updated: List[tuple] = []
        self.deleted: List[str] = []
        self.refreshed = 0
        self.skipped: List[tuple] = []
        self.on_fetch = None
        self.user_info_calls = 0
        self._ids = 0

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _bump(self, event_id: str) -> int:
        self.revision += 1
        self.revisions[event_id] = self.revision
        return self.revision

    # Helpers for tests acting as the remote user

    def add_remote(self, title: str, at: Optional[datetime] = None, **fields) -> SyncableEvent:
        self._ids += 1
        event_id = f"remote-{self._ids}"
        start = fields.pop('start', T0 + timedelta(days=1))
        event = SyncableEvent(
            id=event_id,
            title=title,
            start=start,
            end=fields.pop('end', start + timedelta(hours=1)),
            last_modified=at or self.now,
            **fields
        )
        rev = self._bump(event_id)
        self.events[event_id] = event.model_copy(update={'etag': f'"{rev}"'})
        return self.events[event_id]

    def edit_remote(self, event_id: str, at: datetime, **changes) -> SyncableEvent:
        rev = self._bump(event_id)
        changes.update({'last_modified': at, 'etag': f'"{rev}"'})
        self.events[event_id] = self.events[event_id].model_copy(update=changes)
        return self.events[event_id]

    def remove_remote(self, event_id: str) -> None:
        self.events.pop(event_id)
        self.revisions.pop(event_id, None)
        self.revision += 1
        self.removed[event_id] = self.revision

    # ProviderClient

    def get_auth_url(self, state=None):
        return f"https://auth.example.com/?state={state}"

    async def exchange_code_for_tokens(self, code):
        return OAuthCredentials(access_token=f"token-{code}", refresh_token="refresh")

    async def _refresh_access_token(self, credentials):
        self._maybe_fail('refresh')
        self.refreshed += 1
        return OAuthCredentials(
            access_token=f"refreshed-{self.refreshed}",
            refresh_token=credentials.refresh_token,
            expires_at=datetime.now(pytz.UTC) + timedelta(hours=1),
        )

    async def fetch_delta(self, credentials, calendar_id, cursor=None):
        self.fetch_cursors.append(cursor)
        await asyncio.sleep(0)
        if self.on_fetch is not None:
            self.on_fetch()
        self._maybe_fail('fetch_delta')
        if cursor in self.expired_cursors:
            raise CursorExpiredError("Sync token expired")
        if cursor is None:
            return DeltaPage(
                events=list(self.events.values()),
                removed_ids=[],
                next_cursor=str(self.revision),
                full_snapshot=True,
                skipped=list(self.skipped),
            )
        since = int(cursor)
        return DeltaPage(
            events=[e for i, e in self.events.items() if self.revisions[i] > since],
            removed_ids=[i for i, rev in self.removed.items() if rev > since],
            next_cursor=str(self.revision),
            full_snapshot=False,
        )

    async def create_event(self, credentials, calendar_id, event):
        self._maybe_fail('create_event')
        self._ids += 1
        event_id = f"created-{self._ids}"
        rev = self._bump(event_id)
        created = event.model_copy(update={'id': event_id, 'etag': f'"{rev}"', 'last_modified': self.now})
        self.events[event_id] = created
        self.created.append(created)
        return created

    async def update_event(self, credentials, calendar_id, event_id, event, etag=None):
        self._maybe_fail('update_event')
        if event_id not in self.events:
            raise EventNotFoundError(f"Event {event_id} not found")
        rev = self._bump(event_id)
        updated = event.model_copy(update={'id': event_id, 'etag': f'"{rev}"', 'last_modified': self.now})
        self.events[event_id] = updated
        self.updated.append((event_id, etag))
        return updated

    async def delete_event(self, credentials, calendar_id, event_id):
        self._maybe_fail('delete_event')
        if event_id in self.events:
            self.remove_remote(event_id)
        self.deleted.append(event_id)

    async def get_user_info(self, credentials):
        self.user_info_calls += 1
        self._maybe_fail('get_user_info')
        return {'id': 'user-1', 'email': 'user@example.com', 'name': 'User'}


class InMemoryTaskStore(TaskStore):
    def __init__(self, tasks: Optional[List[Task]] = None):
        self.tasks: Dict[str, Dict[str, Task]] = {}
        self.applied: List[TaskChange] = []
        for task in tasks or []:
            self.put('default', task)

    def put(self, user_id: str, task: Task) -> None:
        self.tasks.setdefault(user_id, {})[task.id] = task

    async def list_tasks(self, user_id):
        return list(self.tasks.get(user_id, {}).values())

    async def apply_changes(self, user_id, changes):
        tasks = self.tasks.setdefault(user_id, {})
        for change in changes:
            apply_change(tasks, change)
        self.applied.extend(changes)


def make_task(task_id: str = 'task-1', title: str = 'Team sync', at: datetime = T0, **fields) -> Task:
    fields.setdefault('scheduled_at', T0 + timedelta(days=1))
    return Task(id=task_id, title=title, last_modified=at, **fields)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def fake_client(settings):
    return FakeProviderClient(settings)


@pytest.fixture
def sync_manager(settings, db_manager, fake_client):
    return SyncManager(settings, db_manager, clients={CalendarProvider.GOOGLE: fake_client})


@pytest.fixture
def connection(db_manager):
    conn = CalendarConnection(
        user_id='default',
        provider=CalendarProvider.GOOGLE,
        calendar_id='primary',
        credentials=OAuthCredentials(access_token='token', refresh_token='refresh'),
    )
    with db_manager.get_session() as session:
        db_manager.save_connection(session, conn)
    return conn


@pytest.fixture
def two_way():
    return CalendarSyncConfig(sync_direction='two-way')
