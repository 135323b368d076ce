"""Sync manager: one reconciliation pass between a task list and a calendar."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .conflicts import ConflictDetector, ConflictResolver, merge_events
from .database import DatabaseManager
from .delta_tracker import DeltaTracker
from .mapper import content_hash, event_to_task, task_to_event
from .models import (
    CalendarConnection,
    CalendarLink,
    CalendarProvider,
    CalendarSyncConfig,
    Classification,
    ConflictChoice,
    ConflictResolution,
    ConflictStatus,
    DeltaPage,
    OAuthCredentials,
    Resolution,
    ResolutionAction,
    SyncConflict,
    SyncDirection,
    SyncError,
    SyncOperation,
    SyncResult,
    SyncRunStatus,
    SyncState,
    SyncableEvent,
    Task,
    TaskChange,
    TaskSyncStatus,
    utc_now,
)
from .services import (
    AuthenticationError,
    CalendarServiceError,
    CursorExpiredError,
    NetworkError,
    ProviderClient,
    RateLimitError,
    create_provider_client,
)

logger = logging.getLogger(__name__)


class SyncCancelledError(Exception):
    """Raised inside a pass when its cancellation was requested."""
    pass


@dataclass
class _PassContext:
    connection: CalendarConnection
    config: CalendarSyncConfig
    credentials: OAuthCredentials
    result: SyncResult
    session: Session
    cancel_event: asyncio.Event
    policy: ConflictResolution
    pending_by_task: Dict[str, SyncConflict] = field(default_factory=dict)
    pending_by_remote: Dict[str, SyncConflict] = field(default_factory=dict)

    @property
    def direction(self) -> SyncDirection:
        return self.config.sync_direction

    @property
    def provider(self) -> CalendarProvider:
        return self.connection.provider


@dataclass
class _PairItem:
    """One logical event: local task, remote event and their link."""

    task: Optional[Task]
    local: Optional[SyncableEvent]
    remote: Optional[SyncableEvent]
    link: Optional[CalendarLink] = None
    classification: Classification = Classification.NO_CONFLICT

    @property
    def task_id(self) -> Optional[str]:
        if self.task is not None:
            return self.task.id
        return self.link.task_id if self.link else None

    @property
    def remote_event_id(self) -> Optional[str]:
        if self.remote is not None and self.remote.id:
            return self.remote.id
        return self.link.remote_event_id if self.link else None


class SyncManager:
    """Runs sync passes for calendar connections."""

    def __init__(
        self,
        settings: Settings,
        db_manager: Optional[DatabaseManager] = None,
        clients: Optional[Dict[CalendarProvider, ProviderClient]] = None
    ):
        """Initialize sync manager.

        Args:
            settings: Application settings
            db_manager: Database manager, created from settings if omitted
            clients: Provider clients, created on first use if omitted
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.delta_tracker = DeltaTracker(self.db_manager)
        self.detector = ConflictDetector()
        self.resolver = ConflictResolver(settings.sync_config.conflict_resolution)
        self._clients: Dict[CalendarProvider, ProviderClient] = dict(clients or {})
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self.logger = logger.getChild('sync_manager')

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the sync manager."""
        self.db_manager.init_db()
        self.logger.info("Sync manager initialized")

    async def cleanup(self) -> None:
        """Clean up resources."""
        for client in self._clients.values():
            await client.close()
        self.logger.info("Sync manager cleaned up")

    def get_client(self, provider: CalendarProvider) -> ProviderClient:
        client = self._clients.get(provider)
        if client is None:
            client = create_provider_client(provider, self.settings)
            self._clients[provider] = client
        return client

    def is_running(self, connection_id: str) -> bool:
        return connection_id in self._cancel_events

    def cancel(self, connection_id: str) -> bool:
        """Request cancellation of the running pass of ``connection_id``.

        Returns:
            True if a pass was running
        """
        event = self._cancel_events.get(connection_id)
        if event is None:
            return False
        event.set()
        self.logger.info(f"Cancellation requested for {connection_id}")
        return True

    def _effective_policy(self, config: CalendarSyncConfig) -> ConflictResolution:
        if config.sync_direction == SyncDirection.LOCAL_TO_REMOTE:
            return ConflictResolution.LOCAL_WINS
        if config.sync_direction == SyncDirection.REMOTE_TO_LOCAL:
            return ConflictResolution.REMOTE_WINS
        return config.conflict_resolution

    async def sync_calendar(
        self,
        connection: CalendarConnection,
        local_tasks: List[Task],
        credentials: Optional[OAuthCredentials] = None,
        config: Optional[CalendarSyncConfig] = None
    ) -> SyncResult:
        """Run one sync pass for a connection.

        Args:
            connection: Calendar connection to reconcile
            local_tasks: Full task list of the connection's user
            credentials: Credentials to use, defaults to the connection's
            config: Sync configuration, defaults to the settings'

        Returns:
            SyncResult; ``local_changes`` must be applied to the task store and
            ``credentials`` persisted by the caller
        """
        config = config or self.settings.sync_config
        credentials = credentials or connection.credentials
        result = SyncResult(
            connection_id=connection.id,
            provider=connection.provider,
            calendar_id=connection.calendar_id,
            credentials=credentials,
        )

        if connection.id in self._cancel_events:
            raise RuntimeError(f"A sync pass for {connection.id} is already running")
        cancel_event = asyncio.Event()
        self._cancel_events[connection.id] = cancel_event

        self.logger.info(f"Starting sync of {connection.provider.value} calendar {connection.calendar_id}")
        with self.db_manager.get_session() as session:
            run = self.db_manager.create_sync_run(session, connection.id, result.started_at)
            try:
                if credentials is None:
                    raise AuthenticationError("No credentials stored for connection")
                ctx = _PassContext(
                    connection=connection,
                    config=config,
                    credentials=credentials,
                    result=result,
                    session=session,
                    cancel_event=cancel_event,
                    policy=self._effective_policy(config),
                )
                await self._run_pass(ctx, local_tasks)
                result.status = SyncRunStatus.COMPLETED
                result.state = SyncState.IDLE
            except SyncCancelledError:
                self.logger.info(f"Sync of {connection.calendar_id} cancelled in state {result.state.value}")
                result.status = SyncRunStatus.CANCELLED
                result.state = SyncState.CANCELLED
            except AuthenticationError as e:
                self.logger.error(f"Authentication failed for {connection.calendar_id}: {e}")
                result.errors.append(SyncError(kind=e.kind, message=str(e), fatal=True))
                result.auth_failed = True
                result.status = SyncRunStatus.FAILED
                result.state = SyncState.FAILED
            except CalendarServiceError as e:
                self.logger.error(f"Sync of {connection.calendar_id} failed in state {result.state.value}: {e}")
                result.errors.append(SyncError(kind=e.kind, message=str(e), fatal=True))
                result.status = SyncRunStatus.FAILED
                result.state = SyncState.FAILED
            except Exception as e:
                result.errors.append(SyncError(kind='internal', message=str(e), fatal=True))
                result.status = SyncRunStatus.FAILED
                result.state = SyncState.FAILED
                raise
            finally:
                self._cancel_events.pop(connection.id, None)
                result.completed_at = utc_now()
                self.db_manager.complete_sync_run(session, run, result)

        self.logger.info(
            f"Sync of {connection.calendar_id} {result.status.value}: "
            f"{result.total_changes} changes, {len(result.conflicts)} conflicts, {len(result.errors)} errors"
        )
        return result

    def _enter_state(self, ctx: _PassContext, state: SyncState) -> None:
        self._checkpoint(ctx)
        ctx.result.state = state
        self.logger.debug(f"{ctx.connection.calendar_id}: {state.value}")

    def _checkpoint(self, ctx: _PassContext) -> None:
        if ctx.cancel_event.is_set():
            raise SyncCancelledError()

    async def _call(self, ctx: _PassContext, method: str, *args, **kwargs) -> Any:
        """Call a provider method with fresh credentials, retrying transient errors."""
        client = self.get_client(ctx.provider)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_seconds, max=60),
            retry=retry_if_exception_type((RateLimitError, NetworkError)),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.logger.warning(
                        f"Retrying {method} (attempt {attempt.retry_state.attempt_number})"
                    )
                ctx.credentials = await client.ensure_credentials(ctx.credentials)
                ctx.result.credentials = ctx.credentials
                return await getattr(client, method)(ctx.credentials, *args, **kwargs)

    async def _run_pass(self, ctx: _PassContext, local_tasks: List[Task]) -> None:
        connection = ctx.connection

        self._enter_state(ctx, SyncState.FETCHING_REMOTE)
        page = await self._fetch(ctx)
        for item_id, message in page.skipped:
            ctx.result.errors.append(SyncError(kind='mapping', message=message, item_id=item_id))

        self._enter_state(ctx, SyncState.DIFFING)
        for conflict_row in self.db_manager.get_conflicts(ctx.session, connection.id, ConflictStatus.PENDING):
            conflict = conflict_row.to_model()
            if conflict.task_id:
                ctx.pending_by_task[conflict.task_id] = conflict
            if conflict.remote_event_id:
                ctx.pending_by_remote[conflict.remote_event_id] = conflict
        items = self._diff(ctx, page, local_tasks)

        self._enter_state(ctx, SyncState.RESOLVING_CONFLICTS)
        plan = []
        for item in items:
            item.classification = self.detector.classify(item.local, item.remote, item.link)
            resolution = self.resolver.resolve(
                item.classification,
                item.local,
                item.remote,
                policy=ctx.policy,
                base=item.link.snapshot if item.link else None,
            )
            if resolution.action == ResolutionAction.DEFER:
                self._record_conflict(ctx, item)
            else:
                self._supersede_conflict(ctx, item)
                plan.append((item, resolution))

        self._enter_state(ctx, SyncState.PUSHING_LOCAL)
        write_errors = 0
        for item, resolution in plan:
            self._checkpoint(ctx)
            try:
                await self._apply(ctx, item, resolution)
            except AuthenticationError:
                raise
            except CalendarServiceError as e:
                write_errors += 1
                item_id = item.task_id or item.remote_event_id
                self.logger.warning(f"Failed to sync {item_id}: {e}")
                ctx.result.errors.append(SyncError(kind=e.kind, message=str(e), item_id=item_id))

        self._enter_state(ctx, SyncState.PERSISTING_CURSOR)
        if write_errors:
            # Failed writes are driven by local state and retried from the task list
            self.logger.warning(f"{write_errors} writes failed, advancing cursor anyway")
        if page.next_cursor:
            self.delta_tracker.persist(connection.user_id, ctx.provider, connection.calendar_id, page.next_cursor)
            ctx.result.cursor = page.next_cursor

    async def _fetch(self, ctx: _PassContext) -> DeltaPage:
        connection = ctx.connection
        cursor = self.delta_tracker.get(connection.user_id, ctx.provider, connection.calendar_id)
        if cursor is None:
            return await self._call(ctx, 'fetch_delta', connection.calendar_id, None)
        try:
            return await self._call(ctx, 'fetch_delta', connection.calendar_id, cursor.token)
        except CursorExpiredError:
            self.logger.warning(f"Cursor for {connection.calendar_id} expired, running full sync")
            self.delta_tracker.reset(connection.user_id, ctx.provider, connection.calendar_id)
            self._checkpoint(ctx)
            return await self._call(ctx, 'fetch_delta', connection.calendar_id, None)

    def _pushable(self, ctx: _PassContext, task: Task) -> bool:
        return task.is_schedulable and ctx.config.task_allowed(task, ctx.connection.calendar_id)

    def _local_event(self, task: Task, remote_event_id: Optional[str]) -> Optional[SyncableEvent]:
        event = task_to_event(task, self.settings.default_event_duration_minutes)
        if event is not None and remote_event_id:
            event = event.model_copy(update={'id': remote_event_id})
        return event

    def _diff(self, ctx: _PassContext, page: DeltaPage, local_tasks: List[Task]) -> List[_PairItem]:
        """Pair local tasks, remote changes and links into work items."""
        connection = ctx.connection
        links = [
            row.to_model()
            for row in self.db_manager.get_links(ctx.session, connection.user_id, ctx.provider, connection.calendar_id)
        ]
        tasks_by_id = {task.id: task for task in local_tasks}
        remote_by_id = {event.id: event for event in page.events}
        removed = set(page.removed_ids)
        if page.full_snapshot:
            # Linked events missing from a full listing no longer exist
            for link in links:
                if link.remote_event_id in remote_by_id:
                    continue
                if link.snapshot is None or page.covers(link.snapshot):
                    removed.add(link.remote_event_id)

        items: List[_PairItem] = []
        seen_remote = set()
        seen_tasks = set()

        for link in links:
            seen_remote.add(link.remote_event_id)
            seen_tasks.add(link.task_id)
            task = tasks_by_id.get(link.task_id)
            if task is not None and not self._pushable(ctx, task):
                continue

            if link.remote_event_id in remote_by_id:
                remote = remote_by_id[link.remote_event_id]
            elif link.remote_event_id in removed:
                remote = None
            elif link.task_id in ctx.pending_by_task:
                remote = ctx.pending_by_task[link.task_id].remote_version
            else:
                remote = link.snapshot

            local = self._local_event(task, link.remote_event_id) if task is not None else None
            items.append(_PairItem(task=task, local=local, remote=remote, link=link))

        # Tasks already carrying this calendar's remote id but no link
        adoptable = {
            task.external_id: task
            for task in local_tasks
            if task.external_id and task.sync_provider == ctx.provider and task.id not in seen_tasks
        }

        for event in page.events:
            if event.id in seen_remote:
                continue
            seen_remote.add(event.id)
            task = adoptable.get(event.id)
            if task is not None and self._pushable(ctx, task):
                seen_tasks.add(task.id)
                items.append(_PairItem(task=task, local=self._local_event(task, event.id), remote=event))
            elif task is None:
                items.append(_PairItem(task=None, local=None, remote=event))

        for task in local_tasks:
            if task.id in seen_tasks or not self._pushable(ctx, task):
                continue
            # Linked to another calendar of the same provider
            if self.db_manager.get_link_by_task(ctx.session, connection.user_id, ctx.provider, task.id):
                continue
            items.append(_PairItem(task=task, local=self._local_event(task, None), remote=None))

        self.logger.debug(f"{connection.calendar_id}: {len(items)} items to classify")
        return items

    # Conflicts

    def _record_conflict(self, ctx: _PassContext, item: _PairItem) -> SyncConflict:
        existing = self._pending_for(ctx, item)
        if existing is None:
            existing = SyncConflict(
                connection_id=ctx.connection.id,
                user_id=ctx.connection.user_id,
                provider=ctx.provider,
                calendar_id=ctx.connection.calendar_id,
            )
        conflict = existing.model_copy(update={
            'task_id': item.task_id,
            'remote_event_id': item.remote_event_id,
            'classification': item.classification,
            'local_version': item.local,
            'remote_version': item.remote,
            'conflict_fields': self.detector.conflict_fields(item.local, item.remote),
        })
        self.db_manager.save_conflict(ctx.session, conflict)
        ctx.result.conflicts.append(conflict)
        # Neither side is written until the conflict is resolved
        self.logger.info(f"Conflict on task {item.task_id}: {', '.join(conflict.conflict_fields)}")
        return conflict

    def _pending_for(self, ctx: _PassContext, item: _PairItem) -> Optional[SyncConflict]:
        if item.task_id and item.task_id in ctx.pending_by_task:
            return ctx.pending_by_task[item.task_id]
        if item.remote_event_id and item.remote_event_id in ctx.pending_by_remote:
            return ctx.pending_by_remote[item.remote_event_id]
        return None

    def _supersede_conflict(self, ctx: _PassContext, item: _PairItem) -> None:
        pending = self._pending_for(ctx, item)
        if pending is None:
            return
        self.db_manager.resolve_conflict(ctx.session, pending.id, ConflictChoice.SUPERSEDED)
        ctx.pending_by_task.pop(pending.task_id or '', None)
        ctx.pending_by_remote.pop(pending.remote_event_id or '', None)
        self.logger.info(f"Conflict {pending.id} superseded ({item.classification.value})")

    # Writes

    def _directed(self, ctx: _PassContext, action: ResolutionAction, item: _PairItem) -> ResolutionAction:
        """Restrict ``action`` to the writable side of the configured direction."""
        if not ctx.direction.writes_local and action in (ResolutionAction.APPLY_REMOTE, ResolutionAction.MERGE):
            if item.local is not None:
                return ResolutionAction.APPLY_LOCAL
        if not ctx.direction.writes_remote and action in (ResolutionAction.APPLY_LOCAL, ResolutionAction.MERGE):
            if item.remote is not None:
                return ResolutionAction.APPLY_REMOTE
        return action

    async def _apply(self, ctx: _PassContext, item: _PairItem, resolution: Resolution) -> None:
        action = self._directed(ctx, resolution.action, item)
        concurrent = item.classification == Classification.CONCURRENT

        if item.local is None and item.remote is None:
            self._delete_link(ctx, item.link)
            return

        if action == ResolutionAction.SKIP:
            self._refresh_link(ctx, item)
            return

        if item.local is None and item.link is not None:
            if action == ResolutionAction.APPLY_REMOTE and concurrent and ctx.direction.writes_local:
                self._import_remote(ctx, item.remote, task_id=item.link.task_id)
            else:
                await self._propagate_local_deletion(ctx, item)
            return

        if item.remote is None and item.link is not None:
            if action == ResolutionAction.APPLY_LOCAL and concurrent and ctx.direction.writes_remote:
                await self._push_new(ctx, item)
            else:
                self._propagate_remote_deletion(ctx, item)
            return

        if item.remote is None:
            if ctx.direction.writes_remote:
                await self._push_new(ctx, item)
            return

        if item.local is None:
            if ctx.direction.writes_local:
                self._import_remote(ctx, item.remote)
            return

        if action == ResolutionAction.APPLY_LOCAL:
            await self._push_update(ctx, item, item.local)
        elif action == ResolutionAction.APPLY_REMOTE:
            self._pull_update(ctx, item, item.remote)
        elif action == ResolutionAction.MERGE:
            merged = resolution.merged_event or merge_events(item.local, item.remote, item.link.snapshot if item.link else None)
            await self._apply_merge(ctx, item, merged)

    def _save_link(
        self,
        ctx: _PassContext,
        task_id: str,
        event: SyncableEvent,
        remote_event: SyncableEvent,
        local_modified: Optional[Any] = None
    ) -> CalendarLink:
        """Persist the reconciled state of a pair.

        Args:
            task_id: Local task id
            event: Reconciled content
            remote_event: Remote event as last seen or written
            local_modified: Local task modification instant
        """
        synced_at = remote_event.last_modified
        if local_modified is not None and local_modified > synced_at:
            synced_at = local_modified
        if event.last_modified > synced_at:
            synced_at = event.last_modified

        existing = self.db_manager.get_link_by_task(ctx.session, ctx.connection.user_id, ctx.provider, task_id)
        link = CalendarLink(
            id=existing.id if existing else str(uuid4()),
            user_id=ctx.connection.user_id,
            provider=ctx.provider,
            calendar_id=ctx.connection.calendar_id,
            task_id=task_id,
            remote_event_id=remote_event.id,
            remote_etag=remote_event.etag,
            content_hash=content_hash(event),
            snapshot=event.model_copy(update={
                'id': remote_event.id,
                'etag': remote_event.etag,
                'last_modified': synced_at,
            }),
            last_synced_at=synced_at,
        )
        self.db_manager.save_link(ctx.session, link)
        return link

    def _delete_link(self, ctx: _PassContext, link: Optional[CalendarLink]) -> None:
        if link is not None:
            self.db_manager.delete_link(ctx.session, link.id)

    def _mark_synced(self, ctx: _PassContext, task: Task, remote_event_id: str) -> None:
        """Emit a tracking-field update if the task does not point at the remote event yet.

        A task already tracked by another provider keeps its external id.
        """
        fields: Dict[str, Any] = {}
        if task.sync_provider in (None, ctx.provider):
            if task.external_id != remote_event_id:
                fields['external_id'] = remote_event_id
            if task.sync_provider != ctx.provider:
                fields['sync_provider'] = ctx.provider
        if task.sync_status != TaskSyncStatus.SYNCED:
            fields['sync_status'] = TaskSyncStatus.SYNCED
        if fields:
            ctx.result.local_changes.append(
                TaskChange(operation=SyncOperation.UPDATE, task_id=task.id, fields=fields)
            )

    def _category_for(self, ctx: _PassContext) -> Optional[str]:
        for category, calendar_id in ctx.config.calendar_mapping.items():
            if calendar_id == ctx.connection.calendar_id:
                return category
        return None

    def _refresh_link(self, ctx: _PassContext, item: _PairItem) -> None:
        """Record a pair with equal content as reconciled when anything moved."""
        if item.local is None or item.remote is None or item.task is None:
            return
        link = item.link
        if link is not None:
            moved = (
                item.local.last_modified > link.last_synced_at
                or item.remote.last_modified > link.last_synced_at
                or (item.remote.etag and item.remote.etag != link.remote_etag)
            )
            if not moved:
                return
        self._save_link(ctx, item.task.id, item.local, item.remote, item.task.last_modified)
        self._mark_synced(ctx, item.task, item.remote.id)

    async def _push_new(self, ctx: _PassContext, item: _PairItem) -> None:
        event = item.local.model_copy(update={'id': None, 'etag': None})
        created = await self._call(ctx, 'create_event', ctx.connection.calendar_id, event)
        ctx.result.remote_created += 1
        self._save_link(ctx, item.task.id, item.local, created, item.task.last_modified)
        self._mark_synced(ctx, item.task, created.id)
        self.logger.debug(f"Created remote event {created.id} for task {item.task.id}")

    async def _push_update(self, ctx: _PassContext, item: _PairItem, event: SyncableEvent) -> None:
        remote = item.remote
        if content_hash(event) == content_hash(remote):
            written = remote
        else:
            etag = remote.etag or (item.link.remote_etag if item.link else None)
            written = await self._call(
                ctx, 'update_event', ctx.connection.calendar_id, remote.id,
                event.model_copy(update={'id': remote.id}), etag=etag
            )
            ctx.result.remote_updated += 1
        self._save_link(ctx, item.task.id, event, written, item.task.last_modified)
        self._mark_synced(ctx, item.task, written.id)

    def _pull_update(self, ctx: _PassContext, item: _PairItem, event: SyncableEvent) -> None:
        task = item.task
        if content_hash(event) != content_hash(item.local):
            fields = event_to_task(event, clear_missing=True)
            fields.update({
                'external_id': event.id if task.sync_provider in (None, ctx.provider) else task.external_id,
                'sync_provider': task.sync_provider or ctx.provider,
                'sync_status': TaskSyncStatus.SYNCED,
            })
            ctx.result.local_changes.append(
                TaskChange(operation=SyncOperation.UPDATE, task_id=task.id, fields=fields)
            )
            ctx.result.local_updated += 1
            self._save_link(ctx, task.id, event, item.remote)
        else:
            self._save_link(ctx, task.id, event, item.remote, task.last_modified)
            self._mark_synced(ctx, task, item.remote.id)

    async def _apply_merge(self, ctx: _PassContext, item: _PairItem, merged: SyncableEvent) -> None:
        written = item.remote
        if ctx.direction.writes_remote and content_hash(merged) != content_hash(item.remote):
            etag = item.remote.etag or (item.link.remote_etag if item.link else None)
            written = await self._call(
                ctx, 'update_event', ctx.connection.calendar_id, item.remote.id,
                merged.model_copy(update={'id': item.remote.id}), etag=etag
            )
            ctx.result.remote_updated += 1
        if ctx.direction.writes_local and content_hash(merged) != content_hash(item.local):
            fields = event_to_task(merged, clear_missing=True)
            fields.update({'sync_status': TaskSyncStatus.SYNCED})
            if item.task.sync_provider in (None, ctx.provider):
                fields.update({'external_id': written.id, 'sync_provider': ctx.provider})
            ctx.result.local_changes.append(
                TaskChange(operation=SyncOperation.UPDATE, task_id=item.task.id, fields=fields)
            )
            ctx.result.local_updated += 1
        else:
            self._mark_synced(ctx, item.task, written.id)
        self._save_link(ctx, item.task.id, merged, written, item.task.last_modified)

    def _import_remote(self, ctx: _PassContext, event: SyncableEvent, task_id: Optional[str] = None) -> None:
        task_id = task_id or str(uuid4())
        fields = event_to_task(event)
        fields.update({
            'external_id': event.id,
            'sync_provider': ctx.provider,
            'sync_status': TaskSyncStatus.SYNCED,
        })
        category = self._category_for(ctx)
        if category:
            fields['category'] = category
        ctx.result.local_changes.append(
            TaskChange(operation=SyncOperation.CREATE, task_id=task_id, fields=fields)
        )
        ctx.result.local_created += 1
        self._save_link(ctx, task_id, event, event)
        self.logger.debug(f"Imported remote event {event.id} as task {task_id}")

    async def _propagate_local_deletion(self, ctx: _PassContext, item: _PairItem) -> None:
        if ctx.direction.writes_remote and item.remote is not None:
            await self._call(ctx, 'delete_event', ctx.connection.calendar_id, item.link.remote_event_id)
            ctx.result.remote_deleted += 1
            self.logger.debug(f"Deleted remote event {item.link.remote_event_id}")
        self._delete_link(ctx, item.link)

    def _propagate_remote_deletion(self, ctx: _PassContext, item: _PairItem) -> None:
        task = item.task
        if task is not None:
            if ctx.direction.writes_local:
                ctx.result.local_changes.append(TaskChange(operation=SyncOperation.DELETE, task_id=task.id))
                ctx.result.local_deleted += 1
            else:
                # Pushed again as a new event on a later pass
                fields: Dict[str, Any] = {'sync_status': TaskSyncStatus.UNSYNCED}
                if task.sync_provider in (None, ctx.provider):
                    fields.update({'external_id': None, 'sync_provider': None})
                ctx.result.local_changes.append(
                    TaskChange(operation=SyncOperation.UPDATE, task_id=task.id, fields=fields)
                )
        self._delete_link(ctx, item.link)

    # Deferred conflicts

    async def resolve_conflict(
        self,
        connection: CalendarConnection,
        conflict_id: str,
        resolution: ConflictChoice,
        merged_data: Optional[Dict[str, Any]] = None,
        credentials: Optional[OAuthCredentials] = None
    ) -> SyncResult:
        """Apply an explicit resolution to a pending conflict.

        Args:
            connection: Connection the conflict belongs to
            conflict_id: Pending conflict id
            resolution: Which side wins, or merge
            merged_data: Event fields overriding the merge result
            credentials: Credentials to use, defaults to the connection's

        Returns:
            SyncResult with the writes performed

        Raises:
            ValueError: If the conflict does not exist or is already resolved
        """
        if resolution == ConflictChoice.SUPERSEDED:
            raise ValueError("Conflicts cannot be superseded explicitly")

        credentials = credentials or connection.credentials
        result = SyncResult(
            connection_id=connection.id,
            provider=connection.provider,
            calendar_id=connection.calendar_id,
            state=SyncState.PUSHING_LOCAL,
            credentials=credentials,
        )

        with self.db_manager.get_session() as session:
            row = self.db_manager.get_conflict(session, conflict_id)
            if row is None or row.connection_id != connection.id:
                raise ValueError(f"Conflict {conflict_id} not found")
            conflict = row.to_model()
            if conflict.status != ConflictStatus.PENDING:
                raise ValueError(f"Conflict {conflict_id} is already resolved")
            if credentials is None:
                raise AuthenticationError("No credentials stored for connection")

            link_row = None
            if conflict.task_id:
                link_row = self.db_manager.get_link_by_task(session, connection.user_id, connection.provider, conflict.task_id)
            link = link_row.to_model() if link_row else None

            task = None
            if conflict.local_version is not None and conflict.task_id:
                task = Task(id=conflict.task_id, last_modified=conflict.local_version.last_modified)
            item = _PairItem(
                task=task,
                local=conflict.local_version,
                remote=conflict.remote_version,
                link=link,
                classification=Classification.CONCURRENT,
            )

            if resolution == ConflictChoice.LOCAL:
                action = Resolution(ResolutionAction.APPLY_LOCAL)
            elif resolution == ConflictChoice.REMOTE:
                action = Resolution(ResolutionAction.APPLY_REMOTE)
            else:
                action = self._merge_resolution(item, merged_data)

            ctx = _PassContext(
                connection=connection,
                config=self.settings.sync_config.model_copy(update={'sync_direction': SyncDirection.TWO_WAY}),
                credentials=credentials,
                result=result,
                session=session,
                cancel_event=asyncio.Event(),
                policy=ConflictResolution.MANUAL,
            )
            try:
                await self._apply(ctx, item, action)
            except AuthenticationError as e:
                result.errors.append(SyncError(kind=e.kind, message=str(e), fatal=True))
                result.auth_failed = True
                result.status = SyncRunStatus.FAILED
            except CalendarServiceError as e:
                result.errors.append(SyncError(kind=e.kind, message=str(e), item_id=conflict.task_id))
                result.status = SyncRunStatus.FAILED
            else:
                self.db_manager.resolve_conflict(session, conflict_id, resolution)
                result.status = SyncRunStatus.COMPLETED
                self.logger.info(f"Resolved conflict {conflict_id} with {resolution.value}")

        result.state = SyncState.IDLE if result.success else SyncState.FAILED
        result.completed_at = utc_now()
        return result

    def _merge_resolution(self, item: _PairItem, merged_data: Optional[Dict[str, Any]]) -> Resolution:
        if item.local is None or item.remote is None:
            return Resolution(ResolutionAction.APPLY_LOCAL, reason="Merge with a deleted side falls back to local wins")
        merged = merge_events(item.local, item.remote, item.link.snapshot if item.link else None)
        if merged_data:
            data = merged.model_dump()
            data.update(merged_data)
            data['last_modified'] = utc_now()
            merged = SyncableEvent(**data)
        return Resolution(ResolutionAction.MERGE, merged_event=merged)
