"""Scheduling of sync passes and the sync control API."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .config import Settings
from .models import (
    CalendarConnection,
    ConflictChoice,
    ConflictStatus,
    SyncConflict,
    SyncResult,
    utc_now,
)
from .services import AuthenticationError, CalendarServiceError
from .sync_engine import SyncManager
from .task_store import TaskStore

logger = logging.getLogger(__name__)


class SyncInProgressError(Exception):
    """An operation needs a calendar that is being synced."""
    pass


class SyncScheduler:
    """Triggers periodic and on-demand passes, one in flight per calendar.

    Calendars are addressed by connection id.
    """

    def __init__(self, settings: Settings, task_store: TaskStore, sync_manager: Optional[SyncManager] = None):
        """Initialize scheduler.

        Args:
            settings: Application settings
            task_store: Store the passes read tasks from and write changes to
            sync_manager: Sync manager, created from settings if omitted
        """
        self.settings = settings
        self.task_store = task_store
        self.sync_manager = sync_manager or SyncManager(settings)
        self.db_manager = self.sync_manager.db_manager
        self.running = False
        self._in_flight: Set[str] = set()
        self._auto_tasks: Dict[str, asyncio.Task] = {}
        self._next_run: Dict[str, datetime] = {}
        self.logger = logger.getChild('scheduler')

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def _load_connection(self, calendar_id: str) -> CalendarConnection:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_connection(session, calendar_id)
            if row is None:
                raise KeyError(f"Unknown calendar connection: {calendar_id}")
            return row.to_model()

    def _enabled_connections(self) -> List[CalendarConnection]:
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_connections(session, enabled_only=True)
            connections = [row.to_model() for row in rows]
        providers = self.settings.sync_config.enabled_providers
        return [c for c in connections if c.provider in providers]

    async def sync_all(self) -> Dict[str, SyncResult]:
        """Sync every enabled connection concurrently.

        Returns:
            Results keyed by connection id; calendars already in flight are omitted
        """
        connections = self._enabled_connections()
        return await self.sync_calendar([c.id for c in connections])

    async def sync_calendar(self, calendar_ids: Union[str, Iterable[str]]) -> Dict[str, SyncResult]:
        """Sync the given connections concurrently.

        Args:
            calendar_ids: One connection id or several

        Returns:
            Results keyed by connection id; calendars already in flight are omitted
        """
        if isinstance(calendar_ids, str):
            calendar_ids = [calendar_ids]
        calendar_ids = list(dict.fromkeys(calendar_ids))
        results = await asyncio.gather(*(self._sync_one(cid) for cid in calendar_ids))
        return {cid: result for cid, result in zip(calendar_ids, results) if result is not None}

    async def _sync_one(self, calendar_id: str) -> Optional[SyncResult]:
        if calendar_id in self._in_flight:
            self.logger.info(f"Sync of {calendar_id} already in progress, skipping trigger")
            return None
        self._in_flight.add(calendar_id)
        try:
            try:
                connection = self._load_connection(calendar_id)
            except KeyError:
                self.logger.warning(f"Unknown connection {calendar_id}, skipping")
                return None
            if not connection.enabled:
                self.logger.info(f"Connection {calendar_id} is disabled, skipping")
                return None
            tasks = await self.task_store.list_tasks(connection.user_id)
            result = await self.sync_manager.sync_calendar(connection, tasks)
            await self._after_pass(connection, result)
            return result
        finally:
            self._in_flight.discard(calendar_id)

    async def _after_pass(self, connection: CalendarConnection, result: SyncResult) -> None:
        """Apply local changes and record the outcome on the connection.

        Local changes are applied even for failed passes: links for the writes
        they describe are already stored.
        """
        if result.local_changes:
            await self.task_store.apply_changes(connection.user_id, result.local_changes)

        with self.db_manager.get_session() as session:
            if result.credentials is not None and result.credentials != connection.credentials:
                self.db_manager.update_connection_credentials(session, connection.id, result.credentials)
            needs_reauth = True if result.auth_failed else (False if result.success else None)
            self.db_manager.record_connection_sync(
                session,
                connection.id,
                error=None if result.success else result.last_error,
                needs_reauth=needs_reauth,
            )

    def schedule_auto_sync(self, calendar_id: str, frequency: Optional[int] = None) -> None:
        """Run passes for ``calendar_id`` periodically.

        Args:
            calendar_id: Connection id
            frequency: Interval in milliseconds, defaults to the configured sync_interval
        """
        interval_ms = frequency or self.settings.sync_config.sync_interval
        self.cancel_auto_sync(calendar_id)
        self._auto_tasks[calendar_id] = asyncio.create_task(
            self._auto_loop(calendar_id, interval_ms / 1000.0)
        )
        self.logger.info(f"Scheduled auto sync of {calendar_id} every {interval_ms / 1000.0:.0f}s")

    async def _auto_loop(self, calendar_id: str, interval: float) -> None:
        while True:
            self._next_run[calendar_id] = utc_now() + timedelta(seconds=interval)
            await asyncio.sleep(interval)
            try:
                await self._sync_one(calendar_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the schedule alive; the next tick retries
                self.logger.error(f"Scheduled sync of {calendar_id} failed: {e}")

    def cancel_auto_sync(self, calendar_id: str) -> bool:
        task = self._auto_tasks.pop(calendar_id, None)
        self._next_run.pop(calendar_id, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_sync(self, calendar_id: str) -> bool:
        """Request cooperative cancellation of the running pass of ``calendar_id``."""
        return self.sync_manager.cancel(calendar_id)

    async def start(self) -> None:
        """Initialize storage and schedule enabled connections when auto sync is on."""
        await self.sync_manager.initialize()
        self.running = True
        if self.settings.sync_config.auto_sync:
            for connection in self._enabled_connections():
                self.schedule_auto_sync(connection.id)
        self.logger.info("Sync scheduler started")

    async def stop(self) -> None:
        """Cancel schedules and running passes, then release resources."""
        self.running = False
        tasks = list(self._auto_tasks.values())
        for calendar_id in list(self._auto_tasks):
            self.cancel_auto_sync(calendar_id)
        for calendar_id in list(self._in_flight):
            self.cancel_sync(calendar_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.sync_manager.cleanup()
        self.logger.info("Sync scheduler stopped")

    async def test_connection(self, calendar_id: str) -> bool:
        """Check that the connection's account is reachable.

        Never raises. A token that cannot be refreshed marks the connection as
        needing re-authorization.
        """
        try:
            connection = self._load_connection(calendar_id)
        except KeyError:
            return False
        if connection.credentials is None:
            return False

        client = self.sync_manager.get_client(connection.provider)
        try:
            credentials = await client.ensure_credentials(connection.credentials)
        except AuthenticationError as e:
            self.logger.warning(f"Connection {calendar_id} needs re-authorization: {e}")
            with self.db_manager.get_session() as session:
                self.db_manager.record_connection_sync(session, calendar_id, error=str(e), needs_reauth=True)
            return False
        except CalendarServiceError as e:
            self.logger.warning(f"Connection test of {calendar_id} failed: {e}")
            return False
        except Exception as e:
            self.logger.error(f"Unexpected error testing connection {calendar_id}: {e}")
            return False

        if credentials != connection.credentials:
            with self.db_manager.get_session() as session:
                self.db_manager.update_connection_credentials(session, calendar_id, credentials)
        return await client.test_connection(credentials)

    def get_sync_status(self) -> Dict[str, Dict[str, Any]]:
        """Per-calendar last run, last error, next run and flags."""
        with self.db_manager.get_session() as session:
            connections = [row.to_model() for row in self.db_manager.get_connections(session)]

        status = {}
        for connection in connections:
            status[connection.id] = {
                'provider': connection.provider.value,
                'calendar_id': connection.calendar_id,
                'enabled': connection.enabled,
                'last_run_at': connection.last_sync_at,
                'last_error': connection.last_error,
                'next_run_at': self._next_run.get(connection.id),
                'in_progress': connection.id in self._in_flight,
                'needs_reauth': connection.needs_reauth,
            }
        return status

    def get_conflicts(self, calendar_id: Optional[str] = None) -> List[SyncConflict]:
        """Pending conflicts, newest first."""
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_conflicts(session, calendar_id, ConflictStatus.PENDING)
            return [row.to_model() for row in rows]

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: Union[ConflictChoice, str],
        merged_data: Optional[Dict[str, Any]] = None
    ) -> SyncResult:
        """Resolve a pending conflict and apply the resulting writes.

        Raises:
            KeyError: If the conflict does not exist
            SyncInProgressError: If its calendar is being synced
        """
        resolution = ConflictChoice(resolution)
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_conflict(session, conflict_id)
            if row is None:
                raise KeyError(f"Unknown conflict: {conflict_id}")
            calendar_id = row.connection_id

        if calendar_id in self._in_flight:
            raise SyncInProgressError(f"Sync of {calendar_id} in progress")
        self._in_flight.add(calendar_id)
        try:
            connection = self._load_connection(calendar_id)
            result = await self.sync_manager.resolve_conflict(
                connection, conflict_id, resolution, merged_data=merged_data
            )
            await self._after_pass(connection, result)
            return result
        finally:
            self._in_flight.discard(calendar_id)
