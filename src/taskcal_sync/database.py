"""Database models and operations for sync state management."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.types import TypeDecorator
import pytz

from .config import Settings
from .models import (
    CalendarConnection,
    CalendarLink,
    CalendarProvider,
    Classification,
    ConflictChoice,
    ConflictStatus,
    OAuthCredentials,
    SyncConflict,
    SyncCursor,
    SyncResult,
    SyncRunStatus,
    SyncableEvent,
    utc_now,
)

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and loaded back as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value
        return value.astimezone(pytz.UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=pytz.UTC)
        return value.astimezone(pytz.UTC)


def _event_json(event: Optional[SyncableEvent]) -> Optional[str]:
    return event.model_dump_json() if event is not None else None


def _event_from_json(data: Optional[str]) -> Optional[SyncableEvent]:
    return SyncableEvent.model_validate_json(data) if data else None


class CalendarConnectionDB(Base):
    """Database model for a connected provider calendar."""

    __tablename__ = 'calendar_connections'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    name = Column(String(255), nullable=True)
    account_email = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)

    # Stored OAuth tokens
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(UTCDateTime, nullable=True)

    needs_reauth = Column(Boolean, nullable=False, default=False)
    last_sync_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', 'calendar_id', name='uq_connection_calendar'),
        Index('idx_connection_enabled', 'enabled'),
    )

    def to_model(self) -> CalendarConnection:
        credentials = None
        if self.access_token:
            credentials = OAuthCredentials(
                access_token=self.access_token,
                refresh_token=self.refresh_token,
                expires_at=self.token_expires_at,
            )
        return CalendarConnection(
            id=self.id,
            user_id=self.user_id,
            provider=CalendarProvider(self.provider),
            calendar_id=self.calendar_id,
            name=self.name,
            account_email=self.account_email,
            enabled=self.enabled,
            credentials=credentials,
            needs_reauth=self.needs_reauth,
            last_sync_at=self.last_sync_at,
            last_error=self.last_error,
        )


class CalendarLinkDB(Base):
    """Database model binding a local task to a remote event."""

    __tablename__ = 'calendar_links'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(20), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    task_id = Column(String(255), nullable=False)
    remote_event_id = Column(String(1024), nullable=False)
    remote_etag = Column(String(255), nullable=True)
    content_hash = Column(String(64), nullable=False)
    snapshot = Column(Text, nullable=True)  # JSON
    last_synced_at = Column(UTCDateTime, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', 'task_id', name='uq_link_task'),
        UniqueConstraint('user_id', 'provider', 'calendar_id', 'remote_event_id', name='uq_link_remote'),
        Index('idx_link_calendar', 'user_id', 'provider', 'calendar_id'),
    )

    def to_model(self) -> CalendarLink:
        return CalendarLink(
            id=self.id,
            user_id=self.user_id,
            provider=CalendarProvider(self.provider),
            calendar_id=self.calendar_id,
            task_id=self.task_id,
            remote_event_id=self.remote_event_id,
            remote_etag=self.remote_etag,
            content_hash=self.content_hash,
            snapshot=_event_from_json(self.snapshot),
            last_synced_at=self.last_synced_at,
        )


class SyncCursorDB(Base):
    """Database model for provider delta cursors."""

    __tablename__ = 'sync_cursors'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(20), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    token = Column(Text, nullable=False)
    advanced_at = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', 'calendar_id', name='uq_cursor_calendar'),
    )

    def to_model(self) -> SyncCursor:
        return SyncCursor(
            user_id=self.user_id,
            provider=CalendarProvider(self.provider),
            calendar_id=self.calendar_id,
            token=self.token,
            advanced_at=self.advanced_at,
        )


class SyncConflictDB(Base):
    """Database model for sync conflicts."""

    __tablename__ = 'sync_conflicts'

    id = Column(String(36), primary_key=True, default=_new_id)
    connection_id = Column(String(36), nullable=False)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(20), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    task_id = Column(String(255), nullable=True)
    remote_event_id = Column(String(1024), nullable=True)

    classification = Column(String(30), nullable=False)
    local_data = Column(Text, nullable=True)  # JSON
    remote_data = Column(Text, nullable=True)  # JSON
    conflict_fields = Column(Text, nullable=True)  # JSON list

    status = Column(String(20), nullable=False, default=ConflictStatus.PENDING.value)
    resolution = Column(String(20), nullable=True)  # 'local', 'remote', 'merge', 'superseded'
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now)
    resolved_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index('idx_conflict_connection_status', 'connection_id', 'status'),
        Index('idx_conflict_task', 'task_id'),
        Index('idx_conflict_created', 'created_at'),
    )

    def to_model(self) -> SyncConflict:
        return SyncConflict(
            id=self.id,
            connection_id=self.connection_id,
            user_id=self.user_id,
            provider=CalendarProvider(self.provider),
            calendar_id=self.calendar_id,
            task_id=self.task_id,
            remote_event_id=self.remote_event_id,
            classification=Classification(self.classification),
            local_version=_event_from_json(self.local_data),
            remote_version=_event_from_json(self.remote_data),
            conflict_fields=json.loads(self.conflict_fields) if self.conflict_fields else [],
            status=ConflictStatus(self.status),
            resolution=ConflictChoice(self.resolution) if self.resolution else None,
            created_at=self.created_at,
            resolved_at=self.resolved_at,
        )


class SyncRunDB(Base):
    """Database model for sync passes."""

    __tablename__ = 'sync_runs'

    id = Column(String(36), primary_key=True, default=_new_id)
    connection_id = Column(String(36), nullable=False)
    started_at = Column(UTCDateTime, nullable=False, default=utc_now)
    completed_at = Column(UTCDateTime, nullable=True)

    # Counters
    local_created = Column(Integer, default=0)
    local_updated = Column(Integer, default=0)
    local_deleted = Column(Integer, default=0)
    remote_created = Column(Integer, default=0)
    remote_updated = Column(Integer, default=0)
    remote_deleted = Column(Integer, default=0)
    conflicts = Column(Integer, default=0)
    errors = Column(Integer, default=0)

    # Status
    status = Column(String(20), nullable=False, default=SyncRunStatus.RUNNING.value)
    state = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_sync_run_connection_started', 'connection_id', 'started_at'),
        Index('idx_sync_run_status', 'status'),
    )


class DatabaseManager:
    """Database manager for sync state."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # Connections

    def get_connection(self, session: Session, connection_id: str) -> Optional[CalendarConnectionDB]:
        return session.get(CalendarConnectionDB, connection_id)

    def get_connections(
        self,
        session: Session,
        user_id: Optional[str] = None,
        enabled_only: bool = False
    ) -> List[CalendarConnectionDB]:
        """Get calendar connections.

        Args:
            session: Database session
            user_id: Restrict to one user
            enabled_only: Skip disabled connections

        Returns:
            List of connections
        """
        query = session.query(CalendarConnectionDB)
        if user_id:
            query = query.filter(CalendarConnectionDB.user_id == user_id)
        if enabled_only:
            query = query.filter(CalendarConnectionDB.enabled == True)  # noqa: E712
        return query.order_by(CalendarConnectionDB.created_at).all()

    def save_connection(self, session: Session, connection: CalendarConnection) -> CalendarConnectionDB:
        """Create or update a connection from its model.

        An existing row for the same (user, provider, calendar) is reused.
        """
        row = session.get(CalendarConnectionDB, connection.id)
        if row is None:
            row = session.query(CalendarConnectionDB).filter(
                CalendarConnectionDB.user_id == connection.user_id,
                CalendarConnectionDB.provider == connection.provider.value,
                CalendarConnectionDB.calendar_id == connection.calendar_id,
            ).first()
        if row is None:
            row = CalendarConnectionDB(
                id=connection.id,
                user_id=connection.user_id,
                provider=connection.provider.value,
                calendar_id=connection.calendar_id,
            )
            session.add(row)

        row.name = connection.name
        row.account_email = connection.account_email
        row.enabled = connection.enabled
        row.needs_reauth = connection.needs_reauth
        row.last_sync_at = connection.last_sync_at
        row.last_error = connection.last_error
        self._set_credentials(row, connection.credentials)
        row.updated_at = utc_now()

        session.commit()
        return row

    def _set_credentials(self, row: CalendarConnectionDB, credentials: Optional[OAuthCredentials]) -> None:
        row.access_token = credentials.access_token if credentials else None
        row.refresh_token = credentials.refresh_token if credentials else None
        row.token_expires_at = credentials.expires_at if credentials else None

    def update_connection_credentials(
        self,
        session: Session,
        connection_id: str,
        credentials: OAuthCredentials
    ) -> Optional[CalendarConnectionDB]:
        row = self.get_connection(session, connection_id)
        if row is None:
            return None
        self._set_credentials(row, credentials)
        row.needs_reauth = False
        row.updated_at = utc_now()
        session.commit()
        return row

    def record_connection_sync(
        self,
        session: Session,
        connection_id: str,
        error: Optional[str] = None,
        needs_reauth: Optional[bool] = None
    ) -> Optional[CalendarConnectionDB]:
        """Record the outcome of a pass on the connection row."""
        row = self.get_connection(session, connection_id)
        if row is None:
            return None
        now = utc_now()
        row.last_sync_at = now
        row.last_error = error
        if needs_reauth is not None:
            row.needs_reauth = needs_reauth
        row.updated_at = now
        session.commit()
        return row

    def delete_connection(self, session: Session, connection_id: str) -> bool:
        row = self.get_connection(session, connection_id)
        if row is None:
            return False
        session.delete(row)
        session.commit()
        return True

    # Links

    def get_link_by_task(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        task_id: str
    ) -> Optional[CalendarLinkDB]:
        return session.query(CalendarLinkDB).filter(
            CalendarLinkDB.user_id == user_id,
            CalendarLinkDB.provider == provider.value,
            CalendarLinkDB.task_id == task_id,
        ).first()

    def get_link_by_remote(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        calendar_id: str,
        remote_event_id: str
    ) -> Optional[CalendarLinkDB]:
        return session.query(CalendarLinkDB).filter(
            CalendarLinkDB.user_id == user_id,
            CalendarLinkDB.provider == provider.value,
            CalendarLinkDB.calendar_id == calendar_id,
            CalendarLinkDB.remote_event_id == remote_event_id,
        ).first()

    def get_links(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        calendar_id: str
    ) -> List[CalendarLinkDB]:
        """Get all links of one calendar."""
        return session.query(CalendarLinkDB).filter(
            CalendarLinkDB.user_id == user_id,
            CalendarLinkDB.provider == provider.value,
            CalendarLinkDB.calendar_id == calendar_id,
        ).all()

    def save_link(self, session: Session, link: CalendarLink) -> CalendarLinkDB:
        """Create or update a link, keyed by (user, provider, task).

        Args:
            session: Database session
            link: Link model

        Returns:
            Stored link
        """
        row = self.get_link_by_task(session, link.user_id, link.provider, link.task_id)
        if row is None:
            row = CalendarLinkDB(
                id=link.id,
                user_id=link.user_id,
                provider=link.provider.value,
                task_id=link.task_id,
            )
            session.add(row)

        row.calendar_id = link.calendar_id
        row.remote_event_id = link.remote_event_id
        row.remote_etag = link.remote_etag
        row.content_hash = link.content_hash
        row.snapshot = _event_json(link.snapshot)
        row.last_synced_at = link.last_synced_at
        row.updated_at = utc_now()

        session.commit()
        return row

    def delete_link(self, session: Session, link_id: str) -> bool:
        row = session.get(CalendarLinkDB, link_id)
        if row is None:
            return False
        session.delete(row)
        session.commit()
        return True

    # Cursors

    def get_cursor(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        calendar_id: str
    ) -> Optional[SyncCursorDB]:
        return session.query(SyncCursorDB).filter(
            SyncCursorDB.user_id == user_id,
            SyncCursorDB.provider == provider.value,
            SyncCursorDB.calendar_id == calendar_id,
        ).first()

    def save_cursor(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        calendar_id: str,
        token: str
    ) -> SyncCursorDB:
        row = self.get_cursor(session, user_id, provider, calendar_id)
        if row is None:
            row = SyncCursorDB(user_id=user_id, provider=provider.value, calendar_id=calendar_id)
            session.add(row)
        row.token = token
        row.advanced_at = utc_now()
        session.commit()
        return row

    def delete_cursor(
        self,
        session: Session,
        user_id: str,
        provider: CalendarProvider,
        calendar_id: str
    ) -> bool:
        row = self.get_cursor(session, user_id, provider, calendar_id)
        if row is None:
            return False
        session.delete(row)
        session.commit()
        return True

    # Conflicts

    def get_conflict(self, session: Session, conflict_id: str) -> Optional[SyncConflictDB]:
        return session.get(SyncConflictDB, conflict_id)

    def get_pending_conflict(
        self,
        session: Session,
        connection_id: str,
        task_id: Optional[str],
        remote_event_id: Optional[str]
    ) -> Optional[SyncConflictDB]:
        """Find the pending conflict for a task or remote event of a connection."""
        query = session.query(SyncConflictDB).filter(
            SyncConflictDB.connection_id == connection_id,
            SyncConflictDB.status == ConflictStatus.PENDING.value,
        )
        if task_id:
            row = query.filter(SyncConflictDB.task_id == task_id).first()
            if row is not None:
                return row
        if remote_event_id:
            return query.filter(SyncConflictDB.remote_event_id == remote_event_id).first()
        return None

    def get_conflicts(
        self,
        session: Session,
        connection_id: Optional[str] = None,
        status: Optional[ConflictStatus] = ConflictStatus.PENDING
    ) -> List[SyncConflictDB]:
        """Get conflicts, newest first.

        Args:
            session: Database session
            connection_id: Restrict to one connection
            status: Restrict to one status; None returns all

        Returns:
            List of conflicts
        """
        query = session.query(SyncConflictDB)
        if connection_id:
            query = query.filter(SyncConflictDB.connection_id == connection_id)
        if status is not None:
            query = query.filter(SyncConflictDB.status == status.value)
        return query.order_by(SyncConflictDB.created_at.desc()).all()

    def save_conflict(self, session: Session, conflict: SyncConflict) -> SyncConflictDB:
        """Create or update a conflict row from its model."""
        row = session.get(SyncConflictDB, conflict.id)
        if row is None:
            row = SyncConflictDB(id=conflict.id, created_at=conflict.created_at)
            session.add(row)

        row.connection_id = conflict.connection_id
        row.user_id = conflict.user_id
        row.provider = conflict.provider.value
        row.calendar_id = conflict.calendar_id
        row.task_id = conflict.task_id
        row.remote_event_id = conflict.remote_event_id
        row.classification = conflict.classification.value
        row.local_data = _event_json(conflict.local_version)
        row.remote_data = _event_json(conflict.remote_version)
        row.conflict_fields = json.dumps(conflict.conflict_fields)
        row.status = conflict.status.value
        row.resolution = conflict.resolution.value if conflict.resolution else None
        row.resolved_at = conflict.resolved_at
        row.updated_at = utc_now()

        session.commit()
        return row

    def resolve_conflict(
        self,
        session: Session,
        conflict_id: str,
        resolution: ConflictChoice
    ) -> Optional[SyncConflictDB]:
        row = self.get_conflict(session, conflict_id)
        if row is None:
            return None
        now = utc_now()
        row.status = ConflictStatus.RESOLVED.value
        row.resolution = resolution.value
        row.resolved_at = now
        row.updated_at = now
        session.commit()
        return row

    # Sync runs

    def create_sync_run(self, session: Session, connection_id: str, started_at: Optional[datetime] = None) -> SyncRunDB:
        """Create new sync run record."""
        run = SyncRunDB(connection_id=connection_id, started_at=started_at or utc_now())
        session.add(run)
        session.commit()
        return run

    def complete_sync_run(self, session: Session, run: SyncRunDB, result: SyncResult) -> SyncRunDB:
        """Copy the outcome of ``result`` onto ``run``."""
        run.completed_at = result.completed_at or utc_now()
        run.status = result.status.value
        run.state = result.state.value
        run.local_created = result.local_created
        run.local_updated = result.local_updated
        run.local_deleted = result.local_deleted
        run.remote_created = result.remote_created
        run.remote_updated = result.remote_updated
        run.remote_deleted = result.remote_deleted
        run.conflicts = len(result.conflicts)
        run.errors = len(result.errors)
        run.error_message = result.last_error

        session.commit()
        return run

    def get_recent_sync_runs(
        self,
        session: Session,
        connection_id: Optional[str] = None,
        limit: int = 10
    ) -> List[SyncRunDB]:
        """Get recent sync runs.

        Args:
            session: Database session
            connection_id: Restrict to one connection
            limit: Number of runs to return

        Returns:
            List of sync runs
        """
        query = session.query(SyncRunDB)
        if connection_id:
            query = query.filter(SyncRunDB.connection_id == connection_id)
        return query.order_by(SyncRunDB.started_at.desc()).limit(limit).all()

    def get_sync_statistics(self, session: Session, connection_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate counters over stored sync runs."""
        runs = session.query(SyncRunDB)
        if connection_id:
            runs = runs.filter(SyncRunDB.connection_id == connection_id)
        runs = runs.all()
        return {
            'total_runs': len(runs),
            'completed_runs': sum(1 for r in runs if r.status == SyncRunStatus.COMPLETED.value),
            'failed_runs': sum(1 for r in runs if r.status == SyncRunStatus.FAILED.value),
            'remote_changes': sum((r.remote_created or 0) + (r.remote_updated or 0) + (r.remote_deleted or 0) for r in runs),
            'local_changes': sum((r.local_created or 0) + (r.local_updated or 0) + (r.local_deleted or 0) for r in runs),
            'pending_conflicts': session.query(SyncConflictDB).filter(
                SyncConflictDB.status == ConflictStatus.PENDING.value
            ).count(),
        }
