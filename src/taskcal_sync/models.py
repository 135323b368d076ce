"""Data models for task/calendar synchronization."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_aware(value: datetime) -> datetime:
    """Return ``value`` as a timezone-aware datetime, assuming UTC when naive."""
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.UTC)
    return value


class CalendarProvider(str, Enum):
    """Supported external calendar providers."""

    GOOGLE = "google"
    OUTLOOK = "outlook"


class TaskSyncStatus(str, Enum):
    """Sync-tracking status carried on a local task."""

    UNSYNCED = "unsynced"
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    FAILED = "failed"


class SyncDirection(str, Enum):
    """Which side of the pair may be written during a pass."""

    LOCAL_TO_REMOTE = "local-to-remote"
    REMOTE_TO_LOCAL = "remote-to-local"
    TWO_WAY = "two-way"

    @property
    def writes_remote(self) -> bool:
        return self != SyncDirection.REMOTE_TO_LOCAL

    @property
    def writes_local(self) -> bool:
        return self != SyncDirection.LOCAL_TO_REMOTE


class ConflictResolution(str, Enum):
    """Conflict resolution policies for concurrent edits."""

    MANUAL = "manual"  # Record a SyncConflict and wait for an explicit resolution
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGE = "merge"  # Field-level three-way merge, local wins on overlap


class Classification(str, Enum):
    """Outcome of comparing the local and remote copies of one logical event."""

    NONE_LOCAL_ONLY = "none-local-only"
    NONE_REMOTE_ONLY = "none-remote-only"
    NO_CONFLICT = "no-conflict"
    REMOTE_NEWER = "remote-newer"
    LOCAL_NEWER = "local-newer"
    CONCURRENT = "concurrent"


class ResolutionAction(str, Enum):
    """What the sync manager must write for a classified pair."""

    APPLY_LOCAL = "apply-local"
    APPLY_REMOTE = "apply-remote"
    MERGE = "merge"
    DEFER = "defer"
    SKIP = "skip"


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ConflictChoice(str, Enum):
    """Explicit resolution of a deferred conflict."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"
    SUPERSEDED = "superseded"


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class SyncState(str, Enum):
    """States of one sync pass."""

    IDLE = "idle"
    FETCHING_REMOTE = "fetching-remote"
    DIFFING = "diffing"
    RESOLVING_CONFLICTS = "resolving-conflicts"
    PUSHING_LOCAL = "pushing-local"
    PERSISTING_CURSOR = "persisting-cursor"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OAuthCredentials(BaseModel):
    """Access/refresh token pair for one provider connection.

    Instances are immutable; a token refresh produces a new object which the
    caller is responsible for persisting.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(..., description="Bearer access token")
    refresh_token: Optional[str] = Field(None, description="Long-lived refresh token")
    expires_at: Optional[datetime] = Field(None, description="Access token expiry")

    @validator('expires_at', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @classmethod
    def from_expires_in(
        cls,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: Optional[int],
    ) -> 'OAuthCredentials':
        expires_at = utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None
        return cls(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token expires within ``seconds`` from ``now``."""
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return self.expires_at - timedelta(seconds=seconds) <= now


class Task(BaseModel):
    """A local task as read from the task store."""

    id: str = Field(..., description="Task identifier")
    title: str = Field("", description="Task title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    scheduled_at: Optional[datetime] = Field(None, description="Scheduled start")
    scheduled_end_at: Optional[datetime] = Field(None, description="Scheduled end")
    due_at: Optional[datetime] = Field(None, description="Due instant, used when not scheduled")
    reminder_at: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    timezone: Optional[str] = Field(None, description="IANA timezone of the task")
    attendees: List[str] = Field(default_factory=list, description="Attendee emails")
    category: Optional[str] = Field(None)
    completed: bool = Field(False)
    last_modified: datetime = Field(default_factory=utc_now)

    # Sync-tracking fields
    external_id: Optional[str] = Field(None, description="Remote event id")
    sync_provider: Optional[CalendarProvider] = Field(None)
    sync_status: TaskSyncStatus = Field(TaskSyncStatus.UNSYNCED)

    @validator('scheduled_at', 'scheduled_end_at', 'due_at', 'reminder_at', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @property
    def start(self) -> Optional[datetime]:
        return self.scheduled_at or self.due_at

    @property
    def is_schedulable(self) -> bool:
        return self.start is not None


class SyncableEvent(BaseModel):
    """Provider-neutral calendar event."""

    id: Optional[str] = Field(None, description="Remote event id, None until created")
    title: str = Field("", description="Event title")
    description: Optional[str] = Field(None, description="Body text")
    location: Optional[str] = Field(None)
    start: datetime = Field(..., description="Event start")
    end: datetime = Field(..., description="Event end")
    timezone: str = Field("UTC", description="IANA timezone of start/end")
    all_day: bool = Field(False)
    attendees: List[str] = Field(default_factory=list, description="Attendee emails")
    reminder_minutes: Optional[int] = Field(None, description="Popup reminder offset (lossy)")
    last_modified: datetime = Field(default_factory=utc_now)
    etag: Optional[str] = Field(None, description="Opaque provider version tag")

    @validator('start', 'end', 'last_modified', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @validator('end')
    def end_after_start(cls, v, values):
        """Ensure end time is after start time."""
        if 'start' in values and v <= values['start']:
            raise ValueError(f"End time ({v}) must be after start time ({values['start']})")
        return v


class CalendarSyncConfig(BaseModel):
    """Per-user sync configuration."""

    enabled_providers: List[CalendarProvider] = Field(
        default_factory=lambda: [CalendarProvider.GOOGLE, CalendarProvider.OUTLOOK]
    )
    sync_interval: int = Field(15 * 60 * 1000, ge=1000, description="Auto-sync interval in milliseconds")
    conflict_resolution: ConflictResolution = Field(ConflictResolution.MANUAL)
    auto_sync: bool = Field(False)
    sync_direction: SyncDirection = Field(SyncDirection.TWO_WAY)
    include_completed_tasks: bool = Field(False)
    calendar_mapping: Dict[str, str] = Field(
        default_factory=dict, description="Local category -> remote calendar id"
    )
    sync_categories: List[str] = Field(
        default_factory=list, description="Categories to sync; empty means all"
    )

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval / 1000.0

    def task_allowed(self, task: Task, calendar_id: str) -> bool:
        """Check whether ``task`` may be pushed to ``calendar_id``."""
        if not self.include_completed_tasks and task.completed:
            return False
        if self.sync_categories and task.category not in self.sync_categories:
            return False
        mapped = self.calendar_mapping.get(task.category) if task.category else None
        if mapped is not None and mapped != calendar_id:
            return False
        return True


class CalendarConnection(BaseModel):
    """A connected provider calendar."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    provider: CalendarProvider
    calendar_id: str = Field("primary", description="Remote calendar id")
    name: Optional[str] = None
    account_email: Optional[str] = None
    enabled: bool = True
    credentials: Optional[OAuthCredentials] = None
    needs_reauth: bool = False
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


class CalendarLink(BaseModel):
    """Binding between one local task and one remote event."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    provider: CalendarProvider
    calendar_id: str
    task_id: str
    remote_event_id: str
    remote_etag: Optional[str] = None
    content_hash: str = Field(..., description="Fingerprint of the last reconciled content")
    snapshot: Optional[SyncableEvent] = Field(None, description="Last reconciled event")
    last_synced_at: datetime = Field(..., description="tS: last reconciled modification instant")

    @validator('last_synced_at', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v


class SyncCursor(BaseModel):
    """Provider-issued delta cursor for one (user, provider, calendar)."""

    user_id: str
    provider: CalendarProvider
    calendar_id: str
    token: str
    advanced_at: datetime = Field(default_factory=utc_now)


class SyncConflict(BaseModel):
    """A concurrent edit awaiting (or having received) a resolution."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    connection_id: str
    user_id: str
    provider: CalendarProvider
    calendar_id: str
    task_id: Optional[str] = None
    remote_event_id: Optional[str] = None
    classification: Classification = Classification.CONCURRENT
    local_version: Optional[SyncableEvent] = None
    remote_version: Optional[SyncableEvent] = None
    conflict_fields: List[str] = Field(default_factory=list)
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Optional[ConflictChoice] = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None


class SyncError(BaseModel):
    """A recorded error from a sync pass."""

    kind: str = Field(..., description="auth, rate_limit, network, timeout, mapping, precondition, fetch, ...")
    message: str
    item_id: Optional[str] = None
    fatal: bool = False


class TaskChange(BaseModel):
    """A write the caller must apply to its local task store."""

    operation: SyncOperation
    task_id: str
    fields: Dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Outcome of one sync pass."""

    sync_id: str = Field(default_factory=lambda: str(uuid4()))
    connection_id: str
    provider: CalendarProvider
    calendar_id: str
    status: SyncRunStatus = SyncRunStatus.RUNNING
    state: SyncState = SyncState.IDLE
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    local_created: int = 0
    local_updated: int = 0
    local_deleted: int = 0
    remote_created: int = 0
    remote_updated: int = 0
    remote_deleted: int = 0

    conflicts: List[SyncConflict] = Field(default_factory=list)
    errors: List[SyncError] = Field(default_factory=list)
    local_changes: List[TaskChange] = Field(default_factory=list)
    cursor: Optional[str] = None
    credentials: Optional[OAuthCredentials] = None
    auth_failed: bool = False

    @property
    def total_changes(self) -> int:
        return (
            self.local_created + self.local_updated + self.local_deleted
            + self.remote_created + self.remote_updated + self.remote_deleted
        )

    @property
    def success(self) -> bool:
        return self.status == SyncRunStatus.COMPLETED

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1].message if self.errors else None


@dataclass
class DeltaPage:
    """Changes returned by one ``fetch_delta`` call."""

    events: List[SyncableEvent]
    removed_ids: List[str]
    next_cursor: Optional[str]
    full_snapshot: bool
    skipped: List[Tuple[Optional[str], str]] = field(default_factory=list)
    # Time window a windowed full enumeration covered, None when unbounded
    window: Optional[Tuple[datetime, datetime]] = None

    def covers(self, event: SyncableEvent) -> bool:
        """True if ``event`` would have been listed by this enumeration."""
        if self.window is None:
            return True
        start, end = self.window
        return event.end > start and event.start < end


@dataclass
class Resolution:
    """Resolver decision for one classified pair."""

    action: ResolutionAction
    merged_event: Optional[SyncableEvent] = None
    reason: str = ""
