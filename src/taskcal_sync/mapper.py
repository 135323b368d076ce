"""Conversion between local tasks, provider-neutral events and provider payloads.

Everything in this module is pure: no I/O and no clock reads except for
defaulting a missing provider ``updated`` stamp.
"""

import hashlib
import json
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

import pytz
from dateutil import parser as date_parser
from pydantic import ValidationError

from .models import SyncableEvent, Task, ensure_aware, utc_now
from .services.base import MappingError

# Fields compared by the conflict detector and folded into the content hash.
SYNCED_FIELDS = ('title', 'description', 'location', 'start', 'end', 'all_day', 'attendees')

_GRAPH_FRACTION = re.compile(r'(\.\d{6})\d+')


def _midnight_utc(day: date) -> datetime:
    return datetime.combine(day, time.min).replace(tzinfo=pytz.UTC)


def _normalize_attendees(attendees: List[str]) -> List[str]:
    return sorted({a.strip().lower() for a in attendees if a and a.strip()})


def canonical_fields(event: SyncableEvent) -> Dict[str, Any]:
    """Comparable view of the synced fields of ``event``."""
    return {
        'title': event.title or '',
        'description': event.description or '',
        'location': event.location or '',
        'start': event.start.astimezone(pytz.UTC).isoformat(),
        'end': event.end.astimezone(pytz.UTC).isoformat(),
        'all_day': event.all_day,
        'attendees': _normalize_attendees(event.attendees),
    }


def content_hash(event: SyncableEvent) -> str:
    """Generate a content hash for change detection."""
    content_str = json.dumps(canonical_fields(event), sort_keys=True)
    return hashlib.sha256(content_str.encode()).hexdigest()


def diff_fields(a: SyncableEvent, b: SyncableEvent) -> List[str]:
    """Names of the synced fields whose values differ between ``a`` and ``b``."""
    left, right = canonical_fields(a), canonical_fields(b)
    return [name for name in SYNCED_FIELDS if left[name] != right[name]]


def task_to_event(task: Task, default_duration_minutes: int = 60) -> Optional[SyncableEvent]:
    """Build the calendar event for ``task``.

    Args:
        task: Local task
        default_duration_minutes: Event length when the task has no end

    Returns:
        The event, or None when the task has neither a scheduled nor a due time
    """
    start = task.start
    if start is None:
        return None

    if task.all_day:
        start_day = start.date()
        if task.scheduled_end_at is not None:
            end_at = task.scheduled_end_at
            end_day = end_at.date()
            # A non-midnight end is read as an inclusive last day
            if end_at.time() != time.min:
                end_day += timedelta(days=1)
        else:
            end_day = start_day + timedelta(days=1)
        if end_day <= start_day:
            end_day = start_day + timedelta(days=1)
        event_start, event_end = _midnight_utc(start_day), _midnight_utc(end_day)
    else:
        event_start = start
        event_end = task.scheduled_end_at if task.scheduled_at else None
        if event_end is None or event_end <= event_start:
            event_end = event_start + timedelta(minutes=default_duration_minutes)

    reminder_minutes = None
    if task.reminder_at is not None and task.reminder_at <= start:
        reminder_minutes = int((start - task.reminder_at).total_seconds() // 60)

    return SyncableEvent(
        id=task.external_id,
        title=task.title,
        description=task.description or None,
        location=task.location or None,
        start=event_start,
        end=event_end,
        timezone=task.timezone or 'UTC',
        all_day=task.all_day,
        attendees=list(task.attendees),
        reminder_minutes=reminder_minutes,
        last_modified=task.last_modified,
    )


def event_to_task(event: SyncableEvent, clear_missing: bool = False) -> Dict[str, Any]:
    """Build the partial task fields for ``event``.

    Args:
        event: Provider-neutral event
        clear_missing: Emit explicit empty values for fields the event lacks,
            so an update can clear them on the task

    Returns:
        Dictionary of task fields
    """
    fields: Dict[str, Any] = {
        'title': event.title,
        'scheduled_at': event.start,
        'scheduled_end_at': event.end,
        'all_day': event.all_day,
        'timezone': event.timezone,
        'last_modified': event.last_modified,
    }
    if event.description:
        fields['description'] = event.description
    elif clear_missing:
        fields['description'] = None
    if event.location:
        fields['location'] = event.location
    elif clear_missing:
        fields['location'] = None
    if event.attendees:
        fields['attendees'] = list(event.attendees)
    elif clear_missing:
        fields['attendees'] = []
    return fields


def apply_event_to_task(task: Task, event: SyncableEvent) -> Task:
    """Return a copy of ``task`` carrying the synced fields of ``event``."""
    return task.model_copy(update=event_to_task(event, clear_missing=True))


def parse_datetime(value: str, tz_name: Optional[str] = None) -> datetime:
    """Parse an ISO 8601 string from a provider.

    Graph returns seven fractional digits, which are trimmed to six. Naive
    values are localized to ``tz_name`` when it names a known zone, else UTC.
    """
    parsed = date_parser.isoparse(_GRAPH_FRACTION.sub(r'\1', value))
    if parsed.tzinfo is None:
        zone = pytz.UTC
        if tz_name:
            try:
                zone = pytz.timezone(tz_name)
            except pytz.UnknownTimeZoneError:
                zone = pytz.UTC
        parsed = zone.localize(parsed) if hasattr(zone, 'localize') else parsed.replace(tzinfo=zone)
    return parsed


def _build_event(item_id: Optional[str], **kwargs) -> SyncableEvent:
    try:
        return SyncableEvent(id=item_id, **kwargs)
    except ValidationError as e:
        raise MappingError(f"Invalid event {item_id}: {e}", item_id=item_id) from e


def google_to_event(item: Dict[str, Any]) -> SyncableEvent:
    """Convert a Google Calendar event resource to a SyncableEvent.

    Raises:
        MappingError: If the resource lacks usable start/end values
    """
    item_id = item.get('id')
    start = item.get('start') or {}
    end = item.get('end') or {}
    all_day = 'date' in start

    try:
        if all_day:
            start_dt = _midnight_utc(date.fromisoformat(start['date']))
            end_dt = _midnight_utc(date.fromisoformat(end['date']))
            timezone = 'UTC'
        else:
            timezone = start.get('timeZone') or 'UTC'
            start_dt = parse_datetime(start['dateTime'], timezone)
            end_dt = parse_datetime(end['dateTime'], end.get('timeZone') or timezone)
        updated = parse_datetime(item['updated']) if item.get('updated') else utc_now()
    except (KeyError, TypeError, ValueError) as e:
        raise MappingError(f"Malformed Google event {item_id}: {e}", item_id=item_id) from e

    attendees = [a['email'] for a in item.get('attendees', []) if a.get('email')]

    reminder_minutes = None
    overrides = (item.get('reminders') or {}).get('overrides') or []
    if overrides:
        reminder_minutes = overrides[0].get('minutes')

    return _build_event(
        item_id,
        title=item.get('summary', ''),
        description=item.get('description') or None,
        location=item.get('location') or None,
        start=start_dt,
        end=end_dt,
        timezone=timezone,
        all_day=all_day,
        attendees=attendees,
        reminder_minutes=reminder_minutes,
        last_modified=updated,
        etag=item.get('etag'),
    )


def event_to_google(event: SyncableEvent) -> Dict[str, Any]:
    """Convert a SyncableEvent to a Google Calendar event resource."""
    body: Dict[str, Any] = {'summary': event.title}
    if event.description:
        body['description'] = event.description
    if event.location:
        body['location'] = event.location

    if event.all_day:
        body['start'] = {'date': event.start.date().isoformat()}
        body['end'] = {'date': event.end.date().isoformat()}
    else:
        body['start'] = {'dateTime': event.start.isoformat(), 'timeZone': event.timezone}
        body['end'] = {'dateTime': event.end.isoformat(), 'timeZone': event.timezone}

    if event.attendees:
        body['attendees'] = [{'email': email} for email in event.attendees]

    if event.reminder_minutes is not None:
        body['reminders'] = {
            'useDefault': False,
            'overrides': [{'method': 'popup', 'minutes': event.reminder_minutes}],
        }
    return body


def outlook_to_event(item: Dict[str, Any]) -> SyncableEvent:
    """Convert a Microsoft Graph event resource to a SyncableEvent.

    Raises:
        MappingError: If the resource lacks usable start/end values
    """
    item_id = item.get('id')
    start = item.get('start') or {}
    end = item.get('end') or {}
    all_day = bool(item.get('isAllDay'))

    try:
        timezone = start.get('timeZone') or 'UTC'
        start_dt = parse_datetime(start['dateTime'], timezone)
        end_dt = parse_datetime(end['dateTime'], end.get('timeZone') or timezone)
        if all_day:
            start_dt = _midnight_utc(start_dt.date())
            end_dt = _midnight_utc(end_dt.date())
            timezone = 'UTC'
        modified = item.get('lastModifiedDateTime')
        updated = parse_datetime(modified) if modified else utc_now()
    except (KeyError, TypeError, ValueError) as e:
        raise MappingError(f"Malformed Outlook event {item_id}: {e}", item_id=item_id) from e

    attendees = [
        a['emailAddress']['address']
        for a in item.get('attendees', [])
        if (a.get('emailAddress') or {}).get('address')
    ]

    body = item.get('body') or {}
    description = body.get('content') or item.get('bodyPreview') or None
    if description is not None:
        description = description.strip() or None

    reminder_minutes = None
    if item.get('isReminderOn'):
        reminder_minutes = item.get('reminderMinutesBeforeStart')

    return _build_event(
        item_id,
        title=item.get('subject') or '',
        description=description,
        location=(item.get('location') or {}).get('displayName') or None,
        start=start_dt,
        end=end_dt,
        timezone=timezone,
        all_day=all_day,
        attendees=attendees,
        reminder_minutes=reminder_minutes,
        last_modified=updated,
        etag=item.get('@odata.etag') or item.get('changeKey'),
    )


def _graph_datetime(dt: datetime) -> Dict[str, str]:
    utc = ensure_aware(dt).astimezone(pytz.UTC)
    return {'dateTime': utc.strftime('%Y-%m-%dT%H:%M:%S'), 'timeZone': 'UTC'}


def event_to_outlook(event: SyncableEvent) -> Dict[str, Any]:
    """Convert a SyncableEvent to a Microsoft Graph event resource."""
    body: Dict[str, Any] = {
        'subject': event.title,
        'body': {'contentType': 'text', 'content': event.description or ''},
        'start': _graph_datetime(event.start),
        'end': _graph_datetime(event.end),
        'isAllDay': event.all_day,
        'location': {'displayName': event.location or ''},
        'attendees': [
            {'emailAddress': {'address': email}, 'type': 'required'}
            for email in event.attendees
        ],
    }
    if event.reminder_minutes is not None:
        body['isReminderOn'] = True
        body['reminderMinutesBeforeStart'] = event.reminder_minutes
    return body
