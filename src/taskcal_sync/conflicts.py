"""Conflict detection and resolution between local and remote event copies."""

import logging
from typing import Dict, List, Optional, Tuple

from .mapper import canonical_fields, content_hash, diff_fields
from .models import (
    CalendarLink,
    Classification,
    ConflictResolution,
    Resolution,
    ResolutionAction,
    SyncableEvent,
)

logger = logging.getLogger(__name__)

# Fields merged as a unit so a merged event never ends before it starts.
_MERGE_GROUPS: Dict[str, Tuple[str, ...]] = {
    'title': ('title',),
    'description': ('description',),
    'location': ('location',),
    'time': ('start', 'end', 'all_day', 'timezone'),
    'attendees': ('attendees',),
}


class ConflictDetector:
    """Classifies a (local, remote, link) triple."""

    def __init__(self):
        self.logger = logger.getChild('conflict_detector')

    def _advanced(self, event: SyncableEvent, link: CalendarLink) -> bool:
        """A side advanced if it was modified after tS and its content moved."""
        return event.last_modified > link.last_synced_at and content_hash(event) != link.content_hash

    def classify(
        self,
        local: Optional[SyncableEvent],
        remote: Optional[SyncableEvent],
        link: Optional[CalendarLink] = None
    ) -> Classification:
        """Classify the pair.

        Args:
            local: Event built from the local task, None if the task is gone
            remote: Remote event, None if it is gone
            link: Link from the last reconciliation, if any

        Returns:
            Classification of the pair
        """
        if local is None and remote is None:
            return Classification.NO_CONFLICT

        if link is None:
            if local is None:
                return Classification.NONE_REMOTE_ONLY
            if remote is None:
                return Classification.NONE_LOCAL_ONLY
            if content_hash(local) == content_hash(remote):
                return Classification.NO_CONFLICT
            if local.last_modified > remote.last_modified:
                return Classification.LOCAL_NEWER
            if remote.last_modified > local.last_modified:
                return Classification.REMOTE_NEWER
            return Classification.CONCURRENT

        # One side deleted since the last reconciliation
        if local is None:
            if self._advanced(remote, link):
                return Classification.CONCURRENT
            return Classification.NONE_REMOTE_ONLY
        if remote is None:
            if self._advanced(local, link):
                return Classification.CONCURRENT
            return Classification.NONE_LOCAL_ONLY

        local_advanced = self._advanced(local, link)
        remote_advanced = self._advanced(remote, link)

        if local_advanced and remote_advanced:
            if content_hash(local) == content_hash(remote):
                return Classification.NO_CONFLICT
            return Classification.CONCURRENT
        if local_advanced:
            return Classification.LOCAL_NEWER
        if remote_advanced:
            return Classification.REMOTE_NEWER
        return Classification.NO_CONFLICT

    def conflict_fields(
        self,
        local: Optional[SyncableEvent],
        remote: Optional[SyncableEvent]
    ) -> List[str]:
        """Names of the fields that differ; ``deleted`` when one side is gone."""
        if local is None or remote is None:
            return ['deleted']
        return diff_fields(local, remote)


class ConflictResolver:
    """Turns a classification into the write the sync manager must perform."""

    def __init__(self, policy: ConflictResolution = ConflictResolution.MANUAL):
        """Initialize conflict resolver.

        Args:
            policy: Default policy for concurrent edits
        """
        self.policy = policy
        self.logger = logger.getChild('conflict_resolver')

    def resolve(
        self,
        classification: Classification,
        local: Optional[SyncableEvent],
        remote: Optional[SyncableEvent],
        policy: Optional[ConflictResolution] = None,
        base: Optional[SyncableEvent] = None
    ) -> Resolution:
        """Decide what to write for a classified pair.

        Non-concurrent classifications are applied whatever the policy.

        Args:
            classification: Output of ConflictDetector.classify
            local: Local side
            remote: Remote side
            policy: Policy override for this call
            base: Last reconciled event, used by the merge policy

        Returns:
            Resolution with the action and, for merges, the merged event
        """
        if classification in (Classification.NONE_LOCAL_ONLY, Classification.LOCAL_NEWER):
            return Resolution(ResolutionAction.APPLY_LOCAL, reason=classification.value)
        if classification in (Classification.NONE_REMOTE_ONLY, Classification.REMOTE_NEWER):
            return Resolution(ResolutionAction.APPLY_REMOTE, reason=classification.value)
        if classification == Classification.NO_CONFLICT:
            return Resolution(ResolutionAction.SKIP, reason=classification.value)

        policy = policy or self.policy
        if policy == ConflictResolution.LOCAL_WINS:
            return Resolution(ResolutionAction.APPLY_LOCAL, reason="Local wins policy")
        if policy == ConflictResolution.REMOTE_WINS:
            return Resolution(ResolutionAction.APPLY_REMOTE, reason="Remote wins policy")
        if policy == ConflictResolution.MERGE:
            if local is None or remote is None:
                return Resolution(
                    ResolutionAction.APPLY_LOCAL,
                    reason="Merge with a deleted side falls back to local wins"
                )
            merged = merge_events(local, remote, base)
            return Resolution(ResolutionAction.MERGE, merged_event=merged, reason="Field-level merge")

        self.logger.info("Deferring concurrent edit for manual resolution")
        return Resolution(ResolutionAction.DEFER, reason="Manual resolution required")


def _group_view(event: SyncableEvent, fields: Tuple[str, ...]) -> Tuple:
    canonical = canonical_fields(event)
    return tuple(canonical.get(name, getattr(event, name)) for name in fields)


def merge_events(
    local: SyncableEvent,
    remote: SyncableEvent,
    base: Optional[SyncableEvent] = None
) -> SyncableEvent:
    """Three-way merge of ``local`` and ``remote`` against ``base``.

    A field changed on one side only takes that side's value. Fields changed
    on both sides, or every field when there is no base, keep the local value.
    The result carries the remote id and etag.
    """
    update = {}
    for fields in _MERGE_GROUPS.values():
        if base is None:
            continue
        local_changed = _group_view(local, fields) != _group_view(base, fields)
        remote_changed = _group_view(remote, fields) != _group_view(base, fields)
        if remote_changed and not local_changed:
            for name in fields:
                update[name] = getattr(remote, name)

    update['id'] = remote.id
    update['etag'] = remote.etag
    update['last_modified'] = max(local.last_modified, remote.last_modified)
    return local.model_copy(update=update)
