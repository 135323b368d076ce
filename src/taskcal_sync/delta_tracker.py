"""Persistence of provider delta cursors."""

import logging
from typing import Optional

from .database import DatabaseManager
from .models import CalendarProvider, SyncCursor

logger = logging.getLogger(__name__)


class DeltaTracker:
    """Stores one cursor per (user, provider, calendar).

    ``persist`` is only called once a pass has completed, so a stored cursor
    never covers changes that were not reconciled.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('delta_tracker')

    def get(self, user_id: str, provider: CalendarProvider, calendar_id: str) -> Optional[SyncCursor]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_cursor(session, user_id, provider, calendar_id)
            return row.to_model() if row else None

    def persist(self, user_id: str, provider: CalendarProvider, calendar_id: str, token: str) -> SyncCursor:
        """Store ``token`` as the cursor to resume from.

        Args:
            user_id: Owner of the calendar
            provider: Provider issuing the cursor
            calendar_id: Remote calendar ID
            token: Opaque cursor (sync token or delta link)

        Returns:
            The stored cursor
        """
        with self.db_manager.get_session() as session:
            row = self.db_manager.save_cursor(session, user_id, provider, calendar_id, token)
            self.logger.debug(f"Advanced {provider.value} cursor for {calendar_id}")
            return row.to_model()

    def reset(self, user_id: str, provider: CalendarProvider, calendar_id: str) -> bool:
        """Drop the stored cursor so the next fetch is a full enumeration."""
        with self.db_manager.get_session() as session:
            removed = self.db_manager.delete_cursor(session, user_id, provider, calendar_id)
        if removed:
            self.logger.info(f"Reset {provider.value} cursor for {calendar_id}")
        return removed
