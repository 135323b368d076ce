"""Base provider client interface with async support."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from ..config import Settings
from ..models import CalendarProvider, DeltaPage, OAuthCredentials, SyncableEvent, utc_now

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""

    kind = "provider"


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""

    kind = "auth"


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""

    kind = "rate_limit"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(CalendarServiceError):
    """Transport failures and 5xx responses."""

    kind = "network"


class RequestTimeoutError(NetworkError):
    """A request exceeded the configured timeout."""

    kind = "timeout"


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""

    kind = "not_found"


class PreconditionFailedError(CalendarServiceError):
    """The remote event changed since the etag sent with an update."""

    kind = "precondition"


class CursorExpiredError(CalendarServiceError):
    """The provider no longer accepts the stored delta cursor."""

    kind = "cursor_expired"


class MappingError(CalendarServiceError):
    """A provider payload could not be converted."""

    kind = "mapping"

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id


class ProviderClient(ABC):
    """Abstract base class for calendar provider clients.

    Clients hold configuration and a transport only. Credentials are passed
    into every call and a refresh hands back a new ``OAuthCredentials`` that
    the caller persists.
    """

    def __init__(self, settings: Settings, provider: CalendarProvider):
        """Initialize provider client.

        Args:
            settings: Application settings
            provider: Provider this client talks to
        """
        self.settings = settings
        self.provider = provider
        self.logger = logger.getChild(provider.value)

    @abstractmethod
    def get_auth_url(self, state: Optional[str] = None) -> str:
        """Build the authorization URL the user must visit.

        Args:
            state: Opaque value echoed back to the redirect URI

        Returns:
            Authorization URL
        """
        pass

    @abstractmethod
    async def exchange_code_for_tokens(self, code: str) -> OAuthCredentials:
        """Exchange an authorization code for tokens.

        Raises:
            AuthenticationError: If the provider rejects the code
        """
        pass

    def set_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> OAuthCredentials:
        """Wrap externally stored tokens for use with this client."""
        return OAuthCredentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at
        )

    async def ensure_credentials(self, credentials: OAuthCredentials) -> OAuthCredentials:
        """Return usable credentials, refreshing them when close to expiry.

        Args:
            credentials: Current credentials

        Returns:
            The same credentials, or refreshed ones

        Raises:
            AuthenticationError: If a refresh is needed and impossible or rejected
        """
        if not credentials.expires_within(self.settings.token_refresh_margin_seconds):
            return credentials
        if not credentials.refresh_token:
            raise AuthenticationError("Access token expired and no refresh token available")
        self.logger.info("Refreshing access token")
        return await self._refresh_access_token(credentials)

    @abstractmethod
    async def _refresh_access_token(self, credentials: OAuthCredentials) -> OAuthCredentials:
        pass

    @abstractmethod
    async def fetch_delta(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        cursor: Optional[str] = None
    ) -> DeltaPage:
        """Fetch changed events since ``cursor``.

        Without a cursor a full enumeration is returned together with a fresh
        cursor.

        Args:
            credentials: Valid credentials
            calendar_id: Remote calendar ID
            cursor: Cursor from the last completed pass

        Returns:
            DeltaPage with changed events, removed ids and the next cursor

        Raises:
            CursorExpiredError: If the provider rejected the cursor
        """
        pass

    @abstractmethod
    async def create_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event: SyncableEvent
    ) -> SyncableEvent:
        """Create a new event.

        Returns:
            The created event as stored by the provider
        """
        pass

    @abstractmethod
    async def update_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str,
        event: SyncableEvent,
        etag: Optional[str] = None
    ) -> SyncableEvent:
        """Update an existing event.

        Args:
            etag: Version tag sent as If-Match when known

        Raises:
            EventNotFoundError: If event not found
            PreconditionFailedError: If the etag no longer matches
        """
        pass

    @abstractmethod
    async def delete_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str
    ) -> None:
        """Delete an event. Deleting an already missing event succeeds."""
        pass

    @abstractmethod
    async def get_user_info(self, credentials: OAuthCredentials) -> Dict[str, Any]:
        """Return the account's ``id``, ``email`` and ``name``."""
        pass

    async def test_connection(self, credentials: OAuthCredentials) -> bool:
        """Test connection to the provider.

        Returns:
            True if the account could be reached, False otherwise
        """
        try:
            credentials = await self.ensure_credentials(credentials)
            await self.get_user_info(credentials)
            return True
        except CalendarServiceError as e:
            self.logger.warning(f"Connection test failed: {e}")
            return False
        except Exception as e:
            self.logger.error(f"Unexpected error testing connection: {e}")
            return False

    def _created_event(
        self,
        event: SyncableEvent,
        payload: Dict[str, Any],
        convert: Callable[[Dict[str, Any]], SyncableEvent],
        etag_key: str = 'etag'
    ) -> SyncableEvent:
        """Map the provider's response to a create call.

        The event exists remotely once the call succeeded, so an unmappable
        response falls back to the sent event carrying the new id.

        Raises:
            MappingError: If the response has no id either
        """
        try:
            return convert(payload)
        except MappingError as e:
            event_id = payload.get('id')
            if not event_id:
                raise
            self.logger.warning(f"Created event {event_id} could not be read back: {e}")
            return event.model_copy(update={
                'id': event_id,
                'etag': payload.get(etag_key),
                'last_modified': utc_now(),
            })

    async def close(self) -> None:
        """Clean up resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
