"""Google Calendar provider client with async support."""

import asyncio
import socket
from typing import Any, Dict, List, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
import httpx

from .base import (
    AuthenticationError,
    CalendarServiceError,
    CursorExpiredError,
    EventNotFoundError,
    MappingError,
    NetworkError,
    PreconditionFailedError,
    ProviderClient,
    RateLimitError,
    RequestTimeoutError,
)
from ..config import Settings
from ..mapper import event_to_google, google_to_event
from ..models import CalendarProvider, DeltaPage, OAuthCredentials, SyncableEvent

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleProviderClient(ProviderClient):
    """Google Calendar client built on google-api-python-client."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize Google Calendar client.

        Args:
            settings: Application settings
            http_client: Optional client for the userinfo endpoint
        """
        super().__init__(settings, CalendarProvider.GOOGLE)
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        )

    def _flow(self, state: Optional[str] = None) -> Flow:
        client_config = {
            'web': {
                'client_id': self.settings.google_client_id,
                'client_secret': self.settings.google_client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': [self.settings.google_redirect_uri],
            }
        }
        flow = Flow.from_client_config(
            client_config,
            scopes=self.settings.google_scopes,
            state=state,
            autogenerate_code_verifier=False,
        )
        flow.redirect_uri = self.settings.google_redirect_uri
        return flow

    def get_auth_url(self, state: Optional[str] = None) -> str:
        url, _ = self._flow(state).authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true',
        )
        return url

    async def exchange_code_for_tokens(self, code: str) -> OAuthCredentials:
        flow = self._flow()
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: flow.fetch_token(code=code)
            )
        except Exception as e:
            raise AuthenticationError(f"Google token exchange failed: {e}")

        creds = flow.credentials
        self.logger.info("Obtained Google tokens")
        return OAuthCredentials(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=creds.expiry,
        )

    async def _refresh_access_token(self, credentials: OAuthCredentials) -> OAuthCredentials:
        google_creds = Credentials(
            token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=self.settings.google_scopes,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: google_creds.refresh(Request())
            )
        except RefreshError as e:
            raise AuthenticationError(f"Google token refresh rejected: {e}")
        except TransportError as e:
            raise NetworkError(f"Google token refresh failed: {e}")

        return OAuthCredentials(
            access_token=google_creds.token,
            refresh_token=google_creds.refresh_token or credentials.refresh_token,
            expires_at=google_creds.expiry,
        )

    def _build_service(self, credentials: OAuthCredentials):
        """Build a Calendar v3 service bound to ``credentials``.

        The service gets the access token only, so an expired token surfaces as
        an authentication error instead of an unrecorded refresh.
        """
        http = AuthorizedHttp(
            Credentials(token=credentials.access_token),
            http=httplib2.Http(timeout=self.settings.request_timeout_seconds),
        )
        return build('calendar', 'v3', http=http, cache_discovery=False)

    async def _execute(self, request) -> Any:
        """Run a googleapiclient request in the default executor.

        ``HttpError`` is left to the caller; other failures are translated.
        """
        try:
            return await asyncio.get_event_loop().run_in_executor(None, request.execute)
        except HttpError:
            raise
        except RefreshError as e:
            raise AuthenticationError(f"Google access token rejected: {e}")
        except (socket.timeout, TimeoutError) as e:
            raise RequestTimeoutError(f"Google request timed out: {e}")
        except (httplib2.HttpLib2Error, OSError) as e:
            raise NetworkError(f"Google request failed: {e}")

    def _translate_http_error(self, error: HttpError, action: str) -> CalendarServiceError:
        status = error.resp.status
        content = error.content.decode('utf-8', 'replace') if isinstance(error.content, bytes) else str(error.content)
        message = f"Failed to {action}: HTTP {status}"

        if status == 401:
            return AuthenticationError(message)
        if status == 429 or (status == 403 and ('rateLimitExceeded' in content or 'userRateLimitExceeded' in content)):
            retry_after = error.resp.get('retry-after')
            self.logger.warning("Google API rate limited")
            return RateLimitError(message, retry_after=float(retry_after) if retry_after else None)
        if status == 404:
            return EventNotFoundError(message)
        if status == 410:
            return CursorExpiredError(message)
        if status == 412:
            return PreconditionFailedError(message)
        if status >= 500:
            return NetworkError(message)
        return CalendarServiceError(f"{message}: {content}")

    async def fetch_delta(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        cursor: Optional[str] = None
    ) -> DeltaPage:
        """Return changed events and explicit deletions.

        With a cursor the sync token is used together with ``showDeleted`` and
        cancelled events are reported as removed. Without one, the whole
        calendar is listed and a new sync token obtained.
        """
        service = self._build_service(credentials)
        events: List[SyncableEvent] = []
        removed_ids: List[str] = []
        skipped: List[Tuple[Optional[str], str]] = []
        next_cursor: Optional[str] = None
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {
                'calendarId': calendar_id,
                'maxResults': self.settings.page_size,
            }
            if cursor:
                params['syncToken'] = cursor
                params['showDeleted'] = True
            if page_token:
                params['pageToken'] = page_token

            try:
                result = await self._execute(service.events().list(**params))
            except HttpError as e:
                if e.resp.status == 410 and cursor:
                    self.logger.warning("Google sync token expired/invalid (410)")
                raise self._translate_http_error(e, f"list events of {calendar_id}")

            for item in result.get('items', []):
                event_id = item.get('id')
                if item.get('status') == 'cancelled':
                    if cursor and event_id:
                        removed_ids.append(event_id)
                    continue
                try:
                    events.append(google_to_event(item))
                except MappingError as e:
                    self.logger.warning(f"Skipping Google event {event_id}: {e}")
                    skipped.append((event_id, str(e)))

            page_token = result.get('nextPageToken')
            next_cursor = result.get('nextSyncToken') or next_cursor
            if not page_token:
                break

        self.logger.debug(
            f"Fetched {len(events)} changed and {len(removed_ids)} removed events from {calendar_id}"
        )
        return DeltaPage(
            events=events,
            removed_ids=removed_ids,
            next_cursor=next_cursor,
            full_snapshot=cursor is None,
            skipped=skipped,
        )

    async def create_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event: SyncableEvent
    ) -> SyncableEvent:
        service = self._build_service(credentials)
        request = service.events().insert(calendarId=calendar_id, body=event_to_google(event))
        try:
            created = await self._execute(request)
        except HttpError as e:
            raise self._translate_http_error(e, f"create event in {calendar_id}")
        self.logger.info(f"Created Google event {created.get('id')}")
        return self._created_event(event, created, google_to_event)

    async def update_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str,
        event: SyncableEvent,
        etag: Optional[str] = None
    ) -> SyncableEvent:
        service = self._build_service(credentials)
        request = service.events().update(
            calendarId=calendar_id,
            eventId=event_id,
            body=event_to_google(event)
        )
        if etag:
            request.headers['If-Match'] = etag
        try:
            updated = await self._execute(request)
        except HttpError as e:
            raise self._translate_http_error(e, f"update Google event {event_id}")
        return google_to_event(updated)

    async def delete_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str
    ) -> None:
        service = self._build_service(credentials)
        try:
            await self._execute(service.events().delete(calendarId=calendar_id, eventId=event_id))
        except HttpError as e:
            if e.resp.status in (404, 410):
                self.logger.debug(f"Google event {event_id} already gone")
                return
            raise self._translate_http_error(e, f"delete Google event {event_id}")

    async def get_user_info(self, credentials: OAuthCredentials) -> Dict[str, Any]:
        try:
            response = await self._http_client.get(
                USERINFO_URL,
                headers={'Authorization': f"Bearer {credentials.access_token}"}
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Google userinfo timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(f"Google userinfo failed: {e}")

        if response.status_code == 401:
            raise AuthenticationError("Google access token rejected")
        if response.status_code >= 400:
            raise CalendarServiceError(f"Google userinfo failed: HTTP {response.status_code}")

        data = response.json()
        return {
            'id': data.get('id'),
            'email': data.get('email'),
            'name': data.get('name'),
        }

    async def close(self) -> None:
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()
