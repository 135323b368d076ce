"""Microsoft Graph (Outlook) calendar provider client."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

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
from ..mapper import event_to_outlook, outlook_to_event
from ..models import CalendarProvider, DeltaPage, OAuthCredentials, SyncableEvent, utc_now

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


class OutlookProviderClient(ProviderClient):
    """Outlook calendar client talking to Microsoft Graph through httpx."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize Outlook client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured client (tests pass a mock transport)
        """
        super().__init__(settings, CalendarProvider.OUTLOOK)
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        )

    def get_auth_url(self, state: Optional[str] = None) -> str:
        params = {
            'client_id': self.settings.outlook_client_id,
            'response_type': 'code',
            'redirect_uri': self.settings.outlook_redirect_uri,
            'response_mode': 'query',
            'scope': ' '.join(self.settings.outlook_scopes),
        }
        if state:
            params['state'] = state
        return f"{self.settings.outlook_authority}/authorize?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        payload = {
            'client_id': self.settings.outlook_client_id,
            'client_secret': self.settings.outlook_client_secret,
            'scope': ' '.join(self.settings.outlook_scopes),
            **data,
        }
        try:
            response = await self._http_client.post(
                f"{self.settings.outlook_authority}/token",
                data=payload
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Outlook token request timed out: {e}")
        except httpx.HTTPError as e:
            raise NetworkError(f"Outlook token request failed: {e}")

        if response.status_code >= 500:
            raise NetworkError(f"Outlook token endpoint error: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise AuthenticationError(
                f"Outlook token request rejected: HTTP {response.status_code} with a non-JSON body"
            )
        if response.status_code >= 400 or 'access_token' not in body:
            raise AuthenticationError(
                f"Outlook token request rejected: {body.get('error_description') or body.get('error')}"
            )
        return body

    async def exchange_code_for_tokens(self, code: str) -> OAuthCredentials:
        body = await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.settings.outlook_redirect_uri,
        })
        self.logger.info("Obtained Outlook tokens")
        return OAuthCredentials.from_expires_in(
            body['access_token'], body.get('refresh_token'), body.get('expires_in')
        )

    async def _refresh_access_token(self, credentials: OAuthCredentials) -> OAuthCredentials:
        body = await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': credentials.refresh_token,
        })
        return OAuthCredentials.from_expires_in(
            body['access_token'],
            body.get('refresh_token') or credentials.refresh_token,
            body.get('expires_in'),
        )

    def _headers(self, credentials: OAuthCredentials, **extra: str) -> Dict[str, str]:
        headers = {
            'Authorization': f"Bearer {credentials.access_token}",
            'Prefer': f'outlook.timezone="UTC", outlook.body-content-type="text", '
                      f'odata.maxpagesize={self.settings.page_size}',
        }
        headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        credentials: OAuthCredentials,
        action: str,
        **kwargs
    ) -> httpx.Response:
        """Send a Graph request and translate failures.

        Absolute URLs (next/delta links) are used as given.
        """
        if not url.startswith('http'):
            url = f"{GRAPH_BASE_URL}{url}"
        headers = self._headers(credentials, **kwargs.pop('headers', {}))
        try:
            response = await self._http_client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Failed to {action}: timed out ({e})")
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to {action}: {e}")

        if response.status_code < 400:
            return response
        raise self._translate_error(response, action)

    def _translate_error(self, response: httpx.Response, action: str) -> CalendarServiceError:
        status = response.status_code
        try:
            error = response.json().get('error', {})
        except ValueError:
            error = {}
        code = error.get('code', '') if isinstance(error, dict) else ''
        message = f"Failed to {action}: HTTP {status} {code}".rstrip()

        if status == 401:
            return AuthenticationError(message)
        if status == 429 or (status == 403 and 'ratelimit' in code.lower()):
            retry_after = response.headers.get('Retry-After')
            self.logger.warning("Microsoft Graph rate limited")
            return RateLimitError(message, retry_after=float(retry_after) if retry_after else None)
        if status == 410 or code in ('SyncStateNotFound', 'SyncStateInvalid', 'ResyncRequired'):
            return CursorExpiredError(message)
        if status == 404:
            return EventNotFoundError(message)
        if status == 412:
            return PreconditionFailedError(message)
        if status >= 500:
            return NetworkError(message)
        return CalendarServiceError(message)

    def _events_path(self, calendar_id: str) -> str:
        if calendar_id == 'primary':
            return "/me/events"
        return f"/me/calendars/{calendar_id}/events"

    def _delta_window(self) -> Tuple[datetime, datetime]:
        now = utc_now().replace(microsecond=0)
        return (
            now - timedelta(days=self.settings.sync_past_days),
            now + timedelta(days=self.settings.sync_future_days),
        )

    def _delta_url(self, calendar_id: str, window: Tuple[datetime, datetime]) -> str:
        params = {
            'startDateTime': window[0].strftime('%Y-%m-%dT%H:%M:%SZ'),
            'endDateTime': window[1].strftime('%Y-%m-%dT%H:%M:%SZ'),
        }
        if calendar_id == 'primary':
            path = "/me/calendarView/delta"
        else:
            path = f"/me/calendars/{calendar_id}/calendarView/delta"
        return f"{GRAPH_BASE_URL}{path}?{urlencode(params)}"

    async def fetch_delta(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        cursor: Optional[str] = None
    ) -> DeltaPage:
        """Follow the calendarView delta chain.

        The cursor is the ``@odata.deltaLink`` of the previous round. Items
        carrying ``@removed`` are reported as removed.
        """
        window = None if cursor else self._delta_window()
        url = cursor or self._delta_url(calendar_id, window)
        events: List[SyncableEvent] = []
        removed_ids: List[str] = []
        skipped: List[Tuple[Optional[str], str]] = []
        next_cursor: Optional[str] = None

        while url:
            response = await self._request('GET', url, credentials, f"fetch delta of {calendar_id}")
            body = response.json()

            for item in body.get('value', []):
                event_id = item.get('id')
                if '@removed' in item:
                    if event_id:
                        removed_ids.append(event_id)
                    continue
                try:
                    events.append(outlook_to_event(item))
                except MappingError as e:
                    self.logger.warning(f"Skipping Outlook event {event_id}: {e}")
                    skipped.append((event_id, str(e)))

            url = body.get('@odata.nextLink')
            next_cursor = body.get('@odata.deltaLink') or next_cursor

        self.logger.debug(
            f"Fetched {len(events)} changed and {len(removed_ids)} removed events from {calendar_id}"
        )
        return DeltaPage(
            events=events,
            removed_ids=removed_ids,
            next_cursor=next_cursor,
            full_snapshot=cursor is None,
            skipped=skipped,
            window=window,
        )

    async def create_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event: SyncableEvent
    ) -> SyncableEvent:
        response = await self._request(
            'POST',
            self._events_path(calendar_id),
            credentials,
            f"create event in {calendar_id}",
            json=event_to_outlook(event),
        )
        created = response.json()
        self.logger.info(f"Created Outlook event {created.get('id')}")
        return self._created_event(event, created, outlook_to_event, etag_key='@odata.etag')

    async def update_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str,
        event: SyncableEvent,
        etag: Optional[str] = None
    ) -> SyncableEvent:
        headers = {'If-Match': etag} if etag else {}
        response = await self._request(
            'PATCH',
            f"/me/events/{event_id}",
            credentials,
            f"update Outlook event {event_id}",
            json=event_to_outlook(event),
            headers=headers,
        )
        return outlook_to_event(response.json())

    async def delete_event(
        self,
        credentials: OAuthCredentials,
        calendar_id: str,
        event_id: str
    ) -> None:
        try:
            await self._request(
                'DELETE',
                f"/me/events/{event_id}",
                credentials,
                f"delete Outlook event {event_id}",
            )
        except (EventNotFoundError, CursorExpiredError):
            # 404 and 410 both mean the event is already gone
            self.logger.debug(f"Outlook event {event_id} already gone")

    async def get_user_info(self, credentials: OAuthCredentials) -> Dict[str, Any]:
        response = await self._request('GET', "/me", credentials, "read Outlook profile")
        data = response.json()
        return {
            'id': data.get('id'),
            'email': data.get('mail') or data.get('userPrincipalName'),
            'name': data.get('displayName'),
        }

    async def close(self) -> None:
        """Clean up resources."""
        if self._http_client:
            await self._http_client.aclose()
