"""Calendar provider interfaces and implementations."""

from ..config import Settings
from ..models import CalendarProvider
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


def create_provider_client(provider: CalendarProvider, settings: Settings) -> ProviderClient:
    """Create the client for ``provider``.

    Raises:
        ValueError: If the provider is not supported
    """
    # Imported here: the provider modules depend on the mapper, which depends on .base
    if provider == CalendarProvider.GOOGLE:
        from .google import GoogleProviderClient
        return GoogleProviderClient(settings)
    if provider == CalendarProvider.OUTLOOK:
        from .outlook import OutlookProviderClient
        return OutlookProviderClient(settings)
    raise ValueError(f"Unsupported calendar provider: {provider}")


__all__ = [
    'AuthenticationError',
    'CalendarServiceError',
    'CursorExpiredError',
    'EventNotFoundError',
    'MappingError',
    'NetworkError',
    'PreconditionFailedError',
    'ProviderClient',
    'RateLimitError',
    'RequestTimeoutError',
    'create_provider_client',
]
