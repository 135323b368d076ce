"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import CalendarProvider, CalendarSyncConfig


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Google Calendar API Configuration
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_redirect_uri: str = Field(
        default="http://localhost:8080/oauth/google/callback",
        description="Google OAuth redirect URI"
    )
    google_scopes: List[str] = Field(
        default=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
            "openid",
        ],
        description="Google API scopes"
    )

    # Microsoft Graph (Outlook) Configuration
    outlook_client_id: Optional[str] = Field(None, description="Azure application (client) ID")
    outlook_client_secret: Optional[str] = Field(None, description="Azure client secret")
    outlook_redirect_uri: str = Field(
        default="http://localhost:8080/oauth/outlook/callback",
        description="Outlook OAuth redirect URI"
    )
    outlook_tenant: str = Field(default="common", description="Microsoft identity tenant")
    outlook_scopes: List[str] = Field(
        default=["offline_access", "Calendars.ReadWrite", "User.Read"],
        description="Microsoft Graph scopes"
    )

    # Application Configuration
    app_name: str = Field(default="taskcal-sync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )
    user_id: str = Field(default="default", description="Local user the task list belongs to")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".taskcal-sync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )
    tasks_file: Optional[Path] = Field(
        default=None,
        description="JSON task list used by the CLI (defaults to data_dir/tasks.json)"
    )

    # Sync Configuration
    sync_config: CalendarSyncConfig = Field(
        default_factory=CalendarSyncConfig,
        description="Synchronization settings"
    )
    default_event_duration_minutes: int = Field(
        default=60,
        ge=1,
        description="Event length for tasks with a start but no end"
    )
    sync_past_days: int = Field(default=30, ge=0, description="Outlook delta window into the past")
    sync_future_days: int = Field(default=365, ge=1, description="Outlook delta window into the future")
    page_size: int = Field(default=250, ge=1, le=2500, description="Events per provider page")

    # Performance Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for transient failures")
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Exponential backoff multiplier"
    )
    token_refresh_margin_seconds: int = Field(
        default=60,
        ge=0,
        description="Refresh access tokens expiring within this many seconds"
    )

    @validator('data_dir', 'tasks_file', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/taskcal.db"
        return v

    @validator('tasks_file', always=True)
    def set_default_tasks_file(cls, v, values):
        """Set default task file if not provided."""
        if v is None and 'data_dir' in values:
            return values['data_dir'] / "tasks.json"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('google_client_id', 'google_client_secret', 'outlook_client_id', 'outlook_client_secret')
    def strip_credentials(cls, v):
        if v is None:
            return v
        return v.strip() or None

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    @property
    def outlook_authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.outlook_tenant}/oauth2/v2.0"

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []
        providers = self.sync_config.enabled_providers

        if CalendarProvider.GOOGLE in providers:
            if not self.google_client_id:
                missing.append('GOOGLE_CLIENT_ID')
            if not self.google_client_secret:
                missing.append('GOOGLE_CLIENT_SECRET')
        if CalendarProvider.OUTLOOK in providers:
            if not self.outlook_client_id:
                missing.append('OUTLOOK_CLIENT_ID')
            if not self.outlook_client_secret:
                missing.append('OUTLOOK_CLIENT_SECRET')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# taskcal-sync configuration
# Copy this file to .env and fill in your actual credentials

# Google Calendar API Configuration
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here
GOOGLE_REDIRECT_URI=http://localhost:8080/oauth/google/callback

# Microsoft Graph (Outlook) Configuration
OUTLOOK_CLIENT_ID=your_azure_application_id_here
OUTLOOK_CLIENT_SECRET=your_azure_client_secret_here
OUTLOOK_REDIRECT_URI=http://localhost:8080/oauth/outlook/callback
OUTLOOK_TENANT=common

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO
USER_ID=default

# Sync Configuration
SYNC_CONFIG__ENABLED_PROVIDERS=["google", "outlook"]
SYNC_CONFIG__SYNC_INTERVAL=900000
SYNC_CONFIG__CONFLICT_RESOLUTION=manual
SYNC_CONFIG__AUTO_SYNC=false
SYNC_CONFIG__SYNC_DIRECTION=two-way
SYNC_CONFIG__INCLUDE_COMPLETED_TASKS=false
# Category -> remote calendar id
SYNC_CONFIG__CALENDAR_MAPPING={}
# Empty list syncs every category
SYNC_CONFIG__SYNC_CATEGORIES=[]

DEFAULT_EVENT_DURATION_MINUTES=60
SYNC_PAST_DAYS=30
SYNC_FUTURE_DAYS=365
PAGE_SIZE=250

# Performance Configuration
REQUEST_TIMEOUT_SECONDS=30
RETRY_ATTEMPTS=3
RETRY_BACKOFF_SECONDS=1
TOKEN_REFRESH_MARGIN_SECONDS=60

# Storage Configuration (optional)
# DATA_DIR=~/.taskcal-sync
# DATABASE_URL=sqlite:///~/.taskcal-sync/taskcal.db
# TASKS_FILE=~/.taskcal-sync/tasks.json
'''

    with open(path, 'w') as f:
        f.write(example_content)
