"""Tests for settings."""

import pytest
from pydantic import ValidationError

from conftest import TestSettings, make_settings
from taskcal_sync.config import create_example_config
from taskcal_sync.models import CalendarProvider, ConflictResolution, SyncDirection


def test_defaults_derive_from_data_dir(tmp_path):
    settings = TestSettings(data_dir=tmp_path)

    assert settings.database_url == f"sqlite:///{tmp_path}/taskcal.db"
    assert settings.tasks_file == tmp_path / "tasks.json"


def test_required_settings_follow_enabled_providers(tmp_path):
    settings = TestSettings(data_dir=tmp_path, google_client_id='id', google_client_secret='secret')

    assert settings.validate_required_settings() == ['OUTLOOK_CLIENT_ID', 'OUTLOOK_CLIENT_SECRET']

    google_only = TestSettings(
        data_dir=tmp_path,
        google_client_id='id',
        google_client_secret='secret',
        sync_config={'enabled_providers': ['google']},
    )
    assert google_only.validate_required_settings() == []


def test_nested_sync_config_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv('SYNC_CONFIG__CONFLICT_RESOLUTION', 'remote-wins')
    monkeypatch.setenv('SYNC_CONFIG__SYNC_DIRECTION', 'local-to-remote')
    monkeypatch.setenv('SYNC_CONFIG__ENABLED_PROVIDERS', '["outlook"]')

    settings = TestSettings(data_dir=tmp_path)

    assert settings.sync_config.conflict_resolution == ConflictResolution.REMOTE_WINS
    assert settings.sync_config.sync_direction == SyncDirection.LOCAL_TO_REMOTE
    assert settings.sync_config.enabled_providers == [CalendarProvider.OUTLOOK]


def test_log_level_validation(tmp_path):
    assert make_settings(tmp_path, log_level='debug').log_level == 'DEBUG'
    with pytest.raises(ValidationError):
        make_settings(tmp_path, log_level='chatty')


def test_outlook_authority(tmp_path):
    settings = make_settings(tmp_path, outlook_tenant='contoso')

    assert settings.outlook_authority == "https://login.microsoftonline.com/contoso/oauth2/v2.0"


def test_create_example_config(tmp_path):
    path = tmp_path / ".env"

    create_example_config(path)

    content = path.read_text()
    assert 'GOOGLE_CLIENT_ID=' in content
    assert 'SYNC_CONFIG__CONFLICT_RESOLUTION=manual' in content
