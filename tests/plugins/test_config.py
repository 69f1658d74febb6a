"""
Tests for Sync Configuration

These tests validate environment parsing, defaults, validation of batch
bounds and change detection, and DAG param overrides.
"""

import pytest
from unittest.mock import patch

from pg_sync.config import SyncSettings

ENV_VARS = [
    'SYNC_SCHEMA', 'SYNC_MIN_BATCH_SIZE', 'SYNC_MAX_BATCH_SIZE', 'SYNC_INITIAL_BATCH_SIZE',
    'SYNC_TARGET_BATCH_TIME_MS', 'SYNC_MAX_MEMORY_MB', 'SYNC_MAX_CONCURRENT_JOBS',
    'SYNC_MAX_BATCH_RETRIES', 'SYNC_RETRY_DELAY_SECONDS', 'SYNC_VALIDATE_BEFORE_START',
    'SYNC_CHANGE_DETECTION', 'SYNC_EXCLUDE_TABLES', 'SYNC_JOB_STORE_CONN_ID', 'PG_SYNC_ENV_FILE',
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    with patch('pg_sync.config.load_dotenv') as mock_load:
        yield monkeypatch, mock_load


class TestFromEnv:
    """Test environment parsing."""

    def test_defaults(self, clean_env):
        settings = SyncSettings.from_env()

        assert settings == SyncSettings()
        assert settings.schema_name == 'public'
        assert settings.max_concurrent_jobs == 3
        assert settings.exclude_tables == []

    def test_overrides_from_env(self, clean_env):
        monkeypatch, _ = clean_env
        monkeypatch.setenv('SYNC_SCHEMA', 'app')
        monkeypatch.setenv('SYNC_MAX_BATCH_SIZE', '10000')
        monkeypatch.setenv('SYNC_RETRY_DELAY_SECONDS', '0.5')
        monkeypatch.setenv('SYNC_VALIDATE_BEFORE_START', 'false')
        monkeypatch.setenv('SYNC_CHANGE_DETECTION', 'HASH')
        monkeypatch.setenv('SYNC_EXCLUDE_TABLES', 'audit_*, tmp_* ,')

        settings = SyncSettings.from_env()

        assert settings.schema_name == 'app'
        assert settings.max_batch_size == 10000
        assert settings.retry_delay_seconds == 0.5
        assert settings.validate_before_start is False
        assert settings.change_detection == 'hash'
        assert settings.exclude_tables == ['audit_*', 'tmp_*']

    def test_invalid_numbers_fall_back_to_defaults(self, clean_env):
        monkeypatch, _ = clean_env
        monkeypatch.setenv('SYNC_MIN_BATCH_SIZE', 'lots')
        monkeypatch.setenv('SYNC_RETRY_DELAY_SECONDS', 'soon')

        settings = SyncSettings.from_env()

        assert settings.min_batch_size == 50
        assert settings.retry_delay_seconds == 1.0

    def test_env_file_is_loaded_without_overriding(self, clean_env):
        _, mock_load = clean_env

        SyncSettings.from_env('/etc/pg_sync/.env')

        mock_load.assert_called_once_with('/etc/pg_sync/.env', override=False)

    def test_env_file_from_variable(self, clean_env):
        monkeypatch, mock_load = clean_env
        monkeypatch.setenv('PG_SYNC_ENV_FILE', '/opt/sync.env')

        SyncSettings.from_env()

        mock_load.assert_called_once_with('/opt/sync.env', override=False)


class TestValidation:
    """Test settings validation."""

    def test_min_batch_size_must_be_positive(self):
        with pytest.raises(ValueError, match='min_batch_size'):
            SyncSettings(min_batch_size=0)

    def test_max_below_min_rejected(self):
        with pytest.raises(ValueError, match='max_batch_size'):
            SyncSettings(min_batch_size=100, max_batch_size=10)

    def test_unknown_change_detection_rejected(self):
        with pytest.raises(ValueError, match='change_detection'):
            SyncSettings(change_detection='rowversion')


class TestWithOverrides:
    """Test DAG param overrides."""

    def test_applies_known_non_empty_values(self):
        settings = SyncSettings().with_overrides({
            'schema_name': 'app',
            'max_batch_size': 800,
            'min_batch_size': None,
            'change_detection': '',
            'unrelated_param': 'x',
        })

        assert settings.schema_name == 'app'
        assert settings.max_batch_size == 800
        assert settings.min_batch_size == 50
        assert settings.change_detection == 'keys'

    def test_empty_overrides_return_same_settings(self):
        settings = SyncSettings()
        assert settings.with_overrides(None) is settings
        assert settings.with_overrides({}) is settings

    def test_overrides_are_validated(self):
        with pytest.raises(ValueError):
            SyncSettings().with_overrides({'max_batch_size': 10})
