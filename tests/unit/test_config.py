"""
Unit tests for configuration (drbackup/config.py) and logging setup
(drbackup/__init__.py).
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from drbackup import configure_logging
from drbackup.config import DevelopmentConfig, ProductionConfig, TestingConfig, load_config


class TestLoadConfig:
    """Test load_config."""

    @pytest.mark.parametrize("name,cls", [
        ('development', DevelopmentConfig),
        ('production', ProductionConfig),
        ('testing', TestingConfig),
        ('default', ProductionConfig),
    ])
    def test_named_configs(self, name, cls):
        assert isinstance(load_config(name), cls)

    def test_defaults_to_environment(self, monkeypatch):
        monkeypatch.setenv('DRBACKUP_ENV', 'testing')

        assert isinstance(load_config(), TestingConfig)

    def test_defaults_to_production(self, monkeypatch):
        monkeypatch.delenv('DRBACKUP_ENV', raising=False)

        assert isinstance(load_config(), ProductionConfig)

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="Invalid configuration name"):
            load_config('staging')

    def test_overrides(self, tmp_path):
        config = load_config('testing', BACKUP_DIR=str(tmp_path), RETENTION_WINDOW_DAYS=7)

        assert config.BACKUP_DIR == str(tmp_path)
        assert config.RETENTION_WINDOW_DAYS == 7

    def test_overrides_do_not_leak(self, tmp_path):
        load_config('testing', RETENTION_WINDOW_DAYS=7)

        assert load_config('testing').RETENTION_WINDOW_DAYS == TestingConfig.RETENTION_WINDOW_DAYS

    def test_unknown_override(self):
        with pytest.raises(ValueError, match="Unknown configuration key"):
            load_config('testing', RETENTION_DAYS=7)


class TestDefaults:
    """Test default settings."""

    def test_retention_and_levels(self):
        config = load_config('production')

        assert config.COMPRESS_AGE_DAYS >= 1
        assert config.COMPRESSION_FORMAT in ('gz', 'bz2', 'xz')
        assert config.RETENTION_WINDOW_DAYS >= 1
        assert config.INCREMENTAL_LEVEL >= 1

    def test_every_kind_has_schedule_key(self):
        assert set(load_config('production').SCHEDULES) == {'full', 'incremental', 'archivelog', 'dr_trigger'}

    def test_testing_uses_local_replication(self):
        config = load_config('testing')

        assert config.REPLICATOR == 'local'
        assert config.BACKUP_TIMEOUT == 60


class TestConfigureLogging:
    """Test configure_logging."""

    def teardown_method(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()

    def test_creates_log_file_handler(self, config, tmp_path):
        configure_logging(config)

        root = logging.getLogger()
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(tmp_path / 'logs' / 'drbackup.log')
        assert (tmp_path / 'logs' / 'drbackup.log').exists()

    def test_debug_level_in_debug_config(self, config):
        configure_logging(config)

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger('paramiko').level == logging.WARNING
