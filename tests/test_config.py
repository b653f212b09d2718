"""Tests for config.py - Configuration loader."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from superralph import config


@pytest.fixture(autouse=True)
def reset_config_cache():
    """Reset config cache before each test to ensure isolation."""
    config._CONFIG_CACHE = None
    yield
    config._CONFIG_CACHE = None


def write_config(values):
    path = config.get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(values))
    return path


def test_config_path_under_home():
    """config.yaml lives in ~/.superralph."""
    assert config.get_config_path() == Path.home() / '.superralph' / 'config.yaml'


def test_defaults():
    """Test _defaults() returns expected structure."""
    defaults = config._defaults()

    assert defaults['max_iterations'] == 50
    assert defaults['delay_seconds'] == 3.0
    assert defaults['cancel_policy'] == 'graceful'
    assert defaults['phased'] is False
    assert defaults['claude_path'] is None
    assert 'git' in defaults['allowed_bash_commands']
    assert defaults['log_dir'].endswith('logs')


def test_get_config_no_file():
    """Test get_config() with no config file returns defaults."""
    cfg = config.get_config()
    assert cfg == config._defaults()


def test_get_config_partial_override():
    """Test get_config() merges a partial config file with defaults."""
    write_config({'max_iterations': 12, 'phased': True})

    cfg = config.get_config()

    assert cfg['max_iterations'] == 12
    assert cfg['phased'] is True
    # Defaults for non-overridden values
    assert cfg['cancel_policy'] == 'graceful'


def test_get_config_malformed_yaml():
    """Malformed YAML falls back to defaults."""
    path = config.get_config_path()
    path.parent.mkdir(parents=True)
    path.write_text("max_iterations: [unclosed")

    assert config.get_config()['max_iterations'] == 50


def test_get_config_non_mapping():
    """A YAML list instead of a mapping is ignored."""
    path = config.get_config_path()
    path.parent.mkdir(parents=True)
    path.write_text("- a\n- b\n")

    assert config.get_config()['cancel_policy'] == 'graceful'


def test_get_config_caching():
    """The file is read once until the cache is reset."""
    write_config({'max_iterations': 5})
    assert config.get_config()['max_iterations'] == 5

    write_config({'max_iterations': 9})
    assert config.get_config()['max_iterations'] == 5

    config.reset_config_cache()
    assert config.get_config()['max_iterations'] == 9


def test_get_config_read_error():
    """An unreadable file behaves like a missing one."""
    write_config({'max_iterations': 5})
    with patch('pathlib.Path.read_text', side_effect=OSError("denied")):
        assert config.get_config()['max_iterations'] == 50


class TestMaxIterations:
    """CLI flag > config file > default."""

    def test_cli_wins(self):
        write_config({'max_iterations': 20})
        assert config.get_max_iterations(7) == 7

    def test_config_file(self):
        write_config({'max_iterations': 20})
        assert config.get_max_iterations() == 20

    def test_default(self):
        assert config.get_max_iterations() == 50

    @pytest.mark.parametrize("value", [0, -3, "many"])
    def test_invalid_values(self, value):
        """Non-positive or non-numeric budgets are rejected."""
        write_config({'max_iterations': value})
        with pytest.raises(config.ConfigError, match="max_iterations"):
            config.get_max_iterations()


class TestDelaySeconds:

    def test_negative_clamped_to_zero(self):
        assert config.get_delay_seconds(-1) == 0.0

    def test_from_config(self):
        write_config({'delay_seconds': 0.5})
        assert config.get_delay_seconds() == 0.5

    def test_not_a_number(self):
        write_config({'delay_seconds': 'soon'})
        with pytest.raises(config.ConfigError):
            config.get_delay_seconds()


class TestCancelPolicy:

    def test_default_is_graceful(self):
        assert config.get_cancel_policy() == 'graceful'

    def test_case_insensitive(self):
        write_config({'cancel_policy': 'KILL'})
        assert config.get_cancel_policy() == 'kill'

    def test_unknown_policy(self):
        with pytest.raises(config.ConfigError, match="graceful, kill"):
            config.get_cancel_policy('abort')


def test_get_phased_cli_overrides_config():
    """An explicit --no-phased beats phased: true in the file."""
    write_config({'phased': True})
    assert config.get_phased() is True
    assert config.get_phased(False) is False


def test_max_validation_attempts_floor():
    """At least one validation round always runs."""
    write_config({'max_validation_attempts': -2})
    assert config.get_max_validation_attempts() == 1


def test_allowed_bash_commands():
    """Configured commands replace the default list."""
    write_config({'allowed_bash_commands': ['make', 'bazel']})
    assert config.get_allowed_bash_commands() == ['make', 'bazel']


def test_allowed_bash_commands_null_means_default():
    write_config({'allowed_bash_commands': None})
    assert config.get_allowed_bash_commands() == config.DEFAULT_BASH_COMMANDS


def test_snapshot_settings():
    write_config({'max_tree_depth': 2, 'include_key_files': False})
    assert config.get_snapshot_settings() == {
        'max_tree_depth': 2,
        'max_file_size_bytes': 50 * 1024,
        'include_key_files': False,
    }


def test_claude_path_expands_user():
    write_config({'claude_path': '~/bin/claude'})
    assert config.get_claude_path() == str(Path.home() / 'bin' / 'claude')


def test_claude_path_unset():
    assert config.get_claude_path() is None


def test_log_dir(tmp_path):
    write_config({'log_dir': str(tmp_path / 'custom-logs')})
    assert config.get_log_dir() == tmp_path / 'custom-logs'
