"""Lightweight configuration loader for superralph.

Reads optional settings from ~/.superralph/config.yaml with safe defaults.

Supported keys:
- max_iterations: iteration budget for `build` (default: 50)
- delay_seconds: pause between iterations (default: 3)
- cancel_policy: 'graceful' lets the running agent finish on Ctrl-C,
  'kill' terminates it (default: 'graceful')
- phased: run plan -> validate -> execute per feature (default: false)
- max_validation_attempts: plan/validate rounds in phased mode (default: 3)
- allowed_bash_commands: command prefixes the agent may run via Bash
- max_tree_depth / max_file_size_bytes / include_key_files: prompt snapshot
- claude_path: explicit path to the claude binary (default: auto-detect)
- log_dir: directory for superralph-YYYY-MM.log files (default: ~/.superralph/logs)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

_CONFIG_CACHE: Optional[Dict[str, Any]] = None

CANCEL_POLICIES = ("graceful", "kill")

DEFAULT_BASH_COMMANDS = ["go", "npm", "yarn", "pnpm", "cargo", "python", "pytest", "git", "make"]


class ConfigError(Exception):
    """Raised when a config value is present but unusable."""
    pass


def get_config_dir() -> Path:
    return Path.home() / '.superralph'


def get_config_path() -> Path:
    return get_config_dir() / 'config.yaml'


def _defaults() -> Dict[str, Any]:
    return {
        'max_iterations': 50,
        'delay_seconds': 3.0,
        'cancel_policy': 'graceful',
        'phased': False,
        'max_validation_attempts': 3,
        'allowed_bash_commands': list(DEFAULT_BASH_COMMANDS),
        'max_tree_depth': 4,
        'max_file_size_bytes': 50 * 1024,
        'include_key_files': True,
        'claude_path': None,
        'log_dir': str(get_config_dir() / 'logs'),
    }


def get_config() -> Dict[str, Any]:
    """Load config.yaml once and cache the result."""
    global _CONFIG_CACHE
    if _CONFIG_CACHE is not None:
        return _CONFIG_CACHE

    cfg_path = get_config_path()
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            loaded = yaml.safe_load(cfg_path.read_text())
            if isinstance(loaded, dict):
                data = loaded
        except (yaml.YAMLError, OSError):
            # Malformed configs fall back to defaults
            data = {}

    merged = {**_defaults(), **data}
    _CONFIG_CACHE = merged
    return merged


def reset_config_cache() -> None:
    """Drop the cached config (tests, or after editing the file)."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = None


def get_max_iterations(cli_value: Optional[int] = None) -> int:
    """
    Get the iteration budget with priority: CLI flag > config file > default.

    Raises:
        ConfigError: If the resolved value is not a positive integer
    """
    value = cli_value if cli_value is not None else get_config().get('max_iterations')
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"max_iterations must be an integer, got {value!r}")
    if value < 1:
        raise ConfigError(f"max_iterations must be >= 1, got {value}")
    return value


def get_delay_seconds(cli_value: Optional[float] = None) -> float:
    value = cli_value if cli_value is not None else get_config().get('delay_seconds')
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"delay_seconds must be a number, got {value!r}")
    return max(0.0, value)


def get_cancel_policy(cli_value: Optional[str] = None) -> str:
    """
    Get cancellation policy: 'graceful' or 'kill'.

    Raises:
        ConfigError: If the configured value is not a known policy
    """
    value = cli_value if cli_value is not None else get_config().get('cancel_policy')
    value = str(value).lower()
    if value not in CANCEL_POLICIES:
        raise ConfigError(f"cancel_policy must be one of {', '.join(CANCEL_POLICIES)}, got {value!r}")
    return value


def get_phased(cli_value: Optional[bool] = None) -> bool:
    if cli_value is not None:
        return cli_value
    return bool(get_config().get('phased'))


def get_max_validation_attempts() -> int:
    return max(1, int(get_config().get('max_validation_attempts') or 3))


def get_allowed_bash_commands() -> List[str]:
    commands = get_config().get('allowed_bash_commands')
    if commands is None:
        return list(DEFAULT_BASH_COMMANDS)
    return [str(c) for c in commands]


def get_snapshot_settings() -> Dict[str, Any]:
    cfg = get_config()
    return {
        'max_tree_depth': int(cfg.get('max_tree_depth') or 4),
        'max_file_size_bytes': int(cfg.get('max_file_size_bytes') or 50 * 1024),
        'include_key_files': bool(cfg.get('include_key_files')),
    }


def get_claude_path() -> Optional[str]:
    value = get_config().get('claude_path')
    return str(Path(value).expanduser()) if value else None


def get_log_dir() -> Path:
    return Path(get_config().get('log_dir') or _defaults()['log_dir']).expanduser()
