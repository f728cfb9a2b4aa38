#!/usr/bin/env python3
"""
Command Portal Configuration Loader
===================================
Loads portal settings from portal_config.toml and PORTAL_* environment
variables on top of built-in defaults.

Lookup order (later wins):
    1. PortalConfig.DEFAULTS
    2. TOML file: $PORTAL_CONFIG, else portal_config.toml in the working dir
    3. Environment: PORTAL_<SECTION>_<KEY>, e.g. PORTAL_SERVER_PORT=3001

Usage:
    from command_portal.config_loader import get_config

    config = get_config()
    port = config.get('server', 'port')
    roots = config.get_list('paths', 'allowed_roots')
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib  # Python 3.11+
except ImportError:
    import tomli as tomllib  # Python < 3.11

from command_portal import debug_logger as log

ENV_PREFIX = 'PORTAL_'

# =============================================================================
# CONFIGURATION CLASS
# =============================================================================

class PortalConfig:
    """
    Configuration manager for the portal.

    Holds one nested dict of sections; every section and key the code reads
    has a default here so a missing config file is never fatal.
    """

    DEFAULTS = {
        'server': {
            'host': '0.0.0.0',
            'port': 3001,
            'secret_key': 'command-portal-secret-key',
            'cors_origins': '*',
        },
        'paths': {
            'projects_dir': '~/Projects',
            'allowed_roots': ['~/Projects'],
            'data_dir': 'data',
            'hosts_file': '/etc/hosts',
            'auth_log': '/var/log/auth.log',
            'system_crontab': '/etc/crontab',
            'authorized_keys': '~/.ssh/authorized_keys',
        },
        'executor': {
            'default_timeout': 30,
            'quick_timeout': 5,
            'install_timeout': 300,
            'upgrade_timeout': 600,
            'default_max_buffer': 1024 * 1024,
            'large_max_buffer': 10 * 1024 * 1024,
        },
        'rate_limits': {
            'enabled': True,
            'storage': 'memory',
            'standard': [100, 60],
            'auth': [10, 60],
            'destructive': [20, 60],
            'scan': [5, 300],
            'database': [30, 60],
            'network': [30, 60],
            'file': [50, 60],
            'cloudflare': [10, 60],
            'ai': [20, 60],
        },
        'policy': {
            'critical_pids': [1],
            'critical_process_names': ['systemd', 'sshd', 'dockerd', 'containerd', 'init'],
            'critical_packages': ['systemd', 'openssh-server', 'docker', 'docker.io', 'linux-image', 'grub'],
            'critical_services': ['sshd', 'ssh', 'systemd-journald', 'docker', 'containerd'],
        },
        'database': {
            'path': 'data/portal.db',
            'query_timeout': 30,
        },
        'observability': {
            'jaeger_url': 'http://localhost:16686',
            'loki_url': 'http://localhost:3100',
            'promtail_url': 'http://localhost:9080',
            'compose_dir': 'monitoring',
            'request_timeout': 10,
            'health_timeout': 3,
        },
        'tabby': {
            'image': 'tabbyml/tabby:latest',
            'gpu_image': 'tabbyml/tabby:gpu',
            'container_name': 'command-portal-tabby',
            'default_model': 'StarCoder-1B',
            'port': 8080,
            'data_dir': '~/.tabby',
            'ready_timeout': 120,
            'health_interval': 30,
        },
        'logging': {
            'level': 'DEBUG',
            'log_dir': 'logs',
        },
    }

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to portal_config.toml. If None, auto-detect.
            overrides: Nested dict merged last (used by tests and create_app)
        """
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None
        self._overrides = overrides or {}

        self._detect_path(config_path)
        self._load_config()

    def _detect_path(self, config_path: Optional[str] = None) -> None:
        if config_path:
            self._config_path = Path(config_path)
        elif os.environ.get('PORTAL_CONFIG'):
            self._config_path = Path(os.environ['PORTAL_CONFIG'])
        else:
            self._config_path = Path.cwd() / 'portal_config.toml'

    def _load_config(self) -> None:
        """Defaults, then file, then environment, then explicit overrides."""
        self._config = copy.deepcopy(self.DEFAULTS)

        if self._config_path and self._config_path.exists():
            try:
                with open(self._config_path, 'rb') as f:
                    file_config = tomllib.load(f)
                self._merge_config(file_config)
            except (OSError, tomllib.TOMLDecodeError) as e:
                log.warn('CONFIG', f'Error loading config file: {e}', {'path': str(self._config_path)})

        self._apply_env()
        self._merge_config(self._overrides)

    def _merge_config(self, file_config: Dict[str, Any]) -> None:
        for section, values in file_config.items():
            if section not in self._config:
                self._config[section] = {}
            if isinstance(values, dict):
                for key, value in values.items():
                    self._config[section][key] = value
            else:
                self._config[section] = values

    def _apply_env(self) -> None:
        """PORTAL_<SECTION>_<KEY> overrides, coerced to the default's type"""
        for section, values in self._config.items():
            if not isinstance(values, dict):
                continue
            for key, current in list(values.items()):
                env_key = f"{ENV_PREFIX}{section}_{key}".upper()
                raw = os.environ.get(env_key)
                if raw is None:
                    continue
                try:
                    values[key] = self._coerce(raw, current)
                except ValueError:
                    log.warn('CONFIG', f'Ignoring {env_key}: cannot convert {raw!r}')

    @staticmethod
    def _coerce(raw: str, current: Any) -> Any:
        if isinstance(current, bool):
            return raw.strip().lower() in ('1', 'true', 'yes', 'on')
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, list):
            items = [item.strip() for item in raw.split(',') if item.strip()]
            if current and all(isinstance(item, int) for item in current):
                return [int(item) for item in items]
            return items
        return raw

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            section: Configuration section (e.g., 'server', 'rate_limits')
            key: Configuration key within the section
            default: Default value if not found
        """
        return self._config.get(section, {}).get(key, default)

    def get_section(self, section: str) -> Dict[str, Any]:
        return self._config.get(section, {})

    def get_list(self, section: str, key: str) -> List[Any]:
        """A list value; a bare string is treated as a comma-separated list"""
        value = self.get(section, key, [])
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        return list(value or [])

    def get_path(self, section: str, key: str) -> Optional[Path]:
        """
        Get a path value with ~ expanded. Relative paths are resolved
        against the directory holding the config file.
        """
        value = self.get(section, key)
        if not value:
            return None

        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        base = self._config_path.parent if self._config_path else Path.cwd()
        return base / path

    def get_paths(self, section: str, key: str) -> List[Path]:
        return [Path(p).expanduser() for p in self.get_list(section, key)]

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secret_key masked)."""
        data = copy.deepcopy(self._config)
        if data.get('server', {}).get('secret_key'):
            data['server']['secret_key'] = '********'
        return data

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_config: Optional[PortalConfig] = None


def get_config() -> PortalConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = PortalConfig()
    return _config
