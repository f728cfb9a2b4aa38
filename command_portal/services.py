#!/usr/bin/env python3
"""
Service container
=================
Everything a route needs (executor, limiters, policy, database, HTTP client,
Tabby and observability managers) lives on one PortalServices object stored
at app.extensions['command_portal']. create_app() builds it from config;
tests pass their own fakes for any piece.
"""

from pathlib import Path
from typing import Any, Callable, List, Optional

from flask import current_app

from command_portal.config_loader import PortalConfig
from command_portal.executor import CommandExecutor
from command_portal.observability_stack import ObservabilityStack
from command_portal.parsers import DIAGNOSTICS, ParseDiagnostics
from command_portal.policy import ProtectionPolicy
from command_portal.rate_limit import RateLimitSettings
from command_portal.store import PortalDB, RepositoryRegistry
from command_portal.tabby_manager import TabbyManager
from command_portal.upstream import UpstreamClient


class PortalServices:

    def __init__(self, config: PortalConfig, executor=None, limiters=None, policy=None,
                 db: Optional[PortalDB] = None, http: Optional[UpstreamClient] = None,
                 tabby: Optional[TabbyManager] = None,
                 observability: Optional[ObservabilityStack] = None,
                 emit: Optional[Callable[[str, Any], None]] = None,
                 diagnostics: Optional[ParseDiagnostics] = None):
        self.config = config
        self.executor = executor or CommandExecutor.from_config(config)
        self.limiters = limiters or RateLimitSettings.from_config(config)
        self.policy = policy or ProtectionPolicy.from_config(config)
        self.http = http or UpstreamClient(timeout=config.get('observability', 'request_timeout', 10))
        self.diagnostics = diagnostics or DIAGNOSTICS

        self.db = db or PortalDB(config.get_path('database', 'path'))
        self.repositories = RepositoryRegistry(self.db)

        self.tabby = tabby or TabbyManager(config.get_section('tabby'), http=self.http,
                                           executor=self.executor, emit=emit)
        self.observability = observability or ObservabilityStack(
            config.get_path('observability', 'compose_dir'), self.executor)

    # =========================================================================
    # SHORTCUTS
    # =========================================================================

    @property
    def allowed_roots(self) -> List[Path]:
        roots = self.config.get_paths('paths', 'allowed_roots')
        return roots or [Path(self.config.get('paths', 'projects_dir')).expanduser()]

    @property
    def projects_dir(self) -> Path:
        return Path(self.config.get('paths', 'projects_dir')).expanduser()

    @property
    def self_dir(self) -> Path:
        """Portal's own directory, addressed as `__self__` by the env editor"""
        if self.config.config_path:
            return self.config.config_path.parent.resolve()
        return Path.cwd().resolve()

    def timeout(self, kind: str) -> float:
        return self.config.get('executor', f'{kind}_timeout', 30)

    def max_buffer(self, kind: str) -> int:
        return self.config.get('executor', f'{kind}_max_buffer', 1024 * 1024)


def get_services() -> PortalServices:
    """The PortalServices of the app serving the current request"""
    return current_app.extensions['command_portal']
