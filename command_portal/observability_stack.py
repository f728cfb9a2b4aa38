#!/usr/bin/env python3
"""
Observability stack
===================
Jaeger, Loki and Promtail run from a docker-compose project in the
configured monitoring directory. This module reports container state via
the Docker SDK and drives `docker compose up/down/restart` through the
command executor.
"""

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import docker

from command_portal import debug_logger as log
from command_portal.errors import ConflictError

STACK_SERVICES = {
    'jaeger': {'name': 'Jaeger', 'container': 'console-web-jaeger', 'port': 16686},
    'loki': {'name': 'Loki', 'container': 'console-web-loki', 'port': 3100},
    'promtail': {'name': 'Promtail', 'container': 'console-web-promtail', 'port': 9080},
}
COMPOSE_FILES = ('docker-compose.yml', 'docker-compose.yaml', 'compose.yml', 'compose.yaml')


def format_uptime(started_at: str, now: Optional[datetime] = None) -> Optional[str]:
    """'2d 3h' / '4h 12m' / '9m' from a Docker StartedAt timestamp"""
    try:
        started = datetime.fromisoformat(started_at[:26].rstrip('Z') + '+00:00')
    except (TypeError, ValueError):
        return None
    seconds = int(((now or datetime.now(timezone.utc)) - started).total_seconds())
    days, rem = divmod(max(seconds, 0), 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f'{days}d {hours}h'
    if hours:
        return f'{hours}h {minutes}m'
    return f'{minutes}m'


def cpu_percent(stats: Dict[str, Any]) -> float:
    try:
        cpu_delta = (stats['cpu_stats']['cpu_usage']['total_usage']
                     - stats['precpu_stats']['cpu_usage']['total_usage'])
        system_delta = stats['cpu_stats']['system_cpu_usage'] - stats['precpu_stats']['system_cpu_usage']
        cpus = stats['cpu_stats'].get('online_cpus') or 1
    except (KeyError, TypeError):
        return 0.0
    if system_delta <= 0:
        return 0.0
    return round(cpu_delta / system_delta * cpus * 100, 2)


class ObservabilityStack:

    def __init__(self, compose_dir, executor, docker_client=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.compose_dir = Path(compose_dir)
        self.executor = executor
        self._docker = docker_client
        self._sleep = sleep

    @property
    def client(self):
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    def is_configured(self) -> bool:
        return any((self.compose_dir / name).exists() for name in COMPOSE_FILES)

    def _container_status(self, key: str, info: Dict[str, Any]) -> Dict[str, Any]:
        base = {'name': info['name'], 'container': info['container'], 'ports': info['port']}
        try:
            container = self.client.containers.get(info['container'])
            state = container.attrs.get('State', {})
            running = bool(state.get('Running'))
            stats = container.stats(stream=False) if running else {}
        except docker.errors.NotFound:
            return {**base, 'status': 'not_found', 'running': False, 'message': 'Container not created'}
        except docker.errors.DockerException as e:
            log.error('OBSERVABILITY', f'Error getting {key} status: {e}')
            return {**base, 'status': 'error', 'running': False, 'error': 'Docker error'}

        memory = stats.get('memory_stats') or {}
        used, limit = memory.get('usage', 0), memory.get('limit', 0)
        return {
            **base,
            'status': state.get('Status'),
            'running': running,
            'health': (state.get('Health') or {}).get('Status', 'unknown'),
            'startedAt': state.get('StartedAt'),
            'uptime': format_uptime(state.get('StartedAt')) if running else None,
            'cpu': cpu_percent(stats),
            'memory': {'used': used, 'limit': limit,
                       'percent': round(used / limit * 100, 2) if limit else 0},
        }

    def get_status(self) -> Dict[str, Any]:
        if not self.is_configured():
            return {
                'configured': False,
                'services': {},
                'message': f'Observability stack not configured. Missing docker-compose.yml in {self.compose_dir}',
            }
        services = {key: self._container_status(key, info) for key, info in STACK_SERVICES.items()}
        running = sum(1 for s in services.values() if s['running'])
        return {
            'configured': True,
            'healthy': running == len(STACK_SERVICES),
            'running': running,
            'total': len(STACK_SERVICES),
            'services': services,
        }

    def _compose(self, action_args, timeout) -> str:
        if not self.is_configured():
            raise ConflictError('Observability stack not configured', reason='not_configured')
        log.info('OBSERVABILITY', f"docker compose {' '.join(action_args)}")
        result = self.executor.run('docker', ['compose'] + list(action_args),
                                   timeout=timeout, cwd=str(self.compose_dir))
        return result.stdout

    def wait_for_healthy(self, timeout: float = 30) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.get_status().get('healthy'):
                log.info('OBSERVABILITY', 'All observability services healthy')
                return True
            self._sleep(2)
        log.warn('OBSERVABILITY', 'Timeout waiting for observability stack health')
        return False

    def start(self) -> Dict[str, Any]:
        output = self._compose(['up', '-d'], timeout=120)
        healthy = self.wait_for_healthy()
        return {'success': True, 'healthy': healthy,
                'message': 'Observability stack started successfully', 'output': output}

    def stop(self) -> Dict[str, Any]:
        output = self._compose(['down'], timeout=60)
        return {'success': True, 'message': 'Observability stack stopped successfully', 'output': output}

    def restart(self) -> Dict[str, Any]:
        output = self._compose(['restart'], timeout=120)
        healthy = self.wait_for_healthy()
        return {'success': True, 'healthy': healthy,
                'message': 'Observability stack restarted successfully', 'output': output}
