"""
Unit Tests for the observability compose stack helpers
"""

from datetime import datetime, timezone

import docker
import pytest

from command_portal.errors import ConflictError
from command_portal.observability_stack import ObservabilityStack, cpu_percent, format_uptime


class StackContainer:

    def __init__(self, running=True):
        self.attrs = {'State': {'Status': 'running' if running else 'exited', 'Running': running,
                                'StartedAt': '2024-01-10T08:00:00.123456789Z',
                                'Health': {'Status': 'healthy'}}}

    def stats(self, stream=False):
        return {
            'cpu_stats': {'cpu_usage': {'total_usage': 400}, 'system_cpu_usage': 2000, 'online_cpus': 2},
            'precpu_stats': {'cpu_usage': {'total_usage': 200}, 'system_cpu_usage': 1000},
            'memory_stats': {'usage': 256, 'limit': 1024},
        }


class StackDocker:

    def __init__(self, containers):
        self.containers = self
        self._containers = containers

    def get(self, name):
        if name not in self._containers:
            raise docker.errors.NotFound('No such container')
        return self._containers[name]


@pytest.fixture
def compose_dir(tmp_path):
    path = tmp_path / 'monitoring'
    path.mkdir()
    (path / 'compose.yml').write_text('services: {}\n')
    return path


class TestHelpers:

    def test_format_uptime(self):
        now = datetime(2024, 1, 12, 11, 30, tzinfo=timezone.utc)
        assert format_uptime('2024-01-10T08:00:00.123456789Z', now) == '2d 3h'
        assert format_uptime('2024-01-12T07:00:00Z', now) == '4h 30m'
        assert format_uptime('2024-01-12T11:21:00Z', now) == '9m'
        assert format_uptime('garbage', now) is None

    def test_cpu_percent(self):
        assert cpu_percent(StackContainer().stats()) == 40.0
        assert cpu_percent({}) == 0.0


class TestObservabilityStack:

    def test_status_mixes_found_and_missing(self, compose_dir, executor):
        client = StackDocker({'console-web-jaeger': StackContainer(), 'console-web-loki': StackContainer()})
        status = ObservabilityStack(compose_dir, executor, docker_client=client).get_status()

        assert status['configured'] is True
        assert status['running'] == 2
        assert status['healthy'] is False
        assert status['services']['promtail']['status'] == 'not_found'
        assert status['services']['jaeger']['memory']['percent'] == 25.0
        assert status['services']['jaeger']['health'] == 'healthy'

    def test_start_waits_for_health(self, compose_dir, executor):
        client = StackDocker({name: StackContainer() for name in
                              ('console-web-jaeger', 'console-web-loki', 'console-web-promtail')})
        stack = ObservabilityStack(compose_dir, executor, docker_client=client, sleep=lambda s: None)
        result = stack.start()

        assert result['healthy'] is True
        assert executor.commands('docker')[0]['argv'] == ['docker', 'compose', 'up', '-d']

    def test_unconfigured_stack_refuses_actions(self, tmp_path, executor):
        stack = ObservabilityStack(tmp_path / 'missing', executor)
        with pytest.raises(ConflictError):
            stack.restart()
        assert executor.commands('docker') == []
