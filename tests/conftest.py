"""
Shared fixtures: a scripted command executor, a fake HTTP client and a
fully wired portal app backed by a temporary SQLite database.
"""

import time
from types import SimpleNamespace

import pytest

from command_portal.config_loader import PortalConfig
from command_portal.errors import CommandFailedError, CommandNotFoundError
from command_portal.executor import CommandResult
from command_portal.parsers import DIAGNOSTICS
from command_portal.rate_limit import RateLimitSettings
from command_portal.server import create_app
from command_portal.services import PortalServices


class FakeExecutor:
    """
    Answers commands from a table keyed by argv prefix. The longest
    matching prefix wins; unknown commands succeed with empty output.
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def respond(self, argv_prefix, stdout='', stderr='', returncode=0, raises=None):
        self.responses[tuple(argv_prefix)] = raises or CommandResult(stdout, stderr, returncode)

    def commands(self, name):
        return [call for call in self.calls if call['argv'][0] == name]

    def run(self, command, args=(), check=True, **kwargs):
        argv = [command] + [str(a) for a in args]
        self.calls.append({'argv': argv, **kwargs})
        matches = [prefix for prefix in self.responses if tuple(argv[:len(prefix)]) == prefix]
        result = self.responses[max(matches, key=len)] if matches else CommandResult('')
        if isinstance(result, Exception):
            raise result
        if check and result.returncode != 0:
            raise CommandFailedError(argv, result.returncode, result.stdout, result.stderr)
        return result

    def run_text(self, command, args=(), **kwargs):
        kwargs.setdefault('check', False)
        try:
            return self.run(command, args, **kwargs).stdout
        except CommandNotFoundError:
            return ''


class FakeHTTP:
    """UpstreamClient stand-in keyed by URL substring"""

    def __init__(self):
        self.json_responses = {}
        self.requests = []

    def get_json(self, url, service='upstream', timeout=None):
        self.requests.append(url)
        for fragment, value in self.json_responses.items():
            if fragment in url:
                if isinstance(value, Exception):
                    raise value
                return value
        return {}

    def post_json(self, url, payload, service='upstream', timeout=None):
        self.requests.append(url)
        return self.get_json(url, service, timeout)

    def check(self, url, timeout=3):
        return {'healthy': True, 'status': 200, 'latency': 1, 'error': None}


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def projects_dir(tmp_path):
    path = tmp_path / 'Projects'
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, projects_dir):
    return PortalConfig(config_path=str(tmp_path / 'portal_config.toml'), overrides={
        'database': {'path': str(tmp_path / 'portal.db')},
        'logging': {'log_dir': '', 'level': 'INFO'},
        'paths': {
            'projects_dir': str(projects_dir),
            'allowed_roots': [str(projects_dir)],
            'hosts_file': str(tmp_path / 'hosts'),
            'authorized_keys': str(tmp_path / 'authorized_keys'),
            'system_crontab': str(tmp_path / 'crontab'),
        },
        'observability': {'compose_dir': str(tmp_path / 'monitoring')},
        'tabby': {'data_dir': str(tmp_path / 'tabby')},
    })


@pytest.fixture
def clock(monkeypatch):
    """Frozen wall clock for rate limit windows; advance() moves it forward"""
    state = {'now': 1_000_000.0}

    def now():
        return state['now']

    now.advance = lambda seconds: state.__setitem__('now', state['now'] + seconds)
    monkeypatch.setattr(time, 'time', now)
    return now


@pytest.fixture
def portal(config, executor, http):
    services = PortalServices(
        config,
        executor=executor,
        http=http,
        limiters=RateLimitSettings(),
    )
    app = create_app(config, services=services)
    app.testing = True
    return SimpleNamespace(app=app, client=app.test_client(), executor=executor,
                           http=http, services=services)


@pytest.fixture(autouse=True)
def reset_parse_diagnostics():
    DIAGNOSTICS.reset()
    yield
    DIAGNOSTICS.reset()
