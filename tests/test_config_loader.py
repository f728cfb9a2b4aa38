"""
Unit Tests for PortalConfig layering: defaults, TOML file, environment, overrides
"""

from command_portal.config_loader import PortalConfig


class TestPortalConfig:

    def test_defaults_without_file(self, tmp_path):
        config = PortalConfig(config_path=str(tmp_path / 'missing.toml'))
        assert config.get('server', 'port') == 3001
        assert config.get('rate_limits', 'scan') == [5, 300]
        assert config.get('nope', 'nothing', 'fallback') == 'fallback'

    def test_file_values_merge_per_key(self, tmp_path):
        path = tmp_path / 'portal_config.toml'
        path.write_text('[server]\nport = 4000\n\n[tabby]\ndefault_model = "StarCoder-3B"\n')
        config = PortalConfig(config_path=str(path))

        assert config.get('server', 'port') == 4000
        assert config.get('server', 'host') == '0.0.0.0'
        assert config.get('tabby', 'default_model') == 'StarCoder-3B'

    def test_broken_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / 'portal_config.toml'
        path.write_text('[server\nport = ')
        assert PortalConfig(config_path=str(path)).get('server', 'port') == 3001

    def test_environment_coerced_to_default_type(self, tmp_path, monkeypatch):
        monkeypatch.setenv('PORTAL_SERVER_PORT', '3002')
        monkeypatch.setenv('PORTAL_RATE_LIMITS_ENABLED', 'false')
        monkeypatch.setenv('PORTAL_POLICY_CRITICAL_PIDS', '1, 2')
        monkeypatch.setenv('PORTAL_EXECUTOR_QUICK_TIMEOUT', 'soon')
        config = PortalConfig(config_path=str(tmp_path / 'missing.toml'))

        assert config.get('server', 'port') == 3002
        assert config.get('rate_limits', 'enabled') is False
        assert config.get_list('policy', 'critical_pids') == [1, 2]
        assert config.get('executor', 'quick_timeout') == 5

    def test_overrides_win(self, tmp_path, monkeypatch):
        monkeypatch.setenv('PORTAL_SERVER_PORT', '3002')
        config = PortalConfig(config_path=str(tmp_path / 'missing.toml'),
                              overrides={'server': {'port': 9999}})
        assert config.get('server', 'port') == 9999

    def test_relative_paths_resolve_next_to_config(self, tmp_path):
        config = PortalConfig(config_path=str(tmp_path / 'portal_config.toml'))
        assert config.get_path('database', 'path') == tmp_path / 'data' / 'portal.db'
        assert config.get_path('paths', 'hosts_file').as_posix() == '/etc/hosts'

    def test_comma_separated_lists(self, tmp_path):
        config = PortalConfig(config_path=str(tmp_path / 'missing.toml'),
                              overrides={'paths': {'allowed_roots': '/srv, /opt'}})
        assert [p.as_posix() for p in config.get_paths('paths', 'allowed_roots')] == ['/srv', '/opt']

    def test_secret_masked_in_export(self, tmp_path):
        config = PortalConfig(config_path=str(tmp_path / 'missing.toml'))
        assert config.to_dict()['server']['secret_key'] == '********'
        assert config.get('server', 'secret_key') != '********'
