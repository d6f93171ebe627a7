"""Tests for config.py - environment resolution and snapshots."""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (
    DEFAULTS,
    BootstrapPaths,
    ConfigError,
    ConfigurationSnapshot,
    load_env_file,
    read_snapshot,
    resolve_config,
    write_snapshot,
)


class TestResolveConfig:
    """Tests for resolve_config precedence and coverage."""

    def test_every_default_key_present(self):
        """Snapshot covers every recognized key even with an empty environment."""
        snapshot = resolve_config(environ={})
        assert set(DEFAULTS) <= set(snapshot)
        for key in DEFAULTS:
            assert snapshot[key] is not None

    def test_defaults_applied(self):
        """Unset keys take their documented defaults."""
        snapshot = resolve_config(environ={})
        assert snapshot['TLS_MODE'] == 'self-signed'
        assert snapshot['NGINX_LISTEN_PORT'] == '443'
        assert snapshot['WEBSSH2_LISTEN_PORT'] == '2222'
        assert snapshot['FIPS_MODE'] == 'enabled'

    def test_environment_overrides_default(self):
        """Process environment wins over defaults."""
        snapshot = resolve_config(environ={'NGINX_LISTEN_PORT': '8443'})
        assert snapshot['NGINX_LISTEN_PORT'] == '8443'

    def test_unrecognized_keys_ignored(self):
        """Only recognized keys end up in the snapshot."""
        snapshot = resolve_config(environ={'HOME': '/root', 'RANDOM_THING': 'x'})
        assert 'HOME' not in snapshot
        assert 'RANDOM_THING' not in snapshot

    def test_env_file_then_environment(self, tmp_path):
        """Env file overrides defaults; environment overrides env file."""
        env_file = tmp_path / 'webssh2.env'
        env_file.write_text("NGINX_LISTEN_PORT=9443\nNGINX_SERVER_NAME=ssh.example.com\n")

        snapshot = resolve_config(environ={'NGINX_LISTEN_PORT': '10443'}, env_file=env_file)

        assert snapshot['NGINX_LISTEN_PORT'] == '10443'
        assert snapshot['NGINX_SERVER_NAME'] == 'ssh.example.com'

    def test_missing_env_file_ignored(self, tmp_path):
        """A configured but absent env file is not an error."""
        snapshot = resolve_config(environ={}, env_file=tmp_path / 'absent.env')
        assert snapshot['TLS_MODE'] == 'self-signed'

    def test_port_mirrors_listen_port(self):
        """Legacy PORT follows WEBSSH2_LISTEN_PORT when unset."""
        snapshot = resolve_config(environ={'WEBSSH2_LISTEN_PORT': '3000'})
        assert snapshot['PORT'] == '3000'

    def test_uses_os_environ_by_default(self):
        """Without an explicit mapping the process environment is read."""
        with pytest.MonkeyPatch.context() as mp:
            mp.setenv('NGINX_SERVER_NAME', 'from-env.example')
            snapshot = resolve_config()
        assert snapshot['NGINX_SERVER_NAME'] == 'from-env.example'


class TestLoadEnvFile:
    """Tests for load_env_file formats."""

    def test_dotenv_format(self, tmp_path):
        """KEY=VALUE lines with comments, quotes and export prefix."""
        env_file = tmp_path / 'env'
        env_file.write_text(
            "# comment\n"
            "\n"
            "export TLS_MODE=provided\n"
            "NGINX_SERVER_NAME=\"ssh.example.com\"\n"
            "CSP_POLICY='default-src self'\n"
        )
        values = load_env_file(env_file)
        assert values == {
            'TLS_MODE': 'provided',
            'NGINX_SERVER_NAME': 'ssh.example.com',
            'CSP_POLICY': 'default-src self',
        }

    def test_malformed_line_skipped(self, tmp_path):
        """Lines without '=' are ignored."""
        env_file = tmp_path / 'env'
        env_file.write_text("NOT A SETTING\nTLS_MODE=provided\n")
        assert load_env_file(env_file) == {'TLS_MODE': 'provided'}

    def test_yaml_format(self, tmp_path):
        """YAML mapping values are stringified like environment values."""
        env_file = tmp_path / 'env.yaml'
        env_file.write_text("NGINX_LISTEN_PORT: 8443\nMTLS_ENABLED: true\nWEBSSH2_SSH_HOST:\n")
        values = load_env_file(env_file)
        assert values == {
            'NGINX_LISTEN_PORT': '8443',
            'MTLS_ENABLED': 'true',
            'WEBSSH2_SSH_HOST': '',
        }

    def test_yaml_not_mapping(self, tmp_path):
        """A YAML list is rejected."""
        env_file = tmp_path / 'env.yml'
        env_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_env_file(env_file)

    def test_yaml_invalid(self, tmp_path):
        """Malformed YAML raises ConfigError."""
        env_file = tmp_path / 'env.yaml'
        env_file.write_text("key: [unclosed\n")
        with pytest.raises(ConfigError):
            load_env_file(env_file)


class TestSnapshotAccessors:
    """Tests for ConfigurationSnapshot typed accessors."""

    def test_immutable(self):
        """Snapshot values cannot be reassigned."""
        snapshot = resolve_config(environ={})
        with pytest.raises(TypeError):
            snapshot['TLS_MODE'] = 'provided'

    def test_get_bool(self):
        snapshot = ConfigurationSnapshot({'A': 'true', 'B': 'FALSE', 'C': 'yes'})
        assert snapshot.get_bool('A') is True
        assert snapshot.get_bool('B') is False
        with pytest.raises(ConfigError) as exc_info:
            snapshot.get_bool('C')
        assert 'C' in str(exc_info.value)

    def test_get_int_range(self):
        snapshot = ConfigurationSnapshot({'PORT': '70000', 'N': 'abc', 'OK': '22'})
        assert snapshot.get_int('OK', minimum=1, maximum=65535) == 22
        with pytest.raises(ConfigError):
            snapshot.get_int('PORT', minimum=1, maximum=65535)
        with pytest.raises(ConfigError):
            snapshot.get_int('N')

    @pytest.mark.parametrize('raw', ['²', '٣', '1²', '-1', '4 4'])
    def test_get_int_rejects_non_ascii_digits(self, raw):
        """Unicode digits are a ConfigError, never a ValueError from int()."""
        with pytest.raises(ConfigError):
            ConfigurationSnapshot({'N': raw}).get_int('N')

    def test_get_choice(self):
        snapshot = ConfigurationSnapshot({'MODE': 'weird'})
        with pytest.raises(ConfigError) as exc_info:
            snapshot.get_choice('MODE', ('a', 'b'))
        assert 'Valid values: a, b' in str(exc_info.value)

    def test_masked_hides_secrets(self):
        """Secrets are masked only when set."""
        snapshot = resolve_config(environ={'WEBSSH2_SESSION_SECRET': 's3cret'})
        masked = snapshot.masked()
        assert masked['WEBSSH2_SESSION_SECRET'] == '********'
        assert masked['WEBSSH2_USER_PASSWORD'] == ''
        assert masked['TLS_MODE'] == 'self-signed'


class TestSnapshotFile:
    """Tests for write_snapshot / read_snapshot."""

    def test_roundtrip_with_special_values(self, tmp_path):
        """Quotes, spaces and multi-line PEM values survive serialization."""
        pem = "-----BEGIN CERTIFICATE-----\nMIIB'x\n-----END CERTIFICATE-----"
        snapshot = resolve_config(environ={
            'TLS_CERT_CONTENT': pem,
            'CSP_POLICY': "default-src 'self'; script-src 'self'",
        })
        path = tmp_path / 'run' / 'webssh2-env'

        write_snapshot(snapshot, path)
        loaded = read_snapshot(path)

        assert loaded['TLS_CERT_CONTENT'] == pem
        assert loaded['CSP_POLICY'] == "default-src 'self'; script-src 'self'"
        assert dict(loaded) == dict(snapshot)

    def test_written_file_mode(self, tmp_path):
        """Snapshot may hold secrets and is private to the owner."""
        path = tmp_path / 'webssh2-env'
        write_snapshot(resolve_config(environ={}), path)
        assert (os.stat(path).st_mode & 0o777) == 0o600

    def test_read_missing(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            read_snapshot(tmp_path / 'absent')
        assert "run 'init' first" in str(exc_info.value)

    def test_read_unreadable(self, tmp_path):
        """An existing path that cannot be read is a ConfigError, not an OSError."""
        path = tmp_path / 'webssh2-env'
        path.mkdir()
        with pytest.raises(ConfigError) as exc_info:
            read_snapshot(path)
        assert 'Cannot read' in str(exc_info.value)

    def test_read_fills_defaults(self, tmp_path):
        """Keys absent from an older snapshot fall back to defaults."""
        path = tmp_path / 'webssh2-env'
        path.write_text("export TLS_MODE=provided\n")
        loaded = read_snapshot(path)
        assert loaded['TLS_MODE'] == 'provided'
        assert loaded['NGINX_LISTEN_PORT'] == DEFAULTS['NGINX_LISTEN_PORT']


class TestBootstrapPaths:
    """Tests for BootstrapPaths layout."""

    def test_derived_paths(self):
        paths = BootstrapPaths()
        assert paths.certs_dir == Path('/etc/nginx/certs')
        assert paths.dhparam_file == Path('/etc/nginx/certs/dhparam.pem')
        assert paths.nginx_conf == Path('/etc/nginx/nginx.conf')

    def test_under_rebases_every_path(self, tmp_path):
        paths = BootstrapPaths.under(tmp_path)
        assert paths.nginx_root == tmp_path / 'etc/nginx'
        assert paths.fips_flag_file == tmp_path / 'proc/sys/crypto/fips_enabled'
        assert paths.nginx_user == 'nginx'

    def test_under_overrides(self, tmp_path):
        paths = BootstrapPaths.under(tmp_path, nginx_bin='/opt/nginx/sbin/nginx')
        assert paths.nginx_bin == '/opt/nginx/sbin/nginx'
