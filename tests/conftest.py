"""Shared pytest fixtures for webssh2-init tests."""

import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import BootstrapPaths, resolve_config  # noqa: E402

requires_openssl = pytest.mark.skipif(shutil.which('openssl') is None, reason="openssl not installed")


class FakeRunner:
    """Stand-in for common.run_command.

    Responses are matched on the leading command words; unmatched commands
    succeed with empty output. Every call is recorded.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, cmd, cwd=None, timeout=600, capture=True, env=None):
        self.calls.append(list(cmd))
        for prefix, response in self.responses.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                return response(cmd) if callable(response) else response
        return 0, '', ''

    def commands(self, first_word):
        return [c for c in self.calls if Path(c[0]).name == first_word]


@pytest.fixture
def paths(tmp_path):
    """Filesystem layout rebased under tmp_path."""
    layout = BootstrapPaths.under(tmp_path)
    layout.fips_flag_file.parent.mkdir(parents=True, exist_ok=True)
    return layout


@pytest.fixture
def make_snapshot(paths):
    """Factory: snapshot with cert paths inside the temp layout.

    FIPS is disabled unless overridden so tests do not depend on the host.
    """
    def _make(**overrides):
        environ = {
            'FIPS_MODE': 'disabled',
            'TLS_CERT_PATH': str(paths.certs_dir / 'cert.pem'),
            'TLS_KEY_PATH': str(paths.certs_dir / 'key.pem'),
        }
        environ.update({k: str(v) for k, v in overrides.items()})
        return resolve_config(environ=environ)
    return _make


@pytest.fixture
def fake_runner():
    """Factory for FakeRunner instances."""
    return FakeRunner


@pytest.fixture
def webssh2_install(paths):
    """Minimal installed WebSSH2 tree (node_modules + dist/index.js)."""
    (paths.webssh2_dir / 'node_modules').mkdir(parents=True)
    (paths.webssh2_dir / 'dist').mkdir(parents=True)
    (paths.webssh2_dir / 'dist' / 'index.js').write_text("// app\n")
    return paths.webssh2_dir
