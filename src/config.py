"""Environment resolution for container initialization.

Configuration comes from the process environment and, optionally, a mounted
env file:
- *.yaml / *.yml: a flat mapping of KEY: value
- anything else: KEY=VALUE lines (shell-style, `export` prefix allowed)

Resolution order (later wins): built-in defaults → env file → process env.
Only recognized keys are taken. The result is an immutable snapshot that is
passed to every bootstrap stage and serialized for out-of-process consumers.
"""

import dataclasses
import logging
import os
import re
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Configuration error."""


DEFAULT_CSP_POLICY = (
    "default-src 'self'; script-src 'self' 'unsafe-eval'; "
    "style-src 'self' 'unsafe-inline'; connect-src 'self' ws: wss:; "
    "font-src 'self'; img-src 'self' data:;"
)

FIPS_APPROVED_CIPHERS = (
    "ECDHE-RSA-AES256-GCM-SHA384:ECDHE-RSA-AES128-GCM-SHA256:"
    "AES256-GCM-SHA384:AES128-GCM-SHA256"
)

# Every recognized key with its default. Empty string means "optional, unset".
DEFAULTS: dict[str, str] = {
    # TLS
    'TLS_MODE': 'self-signed',
    'TLS_CERT_PATH': '/etc/nginx/certs/cert.pem',
    'TLS_KEY_PATH': '/etc/nginx/certs/key.pem',
    'TLS_CHAIN_PATH': '',
    'TLS_CERT_CONTENT': '',
    'TLS_KEY_CONTENT': '',
    'TLS_CHAIN_CONTENT': '',
    'TLS_PROTOCOLS': 'TLSv1.2 TLSv1.3',
    'TLS_CIPHERS': FIPS_APPROVED_CIPHERS,
    'TLS_DH_SIZE': '2048',
    'TLS_CERT_DAYS': '365',
    'TLS_CERT_BITS': '2048',
    'TLS_CERT_CN': '',
    'TLS_CERT_COUNTRY': 'US',
    'TLS_CERT_STATE': 'CA',
    'TLS_CERT_CITY': 'San Francisco',
    'TLS_CERT_ORG': 'WebSSH2',
    'TLS_CERT_OU': 'WebSSH2 Container',
    'TLS_CERT_SAN': '',

    # mTLS
    'MTLS_ENABLED': 'false',
    'MTLS_CA_CERT': '',
    'MTLS_VERIFY_DEPTH': '2',
    'MTLS_CRL_PATH': '',
    'MTLS_OPTIONAL': 'false',

    # FIPS
    'FIPS_MODE': 'enabled',
    'FIPS_CHECK': 'true',

    # NGINX
    'NGINX_LISTEN_PORT': '443',
    'NGINX_SERVER_NAME': '_',
    'NGINX_WORKER_PROCESSES': 'auto',
    'NGINX_WORKER_CONNECTIONS': '1024',
    'NGINX_KEEPALIVE_TIMEOUT': '65',
    'NGINX_CLIENT_MAX_BODY_SIZE': '1m',
    'NGINX_PROXY_READ_TIMEOUT': '3600s',
    'NGINX_PROXY_SEND_TIMEOUT': '3600s',
    'NGINX_RATE_LIMIT': '10r/s',
    'NGINX_RATE_LIMIT_BURST': '20',
    'NGINX_CONN_LIMIT': '100',
    'NGINX_GZIP': 'on',
    'NGINX_ACCESS_LOG': 'off',
    'NGINX_ERROR_LOG_LEVEL': 'warn',

    # Security headers
    'SECURITY_HEADERS': 'true',
    'HSTS_MAX_AGE': '31536000',
    'CSP_POLICY': DEFAULT_CSP_POLICY,

    # WebSSH2 core
    'WEBSSH2_LISTEN_IP': '127.0.0.1',
    'WEBSSH2_LISTEN_PORT': '2222',

    # WebSSH2 SSH
    'WEBSSH2_SSH_HOST': '',
    'WEBSSH2_SSH_PORT': '22',
    'WEBSSH2_SSH_TERM': 'xterm-256color',
    'WEBSSH2_SSH_READY_TIMEOUT': '20000',
    'WEBSSH2_SSH_KEEPALIVE_INTERVAL': '120000',
    'WEBSSH2_SSH_KEEPALIVE_COUNT_MAX': '10',
    'WEBSSH2_SSH_ALGORITHMS_PRESET': 'modern',
    'WEBSSH2_SSH_ALGORITHMS_KEX': '',
    'WEBSSH2_SSH_ALGORITHMS_CIPHER': '',
    'WEBSSH2_SSH_ALGORITHMS_HMAC': '',
    'WEBSSH2_SSH_ALGORITHMS_COMPRESS': '',
    'WEBSSH2_SSH_ALGORITHMS_SERVER_HOST_KEY': '',

    # WebSSH2 session
    'WEBSSH2_SESSION_NAME': 'webssh2.sid',
    'WEBSSH2_SESSION_SECRET': '',

    # WebSSH2 header
    'WEBSSH2_HEADER_TEXT': '',
    'WEBSSH2_HEADER_BACKGROUND': 'green',

    # WebSSH2 options
    'WEBSSH2_OPTIONS_CHALLENGE_BUTTON': 'true',
    'WEBSSH2_OPTIONS_AUTO_LOG': 'false',
    'WEBSSH2_OPTIONS_ALLOW_REAUTH': 'true',
    'WEBSSH2_OPTIONS_ALLOW_RECONNECT': 'true',
    'WEBSSH2_OPTIONS_ALLOW_REPLAY': 'true',

    # WebSSH2 CORS (derived from NGINX_SERVER_NAME/NGINX_LISTEN_PORT when empty)
    'WEBSSH2_HTTP_ORIGINS': '',

    # WebSSH2 default credentials (empty for security)
    'WEBSSH2_USER_NAME': '',
    'WEBSSH2_USER_PASSWORD': '',
    'WEBSSH2_USER_PRIVATE_KEY': '',
    'WEBSSH2_USER_PASSPHRASE': '',

    # Misc
    'DEBUG': '',
    'PORT': '',
}

# Keys whose values are never printed
SECRET_KEYS = frozenset({
    'TLS_KEY_CONTENT',
    'WEBSSH2_SESSION_SECRET',
    'WEBSSH2_USER_PASSWORD',
    'WEBSSH2_USER_PRIVATE_KEY',
    'WEBSSH2_USER_PASSPHRASE',
})

TRUE_VALUES = ('true',)
FALSE_VALUES = ('false',)
DIGITS_RE = re.compile(r'[0-9]+')


class ConfigurationSnapshot(Mapping):
    """Immutable view of the resolved configuration.

    Every key in DEFAULTS is present. Typed accessors validate on read and
    raise ConfigError naming the offending key.
    """

    def __init__(self, values: Mapping):
        self._values = MappingProxyType(dict(values))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ConfigurationSnapshot({len(self)} keys)"

    def get_bool(self, key: str) -> bool:
        """Return key as a boolean; only 'true'/'false' are accepted."""
        value = self._values.get(key, '').strip().lower()
        if value in TRUE_VALUES:
            return True
        if value in FALSE_VALUES:
            return False
        raise ConfigError(f"Invalid {key} value: '{self._values.get(key, '')}' (expected true or false)")

    def get_int(self, key: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
        """Return key as an integer, optionally range-checked."""
        raw = self._values.get(key, '').strip()
        if not DIGITS_RE.fullmatch(raw):
            raise ConfigError(f"Invalid {key}: '{raw}' (expected a number)")
        value = int(raw)
        if minimum is not None and value < minimum:
            raise ConfigError(f"Invalid {key}: {value} (minimum {minimum})")
        if maximum is not None and value > maximum:
            raise ConfigError(f"Invalid {key}: {value} (maximum {maximum})")
        return value

    def get_choice(self, key: str, choices: tuple[str, ...]) -> str:
        """Return key, requiring it to be one of choices."""
        value = self._values.get(key, '')
        if value not in choices:
            raise ConfigError(f"Invalid {key}: '{value}'. Valid values: {', '.join(choices)}")
        return value

    def masked(self) -> dict[str, str]:
        """Return a plain dict with secret values hidden."""
        return {
            key: ('********' if key in SECRET_KEYS and value else value)
            for key, value in self._values.items()
        }


@dataclass
class BootstrapPaths:
    """Filesystem layout used by the bootstrap stages and the supervisor."""
    nginx_root: Path = Path('/etc/nginx')
    template_root: Path = Path('/etc/nginx')
    nginx_log_dir: Path = Path('/var/log/nginx')
    nginx_run_dir: Path = Path('/run/nginx')
    webssh2_dir: Path = Path('/usr/src/webssh2')
    webssh2_log_dir: Path = Path('/var/log/webssh2')
    env_file: Path = Path('/etc/webssh2-env')
    backend_envdir: Path = Path('/run/webssh2/env')
    report_dir: Path = Path('/run/webssh2-init')
    fips_flag_file: Path = Path('/proc/sys/crypto/fips_enabled')
    nginx_user: str = 'nginx'
    nginx_group: str = 'nginx'
    webssh2_user: str = 'webssh2'
    webssh2_group: str = 'webssh2'
    nginx_bin: str = 'nginx'
    node_bin: str = 'node'

    @property
    def certs_dir(self) -> Path:
        return self.nginx_root / 'certs'

    @property
    def snippets_dir(self) -> Path:
        return self.nginx_root / 'snippets'

    @property
    def dhparam_file(self) -> Path:
        return self.certs_dir / 'dhparam.pem'

    @property
    def nginx_conf(self) -> Path:
        return self.nginx_root / 'nginx.conf'

    @classmethod
    def under(cls, root: Path, **overrides) -> "BootstrapPaths":
        """Create a layout with every default path rebased under root."""
        values = {}
        for f in dataclasses.fields(cls):
            default = f.default
            if isinstance(default, Path):
                values[f.name] = root / default.relative_to('/')
        values.update(overrides)
        return cls(**values)


def _stringify(value) -> str:
    """Render a YAML scalar the way it would appear in an environment."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _parse_dotenv(text: str) -> dict[str, str]:
    """Parse KEY=VALUE lines."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()
        if '=' not in line:
            logger.warning(f"Ignoring malformed env line: {raw_line!r}")
            continue
        key, value = line.split('=', 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        values[key.strip()] = value
    return values


def load_env_file(path: Path) -> dict[str, str]:
    """Load a mounted env file (YAML mapping or KEY=VALUE lines).

    Returns an empty dict when the file does not exist.

    Raises:
        ConfigError: If a YAML file is malformed or not a mapping
    """
    if not path.exists():
        return {}

    text = path.read_text(encoding='utf-8')
    if path.suffix in ('.yaml', '.yml'):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping of KEY: value")
        return {str(k): _stringify(v) for k, v in data.items()}

    return _parse_dotenv(text)


def resolve_config(
    environ: Optional[Mapping] = None,
    env_file: Optional[Path] = None,
) -> ConfigurationSnapshot:
    """Build the configuration snapshot.

    Args:
        environ: Process environment (default: os.environ)
        env_file: Optional mounted env file

    Returns:
        ConfigurationSnapshot covering every recognized key
    """
    if environ is None:
        environ = os.environ

    values = dict(DEFAULTS)

    if env_file is not None:
        file_values = load_env_file(env_file)
        if file_values:
            logger.info(f"Loaded {len(file_values)} values from {env_file}")
        for key, value in file_values.items():
            if key in DEFAULTS:
                values[key] = value
            else:
                logger.debug(f"Ignoring unrecognized key in {env_file}: {key}")

    for key in DEFAULTS:
        if key in environ:
            values[key] = environ[key]

    # Legacy PORT mirrors the backend listen port
    if not values['PORT']:
        values['PORT'] = values['WEBSSH2_LISTEN_PORT']

    return ConfigurationSnapshot(values)


def write_snapshot(snapshot: ConfigurationSnapshot, path: Path) -> None:
    """Serialize the snapshot as a shell-sourceable env file (mode 0600)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"export {key}={shlex.quote(value)}" for key, value in sorted(snapshot.items())]
    path.write_text('\n'.join(lines) + '\n', encoding='utf-8')
    os.chmod(path, 0o600)
    logger.debug(f"Wrote configuration snapshot to {path}")


def read_snapshot(path: Path) -> ConfigurationSnapshot:
    """Load a snapshot previously written by write_snapshot.

    Keys missing from the file fall back to DEFAULTS.

    Raises:
        ConfigError: If the file does not exist or cannot be parsed
    """
    if not path.exists():
        raise ConfigError(f"Configuration snapshot not found: {path} (run 'init' first)")
    try:
        text = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    try:
        tokens = shlex.split(text, comments=True)
    except ValueError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    values = dict(DEFAULTS)
    for token in tokens:
        if token == 'export' or '=' not in token:
            continue
        key, value = token.split('=', 1)
        if key in DEFAULTS:
            values[key] = value
    return ConfigurationSnapshot(values)
