"""WebSSH2 backend configuration stage.

Builds the backend process environment from the snapshot, applies the SSH
algorithm policy (FIPS-safe presets and algorithm lists), validates the
installed application and exports the environment as an envdir
(one file per variable) for the supervisor.
"""

import base64
import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from common import StageResult, ensure_dir, run_command, set_mode, set_owner
from config import BootstrapPaths, ConfigError, ConfigurationSnapshot
from stages import register_stage
from stages.fips import FipsDecision, FipsState

logger = logging.getLogger(__name__)

ALGORITHM_PRESETS = ('modern', 'legacy', 'strict')
FIPS_SAFE_PRESETS = ('modern', 'strict')

FIPS_ALGORITHMS = {
    'WEBSSH2_SSH_ALGORITHMS_KEX': 'ecdh-sha2-nistp256,ecdh-sha2-nistp384,ecdh-sha2-nistp521',
    'WEBSSH2_SSH_ALGORITHMS_CIPHER': 'aes256-gcm@openssh.com,aes128-gcm@openssh.com,aes256-ctr,aes128-ctr',
    'WEBSSH2_SSH_ALGORITHMS_HMAC': 'hmac-sha2-256,hmac-sha2-512',
    'WEBSSH2_SSH_ALGORITHMS_COMPRESS': 'none,zlib@openssh.com',
    'WEBSSH2_SSH_ALGORITHMS_SERVER_HOST_KEY': 'ecdsa-sha2-nistp256,ecdsa-sha2-nistp384,ecdsa-sha2-nistp521,ssh-rsa',
}

MIN_NODE_MAJOR = 18

_IPV4_RE = re.compile(r'^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$')
_DIGITS_RE = re.compile(r'[0-9]+')


class BackendConfigError(Exception):
    """Backend environment or installation is invalid."""


def generate_session_secret() -> str:
    """32 random bytes, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(32)).decode('ascii')


def default_origins(server_name: str, port: str) -> str:
    return ','.join([
        f"https://{server_name}:{port}",
        f"https://localhost:{port}",
        f"https://127.0.0.1:{port}",
    ])


def build_backend_env(
    snapshot: ConfigurationSnapshot,
    fips: FipsDecision,
) -> tuple[dict[str, str], list[str]]:
    """Derive the backend process environment.

    Args:
        snapshot: Resolved configuration
        fips: FIPS decision from the fips stage

    Returns:
        Tuple of (environment, warnings). Empty values are omitted.

    Raises:
        ConfigError: Unknown SSH algorithm preset
    """
    warnings = []
    env = {
        key: value
        for key, value in snapshot.items()
        if key.startswith('WEBSSH2_') or key in ('DEBUG', 'PORT')
    }

    preset = snapshot.get_choice('WEBSSH2_SSH_ALGORITHMS_PRESET', ALGORITHM_PRESETS)

    if not env.get('WEBSSH2_SESSION_SECRET'):
        logger.info("[WebSSH2] Generating random session secret...")
        env['WEBSSH2_SESSION_SECRET'] = generate_session_secret()
        warning = "[WebSSH2] Using generated session secret (not persistent); set WEBSSH2_SESSION_SECRET for production"
        logger.warning(warning)
        warnings.append(warning)

    if not env.get('WEBSSH2_HTTP_ORIGINS'):
        env['WEBSSH2_HTTP_ORIGINS'] = default_origins(snapshot['NGINX_SERVER_NAME'], snapshot['NGINX_LISTEN_PORT'])

    env['PORT'] = env['WEBSSH2_LISTEN_PORT']

    if fips.enabled:
        logger.info("[WebSSH2] Configuring SSH algorithms for FIPS mode...")
        if preset in FIPS_SAFE_PRESETS:
            logger.info("[WebSSH2] Using FIPS-compatible algorithm preset")
        else:
            logger.warning(f"[WebSSH2] Forcing 'modern' algorithm preset for FIPS compliance (was '{preset}')")
            preset = 'modern'
        for key, algorithms in FIPS_ALGORITHMS.items():
            if not env.get(key):
                env[key] = algorithms
    env['WEBSSH2_SSH_ALGORITHMS_PRESET'] = preset

    return {key: value for key, value in env.items() if value}, warnings


def _check_port(env: dict[str, str], key: str) -> None:
    value = env.get(key, '')
    if not _DIGITS_RE.fullmatch(value) or not 1 <= int(value) <= 65535:
        raise BackendConfigError(f"Invalid {key}: {value}")


def node_major_version(paths: BootstrapPaths, runner: Callable = run_command) -> tuple[int, str]:
    """Return (major, full version) reported by `node --version`.

    Raises:
        BackendConfigError: If node is missing or prints something unexpected
    """
    rc, out, err = runner([paths.node_bin, '--version'], timeout=30)
    if rc != 0:
        raise BackendConfigError(f"Node.js not available: {(err or out).strip() or rc}")
    version = out.strip().lstrip('v')
    major = version.split('.', 1)[0]
    if not _DIGITS_RE.fullmatch(major):
        raise BackendConfigError(f"Cannot parse Node.js version: {out.strip()!r}")
    return int(major), version


def validate_backend(
    env: dict[str, str],
    paths: BootstrapPaths,
    runner: Callable = run_command,
) -> str:
    """Validate the backend installation and environment.

    Returns:
        Node.js version string

    Raises:
        BackendConfigError: On the first failed check
    """
    logger.info("[WebSSH2] Validating configuration...")

    if not (paths.webssh2_dir / 'node_modules').is_dir():
        raise BackendConfigError(
            f"Node.js modules not found in {paths.webssh2_dir}; run 'npm install' in the WebSSH2 directory"
        )

    main_file = paths.webssh2_dir / 'dist' / 'index.js'
    if not main_file.is_file():
        raise BackendConfigError(f"WebSSH2 main file not found: {main_file}")

    _check_port(env, 'WEBSSH2_LISTEN_PORT')
    _check_port(env, 'WEBSSH2_SSH_PORT')

    listen_ip = env.get('WEBSSH2_LISTEN_IP', '')
    if not _IPV4_RE.match(listen_ip) and listen_ip not in ('0.0.0.0', '127.0.0.1'):
        raise BackendConfigError(f"Invalid WEBSSH2_LISTEN_IP: {listen_ip}")

    major, version = node_major_version(paths, runner)
    if major < MIN_NODE_MAJOR:
        raise BackendConfigError(
            f"Node.js version {version} is not supported; WebSSH2 requires Node.js {MIN_NODE_MAJOR} or higher"
        )

    logger.info("[WebSSH2] Configuration validation passed")
    return version


def write_envdir(env: dict[str, str], envdir: Path, user: str = None, group: str = None) -> None:
    """Export env as one file per variable (filename=name, content=value).

    Stale files from a previous run are removed first.
    """
    envdir.mkdir(parents=True, exist_ok=True)
    for existing in envdir.iterdir():
        if existing.is_file() and existing.name not in env:
            existing.unlink()

    for name, value in env.items():
        path = envdir / name
        path.write_text(value, encoding='utf-8')
        set_mode(path, 0o600)
        if user:
            set_owner(path, user, group)
    if user:
        set_owner(envdir, user, group)
    set_mode(envdir, 0o700)


def read_envdir(envdir: Path) -> dict[str, str]:
    """Load an envdir written by write_envdir. Missing directory -> {}."""
    if not envdir.is_dir():
        return {}
    return {
        path.name: path.read_text(encoding='utf-8')
        for path in sorted(envdir.iterdir())
        if path.is_file()
    }


def log_summary(env: dict[str, str], fips: FipsDecision, node_version: str) -> None:
    logger.info("[WebSSH2] Configuration Summary:")
    logger.info(f"[WebSSH2]   Listen Address: {env.get('WEBSSH2_LISTEN_IP')}:{env.get('WEBSSH2_LISTEN_PORT')}")
    logger.info(f"[WebSSH2]   SSH Host: {env.get('WEBSSH2_SSH_HOST', '(dynamic)')}")
    logger.info(f"[WebSSH2]   SSH Port: {env.get('WEBSSH2_SSH_PORT')}")
    logger.info(f"[WebSSH2]   Terminal: {env.get('WEBSSH2_SSH_TERM')}")
    logger.info(f"[WebSSH2]   Algorithm Preset: {env.get('WEBSSH2_SSH_ALGORITHMS_PRESET')}")
    logger.info(f"[WebSSH2]   Session Name: {env.get('WEBSSH2_SESSION_NAME')}")
    logger.info(f"[WebSSH2]   Allow Reauth: {env.get('WEBSSH2_OPTIONS_ALLOW_REAUTH')}")
    logger.info(f"[WebSSH2]   Allow Reconnect: {env.get('WEBSSH2_OPTIONS_ALLOW_RECONNECT')}")
    logger.info(f"[WebSSH2]   FIPS Mode: {fips.state.value}")
    logger.info(f"[WebSSH2]   Node.js Version: {node_version}")


@register_stage
@dataclass
class BackendConfigStage:
    """Prepare the WebSSH2 backend environment."""
    paths: BootstrapPaths
    runner: Callable = run_command

    name = 'webssh2'
    description = 'Configure WebSSH2 backend environment'
    exit_code = 40

    def run(self, snapshot: ConfigurationSnapshot, context: dict) -> StageResult:
        """Build, validate and export the backend environment."""
        start = time.time()
        fips = context.get('fips') or FipsDecision(FipsState.DISABLED)
        logger.info("[WebSSH2] Configuring WebSSH2...")

        try:
            env, warnings = build_backend_env(snapshot, fips)
            node_version = validate_backend(env, self.paths, self.runner)
        except (ConfigError, BackendConfigError) as e:
            return StageResult(
                success=False,
                message=f"[WebSSH2] ERROR: {e}",
                duration=time.time() - start,
            )

        paths = self.paths
        ensure_dir(paths.webssh2_log_dir, paths.webssh2_user, paths.webssh2_group)
        set_owner(paths.webssh2_dir, paths.webssh2_user, paths.webssh2_group)
        write_envdir(env, paths.backend_envdir, paths.webssh2_user, paths.webssh2_group)
        logger.info(f"[WebSSH2] Exported {len(env)} variables to {paths.backend_envdir}")

        log_summary(env, fips, node_version)
        return StageResult(
            success=True,
            message=f"Backend configured (Node.js {node_version})",
            duration=time.time() - start,
            warnings=warnings,
            context_updates={'backend_env': env},
        )
