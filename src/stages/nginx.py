"""NGINX configuration stage.

Renders the nginx templates from the resolved configuration, applies FIPS
cipher/protocol overrides and the access log switch, validates the result
with `nginx -t` and fixes ownership and permissions.

Substitution is restricted to TEMPLATE_VARIABLES so nginx's own runtime
variables ($host, $remote_addr, ...) pass through untouched.
"""

import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from common import StageResult, ensure_dir, run_command, set_mode, set_owner
from config import FIPS_APPROVED_CIPHERS, BootstrapPaths, ConfigError, ConfigurationSnapshot
from stages import register_stage
from stages.fips import FipsDecision, FipsState

logger = logging.getLogger(__name__)

BUNDLED_TEMPLATE_DIR = Path(__file__).parent / 'templates'

TEMPLATE_VARIABLES = frozenset({
    'NGINX_WORKER_PROCESSES',
    'NGINX_WORKER_CONNECTIONS',
    'NGINX_KEEPALIVE_TIMEOUT',
    'NGINX_CLIENT_MAX_BODY_SIZE',
    'NGINX_PROXY_READ_TIMEOUT',
    'NGINX_PROXY_SEND_TIMEOUT',
    'NGINX_RATE_LIMIT',
    'NGINX_RATE_LIMIT_BURST',
    'NGINX_CONN_LIMIT',
    'NGINX_GZIP',
    'NGINX_ERROR_LOG_LEVEL',
    'NGINX_SERVER_NAME',
    'NGINX_LISTEN_PORT',
    'WEBSSH2_LISTEN_PORT',
    'TLS_CERT_PATH',
    'TLS_KEY_PATH',
    'TLS_PROTOCOLS',
    'TLS_CIPHERS',
    'SECURITY_HEADERS',
    'HSTS_MAX_AGE',
    'CSP_POLICY',
})

# (template, output) relative to the template root / nginx root; first is primary
TEMPLATES = [
    ('nginx.conf.template', 'nginx.conf'),
    ('conf.d/webssh2.conf.template', 'conf.d/webssh2.conf'),
    ('snippets/security-headers.conf.template', 'snippets/security-headers.conf'),
    ('snippets/ssl-params.conf.template', 'snippets/ssl-params.conf'),
]

FIPS_PROTOCOLS = 'TLSv1.2 TLSv1.3'
ACCESS_LOG_VALUES = ('on', 'off')

_VARIABLE_RE = re.compile(r'\$(\{)?([A-Za-z_][A-Za-z0-9_]*)(?(1)\})')
_ACCESS_LOG_RE = re.compile(r'^(\s*)access_log\s+[^;]*;', re.MULTILINE)


class RenderError(Exception):
    """Template rendering or nginx validation error."""


def substitute(text: str, values: Mapping[str, str], allowed=TEMPLATE_VARIABLES) -> str:
    """Replace $NAME / ${NAME} for allow-listed names only."""
    def _replace(match: re.Match) -> str:
        name = match.group(2)
        if name in allowed:
            return values.get(name, '')
        return match.group(0)

    return _VARIABLE_RE.sub(_replace, text)


def find_template(paths: BootstrapPaths, relative: str) -> Path:
    """Locate a template, preferring the template root over the bundled copy.

    Raises:
        RenderError: If neither location has the template
    """
    for candidate in (paths.template_root / relative, BUNDLED_TEMPLATE_DIR / relative):
        if candidate.is_file():
            return candidate
    raise RenderError(f"Template file not found: {paths.template_root / relative}")


def check_config(paths: BootstrapPaths, runner: Callable = run_command) -> None:
    """Run nginx's syntax check on the main config.

    Raises:
        RenderError: If nginx rejects the configuration
    """
    rc, out, err = runner([paths.nginx_bin, '-t', '-c', str(paths.nginx_conf)], timeout=60)
    if rc != 0:
        detail = (err or out).strip()
        raise RenderError(f"Invalid NGINX configuration: {detail}")


def render_templates(
    snapshot: ConfigurationSnapshot,
    paths: BootstrapPaths,
    runner: Callable = run_command,
) -> list[Path]:
    """Render every template; the primary config is syntax-checked right away.

    Returns:
        Rendered output paths in template order
    """
    headers_enabled = snapshot.get_bool('SECURITY_HEADERS')
    rendered = []

    for index, (template_rel, output_rel) in enumerate(TEMPLATES):
        output = paths.nginx_root / output_rel
        output.parent.mkdir(parents=True, exist_ok=True)

        if output_rel.endswith('security-headers.conf') and not headers_enabled:
            logger.info("[NGINX] Security headers disabled")
            output.write_text("# security headers disabled\n", encoding='utf-8')
            rendered.append(output)
            continue

        template = find_template(paths, template_rel)
        logger.info(f"[NGINX] Processing template: {template} -> {output}")
        output.write_text(substitute(template.read_text(encoding='utf-8'), snapshot), encoding='utf-8')
        rendered.append(output)

        if index == 0:
            try:
                check_config(paths, runner)
            except RenderError as e:
                raise RenderError(f"Invalid NGINX configuration generated from {template}: {e}") from e

    return rendered


def apply_fips_overrides(ssl_params: Path) -> None:
    """Force FIPS-approved ciphers and TLS 1.2/1.3 in the ssl-params snippet."""
    text = ssl_params.read_text(encoding='utf-8')
    text = re.sub(r'^(\s*)ssl_ciphers\s+[^;]*;', rf'\g<1>ssl_ciphers {FIPS_APPROVED_CIPHERS};', text, flags=re.MULTILINE)
    text = re.sub(r'^(\s*)ssl_protocols\s+[^;]*;', rf'\g<1>ssl_protocols {FIPS_PROTOCOLS};', text, flags=re.MULTILINE)
    ssl_params.write_text(text, encoding='utf-8')


def add_dhparam(ssl_params: Path, dhparam: Path) -> None:
    """Reference generated DH parameters from the ssl-params snippet."""
    text = ssl_params.read_text(encoding='utf-8')
    if 'ssl_dhparam' in text:
        return
    ssl_params.write_text(text.rstrip('\n') + f"\nssl_dhparam {dhparam};\n", encoding='utf-8')


def disable_access_log(nginx_conf: Path) -> None:
    """Turn access_log directives off, leaving error_log alone."""
    text = nginx_conf.read_text(encoding='utf-8')
    nginx_conf.write_text(_ACCESS_LOG_RE.sub(r'\g<1>access_log off;', text), encoding='utf-8')


def fix_permissions(snapshot: ConfigurationSnapshot, paths: BootstrapPaths) -> None:
    """Set ownership/permissions on the config tree, certs and runtime dirs."""
    ensure_dir(paths.nginx_log_dir, paths.nginx_user, paths.nginx_group)
    ensure_dir(paths.nginx_run_dir, paths.nginx_user, paths.nginx_group)

    for dirpath, dirnames, filenames in os.walk(paths.nginx_root):
        directory = Path(dirpath)
        set_owner(directory, paths.nginx_user, paths.nginx_group)
        set_mode(directory, 0o755)
        for filename in filenames:
            file_path = directory / filename
            set_owner(file_path, paths.nginx_user, paths.nginx_group)
            if filename.endswith('.conf'):
                set_mode(file_path, 0o644)

    cert_path = Path(snapshot['TLS_CERT_PATH'])
    key_path = Path(snapshot['TLS_KEY_PATH'])
    if cert_path.is_file():
        set_owner(cert_path, paths.nginx_user, paths.nginx_group)
        set_mode(cert_path, 0o644)
    if key_path.is_file():
        set_owner(key_path, paths.nginx_user, paths.nginx_group)
        set_mode(key_path, 0o600)


def configure_nginx(
    snapshot: ConfigurationSnapshot,
    fips: FipsDecision,
    paths: BootstrapPaths,
    runner: Callable = run_command,
) -> list[Path]:
    """Render and validate the complete nginx configuration.

    Raises:
        ConfigError: Invalid NGINX_ACCESS_LOG / SECURITY_HEADERS values
        RenderError: Missing template or nginx syntax check failure
    """
    access_log = snapshot.get_choice('NGINX_ACCESS_LOG', ACCESS_LOG_VALUES)

    rendered = render_templates(snapshot, paths, runner)
    ssl_params = paths.nginx_root / 'snippets/ssl-params.conf'

    if fips.enabled:
        logger.info("[NGINX] Configuring FIPS-approved cipher suites...")
        apply_fips_overrides(ssl_params)
    elif paths.dhparam_file.exists():
        logger.info(f"[NGINX] Using DH parameters from {paths.dhparam_file}")
        add_dhparam(ssl_params, paths.dhparam_file)

    if access_log == 'off':
        logger.info("[NGINX] Disabling access logs")
        disable_access_log(paths.nginx_conf)

    logger.info("[NGINX] Testing NGINX configuration...")
    check_config(paths, runner)
    logger.info("[NGINX] NGINX configuration is valid")

    fix_permissions(snapshot, paths)
    return rendered


def log_summary(snapshot: ConfigurationSnapshot) -> None:
    logger.info("[NGINX] Configuration Summary:")
    logger.info(f"[NGINX]   Listen Port: {snapshot['NGINX_LISTEN_PORT']} (HTTPS only)")
    logger.info(f"[NGINX]   Server Name: {snapshot['NGINX_SERVER_NAME']}")
    logger.info(f"[NGINX]   Worker Processes: {snapshot['NGINX_WORKER_PROCESSES']}")
    logger.info(f"[NGINX]   Worker Connections: {snapshot['NGINX_WORKER_CONNECTIONS']}")
    logger.info(f"[NGINX]   Rate Limit: {snapshot['NGINX_RATE_LIMIT']} (burst: {snapshot['NGINX_RATE_LIMIT_BURST']})")
    logger.info(f"[NGINX]   Connection Limit: {snapshot['NGINX_CONN_LIMIT']}")
    logger.info(f"[NGINX]   Gzip: {snapshot['NGINX_GZIP']}")
    logger.info(f"[NGINX]   TLS Mode: {snapshot['TLS_MODE']}")
    logger.info(f"[NGINX]   FIPS Mode: {snapshot['FIPS_MODE']}")
    logger.info(f"[NGINX]   mTLS: {snapshot['MTLS_ENABLED']}")


@register_stage
@dataclass
class NginxConfigStage:
    """Render and validate the nginx configuration."""
    paths: BootstrapPaths
    runner: Callable = run_command

    name = 'nginx'
    description = 'Render and validate NGINX configuration'
    exit_code = 30

    def run(self, snapshot: ConfigurationSnapshot, context: dict) -> StageResult:
        """Render templates and validate with nginx -t."""
        start = time.time()
        fips = context.get('fips') or FipsDecision(FipsState.DISABLED)
        logger.info("[NGINX] Configuring NGINX...")

        try:
            rendered = configure_nginx(snapshot, fips, self.paths, self.runner)
        except (ConfigError, RenderError) as e:
            return StageResult(
                success=False,
                message=f"[NGINX] ERROR: {e}",
                duration=time.time() - start,
            )

        log_summary(snapshot)
        return StageResult(
            success=True,
            message=f"Rendered {len(rendered)} configuration files",
            duration=time.time() - start,
            context_updates={'rendered_configs': rendered},
        )
