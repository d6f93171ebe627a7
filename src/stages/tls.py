"""TLS certificate provisioning stage.

Modes (TLS_MODE):
- self-signed: reuse a valid existing pair, otherwise generate one
- provided: inline PEM content (TLS_CERT_CONTENT/TLS_KEY_CONTENT) or mounted files
- letsencrypt: ACME issuance is not implemented; falls back to self-signed

Also renders the mTLS snippet and kicks off background DH parameter
generation outside FIPS mode.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from certs import (
    CertificateError,
    CertificateSubject,
    DEFAULT_CN,
    build_san_entries,
    generate_self_signed_cert,
    is_valid_x509,
    start_dhparam_generation,
    validate_cert_pair,
)
from common import StageResult, ensure_dir, set_mode, set_owner
from config import BootstrapPaths, ConfigError, ConfigurationSnapshot
from stages import register_stage
from stages.fips import FipsDecision, FipsState

logger = logging.getLogger(__name__)

TLS_MODES = ('self-signed', 'provided', 'letsencrypt')


class CertificateSource(Enum):
    SELF_SIGNED = 'self-signed'
    PROVIDED = 'provided'
    FALLBACK = 'fallback'


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate/key pair ready for nginx."""
    cert_path: Path
    key_path: Path
    chain_path: Optional[Path]
    source: CertificateSource


def subject_from_snapshot(snapshot: ConfigurationSnapshot) -> CertificateSubject:
    """Build the certificate subject; CN falls back to the server name."""
    cn = snapshot['TLS_CERT_CN'] or snapshot['NGINX_SERVER_NAME']
    if not cn or cn == '_':
        cn = DEFAULT_CN
    return CertificateSubject(
        common_name=cn,
        country=snapshot['TLS_CERT_COUNTRY'],
        state=snapshot['TLS_CERT_STATE'],
        city=snapshot['TLS_CERT_CITY'],
        organization=snapshot['TLS_CERT_ORG'],
        organizational_unit=snapshot['TLS_CERT_OU'],
    )


def generate_for_snapshot(snapshot: ConfigurationSnapshot, fips: FipsDecision) -> None:
    """Generate a self-signed pair at the configured paths."""
    subject = subject_from_snapshot(snapshot)
    generate_self_signed_cert(
        cert_path=Path(snapshot['TLS_CERT_PATH']),
        key_path=Path(snapshot['TLS_KEY_PATH']),
        subject=subject,
        san_entries=build_san_entries(subject.common_name, snapshot['TLS_CERT_SAN']),
        days=snapshot.get_int('TLS_CERT_DAYS', minimum=1),
        key_algorithm='rsa' if fips.enabled else 'ec',
        key_bits=snapshot.get_int('TLS_CERT_BITS', minimum=2048),
    )


def ensure_self_signed(snapshot: ConfigurationSnapshot, fips: FipsDecision) -> None:
    """Validate the existing pair, or regenerate and revalidate once.

    Raises:
        CertificateError: If a freshly generated pair does not validate
    """
    cert_path = Path(snapshot['TLS_CERT_PATH'])
    key_path = Path(snapshot['TLS_KEY_PATH'])

    if cert_path.exists() and key_path.exists():
        logger.info("[TLS] Self-signed certificate already exists, validating...")
        ok, reason = validate_cert_pair(cert_path, key_path)
        if ok:
            logger.info(f"[TLS] {reason}")
            return
        logger.warning(f"[TLS] {reason}; regenerating certificate")
        cert_path.unlink(missing_ok=True)
        key_path.unlink(missing_ok=True)

    generate_for_snapshot(snapshot, fips)

    ok, reason = validate_cert_pair(cert_path, key_path)
    if not ok:
        raise CertificateError(f"Generated certificate failed validation: {reason}")


def _write_pem(path: Path, content: str, append: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = content.strip() + '\n'
    with open(path, 'a' if append else 'w', encoding='utf-8') as f:
        f.write(text)


def install_provided(snapshot: ConfigurationSnapshot) -> None:
    """Install operator-supplied certificates and validate them.

    Raises:
        CertificateError: If nothing was provided or the pair is invalid
    """
    cert_path = Path(snapshot['TLS_CERT_PATH'])
    key_path = Path(snapshot['TLS_KEY_PATH'])

    if snapshot['TLS_CERT_CONTENT'] and snapshot['TLS_KEY_CONTENT']:
        logger.info("[TLS] Using certificates from environment variables")
        _write_pem(cert_path, snapshot['TLS_CERT_CONTENT'])
        _write_pem(key_path, snapshot['TLS_KEY_CONTENT'])
        if snapshot['TLS_CHAIN_CONTENT']:
            _write_pem(cert_path, snapshot['TLS_CHAIN_CONTENT'], append=True)
    elif cert_path.is_file() and key_path.is_file():
        logger.info("[TLS] Using certificates from mounted files")
    else:
        raise CertificateError(
            "No certificates provided. "
            "Either mount certificate files or set TLS_CERT_CONTENT/TLS_KEY_CONTENT"
        )

    ok, reason = validate_cert_pair(cert_path, key_path)
    if not ok:
        raise CertificateError(f"Provided certificates are invalid: {reason}")
    logger.info(f"[TLS] {reason}")


def provision_certificate(
    snapshot: ConfigurationSnapshot,
    fips: FipsDecision,
    paths: BootstrapPaths,
) -> CertificateMaterial:
    """Produce certificate material according to TLS_MODE.

    Raises:
        ConfigError: Invalid TLS_MODE or numeric setting
        CertificateError: Missing, invalid or ungeneratable certificates
    """
    mode = snapshot['TLS_MODE']
    if mode not in TLS_MODES:
        raise ConfigError(f"Invalid TLS_MODE: '{mode}'. Valid modes: {', '.join(TLS_MODES)}")

    ensure_dir(paths.certs_dir, paths.nginx_user, paths.nginx_group)

    if mode == 'self-signed':
        ensure_self_signed(snapshot, fips)
        source = CertificateSource.SELF_SIGNED
    elif mode == 'provided':
        install_provided(snapshot)
        source = CertificateSource.PROVIDED
    else:
        logger.warning("[TLS] Let's Encrypt mode not implemented yet, falling back to self-signed certificate")
        ensure_self_signed(snapshot, fips)
        source = CertificateSource.FALLBACK

    cert_path = Path(snapshot['TLS_CERT_PATH'])
    key_path = Path(snapshot['TLS_KEY_PATH'])
    for path, mode_bits in ((cert_path, 0o644), (key_path, 0o600)):
        set_owner(path, paths.nginx_user, paths.nginx_group)
        set_mode(path, mode_bits)

    chain_path = None
    if snapshot['TLS_CHAIN_PATH'] and Path(snapshot['TLS_CHAIN_PATH']).is_file():
        chain_path = Path(snapshot['TLS_CHAIN_PATH'])
        logger.info(f"[TLS] Setting up certificate chain: {chain_path}")
        set_owner(chain_path, paths.nginx_user, paths.nginx_group)
        set_mode(chain_path, 0o644)

    return CertificateMaterial(cert_path=cert_path, key_path=key_path, chain_path=chain_path, source=source)


def render_mtls_snippet(snapshot: ConfigurationSnapshot, paths: BootstrapPaths) -> Path:
    """Write snippets/mtls.conf for client certificate verification.

    Raises:
        ConfigError: Invalid MTLS_* values
        CertificateError: CA bundle missing or invalid while mTLS is enabled
    """
    snippet = paths.snippets_dir / 'mtls.conf'
    snippet.parent.mkdir(parents=True, exist_ok=True)

    if not snapshot.get_bool('MTLS_ENABLED'):
        snippet.write_text("# mTLS disabled\n", encoding='utf-8')
        return snippet

    logger.info("[TLS] Configuring mutual TLS (mTLS)...")
    ca_cert = snapshot['MTLS_CA_CERT']
    if not ca_cert or not Path(ca_cert).is_file():
        raise CertificateError(f"mTLS CA certificate not found: {ca_cert or '(MTLS_CA_CERT not set)'}")
    if not is_valid_x509(Path(ca_cert)):
        raise CertificateError(f"Invalid mTLS CA certificate format: {ca_cert}")

    verify = 'optional' if snapshot.get_bool('MTLS_OPTIONAL') else 'on'
    depth = snapshot.get_int('MTLS_VERIFY_DEPTH', minimum=1)

    lines = [
        "# mTLS Configuration",
        f"ssl_verify_client {verify};",
        f"ssl_client_certificate {ca_cert};",
        f"ssl_verify_depth {depth};",
        "",
        "# Client certificate information for the backend",
        "proxy_set_header X-SSL-Client-Verify $ssl_client_verify;",
        "proxy_set_header X-SSL-Client-DN $ssl_client_s_dn;",
        "proxy_set_header X-SSL-Client-Serial $ssl_client_serial;",
        "proxy_set_header X-SSL-Client-Fingerprint $ssl_client_fingerprint;",
    ]
    if snapshot['MTLS_CRL_PATH']:
        lines += ["", f"ssl_crl {snapshot['MTLS_CRL_PATH']};"]
    snippet.write_text('\n'.join(lines) + '\n', encoding='utf-8')

    set_owner(Path(ca_cert), paths.nginx_user, paths.nginx_group)
    set_mode(Path(ca_cert), 0o644)
    logger.info("[TLS] mTLS configuration completed")
    return snippet


@register_stage
@dataclass
class TlsSetupStage:
    """Provision TLS certificates and the mTLS snippet."""
    paths: BootstrapPaths

    name = 'tls'
    description = 'Provision TLS certificates'
    exit_code = 20

    def run(self, snapshot: ConfigurationSnapshot, context: dict) -> StageResult:
        """Provision certificate material."""
        start = time.time()
        fips = context.get('fips') or FipsDecision(FipsState.DISABLED)
        logger.info(f"[TLS] Setting up TLS certificates (TLS_MODE={snapshot['TLS_MODE']!r})")

        try:
            material = provision_certificate(snapshot, fips, self.paths)
            render_mtls_snippet(snapshot, self.paths)
            dh_bits = snapshot.get_int('TLS_DH_SIZE', minimum=1024)
        except (ConfigError, CertificateError) as e:
            return StageResult(
                success=False,
                message=f"[TLS] ERROR: {e}",
                duration=time.time() - start,
            )

        if not fips.enabled and not self.paths.dhparam_file.exists():
            logger.info(f"[TLS] Generating DH parameters ({dh_bits} bits), this may take several minutes")
            start_dhparam_generation(self.paths.dhparam_file, dh_bits)

        return StageResult(
            success=True,
            message=f"Certificate ready ({material.source.value}): {material.cert_path}",
            duration=time.time() - start,
            context_updates={'certificate': material},
        )
