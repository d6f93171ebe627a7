"""Certificate helpers built on the openssl CLI.

Provides self-signed certificate generation (RSA for FIPS, EC P-256
otherwise), certificate/key validation and background DH parameter
generation.
"""

import logging
import os
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 2048
DEFAULT_MIN_VALIDITY = 86400  # 24h
DEFAULT_CN = 'webssh2.local'
EC_CURVE = 'P-256'

DEFAULT_SAN_DNS = ['localhost', 'webssh2.local', '*.webssh2.local']
DEFAULT_SAN_IP = ['127.0.0.1', '::1']

_IPV4_RE = re.compile(r'^\d+\.\d+\.\d+\.\d+$')


class CertificateError(Exception):
    """Certificate generation or validation error."""


@dataclass
class CertificateSubject:
    """Distinguished name fields for generated certificates."""
    common_name: str = DEFAULT_CN
    country: str = 'US'
    state: str = 'CA'
    city: str = 'San Francisco'
    organization: str = 'WebSSH2'
    organizational_unit: str = 'WebSSH2 Container'

    def config_lines(self) -> list[str]:
        """Return [dn] section lines, skipping empty fields."""
        fields = [
            ('C', self.country),
            ('ST', self.state),
            ('L', self.city),
            ('O', self.organization),
            ('OU', self.organizational_unit),
            ('CN', self.common_name),
        ]
        return [f"{name} = {value}" for name, value in fields if value]


def is_ip_literal(value: str) -> bool:
    """True for a dotted-quad IPv4 literal or anything containing ':' (IPv6)."""
    return bool(_IPV4_RE.match(value)) or ':' in value


def build_san_entries(common_name: str, extra: str = '') -> list[str]:
    """Build Subject Alternative Name entries.

    Args:
        common_name: Certificate CN (always first DNS entry)
        extra: Comma-separated operator-supplied names or IPs

    Returns:
        Entries like ["DNS:host", "IP:127.0.0.1"], without duplicates
    """
    entries = [f"DNS:{common_name}"]
    entries += [f"DNS:{name}" for name in DEFAULT_SAN_DNS]
    entries += [f"IP:{ip}" for ip in DEFAULT_SAN_IP]

    for item in extra.split(','):
        item = item.strip()
        if not item:
            continue
        if item.startswith(("DNS:", "IP:")):
            entries.append(item)
        else:
            entries.append(f"IP:{item}" if is_ip_literal(item) else f"DNS:{item}")

    seen = set()
    unique = []
    for entry in entries:
        if entry not in seen:
            seen.add(entry)
            unique.append(entry)
    return unique


def _openssl(args: list[str], check: bool = True) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["openssl"] + args,
        capture_output=True,
        text=True,
        check=check,
    )


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    result = _openssl(["x509", "-in", str(cert_path), "-noout", "-fingerprint", "-sha256"])
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = result.stdout.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def is_valid_x509(cert_path: Path) -> bool:
    """Check that a file parses as a PEM X.509 certificate."""
    if not cert_path.is_file():
        return False
    return _openssl(["x509", "-in", str(cert_path), "-noout"], check=False).returncode == 0


def is_valid_private_key(key_path: Path) -> bool:
    """Check that a file parses as a private key (RSA or EC)."""
    if not key_path.is_file():
        return False
    return _openssl(["pkey", "-in", str(key_path), "-noout"], check=False).returncode == 0


def get_public_key(path: Path, from_cert: bool) -> Optional[str]:
    """Return the PEM public key of a certificate or private key, or None."""
    if from_cert:
        result = _openssl(["x509", "-in", str(path), "-noout", "-pubkey"], check=False)
    else:
        result = _openssl(["pkey", "-in", str(path), "-pubout"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def verify_cert_key_match(cert_path: Path, key_path: Path) -> bool:
    """Verify that a certificate and key share the same public key.

    Works for both RSA and EC keys.
    """
    cert_pub = get_public_key(cert_path, from_cert=True)
    key_pub = get_public_key(key_path, from_cert=False)
    return cert_pub is not None and cert_pub == key_pub


def cert_expires_within(cert_path: Path, seconds: int = DEFAULT_MIN_VALIDITY) -> bool:
    """True if the certificate expires within the given number of seconds."""
    result = _openssl(["x509", "-checkend", str(seconds), "-noout", "-in", str(cert_path)], check=False)
    return result.returncode != 0


def cert_text(cert_path: Path) -> str:
    """Return the human-readable dump of a certificate."""
    return _openssl(["x509", "-in", str(cert_path), "-noout", "-text"]).stdout


def cert_contains(cert_path: Path, needle: str) -> bool:
    """True if the certificate text dump mentions needle."""
    try:
        return needle in cert_text(cert_path)
    except subprocess.CalledProcessError:
        return False


def validate_cert_pair(
    cert_path: Path,
    key_path: Path,
    min_validity: int = DEFAULT_MIN_VALIDITY,
) -> tuple[bool, str]:
    """Validate a certificate/key pair.

    Checks presence, X.509 format, key format, public key match and that the
    certificate stays valid for at least min_validity seconds.

    Returns:
        (success, reason) tuple
    """
    if not cert_path.is_file():
        return False, f"Certificate file not found: {cert_path}"
    if not key_path.is_file():
        return False, f"Key file not found: {key_path}"
    if not is_valid_x509(cert_path):
        return False, f"Invalid certificate format: {cert_path}"
    if not is_valid_private_key(key_path):
        return False, f"Invalid private key format: {key_path}"
    if not verify_cert_key_match(cert_path, key_path):
        return False, "Certificate and private key do not match"
    if cert_expires_within(cert_path, min_validity):
        return False, f"Certificate expires within {min_validity // 3600} hours"
    return True, "Certificate and key validation passed"


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    subject: CertificateSubject,
    san_entries: list[str],
    days: int = DEFAULT_CERT_DAYS,
    key_algorithm: str = 'ec',
    key_bits: int = DEFAULT_KEY_SIZE,
) -> None:
    """Generate a self-signed certificate and private key.

    Args:
        cert_path: Output certificate path
        key_path: Output private key path
        subject: Distinguished name fields
        san_entries: Subject Alternative Names (e.g. "DNS:host", "IP:::1")
        days: Certificate validity in days
        key_algorithm: 'rsa' (FIPS) or 'ec' (P-256)
        key_bits: RSA key size in bits (ignored for EC)

    Raises:
        CertificateError: If generation fails or the result does not carry the CN
    """
    if key_algorithm not in ('rsa', 'ec'):
        raise CertificateError(f"Unsupported key algorithm: {key_algorithm}")

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"[CERT] Generating self-signed certificate for {subject.common_name}")
    logger.info(f"[CERT]   Key: {'RSA ' + str(key_bits) + ' bits' if key_algorithm == 'rsa' else 'EC ' + EC_CURVE}")
    logger.info(f"[CERT]   Valid days: {days}")

    dn = "\n".join(subject.config_lines())
    with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as f:
        f.write(f"""
[req]
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_req

[dn]
{dn}

[v3_req]
basicConstraints = CA:FALSE
keyUsage = critical, digitalSignature, keyEncipherment, keyAgreement
extendedKeyUsage = serverAuth
subjectAltName = {",".join(san_entries)}
""")
        config_path = f.name

    if key_algorithm == 'rsa':
        keygen = ["genpkey", "-algorithm", "RSA", "-pkeyopt", f"rsa_keygen_bits:{key_bits}"]
    else:
        keygen = ["genpkey", "-algorithm", "EC", "-pkeyopt", f"ec_paramgen_curve:{EC_CURVE}"]

    try:
        _openssl(keygen + ["-out", str(key_path)])
        _openssl([
            "req", "-x509", "-new",
            "-key", str(key_path),
            "-out", str(cert_path),
            "-days", str(days),
            "-config", config_path,
        ])
    except subprocess.CalledProcessError as e:
        raise CertificateError(f"openssl failed: {e.stderr.strip() if e.stderr else e}") from e
    finally:
        Path(config_path).unlink(missing_ok=True)

    os.chmod(key_path, 0o600)
    os.chmod(cert_path, 0o644)

    if not cert_contains(cert_path, subject.common_name):
        raise CertificateError("Certificate verification failed: CN not found in generated certificate")

    logger.info(f"[CERT] Certificate fingerprint (SHA256): {get_cert_fingerprint(cert_path)}")
    logger.info(f"[CERT] Subject Alternative Names: {', '.join(san_entries)}")
    logger.warning("[CERT] This is a self-signed certificate - browsers will show security warnings")


def _reap(process: subprocess.Popen) -> None:
    rc = process.wait()
    if rc == 0:
        logger.info("[TLS] DH parameter generation finished")
    else:
        logger.warning(f"[TLS] DH parameter generation failed (exit code {rc})")


def start_dhparam_generation(path: Path, bits: int) -> Optional[subprocess.Popen]:
    """Start DH parameter generation in the background.

    Fire-and-forget: the caller never waits on the returned process. Output
    goes to a temporary file that is moved into place only on success, so a
    partially written file is never picked up by nginx.

    Returns:
        The background process, or None if it could not be started
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix('.pem.tmp')
    script = f'openssl dhparam -out "{tmp_path}" {int(bits)} 2>/dev/null && mv "{tmp_path}" "{path}"'
    try:
        process = subprocess.Popen(
            ["sh", "-c", script],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"[TLS] Could not start DH parameter generation: {e}")
        return None

    logger.info(f"[TLS] DH parameter generation started in background (PID: {process.pid})")
    # Reap in the background; the caller never waits
    threading.Thread(target=_reap, args=(process,), name='dhparam-reaper', daemon=True).start()
    return process
