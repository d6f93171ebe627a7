"""Container health probe.

Stateless: every invocation inspects only externally observable state
(processes, listeners, files, system resources). Nine checks run in a fixed
order; the overall status is the most severe result and maps to the exit
code expected by container orchestrators (0 healthy, 1 warning, 2 critical).
"""

import json
import logging
import re
import socket
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Callable, Optional

import psutil
import requests
import urllib3

from certs import DEFAULT_MIN_VALIDITY, cert_expires_within, is_valid_x509
from config import BootstrapPaths, ConfigurationSnapshot

# The listener uses a self-signed certificate by default
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

HTTPS_TIMEOUT = 5.0
TCP_TIMEOUT = 3.0
USAGE_WARNING = 90.0
USAGE_CRITICAL = 95.0

_NODE_BACKEND_RE = re.compile(r'node.*dist/index\.js')


class Severity(IntEnum):
    OK = 0
    WARNING = 1
    CRITICAL = 2


OVERALL_LABELS = {
    Severity.OK: 'HEALTHY',
    Severity.WARNING: 'WARNING',
    Severity.CRITICAL: 'CRITICAL',
}


@dataclass(frozen=True)
class CheckOutcome:
    name: str
    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.name}] {self.message}"


@dataclass
class HealthReport:
    """Ordered check outcomes with the aggregated status."""
    outcomes: list[CheckOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def add(self, outcome: CheckOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def overall(self) -> Severity:
        return max((o.severity for o in self.outcomes), default=Severity.OK)

    @property
    def exit_code(self) -> int:
        return int(self.overall)

    def render(self) -> str:
        lines = [f"=== Health Check Started at {self.started_at.isoformat(timespec='seconds')} ==="]
        lines.append("")
        lines.append("=== Health Check Results ===")
        lines.extend(str(o) for o in self.outcomes)
        lines.append("")
        lines.append(f"Overall Status: {OVERALL_LABELS[self.overall]}")
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'status': OVERALL_LABELS[self.overall],
            'exit_code': self.exit_code,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'checks': [
                {'name': o.name, 'severity': o.severity.name, 'message': o.message}
                for o in self.outcomes
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def usage_severity(percent: float) -> Severity:
    if percent < USAGE_WARNING:
        return Severity.OK
    if percent < USAGE_CRITICAL:
        return Severity.WARNING
    return Severity.CRITICAL


def _process_cmdlines() -> list[tuple[str, str]]:
    """(name, joined cmdline) for every visible process."""
    found = []
    for proc in psutil.process_iter(['name', 'cmdline']):
        info = proc.info
        found.append((info.get('name') or '', ' '.join(info.get('cmdline') or [])))
    return found


def check_nginx_process(processes: list[tuple[str, str]]) -> CheckOutcome:
    if any(name == 'nginx' or cmd.startswith('nginx') for name, cmd in processes):
        return CheckOutcome('nginx-process', Severity.OK, "NGINX process is running")
    return CheckOutcome('nginx-process', Severity.CRITICAL, "NGINX process is not running")


def check_webssh2_process(processes: list[tuple[str, str]]) -> CheckOutcome:
    if any(_NODE_BACKEND_RE.search(cmd) for _, cmd in processes):
        return CheckOutcome('webssh2-process', Severity.OK, "WebSSH2 process is running")
    return CheckOutcome('webssh2-process', Severity.CRITICAL, "WebSSH2 process is not running")


def _https_ok(url: str, session, timeout: float = HTTPS_TIMEOUT) -> tuple[bool, str]:
    """GET url (certificate not verified). Returns (success, detail)."""
    try:
        resp = session.get(url, verify=False, timeout=timeout)
    except requests.exceptions.Timeout:
        return False, f"timeout after {timeout:.0f}s"
    except requests.exceptions.RequestException as e:
        return False, str(e)
    if resp.status_code >= 400:
        return False, f"HTTP {resp.status_code}"
    return True, f"HTTP {resp.status_code}"


def check_nginx_https(port: str, session) -> CheckOutcome:
    ok, detail = _https_ok(f"https://localhost:{port}/health", session)
    if ok:
        return CheckOutcome('nginx-https', Severity.OK, "NGINX HTTPS endpoint responding")
    return CheckOutcome('nginx-https', Severity.CRITICAL, f"NGINX HTTPS endpoint not responding ({detail})")


def check_proxy_to_backend(port: str, session) -> CheckOutcome:
    ok, detail = _https_ok(f"https://localhost:{port}/ssh/", session)
    if ok:
        return CheckOutcome('proxy-backend', Severity.OK, "WebSSH2 application accessible via NGINX")
    return CheckOutcome('proxy-backend', Severity.WARNING, f"WebSSH2 application not accessible via NGINX ({detail})")


def check_backend_listener(ip: str, port: str, timeout: float = TCP_TIMEOUT) -> CheckOutcome:
    host = '127.0.0.1' if ip == '0.0.0.0' else ip
    try:
        sock = socket.create_connection((host, int(port)), timeout=timeout)
        sock.close()
        return CheckOutcome('backend-listener', Severity.OK, f"WebSSH2 listening on {ip}:{port}")
    except socket.timeout:
        detail = f"timeout after {timeout:.0f}s"
    except (OSError, ValueError) as e:
        detail = str(e)
    return CheckOutcome('backend-listener', Severity.CRITICAL, f"WebSSH2 not listening on {ip}:{port} ({detail})")


def check_certificate(cert_path: Path) -> CheckOutcome:
    if not cert_path.is_file():
        return CheckOutcome('certificate', Severity.CRITICAL, f"TLS certificate file not found: {cert_path}")
    try:
        if not is_valid_x509(cert_path):
            return CheckOutcome('certificate', Severity.CRITICAL, "TLS certificate format is invalid")
        if cert_expires_within(cert_path, DEFAULT_MIN_VALIDITY):
            return CheckOutcome('certificate', Severity.WARNING, "TLS certificate expires within 24 hours")
    except (OSError, subprocess.SubprocessError) as e:
        return CheckOutcome('certificate', Severity.CRITICAL, f"Cannot inspect TLS certificate: {e}")
    return CheckOutcome('certificate', Severity.OK, "TLS certificate is valid")


def check_disk(path: str = '/') -> CheckOutcome:
    percent = psutil.disk_usage(path).percent
    severity = usage_severity(percent)
    label = {Severity.OK: "Disk usage", Severity.WARNING: "Disk usage high", Severity.CRITICAL: "Disk usage critical"}
    return CheckOutcome('disk', severity, f"{label[severity]}: {percent:.0f}%")


def check_memory() -> CheckOutcome:
    percent = psutil.virtual_memory().percent
    severity = usage_severity(percent)
    label = {Severity.OK: "Memory usage", Severity.WARNING: "Memory usage high", Severity.CRITICAL: "Memory usage critical"}
    return CheckOutcome('memory', severity, f"{label[severity]}: {percent:.0f}%")


def check_fips(snapshot: ConfigurationSnapshot, flag_file: Path) -> CheckOutcome:
    if snapshot['FIPS_MODE'] != 'enabled':
        return CheckOutcome('fips', Severity.OK, "FIPS mode is disabled")
    try:
        enabled = flag_file.read_text().strip() == '1'
    except OSError:
        enabled = False
    if enabled:
        return CheckOutcome('fips', Severity.OK, "FIPS mode is enabled")
    return CheckOutcome('fips', Severity.WARNING, "FIPS mode requested but not enabled in kernel")


def _guarded(name: str, check: Callable[[], CheckOutcome]) -> CheckOutcome:
    """Run one check; an unexpected error counts as CRITICAL, never a crash."""
    try:
        return check()
    except Exception as e:
        logger.exception(f"Health check {name} raised")
        return CheckOutcome(name, Severity.CRITICAL, f"Check {name} failed: {e}")


def run_health_checks(
    snapshot: ConfigurationSnapshot,
    paths: BootstrapPaths,
    session=None,
    process_lister: Callable[[], list[tuple[str, str]]] = _process_cmdlines,
) -> HealthReport:
    """Run all checks in order and return the report."""
    session = session or requests.Session()
    report = HealthReport()
    processes = []

    def _processes():
        if not processes:
            processes.append(process_lister())
        return processes[0]

    nginx_port = snapshot['NGINX_LISTEN_PORT']
    checks = [
        ('nginx-process', lambda: check_nginx_process(_processes())),
        ('webssh2-process', lambda: check_webssh2_process(_processes())),
        ('nginx-https', lambda: check_nginx_https(nginx_port, session)),
        ('proxy-backend', lambda: check_proxy_to_backend(nginx_port, session)),
        ('backend-listener', lambda: check_backend_listener(
            snapshot['WEBSSH2_LISTEN_IP'], snapshot['WEBSSH2_LISTEN_PORT'])),
        ('certificate', lambda: check_certificate(Path(snapshot['TLS_CERT_PATH']))),
        ('disk', check_disk),
        ('memory', check_memory),
        ('fips', lambda: check_fips(snapshot, paths.fips_flag_file)),
    ]
    for name, check in checks:
        report.add(_guarded(name, check))

    report.finished_at = datetime.now()
    for outcome in report.outcomes:
        if outcome.severity != Severity.OK:
            logger.debug(f"health {outcome.name}: {outcome.severity.name} {outcome.message}")
    return report
