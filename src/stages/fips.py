"""FIPS mode verification stage.

Decides whether the container runs with FIPS cryptography verified,
degraded (requested but not fully verifiable, strict checking off) or
disabled. With FIPS_CHECK=true any failed check aborts the bootstrap.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from common import StageResult, run_command
from config import BootstrapPaths, ConfigError, ConfigurationSnapshot
from stages import register_stage

logger = logging.getLogger(__name__)

FIPS_MODES = ('enabled', 'disabled')


class FipsError(Exception):
    """FIPS requirement not met or FIPS configuration invalid.

    Carries the check trail gathered before the failure, if any.
    """

    def __init__(self, message: str, trail: tuple = ()):
        super().__init__(message)
        self.trail = trail


class FipsState(Enum):
    DISABLED = 'disabled'
    ENABLED_VERIFIED = 'enabled-verified'
    ENABLED_DEGRADED = 'enabled-degraded'


class CheckStatus(Enum):
    PASS = 'PASS'
    WARN = 'WARN'
    SKIP = 'SKIP'


@dataclass(frozen=True)
class CheckResult:
    """One entry of the FIPS audit trail."""
    name: str
    status: CheckStatus
    detail: str

    def __str__(self) -> str:
        return f"{self.status.value} {self.name}: {self.detail}"


@dataclass(frozen=True)
class FipsDecision:
    """Outcome of FIPS evaluation; never mutated after creation."""
    state: FipsState
    trail: tuple[CheckResult, ...] = field(default_factory=tuple)

    @property
    def enabled(self) -> bool:
        return self.state in (FipsState.ENABLED_VERIFIED, FipsState.ENABLED_DEGRADED)

    @property
    def warnings(self) -> list[str]:
        return [str(c) for c in self.trail if c.status == CheckStatus.WARN]


def check_kernel_flag(paths: BootstrapPaths) -> CheckResult:
    """Check the kernel FIPS flag file."""
    name = 'kernel'
    flag_file = paths.fips_flag_file
    if not flag_file.exists():
        return CheckResult(name, CheckStatus.WARN, f"Cannot determine kernel FIPS status ({flag_file} not found)")
    try:
        value = flag_file.read_text().strip()
    except OSError as e:
        return CheckResult(name, CheckStatus.WARN, f"Cannot read {flag_file}: {e}")
    if value == '1':
        return CheckResult(name, CheckStatus.PASS, "FIPS mode is enabled in kernel")
    return CheckResult(name, CheckStatus.WARN, "FIPS mode is NOT enabled in kernel")


def check_openssl_provider(runner: Callable = run_command) -> CheckResult:
    """Check that OpenSSL exposes a FIPS provider or FIPS build."""
    name = 'openssl'
    rc, version_out, err = runner(['openssl', 'version', '-a'], timeout=30)
    if rc != 0:
        return CheckResult(name, CheckStatus.WARN, f"OpenSSL not available: {err.strip() or rc}")

    rc, providers_out, _ = runner(['openssl', 'list', '-providers'], timeout=30)
    if (rc == 0 and 'fips' in providers_out.lower()) or 'fips' in version_out.lower():
        return CheckResult(name, CheckStatus.PASS, "OpenSSL has FIPS support")
    return CheckResult(name, CheckStatus.WARN, "OpenSSL FIPS support not detected")


def check_crypto_policy(runner: Callable = run_command) -> CheckResult:
    """Check the system-wide crypto policy."""
    name = 'crypto-policy'
    rc, out, _ = runner(['update-crypto-policies', '--show'], timeout=30)
    if rc == 127:
        return CheckResult(name, CheckStatus.SKIP, "crypto-policies tool not available")
    policy = out.strip() if rc == 0 else 'unknown'
    if policy == 'FIPS':
        return CheckResult(name, CheckStatus.PASS, "System crypto policy is set to FIPS")
    return CheckResult(name, CheckStatus.WARN, f"System crypto policy is not FIPS ({policy})")


def evaluate_fips(
    snapshot: ConfigurationSnapshot,
    paths: BootstrapPaths,
    runner: Callable = run_command,
) -> FipsDecision:
    """Evaluate FIPS requirements.

    Args:
        snapshot: Resolved configuration (FIPS_MODE, FIPS_CHECK)
        paths: Filesystem layout (kernel flag file)
        runner: Command runner, (cmd, timeout=...) -> (rc, stdout, stderr)

    Returns:
        FipsDecision with the ordered check trail

    Raises:
        FipsError: Invalid FIPS_MODE, or a failed check with FIPS_CHECK=true
        ConfigError: FIPS_CHECK is not a boolean
    """
    mode = snapshot['FIPS_MODE']
    if mode == 'disabled':
        return FipsDecision(FipsState.DISABLED)
    if mode != 'enabled':
        raise FipsError(f"Invalid FIPS_MODE value: '{mode}'. Must be 'enabled' or 'disabled'")

    strict = snapshot.get_bool('FIPS_CHECK')

    trail = (
        check_kernel_flag(paths),
        check_openssl_provider(runner),
        check_crypto_policy(runner),
    )

    failed = [c for c in trail if c.status == CheckStatus.WARN]
    if failed and strict:
        details = '; '.join(c.detail for c in failed)
        raise FipsError(f"FIPS mode required but not verified: {details}", trail)
    if failed:
        return FipsDecision(FipsState.ENABLED_DEGRADED, trail)
    return FipsDecision(FipsState.ENABLED_VERIFIED, trail)


def log_trail(trail) -> None:
    """Write every check result to the log as the audit trail."""
    for check in trail:
        log = logger.info if check.status != CheckStatus.WARN else logger.warning
        log(f"[FIPS] {check}")


@register_stage
@dataclass
class FipsCheckStage:
    """Verify FIPS mode configuration."""
    paths: BootstrapPaths
    runner: Callable = run_command

    name = 'fips'
    description = 'Verify FIPS mode configuration'
    exit_code = 10

    def run(self, snapshot: ConfigurationSnapshot, context: dict) -> StageResult:
        """Evaluate FIPS state and log the audit trail."""
        start = time.time()
        logger.info(f"[FIPS] FIPS_MODE={snapshot['FIPS_MODE']!r} FIPS_CHECK={snapshot['FIPS_CHECK']!r}")

        try:
            decision = evaluate_fips(snapshot, self.paths, self.runner)
        except (FipsError, ConfigError) as e:
            log_trail(getattr(e, 'trail', ()))
            return StageResult(
                success=False,
                message=f"[FIPS] ERROR: {e}",
                duration=time.time() - start,
            )

        log_trail(decision.trail)

        if decision.state == FipsState.DISABLED:
            logger.info("[FIPS] FIPS mode is disabled by configuration")
        elif decision.state == FipsState.ENABLED_DEGRADED:
            logger.warning("[FIPS] WARNING: Continuing with FIPS requested but not fully verified")

        return StageResult(
            success=True,
            message=f"FIPS state: {decision.state.value}",
            duration=time.time() - start,
            warnings=[f"[FIPS] {w}" for w in decision.warnings],
            context_updates={'fips': decision},
        )
