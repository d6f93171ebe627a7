"""Process supervision and health probing for the running container."""

from supervisor.health import HealthReport, Severity, run_health_checks
from supervisor.process import (
    ServiceHandle,
    ServiceSpec,
    ServiceState,
    Supervisor,
    SupervisorError,
    build_services,
)

__all__ = [
    "HealthReport",
    "Severity",
    "run_health_checks",
    "ServiceHandle",
    "ServiceSpec",
    "ServiceState",
    "Supervisor",
    "SupervisorError",
    "build_services",
]
