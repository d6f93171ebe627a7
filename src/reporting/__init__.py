"""Bootstrap reporting."""

from reporting.report import BootstrapReport, StageRecord

__all__ = [
    "BootstrapReport",
    "StageRecord",
]
