"""Bootstrap reporting."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class StageRecord:
    """Outcome of a bootstrap stage."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    warnings: list[str] = field(default_factory=list)


@dataclass
class BootstrapReport:
    """Collects stage outcomes and writes the bootstrap report."""
    report_dir: Optional[Path] = None
    stages: list[StageRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    exit_code: int = 0

    _descriptions: dict = field(default_factory=dict, repr=False)

    def start(self):
        """Mark bootstrap start."""
        self.started_at = datetime.now()

    def start_stage(self, name: str, description: str):
        """Remember the description of a stage about to run."""
        self._descriptions[name] = description

    def pass_stage(self, name: str, message: str = '', duration: float = 0.0, warnings: Optional[list] = None):
        """Record passed stage."""
        self._record(name, 'passed', message, duration, warnings)

    def fail_stage(self, name: str, message: str = '', duration: float = 0.0, warnings: Optional[list] = None):
        """Record failed stage."""
        self._record(name, 'failed', message, duration, warnings)

    def skip_stage(self, name: str, description: str):
        """Record skipped stage."""
        self.stages.append(StageRecord(name=name, description=description, status='skipped'))

    def _record(self, name: str, status: str, message: str, duration: float, warnings: Optional[list]):
        self.stages.append(StageRecord(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            warnings=list(warnings or []),
        ))

    @property
    def warnings(self) -> list[str]:
        """All warnings, in stage order."""
        return [w for s in self.stages for w in s.warnings]

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool, exit_code: int = 0):
        """Finalize report and write it if a report directory is set."""
        self.finished_at = datetime.now()
        self.success = success
        self.exit_code = exit_code
        if self.report_dir is not None:
            try:
                self._write_json()
            except OSError as e:
                logger.warning(f"Could not write bootstrap report: {e}")

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'success': self.success,
            'exit_code': self.exit_code,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'stages': [
                {
                    'name': s.name,
                    'description': s.description,
                    'status': s.status,
                    'message': s.message,
                    'duration': round(s.duration, 2),
                    'warnings': s.warnings,
                }
                for s in self.stages
            ],
            'warnings': self.warnings,
        }

        # Include error message on failure
        if not self.success:
            for s in self.stages:
                if s.status == 'failed' and s.message:
                    result['error'] = s.message
                    break

        return result

    def _write_json(self):
        """Write JSON report."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        filename = self.report_dir / 'bootstrap.json'
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Wrote bootstrap report to {filename}")
