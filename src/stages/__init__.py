"""Bootstrap stage definitions and pipeline execution."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from config import BootstrapPaths, ConfigurationSnapshot
from reporting import BootstrapReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1


@runtime_checkable
class Stage(Protocol):
    """Protocol for bootstrap stages.

    Class attributes:
        name: Stage identifier (e.g., 'fips')
        description: Human-readable description
        exit_code: Process exit code used when this stage fails
    """
    name: str
    description: str
    exit_code: int

    def run(self, snapshot: ConfigurationSnapshot, context: dict) -> Any:
        """Run the stage and return a StageResult."""
        ...


@dataclass
class PipelineOutcome:
    """Final result of a bootstrap run."""
    success: bool
    exit_code: int
    failed_stage: Optional[str] = None
    message: str = ''
    warnings: list[str] = field(default_factory=list)
    context: dict = field(default_factory=dict)


class Pipeline:
    """Runs bootstrap stages strictly in order, stopping at the first failure."""

    def __init__(
        self,
        snapshot: ConfigurationSnapshot,
        paths: BootstrapPaths,
        stages: Optional[list] = None,
        skip_stages: Optional[list[str]] = None,
        dry_run: bool = False,
        report: Optional[BootstrapReport] = None,
    ):
        self.snapshot = snapshot
        self.paths = paths
        self.stages = stages if stages is not None else get_stages(paths)
        self.skip_stages = skip_stages or []
        self.dry_run = dry_run
        self.report = report or BootstrapReport(report_dir=paths.report_dir)
        self.context: dict[str, Any] = {}

    def preview(self) -> PipelineOutcome:
        """Show what would be executed without running."""
        print("")
        print("═══════════════════════════════════════════════════════════════")
        print("  DRY-RUN: container bootstrap")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        stage_count = 0
        skip_count = 0
        for stage in self.stages:
            marker = "SKIP" if stage.name in self.skip_stages else " OK "
            print(f"  [{marker}] {stage.name}: {stage.description}")
            print(f"         Stage: {type(stage).__name__} (exit code on failure: {stage.exit_code})")
            if stage.name in self.skip_stages:
                skip_count += 1
            else:
                stage_count += 1

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {stage_count} stages to execute, {skip_count} to skip")
        print(f"  TLS mode: {self.snapshot['TLS_MODE']}  FIPS mode: {self.snapshot['FIPS_MODE']}")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        return PipelineOutcome(success=True, exit_code=EXIT_OK)

    def run(self) -> PipelineOutcome:
        """Run all stages. Returns the aggregated outcome."""
        if self.dry_run:
            return self.preview()

        logger.info("Starting container bootstrap")
        self.report.start()
        start_time = time.time()
        warnings: list[str] = []

        for stage in self.stages:
            if stage.name in self.skip_stages:
                logger.info(f"Skipping stage: {stage.name}")
                self.report.skip_stage(stage.name, stage.description)
                continue

            logger.info(f"Running stage: {stage.name} - {stage.description}")
            self.report.start_stage(stage.name, stage.description)
            stage_start = time.time()

            try:
                result = stage.run(self.snapshot, self.context)
            except Exception as e:
                logger.exception(f"Stage {stage.name} raised exception")
                self.report.fail_stage(stage.name, str(e), time.time() - stage_start)
                return self._finish(False, EXIT_UNEXPECTED, stage.name, str(e), warnings)

            duration = result.duration or (time.time() - stage_start)
            warnings.extend(result.warnings)

            if not result.success:
                logger.error(f"Stage {stage.name} failed: {result.message}")
                self.report.fail_stage(stage.name, result.message, duration, result.warnings)
                return self._finish(False, stage.exit_code, stage.name, result.message, warnings)

            logger.info(f"Stage {stage.name} passed")
            self.report.pass_stage(stage.name, result.message, duration, result.warnings)
            self.context.update(result.context_updates or {})

        logger.info(f"Bootstrap completed in {time.time() - start_time:.1f}s")
        for warning in warnings:
            logger.warning(f"Bootstrap warning: {warning}")
        return self._finish(True, EXIT_OK, None, 'Bootstrap completed', warnings)

    def _finish(
        self,
        success: bool,
        exit_code: int,
        failed_stage: Optional[str],
        message: str,
        warnings: list[str],
    ) -> PipelineOutcome:
        self.report.finish(success, exit_code)
        return PipelineOutcome(
            success=success,
            exit_code=exit_code,
            failed_stage=failed_stage,
            message=message,
            warnings=warnings,
            context=self.context,
        )


# Registry of bootstrap stages, in execution order
_stages: list[type] = []


def register_stage(cls: type) -> type:
    """Decorator to register a stage class (registration order is run order)."""
    _stages.append(cls)
    return cls


def get_stages(paths: BootstrapPaths) -> list:
    """Instantiate the registered stages for a filesystem layout."""
    return [cls(paths=paths) for cls in _stages]


def list_stages() -> list[str]:
    """List registered stage names in execution order."""
    return [cls.name for cls in _stages]


# Import stages to trigger registration (order matters)
from stages import fips  # noqa: E402, F401
from stages import tls  # noqa: E402, F401
from stages import nginx  # noqa: E402, F401
from stages import webssh2  # noqa: E402, F401
