"""Common utilities and types for container initialization."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    """Result returned by a bootstrap stage."""
    success: bool
    message: str = ''
    duration: float = 0.0
    warnings: list[str] = field(default_factory=list)
    context_updates: dict = field(default_factory=dict)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except FileNotFoundError:
        return 127, '', f'Command not found: {cmd[0]}'
    except Exception as e:
        return -1, '', str(e)


def set_owner(path: Path, user: str, group: str) -> None:
    """Change ownership of path; only attempted when running as root."""
    if os.geteuid() != 0:
        logger.debug(f"Not root, leaving ownership of {path} unchanged")
        return
    try:
        shutil.chown(path, user=user, group=group)
    except LookupError:
        logger.warning(f"Unknown user/group {user}:{group}, ownership of {path} unchanged")


def set_mode(path: Path, mode: int) -> None:
    """Set permission bits on path."""
    os.chmod(path, mode)


def ensure_dir(path: Path, user: str, group: str, mode: int = 0o755) -> None:
    """Create a directory with the given owner and mode."""
    path.mkdir(parents=True, exist_ok=True)
    set_owner(path, user, group)
    set_mode(path, mode)
