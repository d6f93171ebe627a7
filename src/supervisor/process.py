"""Crash-restart supervision of the nginx and WebSSH2 processes.

Each service is tracked by a ServiceHandle moving through ServiceState:

    NOT_STARTED -> RUNNING -> CRASHED -> RESTARTING -> RUNNING ...
                      \\-> STOPPED (shutdown requested, never restarted)

A process that fails to launch at all is treated like one that crashed
immediately: NOT_STARTED or RESTARTING go straight to CRASHED.

Unexpected exits are restarted with exponential backoff; a stop request
(SIGTERM/SIGINT or stop_all) terminates the processes and disables restarts.
"""

import logging
import os
import pwd
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from config import BootstrapPaths, ConfigurationSnapshot

logger = logging.getLogger(__name__)

# A process that stays up this long resets the backoff
STABLE_RUN_SECONDS = 30.0


class SupervisorError(Exception):
    """Illegal state transition or unusable service definition."""


class ServiceState(Enum):
    NOT_STARTED = 'not-started'
    RUNNING = 'running'
    CRASHED = 'crashed'
    RESTARTING = 'restarting'
    STOPPED = 'stopped'


TRANSITIONS: dict[ServiceState, frozenset] = {
    ServiceState.NOT_STARTED: frozenset({ServiceState.RUNNING, ServiceState.CRASHED, ServiceState.STOPPED}),
    ServiceState.RUNNING: frozenset({ServiceState.CRASHED, ServiceState.STOPPED}),
    ServiceState.CRASHED: frozenset({ServiceState.RESTARTING, ServiceState.STOPPED}),
    ServiceState.RESTARTING: frozenset({ServiceState.RUNNING, ServiceState.CRASHED, ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
}


@dataclass
class ServiceSpec:
    """How to launch one supervised service."""
    name: str
    command: list[str]
    cwd: Optional[Path] = None
    env: Optional[dict[str, str]] = None
    endpoint: Optional[tuple[str, int]] = None
    user: Optional[str] = None
    group: Optional[str] = None


@dataclass
class ServiceHandle:
    """Runtime state of a supervised service."""
    spec: ServiceSpec
    state: ServiceState = ServiceState.NOT_STARTED
    restart_count: int = 0
    process: Optional[subprocess.Popen] = None
    started_at: float = 0.0
    next_restart_at: float = 0.0
    consecutive_failures: int = 0
    history: list[ServiceState] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def transition(self, new_state: ServiceState) -> None:
        """Move to new_state.

        Raises:
            SupervisorError: If the transition is not allowed
        """
        if new_state not in TRANSITIONS[self.state]:
            raise SupervisorError(f"{self.name}: illegal transition {self.state.value} -> {new_state.value}")
        logger.debug(f"{self.name}: {self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state


def privilege_drop(spec: ServiceSpec) -> dict:
    """Popen arguments that switch to the service user, its group and nothing else.

    Without a group the user's primary group is used, so the child never keeps
    root's gid or supplementary groups.

    Raises:
        KeyError: If the user does not exist
    """
    if not spec.user:
        return {}
    if spec.group is not None:
        group = spec.group
    elif isinstance(spec.user, int):
        group = pwd.getpwuid(spec.user).pw_gid
    else:
        group = pwd.getpwnam(spec.user).pw_gid
    return {'user': spec.user, 'group': group, 'extra_groups': []}


class Supervisor:
    """Starts services and restarts them on unexpected exit."""

    def __init__(
        self,
        services: list[ServiceSpec],
        restart_delay: float = 1.0,
        max_restart_delay: float = 30.0,
        stop_timeout: float = 10.0,
        popen: Callable = subprocess.Popen,
    ):
        names = [s.name for s in services]
        if len(set(names)) != len(names):
            raise SupervisorError(f"Duplicate service names: {names}")
        self.handles = [ServiceHandle(spec=s) for s in services]
        self.restart_delay = restart_delay
        self.max_restart_delay = max_restart_delay
        self.stop_timeout = stop_timeout
        self._popen = popen
        self.stopping = False

    def get(self, name: str) -> ServiceHandle:
        for handle in self.handles:
            if handle.name == name:
                return handle
        raise KeyError(name)

    def _spawn(self, handle: ServiceHandle) -> bool:
        """Launch the service process. Returns False if it could not start."""
        if handle.alive:
            raise SupervisorError(f"{handle.name} already has a live process (PID {handle.process.pid})")

        spec = handle.spec
        env = dict(os.environ)
        if spec.env:
            env.update(spec.env)

        try:
            kwargs = privilege_drop(spec) if os.geteuid() == 0 else {}
            handle.process = self._popen(spec.command, cwd=spec.cwd, env=env, **kwargs)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to start {handle.name}: {e}")
            handle.process = None
            return False

        handle.started_at = time.monotonic()
        logger.info(f"Started {handle.name} (PID {handle.process.pid}): {' '.join(spec.command)}")
        return True

    def _backoff(self, handle: ServiceHandle) -> float:
        delay = self.restart_delay * (2 ** max(handle.consecutive_failures - 1, 0))
        return min(delay, self.max_restart_delay)

    def _schedule_restart(self, handle: ServiceHandle, now: float) -> None:
        handle.transition(ServiceState.CRASHED)
        handle.consecutive_failures += 1
        delay = self._backoff(handle)
        handle.next_restart_at = now + delay
        handle.transition(ServiceState.RESTARTING)
        logger.info(f"Restarting {handle.name} in {delay:.1f}s (attempt {handle.restart_count + 1})")

    def start_all(self) -> None:
        """Start every service that has not been started yet."""
        now = time.monotonic()
        for handle in self.handles:
            if handle.state != ServiceState.NOT_STARTED:
                continue
            if self._spawn(handle):
                handle.transition(ServiceState.RUNNING)
            else:
                self._schedule_restart(handle, now)

    def poll_once(self, now: Optional[float] = None) -> None:
        """Detect exits and perform due restarts."""
        if self.stopping:
            return
        if now is None:
            now = time.monotonic()

        for handle in self.handles:
            if handle.state == ServiceState.RUNNING and not handle.alive:
                code = handle.process.returncode if handle.process else None
                logger.warning(f"{handle.name} exited unexpectedly (exit code {code})")
                if now - handle.started_at >= STABLE_RUN_SECONDS:
                    handle.consecutive_failures = 0
                self._schedule_restart(handle, now)

            elif handle.state == ServiceState.RESTARTING and now >= handle.next_restart_at:
                handle.restart_count += 1
                if self._spawn(handle):
                    handle.transition(ServiceState.RUNNING)
                else:
                    self._schedule_restart(handle, now)

    def _terminate(self, handle: ServiceHandle) -> None:
        """SIGTERM, then SIGKILL after stop_timeout."""
        proc = handle.process
        if proc is None or proc.poll() is not None:
            return
        logger.info(f"Stopping {handle.name} (PID {proc.pid})")
        proc.terminate()
        try:
            proc.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{handle.name} did not exit after {self.stop_timeout}s, killing")
            proc.kill()
            proc.wait()

    def stop_all(self) -> None:
        """Stop every service; nothing is restarted afterwards."""
        self.stopping = True
        for handle in reversed(self.handles):
            self._terminate(handle)
            if handle.state != ServiceState.STOPPED:
                handle.transition(ServiceState.STOPPED)

    def run(self, stop_event: Optional[threading.Event] = None, poll_interval: float = 0.5) -> int:
        """Supervise until stop_event is set. Returns exit code 0."""
        if stop_event is None:
            stop_event = threading.Event()
        if threading.current_thread() is threading.main_thread():
            install_signal_handlers(stop_event)

        self.start_all()
        try:
            while not stop_event.is_set():
                self.poll_once()
                stop_event.wait(poll_interval)
        finally:
            logger.info("Shutting down supervised services")
            self.stop_all()
        return 0


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Make SIGTERM/SIGINT request a clean shutdown."""
    def _handle(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def build_services(
    snapshot: ConfigurationSnapshot,
    paths: BootstrapPaths,
    backend_env: dict[str, str],
) -> list[ServiceSpec]:
    """Service definitions for nginx and the WebSSH2 backend."""
    listen_ip = backend_env.get('WEBSSH2_LISTEN_IP', snapshot['WEBSSH2_LISTEN_IP'])
    listen_port = int(backend_env.get('WEBSSH2_LISTEN_PORT', snapshot['WEBSSH2_LISTEN_PORT']))
    return [
        ServiceSpec(
            name='webssh2',
            command=[paths.node_bin, 'dist/index.js'],
            cwd=paths.webssh2_dir,
            env=backend_env,
            endpoint=(listen_ip, listen_port),
            user=paths.webssh2_user,
            group=paths.webssh2_group,
        ),
        ServiceSpec(
            name='nginx',
            command=[paths.nginx_bin, '-c', str(paths.nginx_conf), '-g', 'daemon off;'],
            endpoint=('127.0.0.1', int(snapshot['NGINX_LISTEN_PORT'])),
        ),
    ]
