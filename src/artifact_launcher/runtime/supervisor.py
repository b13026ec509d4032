"""Process supervisor: readiness, liveness and two-phase shutdown.

artifact-launcher runtime module v0.1.0

A ProcessSupervisor owns exactly one child process for its whole lifetime.
It exposes:
- await_ready(timeout): block until the readiness marker shows up, the child
  exits, or the boot timeout elapses
- is_alive() / last_error(): non-blocking queries
- stop(timeout): graceful termination, escalating to a forced kill

Concurrency model:
- two relay threads drain stdout/stderr and report each chunk here
- one watcher thread blocks in ``Popen.wait()`` and reports the exit
- all state lives in a ProcessObservation guarded by one Condition; waiters
  are woken by output and exit notifications, never by polling

State machine:
    STARTING -> DEPLOYED -> STOPPING -> STOPPED
    STARTING / RUNNING / DEPLOYED -> FAILED (timeout or unexpected exit)
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import IO, Any, Optional

from ..config import get_config
from ..errors import (
    AbnormalExitError,
    DeploymentTimeoutError,
    StopError,
    SupervisorError,
)
from .command import CommandLine
from .relay import OutputRelay
from .types import ReadinessMatcher, SupervisorSnapshot, SupervisorState

__all__ = [
    "ProcessObservation",
    "ProcessSupervisor",
    "ScanBuffer",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# How long the exit watcher waits for drains to flush after the child exits
DRAIN_FLUSH_TIMEOUT = 2.0

# Longest unterminated line kept for readiness matching
MAX_PENDING_CHARS = 65536


@dataclass
class ScanBuffer:
    """Bounded buffer of child output text."""

    max_size: int = 100_000  # characters
    _buf: deque[str] = field(default_factory=deque)
    _total_chars: int = 0

    def append(self, data: str) -> None:
        self._buf.append(data)
        self._total_chars += len(data)
        # Evict oldest chunks until we're within budget
        while self._total_chars > self.max_size and self._buf:
            evicted = self._buf.popleft()
            self._total_chars -= len(evicted)

    def tail(self, num_chars: int = 2000) -> str:
        """Return the last `num_chars` characters of buffered output."""
        parts: list[str] = []
        remaining = num_chars
        for chunk in reversed(self._buf):
            if remaining <= 0:
                break
            if len(chunk) <= remaining:
                parts.append(chunk)
                remaining -= len(chunk)
            else:
                parts.append(chunk[-remaining:])
                remaining = 0
        parts.reverse()
        return "".join(parts)

    def all(self) -> str:
        return "".join(self._buf)


class ProcessObservation:
    """Synchronized record of what has been observed about the child.

    Written by the relay and watcher threads, read by the supervisor; every
    access goes through ``cond``. State transitions are the only mutator of
    the status visible to callers.
    """

    def __init__(self, matcher: ReadinessMatcher | None) -> None:
        self.cond = threading.Condition()
        self.matcher = matcher
        self.state = SupervisorState.STARTING if matcher else SupervisorState.RUNNING
        self.buffers = {"stdout": ScanBuffer(), "stderr": ScanBuffer()}
        # Unterminated tail of each stream, carried into the next chunk
        self.pending: dict[str, str] = {}
        self.pid: int | None = None
        self.ready = matcher is None
        self.exit_code: int | None = None
        self.exit_recorded = False
        self.error: SupervisorError | None = None
        self.ended_at: float | None = None

    def on_output(self, stream: str, text: str) -> None:
        """Append a chunk and check it for the readiness marker.

        The marker is matched line by line against the stream's pending
        tail plus the new text, so a marker split across chunks or printed
        without a trailing newline is still seen.
        """
        with self.cond:
            self.buffers.setdefault(stream, ScanBuffer()).append(text)
            pending = self.pending.get(stream, "") + text

            if self.state == SupervisorState.STARTING and self.matcher is not None:
                for line in pending.splitlines():
                    if self.matcher.matches(line):
                        self.ready = True
                        self.state = SupervisorState.DEPLOYED
                        logger.info(f"Process pid={self.pid} is ready ({stream}: {line.strip()[:200]})")
                        break

            self.pending[stream] = pending[pending.rfind("\n") + 1:][-MAX_PENDING_CHARS:]
            self.cond.notify_all()

    def on_process_exit(self, exit_code: int) -> None:
        """The OS reported the child gone; output may still be in flight."""
        with self.cond:
            self.exit_code = exit_code
            self.ended_at = time.time()
            self.cond.notify_all()

    def on_exit_recorded(self) -> None:
        """Output has been drained; apply the exit to the state machine once."""
        with self.cond:
            if self.exit_recorded:
                return
            self.exit_recorded = True
            code = self.exit_code if self.exit_code is not None else -1

            if self.state == SupervisorState.STARTING:
                self.error = AbnormalExitError(
                    code, self.pid, f"exited before becoming ready (exit code {code})"
                )
                self.state = SupervisorState.FAILED
                logger.warning(str(self.error))
            elif self.state in (SupervisorState.RUNNING, SupervisorState.DEPLOYED):
                self.error = AbnormalExitError(code, self.pid)
                self.state = SupervisorState.FAILED
                logger.warning(str(self.error))
            else:
                logger.debug(f"Process pid={self.pid} exited code={code} in state {self.state.value}")
            self.cond.notify_all()

    def mark_timeout(self, timeout: float) -> None:
        with self.cond:
            if self.state == SupervisorState.STARTING:
                self.error = DeploymentTimeoutError(timeout, self.pid)
                self.state = SupervisorState.FAILED
                logger.warning(str(self.error))
                self.cond.notify_all()

    def mark_failed(self, error: SupervisorError) -> None:
        with self.cond:
            self.error = self.error or error
            self.state = SupervisorState.FAILED
            self.cond.notify_all()

    def begin_stop(self) -> SupervisorState:
        """Enter STOPPING from a live state. Returns the previous state."""
        with self.cond:
            previous = self.state
            if previous in (
                SupervisorState.STARTING,
                SupervisorState.RUNNING,
                SupervisorState.DEPLOYED,
            ):
                self.state = SupervisorState.STOPPING
                self.cond.notify_all()
            return previous

    def finish_stop(self) -> None:
        with self.cond:
            if self.state == SupervisorState.STOPPING:
                self.state = SupervisorState.STOPPED
            self.cond.notify_all()

    def wait_for_exit(self, timeout: float | None) -> bool:
        with self.cond:
            return self.cond.wait_for(lambda: self.exit_code is not None, timeout)

    def wait_for_exit_recorded(self, timeout: float | None) -> bool:
        """Wait until the exit has been applied to the state machine."""
        with self.cond:
            return self.cond.wait_for(lambda: self.exit_recorded, timeout)


class ProcessSupervisor:
    """Supervises one launched child process.

    Instances are created by ``launch()``; they own the process handle and
    cannot be copied or pickled.

    Example:
        with launch(spec) as supervisor:
            error = supervisor.await_ready(timeout=60)
            if error:
                raise error
            run_tests_against(supervisor)
        # leaving the block stops the child
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        command: CommandLine,
        relay: OutputRelay,
        observation: ProcessObservation,
        *,
        stop_timeout: float | None = None,
        kill_grace: float | None = None,
    ) -> None:
        """Take ownership of a started process and begin watching it.

        Args:
            process: The started child
            command: Command line it was started with
            relay: Output relay, already started
            observation: Shared observation the relay reports into
            stop_timeout: Default graceful stop timeout (default: config)
            kill_grace: Wait after forced kill (default: config)
        """
        config = get_config()
        self._process = process
        self._command = command
        self._relay = relay
        self._obs = observation
        self._stop_timeout = config.stop_timeout if stop_timeout is None else stop_timeout
        self._kill_grace = config.kill_grace if kill_grace is None else kill_grace
        self._stop_lock = threading.Lock()
        self._started_at = time.time()

        with self._obs.cond:
            self._obs.pid = process.pid

        self._watcher = threading.Thread(
            target=self._watch_exit,
            name=f"supervisor-{process.pid}-waiter",
            daemon=True,
        )
        self._watcher.start()

    def __repr__(self) -> str:
        return f"ProcessSupervisor(pid={self.pid}, state={self.state.value})"

    # Single owner: refuse copying and pickling
    def __copy__(self) -> "ProcessSupervisor":
        raise TypeError("ProcessSupervisor owns its process and cannot be copied")

    def __deepcopy__(self, memo: dict[int, Any]) -> "ProcessSupervisor":
        raise TypeError("ProcessSupervisor owns its process and cannot be copied")

    def __reduce__(self) -> Any:
        raise TypeError("ProcessSupervisor owns its process and cannot be pickled")

    def __enter__(self) -> "ProcessSupervisor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def command(self) -> CommandLine:
        return self._command

    @property
    def state(self) -> SupervisorState:
        with self._obs.cond:
            return self._obs.state

    @property
    def exit_code(self) -> int | None:
        with self._obs.cond:
            return self._obs.exit_code

    @property
    def stdin(self) -> Optional[IO[bytes]]:
        """Writable child stdin, or None when it was closed at launch."""
        return self._process.stdin

    def is_alive(self) -> bool:
        """Whether the OS process is still running. Never changes state."""
        return self._process.poll() is None

    def last_error(self) -> SupervisorError | None:
        with self._obs.cond:
            return self._obs.error

    def output(self, stream: str = "stdout", num_chars: int | None = None) -> str:
        """Captured text of a stream (the tail if num_chars is given)."""
        with self._obs.cond:
            buf = self._obs.buffers.get(stream)
            if buf is None:
                return ""
            return buf.all() if num_chars is None else buf.tail(num_chars)

    def snapshot(self) -> SupervisorSnapshot:
        with self._obs.cond:
            end = self._obs.ended_at or time.time()
            return SupervisorSnapshot(
                pid=self.pid,
                state=self._obs.state,
                exit_code=self._obs.exit_code,
                last_error=str(self._obs.error) if self._obs.error else None,
                argv=list(self._command.argv),
                started_at=self._started_at,
                uptime=max(0.0, end - self._started_at),
                stdout_tail=self._obs.buffers["stdout"].tail(),
                stderr_tail=self._obs.buffers["stderr"].tail(),
            )

    # ------------------------------------------------------------------
    # Blocking operations
    # ------------------------------------------------------------------

    def await_ready(self, timeout: float | None = None) -> SupervisorError | None:
        """Block until the child is ready, has failed, or the timeout elapses.

        Boot failures are returned, not raised, so callers can tell a timed
        out (possibly still running) child from a crashed one. A timeout does
        not kill the child.

        Args:
            timeout: Seconds to wait (default: AL_BOOT_TIMEOUT)

        Returns:
            None once DEPLOYED (or RUNNING without readiness detection);
            otherwise the DeploymentTimeoutError or AbnormalExitError
        """
        if timeout is None:
            timeout = get_config().boot_timeout

        obs = self._obs
        with obs.cond:
            obs.cond.wait_for(lambda: obs.state != SupervisorState.STARTING, timeout)
        obs.mark_timeout(timeout)

        with obs.cond:
            if obs.state == SupervisorState.FAILED:
                return obs.error
            if obs.ready:
                return None
            return obs.error or SupervisorError(
                f"Process pid={obs.pid} was stopped before becoming ready"
            )

    def ensure_ready(self, timeout: float | None = None) -> None:
        """Like await_ready, but raise the failure."""
        error = self.await_ready(timeout)
        if error is not None:
            raise error

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the child exits.

        Returns once the exit is reflected in state and last_error().

        Returns:
            The exit code, or None if the child is still running at timeout
        """
        self._obs.wait_for_exit_recorded(timeout)
        return self.exit_code

    def stop(self, timeout: float | None = None) -> None:
        """Stop the child: graceful signal, then forced kill on timeout.

        Idempotent: stopping a STOPPED supervisor does nothing. A FAILED
        supervisor still has its child reaped but stays FAILED.

        Args:
            timeout: Seconds to wait after the graceful signal (default: AL_STOP_TIMEOUT)

        Raises:
            StopError: If the forced kill cannot be delivered
        """
        if timeout is None:
            timeout = self._stop_timeout

        with self._stop_lock:
            previous = self._obs.begin_stop()
            if previous == SupervisorState.STOPPED:
                return

            pid = self.pid
            try:
                if self.is_alive():
                    logger.info(f"Stopping process pid={pid} (timeout={timeout}s)")
                    self._terminate(timeout)
            finally:
                self._release()
                self._obs.finish_stop()

            logger.info(f"Process pid={pid} stopped (state={self.state.value}, exit_code={self.exit_code})")

    def kill(self) -> None:
        """Force-kill the child now, then complete the stop.

        Safe to call while another thread is inside stop(): the kill
        shortens that stop's graceful wait.

        Raises:
            StopError: If the forced kill cannot be delivered
        """
        if self.is_alive():
            logger.warning(f"Force killing process pid={self.pid}")
            self._kill_or_fail()
        self.stop(timeout=0.0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _watch_exit(self) -> None:
        """Wait for the OS to report the child gone, then record the exit once."""
        exit_code = self._process.wait()
        self._obs.on_process_exit(exit_code)
        # Let the drains flush so a marker printed just before exit is seen
        self._relay.join(DRAIN_FLUSH_TIMEOUT)
        self._obs.on_exit_recorded()

    def _terminate(self, timeout: float) -> None:
        """Graceful signal, wait, forced kill, wait the kill grace."""
        pid = self.pid

        if timeout > 0:
            # Step 1: graceful termination
            if IS_WINDOWS:
                self._windows_terminate()
            else:
                self._posix_terminate()

            # Step 2: wait for graceful exit
            if self._obs.wait_for_exit(timeout):
                logger.debug(f"Process terminated gracefully pid={pid} returncode={self.exit_code}")
                return

            logger.warning(f"Process pid={pid} ignored termination for {timeout}s, killing")

        # Step 3: force kill
        self._kill_or_fail()

        # Step 4: wait for forced exit
        if self._obs.wait_for_exit(self._kill_grace):
            logger.debug(f"Process killed pid={pid} returncode={self.exit_code}")
        else:
            logger.warning(
                f"Process pid={pid} not reclaimed {self._kill_grace}s after kill, "
                f"treating as stopped"
            )

    def _kill_or_fail(self) -> None:
        """Deliver the forced kill, or mark the supervisor FAILED and raise StopError."""
        try:
            self._force_kill()
        except PermissionError as e:
            error = StopError(f"Unable to kill process pid={self.pid}: {e}", pid=self.pid)
            self._obs.mark_failed(SupervisorError(str(error)))
            raise error from e

    def _force_kill(self) -> None:
        if IS_WINDOWS:
            self._windows_kill()
        else:
            self._posix_kill()

    def _release(self) -> None:
        """Close stdin, let the drains finish, close capture files."""
        if self._process.stdin is not None:
            try:
                self._process.stdin.close()
            except OSError:
                pass
        if self.exit_code is not None:
            self._relay.join(DRAIN_FLUSH_TIMEOUT)
        self._relay.close()

    def _posix_terminate(self) -> None:
        """Send SIGTERM to the child's process group."""
        try:
            # Same as pid: the child leads its own session
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to terminate: {e}")
            self._send(self._process.terminate)

    def _posix_kill(self) -> None:
        """Send SIGKILL to the child's process group."""
        try:
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            self._process.kill()

    def _windows_terminate(self) -> None:
        """Send CTRL_BREAK_EVENT (the child has its own process group)."""
        try:
            os.kill(self.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            self._send(self._process.terminate)

    def _windows_kill(self) -> None:
        try:
            self._process.kill()
            logger.debug(f"Called kill() on pid={self.pid}")
        except ProcessLookupError:
            pass

    @staticmethod
    def _send(action: Any) -> None:
        try:
            action()
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"Graceful signal not delivered: {e}")
