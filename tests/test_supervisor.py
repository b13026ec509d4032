"""ProcessSupervisor integration tests.

These tests launch tests/fixtures/fake_server.py through a runtime wrapper
script, so they run on POSIX only.

Test coverage:
- Readiness detection (substring, regex, stderr, disabled, unterminated marker)
- Boot failures (early exit, timeout)
- Two-phase stop, escalation to a forced kill, undeliverable kill
- Output capture, environment, working directory, stdin
- Process isolation and single ownership
"""

from __future__ import annotations

import copy
import logging
import os
import pickle
import sys
import time
from pathlib import Path
from typing import Callable
from unittest import mock

import pytest

from artifact_launcher.errors import (
    AbnormalExitError,
    ConfigurationError,
    DeploymentTimeoutError,
    LaunchError,
    StopError,
    SupervisorError,
)
from artifact_launcher.runtime import (
    LaunchSpec,
    OutputSink,
    ProcessSupervisor,
    ReadinessMatcher,
    SupervisorState,
    launch,
)
from artifact_launcher.runtime.supervisor import ProcessObservation

IS_WINDOWS = sys.platform == "win32"

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(IS_WINDOWS, reason="POSIX runtime wrapper"),
]


# =============================================================================
# Helpers
# =============================================================================


def server_spec(runtime: Path, *args: str) -> LaunchSpec:
    return (
        LaunchSpec()
        .with_runtime(runtime)
        .with_main_entry_point("com.example.Main")
        .with_arguments(args)
        .with_stdout(OutputSink.discard())
        .with_stderr(OutputSink.discard())
    )


def start(spec: LaunchSpec, stop_timeout: float = 2.0, kill_grace: float = 2.0) -> ProcessSupervisor:
    return launch(spec, stop_timeout=stop_timeout, kill_grace=kill_grace)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def supervisors():
    """Track launched supervisors and make sure every child is gone afterwards."""
    started: list[ProcessSupervisor] = []
    yield started
    for supervisor in started:
        supervisor.kill()


# =============================================================================
# Readiness Tests
# =============================================================================


class TestReadiness:
    """Test readiness detection."""

    @pytest.mark.timeout(20)
    def test_ready_then_stop(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--ready-after", "0.2"))
        supervisors.append(supervisor)

        assert supervisor.state == SupervisorState.STARTING
        assert supervisor.await_ready(timeout=10) is None
        assert supervisor.state == SupervisorState.DEPLOYED
        assert supervisor.is_alive()
        assert supervisor.last_error() is None

        supervisor.stop()
        assert supervisor.state == SupervisorState.STOPPED
        assert not supervisor.is_alive()
        assert supervisor.exit_code == 0
        assert "stopping" in supervisor.output()

    @pytest.mark.timeout(20)
    def test_regex_marker(self, fake_runtime: Path, supervisors):
        spec = server_spec(fake_runtime, "--marker", "Server UP").with_ready_marker(
            r"Server \w+", regex=True
        )
        supervisor = start(spec)
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

    @pytest.mark.timeout(20)
    def test_marker_on_stderr(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--no-ready", "--stderr", "WFSWARM99999 up"))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None
        assert "WFSWARM99999" in supervisor.output("stderr")

    @pytest.mark.timeout(20)
    def test_readiness_disabled(self, fake_runtime: Path, supervisors):
        spec = server_spec(fake_runtime, "--no-ready").with_ready_matcher(None)
        supervisor = start(spec)
        supervisors.append(supervisor)

        assert supervisor.state == SupervisorState.RUNNING
        assert supervisor.await_ready(timeout=0.1) is None
        assert supervisor.is_alive()

    @pytest.mark.timeout(20)
    def test_marker_without_newline(self, fake_runtime: Path, supervisors):
        """A marker with no trailing newline from a child that keeps running."""
        supervisor = start(server_spec(fake_runtime, "--ready-after", "0", "--no-newline"))
        supervisors.append(supervisor)

        started = time.monotonic()
        assert supervisor.await_ready(timeout=2) is None
        assert time.monotonic() - started < 1.5
        assert supervisor.state == SupervisorState.DEPLOYED
        assert supervisor.is_alive()
        assert "WFSWARM99999" in supervisor.output()

    @pytest.mark.timeout(20)
    def test_marker_just_before_exit(self, fake_runtime: Path, supervisors):
        """A marker printed right before exit still counts."""
        supervisor = start(server_spec(fake_runtime, "--ready-after", "0", "--exit-after", "0"))
        supervisors.append(supervisor)

        assert supervisor.await_ready(timeout=10) is None
        assert supervisor.wait(timeout=10) == 0
        # Exiting after deployment is still a failure
        assert wait_for(lambda: supervisor.state == SupervisorState.FAILED)
        assert isinstance(supervisor.last_error(), AbnormalExitError)


class TestObservation:
    """Test readiness matching on raw output chunks."""

    def test_marker_split_across_chunks(self):
        obs = ProcessObservation(ReadinessMatcher("WFSWARM99999"))
        obs.on_output("stdout", "boot line\nWFSW")
        assert obs.state == SupervisorState.STARTING

        obs.on_output("stdout", "ARM99999 ready")
        assert obs.state == SupervisorState.DEPLOYED
        assert obs.ready

    def test_streams_matched_separately(self):
        obs = ProcessObservation(ReadinessMatcher("WFSWARM99999"))
        obs.on_output("stdout", "WFSW")
        obs.on_output("stderr", "ARM99999")
        assert obs.state == SupervisorState.STARTING

    def test_completed_lines_not_rescanned(self):
        obs = ProcessObservation(ReadinessMatcher("WFSWARM99999"))
        obs.on_output("stdout", "WFSW\n")
        obs.on_output("stdout", "ARM99999\n")
        assert obs.state == SupervisorState.STARTING
        assert obs.pending["stdout"] == ""


# =============================================================================
# Boot Failure Tests
# =============================================================================


class TestBootFailures:
    """Test boot failures reported through await_ready."""

    @pytest.mark.timeout(20)
    def test_exit_before_ready(self, fake_runtime: Path, supervisors):
        supervisor = start(
            server_spec(fake_runtime, "--no-ready", "--exit-after", "0.05", "--exit-code", "3")
        )
        supervisors.append(supervisor)

        started = time.monotonic()
        error = supervisor.await_ready(timeout=2)
        elapsed = time.monotonic() - started

        # Returns on the exit, not at the boot timeout
        assert elapsed < 1.5
        assert isinstance(error, AbnormalExitError)
        assert error.exit_code == 3
        assert supervisor.state == SupervisorState.FAILED
        assert supervisor.last_error() is error
        assert not supervisor.is_alive()

    @pytest.mark.timeout(20)
    def test_boot_timeout_does_not_kill(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--no-ready"))
        supervisors.append(supervisor)

        error = supervisor.await_ready(timeout=0.3)
        assert isinstance(error, DeploymentTimeoutError)
        assert supervisor.state == SupervisorState.FAILED
        assert supervisor.is_alive()

        supervisor.stop()
        assert not supervisor.is_alive()
        # stop() reaps a failed child but keeps the failure
        assert supervisor.state == SupervisorState.FAILED
        assert supervisor.last_error() is error

    @pytest.mark.timeout(20)
    def test_ensure_ready_raises(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--no-ready"))
        supervisors.append(supervisor)
        with pytest.raises(DeploymentTimeoutError):
            supervisor.ensure_ready(timeout=0.2)

    @pytest.mark.timeout(20)
    def test_stopped_before_ready(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--no-ready"))
        supervisors.append(supervisor)

        supervisor.stop()
        assert supervisor.state == SupervisorState.STOPPED
        error = supervisor.await_ready(timeout=1)
        assert isinstance(error, SupervisorError)
        assert "stopped before becoming ready" in str(error)


# =============================================================================
# Stop Tests
# =============================================================================


class TestStop:
    """Test two-phase stop."""

    @pytest.mark.timeout(20)
    def test_escalates_to_kill(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--ignore-term"), kill_grace=2.0)
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        started = time.monotonic()
        supervisor.stop(timeout=0.5)
        elapsed = time.monotonic() - started

        assert not supervisor.is_alive()
        assert supervisor.state == SupervisorState.STOPPED
        assert supervisor.exit_code == -9
        assert elapsed < 0.5 + 2.0 + 1.0

    @pytest.mark.timeout(20)
    def test_stop_is_idempotent(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        supervisor.stop()
        exit_code = supervisor.exit_code
        supervisor.stop()
        supervisor.stop(timeout=0)

        assert supervisor.state == SupervisorState.STOPPED
        assert supervisor.exit_code == exit_code

    @pytest.mark.timeout(20)
    def test_stop_after_exit(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--no-ready", "--exit-after", "0"))
        supervisors.append(supervisor)
        assert supervisor.wait(timeout=10) == 0
        assert wait_for(lambda: supervisor.state == SupervisorState.FAILED)

        supervisor.stop()
        assert supervisor.state == SupervisorState.FAILED

    @pytest.mark.timeout(20)
    def test_kill(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        supervisor.kill()
        assert not supervisor.is_alive()
        assert supervisor.exit_code == -9
        assert supervisor.state == SupervisorState.STOPPED

    @pytest.mark.timeout(20)
    def test_context_manager_stops(self, fake_runtime: Path):
        with start(server_spec(fake_runtime)) as supervisor:
            assert supervisor.await_ready(timeout=10) is None
        assert supervisor.state == SupervisorState.STOPPED
        assert not supervisor.is_alive()


class TestStopFailures:
    """Test stops whose forced kill is refused or never reclaimed."""

    @pytest.mark.timeout(20)
    def test_kill_refused_during_stop(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime, "--ignore-term"))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        denied = PermissionError("Operation not permitted")
        with mock.patch("os.killpg", side_effect=denied), \
                mock.patch.object(supervisor._process, "kill", side_effect=denied):
            with pytest.raises(StopError) as exc_info:
                supervisor.stop(timeout=0.3)

        assert exc_info.value.pid == supervisor.pid
        assert supervisor.state == SupervisorState.FAILED
        assert "Unable to kill" in str(supervisor.last_error())
        assert supervisor.is_alive()

    @pytest.mark.timeout(20)
    def test_kill_refused(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        denied = PermissionError("Operation not permitted")
        with mock.patch("os.killpg", side_effect=denied), \
                mock.patch.object(supervisor._process, "kill", side_effect=denied):
            with pytest.raises(StopError):
                supervisor.kill()

        assert supervisor.state == SupervisorState.FAILED
        assert supervisor.last_error() is not None
        assert supervisor.is_alive()

    @pytest.mark.timeout(20)
    def test_kill_not_reclaimed(self, fake_runtime: Path, supervisors, caplog):
        supervisor = start(server_spec(fake_runtime, "--ignore-term"), kill_grace=0.2)
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        with caplog.at_level(logging.WARNING, logger="artifact_launcher"), \
                mock.patch.object(supervisor._obs, "wait_for_exit", return_value=False):
            supervisor.stop(timeout=0.2)

        assert supervisor.state == SupervisorState.STOPPED
        assert supervisor.last_error() is None
        assert "not reclaimed" in caplog.text
        # The kill was delivered even though the wait gave up
        assert wait_for(lambda: not supervisor.is_alive())


# =============================================================================
# Child Process Setup Tests
# =============================================================================


class TestChildSetup:
    """Test what the child sees."""

    @pytest.mark.timeout(20)
    def test_command_line_reaches_child(self, fake_runtime: Path, supervisors, tmp_path: Path):
        spec = (
            server_spec(fake_runtime, "--echo-env", "APP_MODE", "--echo-cwd", "extra")
            .with_property("swarm.http.port", "8181")
            .with_environment("APP_MODE", "test")
            .with_working_directory(tmp_path)
        )
        supervisor = start(spec)
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        output = supervisor.output()
        assert "prop:swarm.http.port=8181" in output
        assert "entry:main:com.example.Main" in output
        assert "arg:extra" in output
        assert "env:APP_MODE=test" in output
        assert f"cwd:{os.path.realpath(tmp_path)}" in output

    @pytest.mark.timeout(20)
    def test_capture_files(self, fake_runtime: Path, tmp_path: Path):
        stdout_file = tmp_path / "logs" / "stdout.log"
        stderr_file = tmp_path / "logs" / "stderr.log"
        spec = (
            server_spec(fake_runtime, "--lines", "3", "--stderr", "warning: low memory")
            .with_stdout_file(stdout_file)
            .with_stderr_file(stderr_file)
        )
        with start(spec) as supervisor:
            assert supervisor.await_ready(timeout=10) is None

        stdout = stdout_file.read_text()
        assert "boot line 0\nboot line 1\nboot line 2\n" in stdout
        assert "WFSWARM99999" in stdout
        assert "stopping" in stdout
        assert stderr_file.read_text() == "warning: low memory\n"

    @pytest.mark.timeout(20)
    def test_stdin_kept_open(self, fake_runtime: Path, supervisors):
        spec = server_spec(fake_runtime, "--echo-stdin").with_stdin()
        supervisor = start(spec)
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        assert supervisor.stdin is not None
        supervisor.stdin.write(b"hello\n")
        supervisor.stdin.flush()
        assert wait_for(lambda: "stdin:hello" in supervisor.output())

    @pytest.mark.timeout(20)
    def test_stdin_closed_by_default(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.stdin is None

    @pytest.mark.timeout(20)
    def test_own_process_group(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None
        assert os.getpgid(supervisor.pid) == supervisor.pid
        assert os.getpgid(supervisor.pid) != os.getpgid(os.getpid())


# =============================================================================
# Launch Failure Tests
# =============================================================================


class TestLaunchFailures:
    """Test errors raised synchronously by launch()."""

    def test_missing_runtime_binary(self, tmp_path: Path):
        spec = server_spec(tmp_path / "no-such-java")
        with pytest.raises(LaunchError) as exc_info:
            launch(spec)
        assert exc_info.value.argv[0] == str(tmp_path / "no-such-java")

    def test_no_entry_point(self, fake_runtime: Path):
        with pytest.raises(ConfigurationError):
            launch(LaunchSpec().with_runtime(fake_runtime))

    def test_unwritable_capture_file(self, fake_runtime: Path, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        spec = server_spec(fake_runtime).with_stdout_file(blocker / "out.log")
        with pytest.raises(LaunchError):
            launch(spec)


# =============================================================================
# Ownership and Reporting Tests
# =============================================================================


class TestOwnership:
    """Test single ownership and snapshots."""

    @pytest.mark.timeout(20)
    def test_cannot_copy_or_pickle(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)

        with pytest.raises(TypeError):
            copy.copy(supervisor)
        with pytest.raises(TypeError):
            copy.deepcopy(supervisor)
        with pytest.raises(TypeError):
            pickle.dumps(supervisor)

    @pytest.mark.timeout(20)
    def test_snapshot(self, fake_runtime: Path, supervisors):
        supervisor = start(server_spec(fake_runtime))
        supervisors.append(supervisor)
        assert supervisor.await_ready(timeout=10) is None

        snapshot = supervisor.snapshot()
        assert snapshot.pid == supervisor.pid
        assert snapshot.state == SupervisorState.DEPLOYED
        assert snapshot.exit_code is None
        assert snapshot.argv[0] == str(fake_runtime)
        assert "WFSWARM99999" in snapshot.stdout_tail
        assert '"state":"deployed"' in snapshot.model_dump_json()
