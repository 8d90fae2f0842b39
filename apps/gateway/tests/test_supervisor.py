from collections.abc import Callable, Iterator, Sequence
import signal
import subprocess
import sys
from threading import Barrier, Lock, Thread
import time

import pytest

from gateway.services.supervisor import (
    WorkerStartError,
    WorkerSupervisor,
    build_worker_command,
)
from gateway.services.types import WorkerState

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]
CRASHER = [sys.executable, "-c", "import sys; sys.exit(3)"]
STUBBORN = [
    sys.executable,
    "-c",
    (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    ),
]


class RecordingLauncher:
    def __init__(self, *, wait_for_ready: bool = False) -> None:
        self.processes: list[subprocess.Popen] = []
        self._wait_for_ready = wait_for_ready
        self._lock = Lock()

    def __call__(self, command: Sequence[str]) -> subprocess.Popen:
        if self._wait_for_ready:
            process = subprocess.Popen(list(command), stdout=subprocess.PIPE, text=True)
            assert process.stdout is not None
            process.stdout.readline()
        else:
            process = subprocess.Popen(list(command))
        with self._lock:
            self.processes.append(process)
        return process

    def cleanup(self) -> None:
        for process in self.processes:
            if process.poll() is None:
                process.kill()
                process.wait()
            if process.stdout is not None:
                process.stdout.close()


@pytest.fixture
def launcher() -> Iterator[RecordingLauncher]:
    recording = RecordingLauncher()
    yield recording
    recording.cleanup()


def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_build_worker_command_binds_localhost() -> None:
    command = build_worker_command(java_bin="/usr/bin/java", jar_path="/opt/tika-server.jar", port=9998)

    assert command == ["/usr/bin/java", "-jar", "/opt/tika-server.jar", "-h", "localhost", "-p", "9998"]


def test_terminate_without_worker_is_noop(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)

    supervisor.terminate()

    assert supervisor.state is WorkerState.NOT_STARTED
    assert supervisor.pid is None
    assert launcher.processes == []


def test_ensure_running_is_idempotent(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)

    supervisor.ensure_running()
    supervisor.ensure_running()

    assert len(launcher.processes) == 1
    assert supervisor.state is WorkerState.RUNNING
    assert supervisor.pid == launcher.processes[0].pid
    supervisor.close()


def test_concurrent_ensure_running_launches_exactly_one_worker(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)
    callers = 8
    barrier = Barrier(callers)
    errors: list[BaseException] = []

    def call() -> None:
        barrier.wait()
        try:
            supervisor.ensure_running()
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [Thread(target=call) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(launcher.processes) == 1
    supervisor.close()


def test_exit_within_grace_period_is_start_failure(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=CRASHER, grace_period_seconds=5.0, launcher=launcher)

    with pytest.raises(WorkerStartError, match="status 3"):
        supervisor.ensure_running()

    assert supervisor.state is WorkerState.EXITED
    assert supervisor.pid is None

    with pytest.raises(WorkerStartError):
        supervisor.ensure_running()
    assert len(launcher.processes) == 2


def test_missing_executable_is_start_failure(tmp_path) -> None:
    supervisor = WorkerSupervisor(command=[str(tmp_path / "no-such-java"), "-jar", "tika.jar"])

    with pytest.raises(WorkerStartError, match="no-such-java"):
        supervisor.ensure_running()

    assert supervisor.state is WorkerState.EXITED


def test_crashed_worker_is_restarted_on_next_call(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)
    supervisor.ensure_running()
    first = launcher.processes[0]

    first.kill()
    assert _wait_until(lambda: supervisor.state is WorkerState.EXITED)

    supervisor.ensure_running()

    assert len(launcher.processes) == 2
    assert supervisor.pid == launcher.processes[1].pid
    assert supervisor.state is WorkerState.RUNNING
    supervisor.close()


def test_terminate_stops_worker_gracefully(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)
    supervisor.ensure_running()

    supervisor.terminate()

    assert launcher.processes[0].returncode == -signal.SIGTERM
    assert supervisor.state is WorkerState.EXITED
    assert supervisor.pid is None

    supervisor.terminate()
    assert len(launcher.processes) == 1


def test_terminate_kills_worker_ignoring_sigterm() -> None:
    launcher = RecordingLauncher(wait_for_ready=True)
    supervisor = WorkerSupervisor(
        command=STUBBORN,
        terminate_timeout_seconds=0.3,
        launcher=launcher,
    )
    try:
        supervisor.ensure_running()

        started = time.monotonic()
        supervisor.terminate()

        assert launcher.processes[0].returncode == -signal.SIGKILL
        assert time.monotonic() - started < 5.0
    finally:
        launcher.cleanup()


def test_ensure_running_after_terminate_starts_new_worker(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)
    supervisor.ensure_running()
    supervisor.terminate()

    supervisor.ensure_running()

    assert len(launcher.processes) == 2
    assert supervisor.state is WorkerState.RUNNING
    supervisor.close()


def test_idle_timeout_stops_worker(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, idle_timeout_seconds=0.2, launcher=launcher)
    supervisor.ensure_running()

    supervisor.mark_active()

    assert _wait_until(lambda: supervisor.state is WorkerState.EXITED)
    assert supervisor.pid is None
    assert launcher.processes[0].returncode == -signal.SIGTERM
    assert supervisor.state is WorkerState.EXITED


def test_mark_active_without_idle_timeout_keeps_worker(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, launcher=launcher)
    supervisor.ensure_running()

    supervisor.mark_active()
    time.sleep(0.2)

    assert supervisor.state is WorkerState.RUNNING
    supervisor.close()


def test_idle_timeout_keeps_worker_while_in_use(launcher: RecordingLauncher) -> None:
    supervisor = WorkerSupervisor(command=SLEEPER, idle_timeout_seconds=0.2, launcher=launcher)
    supervisor.ensure_running()
    supervisor.mark_active()

    with supervisor.in_use():
        time.sleep(0.6)
        assert supervisor.state is WorkerState.RUNNING
        assert supervisor.pid == launcher.processes[0].pid

    assert _wait_until(lambda: supervisor.state is WorkerState.EXITED)
    assert launcher.processes[0].returncode == -signal.SIGTERM
    assert len(launcher.processes) == 1


def test_state_is_readable_while_terminate_waits() -> None:
    launcher = RecordingLauncher(wait_for_ready=True)
    supervisor = WorkerSupervisor(
        command=STUBBORN,
        terminate_timeout_seconds=1.5,
        launcher=launcher,
    )
    try:
        supervisor.ensure_running()
        stopper = Thread(target=supervisor.terminate)
        stopper.start()
        assert _wait_until(lambda: supervisor.pid is None)

        started = time.monotonic()
        state = supervisor.state
        elapsed = time.monotonic() - started

        assert stopper.is_alive()
        assert state is WorkerState.RUNNING
        assert elapsed < 0.5

        stopper.join(timeout=10)
        assert supervisor.state is WorkerState.EXITED
        assert launcher.processes[0].returncode == -signal.SIGKILL
    finally:
        launcher.cleanup()
