from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
import logging
import queue
import subprocess
from threading import Lock, Thread, Timer

from gateway.services.types import WorkerState

Launcher = Callable[[Sequence[str]], subprocess.Popen]


class WorkerStartError(RuntimeError):
    pass


def build_worker_command(*, java_bin: str, jar_path: str, port: int) -> list[str]:
    return [java_bin, "-jar", jar_path, "-h", "localhost", "-p", str(port)]


def _popen(command: Sequence[str]) -> subprocess.Popen:
    # stdout/stderr are inherited so worker output ends up next to ours
    return subprocess.Popen(list(command))


class WorkerSupervisor:
    """Owns the extraction worker subprocess.

    The tracked process, its single-slot exit queue and the state are only changed
    under ``_lock``. A daemon watcher thread per process puts the exit status on the
    queue; a filled queue means the worker is gone and the next ``ensure_running``
    starts a fresh one.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        grace_period_seconds: float = 0.1,
        terminate_timeout_seconds: float = 5.0,
        idle_timeout_seconds: float = 0.0,
        launcher: Launcher = _popen,
        logger: logging.Logger | None = None,
    ) -> None:
        self._command = list(command)
        self._grace_period_seconds = grace_period_seconds
        self._terminate_timeout_seconds = terminate_timeout_seconds
        self._idle_timeout_seconds = idle_timeout_seconds
        self._launcher = launcher
        self._logger = logger or logging.getLogger(__name__)

        self._lock = Lock()
        self._process: subprocess.Popen | None = None
        self._exit_queue: queue.Queue[int] | None = None
        self._state = WorkerState.NOT_STARTED

        self._idle_lock = Lock()
        self._idle_timer: Timer | None = None
        self._idle_generation = 0
        self._in_use = 0

    # Lock-free snapshots; terminate can hold the lock for seconds.
    @property
    def state(self) -> WorkerState:
        state = self._state
        exit_queue = self._exit_queue
        if state is WorkerState.RUNNING and exit_queue is not None and exit_queue.full():
            return WorkerState.EXITED
        return state

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process is not None else None

    def ensure_running(self) -> None:
        with self._lock:
            if self._exit_queue is not None:
                try:
                    returncode = self._exit_queue.get_nowait()
                except queue.Empty:
                    return
                self._logger.error("worker stopped with exit status %s; restarting", returncode)
                self._process = None
                self._exit_queue = None
                self._state = WorkerState.EXITED

            self._start_locked()

    def _start_locked(self) -> None:
        self._state = WorkerState.STARTING
        self._logger.info("starting worker: %s", " ".join(self._command))
        try:
            process = self._launcher(self._command)
        except OSError as exc:
            self._state = WorkerState.EXITED
            raise WorkerStartError(f"launch {self._command[0]}: {exc}") from exc

        exit_queue: queue.Queue[int] = queue.Queue(maxsize=1)
        watcher = Thread(
            target=self._watch,
            args=(process, exit_queue),
            name=f"worker-watcher-{process.pid}",
            daemon=True,
        )
        watcher.start()

        try:
            returncode = exit_queue.get(timeout=self._grace_period_seconds)
        except queue.Empty:
            # No news within the grace period: assume the worker came up.
            self._process = process
            self._exit_queue = exit_queue
            self._state = WorkerState.RUNNING
            self._logger.info("worker running pid=%s", process.pid)
            return

        self._state = WorkerState.EXITED
        raise WorkerStartError(f"worker exited during startup with status {returncode}")

    def _watch(self, process: subprocess.Popen, exit_queue: queue.Queue[int]) -> None:
        returncode = process.wait()
        self._logger.info("worker pid=%s ended with status %s", process.pid, returncode)
        exit_queue.put(returncode)

    def terminate(self) -> None:
        with self._lock:
            process = self._process
            exit_queue = self._exit_queue
            if process is None or exit_queue is None:
                return
            self._process = None
            self._exit_queue = None

            try:
                process.terminate()
            except OSError as exc:
                self._logger.warning("terminate worker pid=%s: %s", process.pid, exc)

            try:
                exit_queue.get(timeout=self._terminate_timeout_seconds)
            except queue.Empty:
                self._logger.warning(
                    "worker pid=%s still alive after %.1fs; killing",
                    process.pid,
                    self._terminate_timeout_seconds,
                )
                try:
                    process.kill()
                except OSError as exc:
                    self._logger.warning("kill worker pid=%s: %s", process.pid, exc)
                try:
                    exit_queue.get(timeout=self._terminate_timeout_seconds)
                except queue.Empty:
                    self._logger.error("worker pid=%s did not report exit after kill", process.pid)

            self._state = WorkerState.EXITED
            self._logger.info("worker pid=%s stopped", process.pid)

    @contextmanager
    def in_use(self) -> Iterator[None]:
        """Hold the worker for one extraction.

        The idle countdown never stops the worker while any ``in_use`` block is open;
        leaving the block restarts the countdown.
        """
        with self._idle_lock:
            self._in_use += 1
        try:
            yield
        finally:
            with self._idle_lock:
                self._in_use -= 1
            self.mark_active()

    def mark_active(self) -> None:
        """Restart the idle countdown; expiry terminates the worker."""
        if self._idle_timeout_seconds <= 0:
            return
        with self._idle_lock:
            if self._idle_timer is not None:
                self._idle_timer.cancel()
            self._idle_generation += 1
            timer = Timer(self._idle_timeout_seconds, self._on_idle, args=(self._idle_generation,))
            timer.daemon = True
            timer.start()
            self._idle_timer = timer

    def _on_idle(self, generation: int) -> None:
        # Holding _idle_lock through terminate keeps new extractions out until the
        # worker is gone; they then start a fresh one.
        with self._idle_lock:
            if generation != self._idle_generation:
                return
            self._idle_timer = None
            if self._in_use:
                self._logger.debug("idle timeout with %d extraction(s) in flight; keeping worker", self._in_use)
                return
            self._logger.info("worker idle for %.1fs; stopping", self._idle_timeout_seconds)
            self.terminate()

    def close(self) -> None:
        with self._idle_lock:
            self._idle_generation += 1
            if self._idle_timer is not None:
                self._idle_timer.cancel()
                self._idle_timer = None
        self.terminate()
