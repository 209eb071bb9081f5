"""
Process supervisor for the rx receiver.

ProcessSupervisor owns the rx process and the broadcaster generation bound to
it. It has exactly two states:

    STOPPED --start(args)--> RUNNING --stop()--> STOPPED
    RUNNING --start(args')--> (stop, then start) --> RUNNING

The process is spawned in its own session so that stop() can SIGKILL the
whole process group, descendants included. Every start builds a fresh
AudioBroadcaster and LogBroadcaster; they are discarded on stop and never
reused, so clients from one generation cannot leak into the next.

All transitions are serialized by one lock.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, List, Optional, Sequence

from rxrelay.audio.broadcaster import AudioBroadcaster
from rxrelay.config import RelayConfig
from rxrelay.errors import SpawnError, TransportError
from rxrelay.logs.broadcaster import LogBroadcaster
from rxrelay.process.command import build_command

logger = logging.getLogger(__name__)


def kill_process_group(pgid: int) -> None:
    """
    SIGKILL every process in a group.

    A group that no longer exists is not an error.
    """
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug(f"Process group {pgid} already gone")


@dataclass
class ProcessHandle:
    """The live rx process and everything the supervisor holds for it."""
    process: subprocess.Popen
    pid: int
    pgid: int
    stdout: Optional[BinaryIO]
    stderr: Optional[BinaryIO]
    args: List[str] = field(default_factory=list)
    running: bool = True


@dataclass
class SupervisorStatus:
    """Point-in-time snapshot returned by ProcessSupervisor.status()."""
    running: bool
    args: Optional[List[str]]
    pid: Optional[int] = None

    def to_dict(self) -> dict:
        return {"running": self.running, "flags": self.args, "pid": self.pid}


class ProcessSupervisor:
    """
    Owns the rx process lifecycle and its broadcasters.

    Handlers for the HTTP control surface receive this object explicitly;
    there is no module-level instance.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        kill_group: Callable[[int], None] = kill_process_group,
        audio_factory: Optional[Callable[[], AudioBroadcaster]] = None,
        log_factory: Optional[Callable[[Optional[BinaryIO], Optional[BinaryIO]], LogBroadcaster]] = None,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            config: RelayConfig (default: built-in defaults)
            popen: Process factory with subprocess.Popen's signature
            kill_group: Called with the process group id to kill it
            audio_factory: Builds a fresh AudioBroadcaster per start
            log_factory: Builds a fresh LogBroadcaster from (stdout, stderr)
        """
        self._config = config or RelayConfig()
        self._popen = popen
        self._kill_group = kill_group
        self._audio_factory = audio_factory or (
            lambda: AudioBroadcaster(self._config.sample_rate, self._config.channels)
        )
        self._log_factory = log_factory or LogBroadcaster

        self._lock = threading.Lock()
        self._handle: Optional[ProcessHandle] = None
        self._audio: Optional[AudioBroadcaster] = None
        self._logs: Optional[LogBroadcaster] = None

    @property
    def audio_broadcaster(self) -> Optional[AudioBroadcaster]:
        """Current audio broadcaster, or None when stopped."""
        with self._lock:
            return self._audio

    @property
    def log_broadcaster(self) -> Optional[LogBroadcaster]:
        """Current log broadcaster, or None when stopped."""
        with self._lock:
            return self._logs

    def is_running(self) -> bool:
        with self._lock:
            return self._handle is not None

    def status(self) -> SupervisorStatus:
        """Return a consistent snapshot of running state and arguments."""
        with self._lock:
            if self._handle is None:
                return SupervisorStatus(running=False, args=None)
            return SupervisorStatus(
                running=self._handle.running,
                args=list(self._handle.args),
                pid=self._handle.pid,
            )

    def start(self, args: Optional[Sequence[str]] = None) -> SupervisorStatus:
        """
        Start rx with args, replacing any running instance.

        Args:
            args: rx arguments (default: config.default_args)

        Returns:
            Status snapshot after the start

        Raises:
            SpawnError: If the process or its pipes could not be obtained
            TransportError: If the audio socket could not be bound

        Any failure after the spawn kills the new process and releases the
        broadcasters before the exception propagates.
        """
        args = list(self._config.default_args if args is None else args)

        with self._lock:
            if self._handle is not None:
                logger.info("rx already running, restarting with new arguments")
                self._stop_locked()

            handle = self._spawn(args)

            audio = logs = None
            try:
                audio = self._audio_factory()
                audio.start(self._config.audio_addr)
                logs = self._log_factory(handle.stdout, handle.stderr)
                logs.start()
            except BaseException as e:
                if isinstance(e, TransportError):
                    logger.critical(
                        f"Audio socket {self._config.audio_addr} unavailable, tearing down rx PID={handle.pid}"
                    )
                else:
                    logger.error(f"Failed to start broadcasters, tearing down rx PID={handle.pid}: {e}")
                self._rollback(handle, audio, logs)
                raise

            self._handle = handle
            self._audio = audio
            self._logs = logs
            logger.info(f"rx running PID={handle.pid} args={args}")
            return SupervisorStatus(running=True, args=list(args), pid=handle.pid)

    def stop(self) -> bool:
        """
        Stop rx and discard the broadcasters. No-op when already stopped.

        Returns:
            True if this call stopped a running rx, False if it was already stopped
        """
        with self._lock:
            return self._stop_locked()

    def _spawn(self, args: List[str]) -> ProcessHandle:
        """Launch rx in a new process group. Must be called with lock held."""
        cmd = build_command(
            args,
            program=self._config.rx_program,
            python=self._config.python,
            niceness=self._config.niceness,
        )
        logger.info(f"Starting rx with command: {cmd} (cwd={self._config.rx_path})")
        try:
            process = self._popen(
                cmd,
                cwd=self._config.rx_path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to start rx: {e}")
            raise SpawnError(f"failed to start rx: {e}") from e

        # start_new_session makes the child a group leader
        handle = ProcessHandle(
            process=process,
            pid=process.pid,
            pgid=process.pid,
            stdout=process.stdout,
            stderr=process.stderr,
            args=list(args),
        )

        missing = [name for name in ("stdout", "stderr") if getattr(handle, name) is None]
        if missing:
            logger.error(f"rx PID={handle.pid} started without {', '.join(missing)} pipe")
            self._terminate(handle)
            self._close_pipes(handle)
            raise SpawnError(f"failed to get rx {' and '.join(missing)} pipe")

        logger.info(f"rx process started with PID: {handle.pid}")
        return handle

    def _stop_locked(self) -> bool:
        """Full stop sequence. Must be called with lock held; never raises."""
        handle, audio, logs = self._handle, self._audio, self._logs
        if handle is None:
            return False

        logger.info(f"Terminating rx process PID={handle.pid}...")
        self._terminate(handle)
        logger.info("rx process terminated")
        self._shutdown_broadcasters(audio, logs)

        self._handle = None
        self._audio = None
        self._logs = None
        return True

    def _rollback(
        self,
        handle: ProcessHandle,
        audio: Optional[AudioBroadcaster],
        logs: Optional[LogBroadcaster],
    ) -> None:
        """Undo a start that failed after the spawn. Never raises."""
        self._terminate(handle)
        self._shutdown_broadcasters(audio, logs)
        if logs is None:
            # Otherwise LogBroadcaster.shutdown() has closed them
            self._close_pipes(handle)

    @staticmethod
    def _shutdown_broadcasters(
        audio: Optional[AudioBroadcaster],
        logs: Optional[LogBroadcaster],
    ) -> None:
        if audio is not None:
            try:
                audio.shutdown()
            except Exception as e:
                logger.warning(f"Error shutting down audio broadcaster: {e}")
        if logs is not None:
            try:
                logs.shutdown()
            except Exception as e:
                logger.warning(f"Error shutting down log broadcaster: {e}")

    def _terminate(self, handle: ProcessHandle) -> None:
        """Kill the process group and reap the leader. Never raises."""
        try:
            self._kill_group(handle.pgid)
        except OSError as e:
            logger.warning(f"Could not kill process group {handle.pgid}: {e}")
            try:
                handle.process.kill()
            except OSError:
                pass

        timeout = self._config.stop_timeout_sec
        try:
            handle.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"rx PID={handle.pid} did not exit within {timeout}s after SIGKILL")
        handle.running = False

    @staticmethod
    def _close_pipes(handle: ProcessHandle) -> None:
        for stream in (handle.stdout, handle.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
