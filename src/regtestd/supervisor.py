"""Launching and stopping the node process."""

import logging
import os
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import IO

from regtestd.config import LOCAL_IP
from regtestd.config import NodeConfig
from regtestd.environment import Environment
from regtestd.errors import SpawnError
from regtestd.errors import TeardownError

_LOGGER: logging.Logger = logging.getLogger(__name__)

TAIL_LINES: int = 20


def build_command(executable: str, environment: Environment, config: NodeConfig) -> list[str]:
    """Build the node command line for ``environment``.

    :param executable: Node executable path.
    :param environment: Allocated directory and ports.
    :param config: Node configuration.
    :returns: Argument vector, executable first.
    """
    command: list[str] = [
        executable,
        f"-{config.network}",
        f"-datadir={environment.datadir}",
        f"-rpcport={environment.rpc_port}",
        f"-rpcbind={LOCAL_IP}",
        f"-rpcallowip={LOCAL_IP}",
    ]

    p2p_port: int | None = environment.p2p_port
    if config.p2p.enabled is False or p2p_port is None:
        command.append("-listen=0")
    else:
        command.append(f"-port={p2p_port}")
        command.append(f"-bind={LOCAL_IP}")
        if config.p2p.connect_to is not None:
            host, port = config.p2p.connect_to
            command.append(f"-connect={host}:{port}")

    if config.wallet is None:
        command.append("-disablewallet")

    command.extend(config.args)
    return command


class ProcessHandle:
    """Exclusive owner of one launched node process."""

    _process: subprocess.Popen[bytes]
    _command: list[str]
    _stdout_path: Path | None
    _stderr_path: Path
    _log_files: list[IO[bytes]]
    _stopped: bool
    _lock: threading.RLock

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        command: list[str],
        stdout_path: Path | None,
        stderr_path: Path,
        log_files: list[IO[bytes]],
    ) -> None:
        """Wrap a started process.

        :param process: Running child process.
        :param command: Argument vector it was started with.
        :param stdout_path: File capturing stdout, ``None`` when inherited.
        :param stderr_path: File capturing stderr.
        :param log_files: Open handles to close once the process is stopped.
        """
        self._process = process
        self._command = command
        self._stdout_path = stdout_path
        self._stderr_path = stderr_path
        self._log_files = log_files
        self._stopped = False
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self._process.pid}, returncode={self._process.returncode})"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def log_paths(self) -> tuple[str, ...]:
        paths: list[str] = []
        for path in (self._stdout_path, self._stderr_path):
            if path is not None and path.exists() is True:
                paths.append(str(path))
        return tuple(paths)

    def poll(self) -> int | None:
        """Return the exit status, or ``None`` while the process runs."""
        return self._process.poll()

    def is_running(self) -> bool:
        return self._process.poll() is None

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the process to exit on its own.

        :param timeout: Seconds to wait, ``None`` for no limit.
        :returns: Exit status.
        :raises subprocess.TimeoutExpired: If it is still running after ``timeout``.
        """
        return self._process.wait(timeout)

    def tail(self, lines: int = TAIL_LINES) -> str:
        """Return the last captured output lines, stderr first.

        :param lines: Maximum number of lines per stream.
        :returns: Text ready to embed in an error message.
        """
        chunks: list[str] = []
        for label, path in (("stderr", self._stderr_path), ("stdout", self._stdout_path)):
            if path is None or path.exists() is False:
                continue
            try:
                with path.open("r", encoding="utf-8", errors="replace") as handle:
                    last: deque[str] = deque(handle, maxlen=lines)
            except OSError:
                continue
            if len(last) == 0:
                continue
            chunks.append(f"--- {label} ({path}) ---\n" + "".join(last).rstrip())
        return "\n".join(chunks)

    def _close_logs(self) -> None:
        for log_file in self._log_files:
            try:
                log_file.close()
            except OSError:
                pass
        self._log_files = []

    def stop(self, timeout: float) -> int | None:
        """Terminate the process, escalating to a kill after ``timeout``.

        Stopping an already stopped handle does nothing. Failures to signal
        the process are logged, not raised.

        :param timeout: Seconds to wait after the termination request.
        :returns: Exit status, or ``None`` if the process could not be reaped.
        """
        with self._lock:
            if self._stopped is True:
                return self._process.returncode
            self._stopped = True

            try:
                if self._process.poll() is None:
                    _LOGGER.debug("Terminating bitcoind pid %d", self._process.pid)
                    self._process.terminate()
                    try:
                        self._process.wait(timeout)
                    except subprocess.TimeoutExpired:
                        _LOGGER.warning(
                            "bitcoind pid %d ignored termination for %.1fs, killing it",
                            self._process.pid,
                            timeout,
                        )
                        self._process.kill()
                        self._process.wait(timeout)
            except (OSError, subprocess.TimeoutExpired) as exc:
                error: TeardownError = TeardownError(f"Failed to stop bitcoind pid {self._process.pid}: {exc}")
                _LOGGER.warning("%s", error)
            finally:
                self._close_logs()
            return self._process.returncode


def spawn(executable: str, environment: Environment, config: NodeConfig) -> ProcessHandle:
    """Start the node inside ``environment``.

    :param executable: Node executable path.
    :param environment: Allocated directory and ports.
    :param config: Node configuration.
    :returns: Handle owning the running process.
    :raises SpawnError: If the operating system refuses to start it.
    """
    command: list[str] = build_command(executable, environment, config)
    child_env: dict[str, str] = os.environ.copy()
    if config.env is not None:
        child_env.update(config.env)

    log_files: list[IO[bytes]] = []
    stdout_target: IO[bytes] | None = None
    stdout_path: Path | None = None
    _LOGGER.debug("Launching %s", " ".join(command))
    try:
        if config.view_stdout is False:
            stdout_path = environment.stdout_path
            stdout_target = stdout_path.open("wb")
            log_files.append(stdout_target)
        stderr_target: IO[bytes] = environment.stderr_path.open("wb")
        log_files.append(stderr_target)
        process: subprocess.Popen[bytes] = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=stdout_target,
            stderr=stderr_target,
            cwd=str(environment.workdir),
            env=child_env,
        )
    except OSError as exc:
        for log_file in log_files:
            log_file.close()
        raise SpawnError(f"Cannot start {executable}: {exc}") from exc

    return ProcessHandle(process, command, stdout_path, environment.stderr_path, log_files)
