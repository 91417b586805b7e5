"""Custom error types for regtestd."""

from collections.abc import Sequence


class RegtestdError(Exception):
    """Base class for all regtestd errors."""


class ResolutionError(RegtestdError):
    """Raised when no usable node executable can be resolved."""


class NotExecutable(ResolutionError):
    """Raised when an explicit executable path is missing or not executable."""

    path: str

    def __init__(self, path: str, reason: str) -> None:
        """Initialize the error.

        :param path: Offending executable path.
        :param reason: Short description of what is wrong with it.
        """
        self.path = path
        super().__init__(f"{path!r} is not a usable executable: {reason}")


class NotFound(ResolutionError):
    """Raised when no executable is configured, cached or on the search path."""


class UnsupportedPlatform(ResolutionError):
    """Raised when no release archive exists for the host and version."""

    version: str
    system: str
    machine: str

    def __init__(self, version: str, system: str, machine: str, detail: str = "") -> None:
        """Initialize the error.

        :param version: Requested node version.
        :param system: Host operating system name.
        :param machine: Host machine architecture.
        :param detail: Optional extra context.
        """
        self.version = version
        self.system = system
        self.machine = machine
        message: str = f"No bitcoind {version} release for {system}/{machine}"
        if len(detail) > 0:
            message = f"{message}: {detail}"
        super().__init__(message)


class ChecksumMismatch(ResolutionError):
    """Raised when downloaded archive bytes do not match the pinned digest."""

    url: str
    expected: str
    actual: str

    def __init__(self, url: str, expected: str, actual: str) -> None:
        """Initialize the error.

        :param url: Archive URL.
        :param expected: Pinned SHA-256 hex digest.
        :param actual: SHA-256 hex digest of the received bytes.
        """
        self.url = url
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {url}: expected {expected}, got {actual}")


class MalformedArchive(ResolutionError):
    """Raised when an archive does not contain exactly one node executable."""


class AllocationError(RegtestdError):
    """Raised when an isolated environment cannot be allocated."""


class PortExhaustion(AllocationError):
    """Raised when no free port could be reserved within the retry budget."""

    attempts: int

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        """Initialize the error.

        :param attempts: Number of reservation attempts made.
        :param last_error: Last failure observed while reserving.
        """
        self.attempts = attempts
        message: str = f"Could not reserve distinct free ports after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class SpawnError(RegtestdError):
    """Raised when the operating system refuses to start the node process."""


class ReadinessError(RegtestdError):
    """Raised when a started node never becomes ready for RPC commands."""

    log_paths: tuple[str, ...]

    def __init__(self, message: str, log_paths: Sequence[str]) -> None:
        """Initialize the error.

        :param message: Human-readable failure description.
        :param log_paths: Files holding the captured node output.
        """
        self.log_paths = tuple(log_paths)
        if len(self.log_paths) > 0:
            message = f"{message}\nNode output captured in: {', '.join(self.log_paths)}"
        super().__init__(message)


class StartupTimeout(ReadinessError):
    """Raised when the readiness budget elapses before the RPC answers."""

    timeout: float
    last_error: BaseException | None
    output_tail: str

    def __init__(
        self,
        timeout: float,
        last_error: BaseException | None,
        log_paths: Sequence[str],
        output_tail: str = "",
    ) -> None:
        """Initialize the error.

        :param timeout: Readiness budget in seconds.
        :param last_error: Last transport error seen while polling.
        :param log_paths: Files holding the captured node output.
        :param output_tail: Last captured output lines, read before teardown
            removes the log files.
        """
        self.timeout = timeout
        self.last_error = last_error
        self.output_tail = output_tail
        message: str = f"bitcoind RPC not ready after {timeout:.1f}s"
        if last_error is not None:
            message = f"{message}; last error: {type(last_error).__name__}: {last_error}"
        if len(output_tail) > 0:
            message = f"{message}\n{output_tail}"
        super().__init__(message, log_paths)


class ProcessExitedEarly(ReadinessError):
    """Raised when the node process exits before its RPC became ready."""

    returncode: int
    output_tail: str

    def __init__(self, returncode: int, log_paths: Sequence[str], output_tail: str = "") -> None:
        """Initialize the error.

        :param returncode: Exit status of the node process.
        :param log_paths: Files holding the captured node output.
        :param output_tail: Last captured output lines, if any.
        """
        self.returncode = returncode
        self.output_tail = output_tail
        message: str = f"bitcoind exited with status {returncode} before becoming ready"
        if len(output_tail) > 0:
            message = f"{message}\n{output_tail}"
        super().__init__(message, log_paths)


class TeardownError(RegtestdError):
    """Describes a failure to stop a node or remove its directory.

    Teardown runs on cleanup paths, so this error is logged rather than raised.
    """
