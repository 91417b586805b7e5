"""Isolated working directory and port allocation for one node."""

import logging
import shutil
import tempfile
from pathlib import Path

import ephemeral_port_reserve

from regtestd.config import LOCAL_IP
from regtestd.config import NodeConfig
from regtestd.errors import PortExhaustion
from regtestd.errors import TeardownError

_LOGGER: logging.Logger = logging.getLogger(__name__)

PORT_ATTEMPTS: int = 10
STDOUT_LOG_NAME: str = "stdout.log"
STDERR_LOG_NAME: str = "stderr.log"
COOKIE_FILE_NAME: str = ".cookie"


def get_available_port(exclude: set[int] | None = None, attempts: int = PORT_ATTEMPTS) -> int:
    """Reserve a currently unused local TCP port.

    The port is bound once and released before returning, so another process
    may still take it before the node binds; the reservation only makes that
    unlikely.

    :param exclude: Ports that must not be returned.
    :param attempts: Number of reservation attempts.
    :returns: A free port number.
    :raises PortExhaustion: If no acceptable port was found.
    """
    excluded: set[int] = set() if exclude is None else exclude
    last_error: BaseException | None = None
    for _ in range(attempts):
        try:
            port: int = ephemeral_port_reserve.reserve(str(LOCAL_IP))
        except OSError as exc:
            last_error = exc
            continue
        if port in excluded:
            continue
        return port
    raise PortExhaustion(attempts, last_error)


class Environment:
    """Directory and ports owned by exactly one node.

    The directory is deleted by :meth:`release` unless the caller supplied it.
    """

    _workdir: Path
    _owns_workdir: bool
    _network_subdir: str
    _rpc_port: int
    _p2p_port: int | None
    _released: bool

    def __init__(
        self,
        workdir: Path,
        owns_workdir: bool,
        rpc_port: int,
        p2p_port: int | None,
        network_subdir: str = "regtest",
    ) -> None:
        """Initialize the environment.

        :param workdir: Node data directory.
        :param owns_workdir: Whether :meth:`release` deletes ``workdir``.
        :param rpc_port: RPC listener port.
        :param p2p_port: Peer listener port, ``None`` when networking is off.
        :param network_subdir: Chain subfolder bitcoind writes into.
        """
        self._workdir = workdir
        self._owns_workdir = owns_workdir
        self._rpc_port = rpc_port
        self._p2p_port = p2p_port
        self._network_subdir = network_subdir
        self._released = False

    def __repr__(self) -> str:
        return f"Environment(workdir={str(self._workdir)!r}, rpc_port={self._rpc_port}, p2p_port={self._p2p_port})"

    @property
    def workdir(self) -> Path:
        return self._workdir

    @property
    def datadir(self) -> Path:
        return self._workdir

    @property
    def rpc_port(self) -> int:
        return self._rpc_port

    @property
    def p2p_port(self) -> int | None:
        return self._p2p_port

    @property
    def owns_workdir(self) -> bool:
        return self._owns_workdir

    @property
    def cookie_file(self) -> Path:
        return self._workdir / self._network_subdir / COOKIE_FILE_NAME

    @property
    def stdout_path(self) -> Path:
        return self._workdir / STDOUT_LOG_NAME

    @property
    def stderr_path(self) -> Path:
        return self._workdir / STDERR_LOG_NAME

    @property
    def log_paths(self) -> tuple[str, ...]:
        """Return the captured output files that exist on disk."""
        paths: list[str] = []
        for path in (self.stdout_path, self.stderr_path):
            if path.exists() is True:
                paths.append(str(path))
        return tuple(paths)

    @property
    def is_released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Delete the owned directory. Calling this more than once is a no-op."""
        if self._released is True:
            return
        self._released = True
        if self._owns_workdir is False:
            return
        try:
            shutil.rmtree(self._workdir)
        except FileNotFoundError:
            return
        except OSError as exc:
            error: TeardownError = TeardownError(f"Failed to remove {self._workdir}: {exc}")
            _LOGGER.warning("%s", error)
            return
        _LOGGER.debug("Removed work dir %s", self._workdir)


def _allocate_ports(config: NodeConfig) -> tuple[int, int | None]:
    """Pick the RPC and peer ports for ``config``.

    :param config: Node configuration.
    :returns: Tuple of ``(rpc_port, p2p_port)``.
    :raises PortExhaustion: If distinct free ports cannot be reserved.
    """
    taken: set[int] = set()
    for explicit in (config.rpc_port, config.p2p_port):
        if explicit is not None:
            taken.add(explicit)

    rpc_port: int
    if config.rpc_port is not None:
        rpc_port = config.rpc_port
    else:
        rpc_port = get_available_port(exclude=taken)
        taken.add(rpc_port)

    p2p_port: int | None = None
    if config.p2p.enabled is True:
        if config.p2p_port is not None:
            p2p_port = config.p2p_port
        else:
            p2p_port = get_available_port(exclude=taken)
    return rpc_port, p2p_port


def allocate(config: NodeConfig) -> Environment:
    """Create the isolated environment for one node.

    :param config: Node configuration.
    :returns: A fresh environment.
    :raises PortExhaustion: If ports cannot be reserved.
    """
    owns_workdir: bool
    workdir: Path
    if config.workdir is not None:
        workdir = Path(config.workdir)
        workdir.mkdir(parents=True, exist_ok=True)
        owns_workdir = False
    else:
        parent: str | None = config.tmpdir
        if parent is not None:
            Path(parent).mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix="regtestd-", dir=parent))
        owns_workdir = True

    try:
        rpc_port, p2p_port = _allocate_ports(config)
    except BaseException:
        if owns_workdir is True:
            shutil.rmtree(workdir, ignore_errors=True)
        raise

    environment: Environment = Environment(
        workdir,
        owns_workdir,
        rpc_port,
        p2p_port,
        network_subdir=config.network_subdir,
    )
    _LOGGER.debug("Allocated %r", environment)
    return environment
