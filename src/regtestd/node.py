"""The disposable node handle returned to callers."""

import atexit
import logging
import subprocess
import threading
from pathlib import Path

from bitcoin.rpc import JSONRPCError
from bitcoin.rpc import RawProxy

from regtestd.config import LOCAL_IP
from regtestd.config import P2P
from regtestd.config import NodeConfig
from regtestd.environment import Environment
from regtestd.environment import allocate
from regtestd.errors import ProcessExitedEarly
from regtestd.readiness import TRANSIENT_ERRORS
from regtestd.readiness import RpcCredentials
from regtestd.readiness import make_client
from regtestd.readiness import read_cookie
from regtestd.readiness import rpc_url
from regtestd.readiness import wait_ready
from regtestd.resolver import ExecutableResolver
from regtestd.supervisor import ProcessHandle
from regtestd.supervisor import spawn

_LOGGER: logging.Logger = logging.getLogger(__name__)

# bitcoind RPC error codes
RPC_WALLET_ERROR: int = -4
RPC_WALLET_ALREADY_LOADED: int = -35


def _rpc_error_code(exc: JSONRPCError) -> object:
    error: object = getattr(exc, "error", None)
    if isinstance(error, dict) is False:
        return None
    return error.get("code")


class BitcoinD:
    """A running regtest ``bitcoind`` with its own directory and ports.

    Construction blocks until the node answers RPC commands. The handle is
    the only owner of the process and the directory; :meth:`close` (or
    leaving a ``with`` block) stops the one and deletes the other.

    ::

        with BitcoinD() as bitcoind:
            assert bitcoind.client.getblockchaininfo()["blocks"] == 0
    """

    _config: NodeConfig
    _executable: str
    _environment: Environment | None
    _handle: ProcessHandle | None
    _client: RawProxy | None
    _wallet_client: RawProxy | None
    _closed: bool
    _lock: threading.RLock

    def __init__(
        self,
        config: NodeConfig | None = None,
        executable: str | None = None,
        resolver: ExecutableResolver | None = None,
    ) -> None:
        """Resolve, launch and wait for a node.

        :param config: Node configuration; defaults to :meth:`NodeConfig.from_env`.
        :param executable: Executable override, wins over ``config.executable``.
        :param resolver: Custom executable resolver.
        :raises RegtestdError: If any step fails; nothing is left running.
        """
        if config is None:
            config = NodeConfig.from_env()
        if executable is not None:
            config = config.with_overrides(executable=executable)
        self._config = config
        self._environment = None
        self._handle = None
        self._client = None
        self._wallet_client = None
        self._closed = False
        self._lock = threading.RLock()

        if resolver is None:
            resolver = ExecutableResolver(config)
        self._executable = resolver.resolve()

        try:
            self._start()
        except BaseException:
            self._teardown()
            self._closed = True
            raise
        atexit.register(self.close)

    def _start(self) -> None:
        attempts_left: int = self._config.attempts
        while True:
            attempts_left -= 1
            self._environment = allocate(self._config)
            self._handle = spawn(self._executable, self._environment, self._config)
            try:
                self._client = wait_ready(self._handle, self._environment, self._config)
            except ProcessExitedEarly as exc:
                if attempts_left <= 0:
                    raise
                _LOGGER.warning("bitcoind exited early (%d), retrying with fresh ports", exc.returncode)
                self._teardown()
                continue
            break

        wallet: str | None = self._config.wallet
        if wallet is not None:
            self._wallet_client = self.create_wallet(wallet)
        _LOGGER.info("bitcoind pid %d ready at %s", self._handle.pid, self.rpc_url())

    def __repr__(self) -> str:
        state: str = "closed" if self._closed is True else "running"
        return f"BitcoinD({state}, rpc_port={self.rpc_port}, workdir={str(self.workdir)!r})"

    def __enter__(self) -> "BitcoinD":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def _require_environment(self) -> Environment:
        if self._environment is None:
            raise RuntimeError("bitcoind environment is not allocated")
        return self._environment

    def _require_client(self) -> RawProxy:
        if self._client is None:
            raise RuntimeError("bitcoind RPC client is not available")
        return self._client

    @property
    def config(self) -> NodeConfig:
        return self._config

    @property
    def executable(self) -> str:
        return self._executable

    @property
    def client(self) -> RawProxy:
        """RPC client bound to the node endpoint."""
        return self._require_client()

    @property
    def wallet_client(self) -> RawProxy | None:
        """RPC client bound to the configured wallet, ``None`` without a wallet."""
        return self._wallet_client

    @property
    def environment(self) -> Environment:
        return self._require_environment()

    @property
    def workdir(self) -> Path:
        return self._require_environment().workdir

    @property
    def datadir(self) -> Path:
        return self._require_environment().datadir

    @property
    def cookie_file(self) -> Path:
        return self._require_environment().cookie_file

    @property
    def rpc_port(self) -> int:
        return self._require_environment().rpc_port

    @property
    def p2p_port(self) -> int | None:
        return self._require_environment().p2p_port

    @property
    def rpc_socket(self) -> tuple[str, int]:
        return str(LOCAL_IP), self.rpc_port

    @property
    def p2p_socket(self) -> tuple[str, int] | None:
        port: int | None = self.p2p_port
        if port is None:
            return None
        return str(LOCAL_IP), port

    @property
    def pid(self) -> int | None:
        if self._handle is None:
            return None
        return self._handle.pid

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def rpc_url(self) -> str:
        """Return the RPC URL, e.g. ``http://127.0.0.1:18443``."""
        return rpc_url(self.rpc_port)

    def rpc_url_with_wallet(self, wallet_name: str) -> str:
        """Return the RPC URL scoped to ``wallet_name``."""
        return rpc_url(self.rpc_port, wallet_name)

    def p2p_connect(self) -> P2P | None:
        """Return settings for another node to connect to this one.

        :returns: ``P2P`` in ``connect`` mode, or ``None`` when peering is off.
        """
        socket_address: tuple[str, int] | None = self.p2p_socket
        if socket_address is None:
            return None
        return P2P.connect(*socket_address)

    def credentials(self) -> RpcCredentials:
        """Read the current cookie credentials from the data directory."""
        return read_cookie(self.cookie_file)

    def create_wallet(self, wallet_name: str) -> RawProxy:
        """Create (or load, if it already exists) a wallet and return a client for it.

        :param wallet_name: Wallet name.
        :returns: RPC client scoped to the wallet.
        """
        client: RawProxy = self._require_client()
        try:
            client.createwallet(wallet_name)
        except JSONRPCError as exc:
            if _rpc_error_code(exc) != RPC_WALLET_ERROR:
                raise
            try:
                client.loadwallet(wallet_name)
            except JSONRPCError as load_exc:
                if _rpc_error_code(load_exc) != RPC_WALLET_ALREADY_LOADED:
                    raise
        return make_client(self.rpc_port, self.credentials(), wallet=wallet_name)

    def stop(self) -> int | None:
        """Ask the node to shut down over RPC and wait for it to exit.

        The directory is kept until :meth:`close`.

        :returns: Exit status, or ``None`` if the process could not be reaped.
        """
        handle: ProcessHandle | None = self._handle
        if handle is None:
            return None
        if handle.poll() is None and self._client is not None:
            try:
                self._client.stop()
            except TRANSIENT_ERRORS as exc:
                _LOGGER.debug("RPC stop failed, falling back to signals: %s", exc)
            try:
                handle.wait(self._config.stop_timeout)
            except subprocess.TimeoutExpired:
                _LOGGER.debug("bitcoind pid %d still running after RPC stop", handle.pid)
        return handle.stop(self._config.stop_timeout)

    def _teardown(self) -> None:
        handle: ProcessHandle | None = self._handle
        if handle is not None:
            handle.stop(self._config.stop_timeout)
        environment: Environment | None = self._environment
        if environment is not None:
            environment.release()
        for client in (self._client, self._wallet_client):
            if client is None:
                continue
            try:
                client.close()
            except OSError:
                pass
        self._client = None
        self._wallet_client = None

    def close(self) -> None:
        """Stop the process and delete the work directory. Safe to call repeatedly."""
        with self._lock:
            if self._closed is True:
                return
            self._closed = True
            self._teardown()
        atexit.unregister(self.close)
