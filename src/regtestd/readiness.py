"""Blocking wait until a started node answers RPC commands."""

import http.client
import logging
import time
import urllib.parse
from pathlib import Path

from bitcoin.rpc import JSONRPCError
from bitcoin.rpc import RawProxy

from regtestd.config import LOCAL_IP
from regtestd.config import NodeConfig
from regtestd.environment import Environment
from regtestd.errors import ProcessExitedEarly
from regtestd.errors import StartupTimeout
from regtestd.supervisor import ProcessHandle

_LOGGER: logging.Logger = logging.getLogger(__name__)

RPC_TIMEOUT: float = 30.0

# Failures that only mean "not ready yet" while the node starts up.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    http.client.HTTPException,
    JSONRPCError,
    ValueError,
)


class RpcCredentials:
    """User and password pair read from a cookie file."""

    user: str
    password: str

    def __init__(self, user: str, password: str) -> None:
        self.user = user
        self.password = password

    def __repr__(self) -> str:
        return f"RpcCredentials(user={self.user!r}, password='***')"


def read_cookie(cookie_file: Path) -> RpcCredentials:
    """Read the credentials bitcoind writes into its data directory.

    :param cookie_file: Path of the ``.cookie`` file.
    :returns: Parsed credentials.
    :raises FileNotFoundError: If the node has not written the file yet.
    :raises ValueError: If the file is not ``user:password``.
    """
    content: str = cookie_file.read_text(encoding="utf-8").strip()
    user, separator, password = content.partition(":")
    if len(separator) == 0 or len(user) == 0 or len(password) == 0:
        raise ValueError(f"Malformed cookie file {cookie_file}")
    return RpcCredentials(user, password)


def rpc_url(port: int, wallet: str | None = None) -> str:
    """Return the RPC URL for ``port``, optionally scoped to ``wallet``.

    :param port: RPC port.
    :param wallet: Wallet name for wallet-scoped endpoints.
    :returns: URL without credentials.
    """
    url: str = f"http://{LOCAL_IP}:{port}"
    if wallet is not None:
        url = f"{url}/wallet/{urllib.parse.quote(wallet, safe='')}"
    return url


def make_client(
    port: int,
    credentials: RpcCredentials,
    wallet: str | None = None,
    timeout: float = RPC_TIMEOUT,
) -> RawProxy:
    """Build an RPC client authenticated with ``credentials``.

    :param port: RPC port.
    :param credentials: Cookie credentials.
    :param wallet: Optional wallet name to scope calls to.
    :param timeout: HTTP timeout in seconds.
    :returns: Raw JSON-RPC proxy.
    """
    path: str = "/"
    if wallet is not None:
        path = f"/wallet/{urllib.parse.quote(wallet, safe='')}"
    service_url: str = f"http://{credentials.user}:{credentials.password}@{LOCAL_IP}:{port}{path}"
    return RawProxy(service_url=service_url, timeout=timeout)


def _close_quietly(client: RawProxy | None) -> None:
    if client is None:
        return
    try:
        client.close()
    except OSError:
        pass


def _raise_if_exited(handle: ProcessHandle, environment: Environment) -> None:
    returncode: int | None = handle.poll()
    if returncode is not None:
        log_paths: tuple[str, ...] = handle.log_paths or environment.log_paths
        raise ProcessExitedEarly(returncode, log_paths, handle.tail())


def wait_ready(handle: ProcessHandle, environment: Environment, config: NodeConfig) -> RawProxy:
    """Poll the node until its RPC answers the baseline query.

    Each iteration checks process liveness first, then tries the RPC, then
    checks liveness again before declaring success. The client that answered
    is returned as is.

    :param handle: Running node process.
    :param environment: Directory and ports the node was started with.
    :param config: Node configuration carrying the polling budget.
    :returns: Ready RPC client.
    :raises ProcessExitedEarly: If the process exits before becoming ready.
    :raises StartupTimeout: If ``config.startup_timeout`` elapses first.
    """
    deadline: float = time.monotonic() + config.startup_timeout
    interval: float = config.poll_interval
    last_error: BaseException | None = None
    attempt: int = 0

    while True:
        attempt += 1
        _raise_if_exited(handle, environment)

        client: RawProxy | None = None
        try:
            credentials: RpcCredentials = read_cookie(environment.cookie_file)
            client = make_client(environment.rpc_port, credentials)
            client.getblockchaininfo()
        except TRANSIENT_ERRORS as exc:
            _close_quietly(client)
            last_error = exc
            _LOGGER.debug("bitcoind not ready (attempt %d): %s: %s", attempt, type(exc).__name__, exc)
        else:
            try:
                _raise_if_exited(handle, environment)
            except ProcessExitedEarly:
                _close_quietly(client)
                raise
            _LOGGER.debug("bitcoind ready on port %d after %d attempts", environment.rpc_port, attempt)
            return client

        remaining: float = deadline - time.monotonic()
        if remaining <= 0:
            _raise_if_exited(handle, environment)
            raise StartupTimeout(
                config.startup_timeout,
                last_error,
                handle.log_paths or environment.log_paths,
                handle.tail(),
            )
        time.sleep(min(interval, remaining))
        interval = min(interval + config.poll_interval, config.max_poll_interval)
