"""Node configuration and environment-variable defaults."""

import os
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from ipaddress import IPv4Address
from pathlib import Path
from typing import Literal

P2PMode = Literal["no", "yes", "connect"]

LOCAL_IP: IPv4Address = IPv4Address("127.0.0.1")
DEFAULT_ARGS: tuple[str, ...] = ("-fallbackfee=0.0001",)
DEFAULT_WALLET: str = "default"
DEFAULT_STARTUP_TIMEOUT: float = 60.0
DEFAULT_POLL_INTERVAL: float = 0.1
DEFAULT_MAX_POLL_INTERVAL: float = 0.5
DEFAULT_STOP_TIMEOUT: float = 10.0

ENV_EXE: str = "BITCOIND_EXE"
ENV_VERSION: str = "BITCOIND_VERSION"
ENV_DOWNLOAD_DIR: str = "BITCOIND_DOWNLOAD_DIR"
ENV_SHA256SUMS: str = "BITCOIND_SHA256SUMS"
ENV_SHA256: str = "BITCOIND_SHA256"
ENV_TEMPDIR_ROOT: str = "TEMPDIR_ROOT"
ENV_STARTUP_TIMEOUT: str = "REGTESTD_STARTUP_TIMEOUT"

# Data-directory subfolder bitcoind uses for each chain.
NETWORK_SUBDIRS: dict[str, str] = {
    "regtest": "regtest",
    "signet": "signet",
    "testnet": "testnet3",
}

# Flags regtestd sets itself; passing them through ``args`` would break isolation.
RESERVED_FLAGS: tuple[str, ...] = (
    "-datadir",
    "-rpcport",
    "-port",
    "-listen",
    "-connect",
    "-rpcuser",
    "-rpcpassword",
    "-rpcbind",
    "-rpccookiefile",
)


def _flag_name(arg: str) -> str:
    """Return the flag part of ``-name=value`` style arguments.

    :param arg: Raw command-line argument.
    :returns: Flag name including the leading dash.
    """
    name: str = arg.split("=", 1)[0]
    if name.startswith("--") is True:
        name = name[1:]
    if name.startswith("-no") is True:
        name = "-" + name[3:]
    return name


def _env_text(name: str) -> str | None:
    value: str | None = os.environ.get(name)
    if value is None:
        return None
    value = value.strip()
    if len(value) == 0:
        return None
    return value


def env_executable() -> str | None:
    """Return the executable override from ``BITCOIND_EXE``, if set."""
    return _env_text(ENV_EXE)


def env_version() -> str | None:
    """Return the node version selected through ``BITCOIND_VERSION``, if set."""
    return _env_text(ENV_VERSION)


def env_sha256sums() -> str | None:
    """Return the pinned ``SHA256SUMS`` manifest path, if set."""
    return _env_text(ENV_SHA256SUMS)


def env_sha256() -> str | None:
    """Return an explicitly pinned archive digest, if set."""
    value: str | None = _env_text(ENV_SHA256)
    if value is None:
        return None
    return value.lower()


def tempdir_root() -> str | None:
    """Return the parent directory for temporary work dirs from ``TEMPDIR_ROOT``."""
    return _env_text(ENV_TEMPDIR_ROOT)


def cache_root() -> Path:
    """Return the root directory where downloaded releases are cached.

    :returns: ``BITCOIND_DOWNLOAD_DIR`` when set, else ``~/.cache/regtestd``.
    """
    configured: str | None = _env_text(ENV_DOWNLOAD_DIR)
    if configured is not None:
        return Path(configured)
    xdg_cache: str | None = _env_text("XDG_CACHE_HOME")
    if xdg_cache is not None:
        return Path(xdg_cache) / "regtestd"
    return Path.home() / ".cache" / "regtestd"


@dataclass(frozen=True)
class P2P:
    """Peer-to-peer settings for a node.

    ``no`` keeps the node off the network, ``yes`` opens a peer port and
    ``connect`` opens one and also dials another node.
    """

    mode: P2PMode = "no"
    connect_to: tuple[str, int] | None = None

    def __post_init__(self) -> None:
        if self.mode not in ("no", "yes", "connect"):
            raise ValueError(f"Unknown p2p mode: {self.mode!r}")
        needs_target: bool = self.mode == "connect"
        has_target: bool = self.connect_to is not None
        if needs_target != has_target:
            raise ValueError("connect_to must be given exactly when mode is 'connect'")

    @classmethod
    def connect(cls, host: str, port: int) -> "P2P":
        """Build settings that open a peer port and dial ``host:port``.

        :param host: Address of the other node.
        :param port: Peer port of the other node.
        :returns: P2P settings in ``connect`` mode.
        """
        return cls(mode="connect", connect_to=(host, port))

    @property
    def enabled(self) -> bool:
        """Report whether the node opens a peer port."""
        return self.mode != "no"


P2P_NO: P2P = P2P("no")
P2P_YES: P2P = P2P("yes")


@dataclass(frozen=True)
class NodeConfig:
    """Options for one disposable node.

    The instance is frozen: once a node starts being built from it, nothing
    can change underneath the running process.
    """

    executable: str | None = None
    workdir: str | None = None
    tmpdir: str | None = None
    rpc_port: int | None = None
    p2p_port: int | None = None
    p2p: P2P = P2P_NO
    wallet: str | None = DEFAULT_WALLET
    view_stdout: bool = False
    args: tuple[str, ...] = DEFAULT_ARGS
    network: str = "regtest"
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    attempts: int = 1
    download: bool = False
    env: dict[str, str] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        if self.network not in NETWORK_SUBDIRS:
            raise ValueError(f"Unsupported network {self.network!r}; expected one of {sorted(NETWORK_SUBDIRS)}")
        for arg in self.args:
            if _flag_name(arg) in RESERVED_FLAGS:
                raise ValueError(f"{arg!r} is managed by regtestd and cannot be passed in args")
        for port in (self.rpc_port, self.p2p_port):
            if port is not None and (port <= 0 or port > 65535):
                raise ValueError(f"Invalid port number: {port}")
        if self.rpc_port is not None and self.rpc_port == self.p2p_port:
            raise ValueError("rpc_port and p2p_port must differ")
        if self.startup_timeout <= 0:
            raise ValueError("startup_timeout must be > 0")
        if self.poll_interval <= 0 or self.max_poll_interval < self.poll_interval:
            raise ValueError("poll intervals must be > 0 and max_poll_interval >= poll_interval")
        if self.stop_timeout < 0:
            raise ValueError("stop_timeout must be >= 0")
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")

    @classmethod
    def from_env(cls, **overrides: object) -> "NodeConfig":
        """Build a configuration from environment variables.

        Keyword overrides win over the environment.

        :param overrides: Field values that take precedence.
        :returns: A new configuration.
        """
        values: dict[str, object] = {}
        executable: str | None = env_executable()
        if executable is not None:
            values["executable"] = executable
        tmpdir: str | None = tempdir_root()
        if tmpdir is not None:
            values["tmpdir"] = tmpdir
        startup_timeout: str | None = _env_text(ENV_STARTUP_TIMEOUT)
        if startup_timeout is not None:
            values["startup_timeout"] = float(startup_timeout)
        if env_version() is not None:
            values["download"] = True
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    def with_overrides(self, **changes: object) -> "NodeConfig":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    @property
    def network_subdir(self) -> str:
        """Return the chain subfolder bitcoind creates inside the data dir."""
        return NETWORK_SUBDIRS[self.network]
