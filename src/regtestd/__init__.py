"""Public package API for regtestd."""

from regtestd.api import launch
from regtestd.api import launch_downloaded
from regtestd.config import DEFAULT_ARGS
from regtestd.config import LOCAL_IP
from regtestd.config import P2P
from regtestd.config import P2P_NO
from regtestd.config import P2P_YES
from regtestd.config import NodeConfig
from regtestd.download import DownloadSpec
from regtestd.download import Downloader
from regtestd.environment import Environment
from regtestd.environment import get_available_port
from regtestd.errors import AllocationError
from regtestd.errors import ChecksumMismatch
from regtestd.errors import MalformedArchive
from regtestd.errors import NotExecutable
from regtestd.errors import NotFound
from regtestd.errors import PortExhaustion
from regtestd.errors import ProcessExitedEarly
from regtestd.errors import ReadinessError
from regtestd.errors import RegtestdError
from regtestd.errors import ResolutionError
from regtestd.errors import SpawnError
from regtestd.errors import StartupTimeout
from regtestd.errors import TeardownError
from regtestd.errors import UnsupportedPlatform
from regtestd.node import BitcoinD
from regtestd.resolver import ExecutableResolver
from regtestd.resolver import downloaded_exe_path
from regtestd.resolver import exe_path

__all__: list[str] = [
    "launch",
    "launch_downloaded",
    "BitcoinD",
    "DEFAULT_ARGS",
    "DownloadSpec",
    "Downloader",
    "Environment",
    "ExecutableResolver",
    "LOCAL_IP",
    "NodeConfig",
    "P2P",
    "P2P_NO",
    "P2P_YES",
    "downloaded_exe_path",
    "exe_path",
    "get_available_port",
    "AllocationError",
    "ChecksumMismatch",
    "MalformedArchive",
    "NotExecutable",
    "NotFound",
    "PortExhaustion",
    "ProcessExitedEarly",
    "ReadinessError",
    "RegtestdError",
    "ResolutionError",
    "SpawnError",
    "StartupTimeout",
    "TeardownError",
    "UnsupportedPlatform",
]
