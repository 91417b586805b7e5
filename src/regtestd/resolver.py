"""Resolution of the node executable to launch."""

import logging
import os
import shutil
from pathlib import Path

from regtestd.config import NodeConfig
from regtestd.config import env_executable
from regtestd.config import env_version
from regtestd.download import Downloader
from regtestd.errors import NotExecutable
from regtestd.errors import NotFound

_LOGGER: logging.Logger = logging.getLogger(__name__)

EXECUTABLE_NAME: str = "bitcoind"


def check_executable(path: str) -> str:
    """Validate that ``path`` names an existing executable file.

    :param path: Candidate path.
    :returns: The absolute path.
    :raises NotExecutable: If the file is missing or lacks execute permission.
    """
    candidate: Path = Path(path).expanduser()
    if candidate.exists() is False:
        raise NotExecutable(path, "no such file")
    if candidate.is_file() is False:
        raise NotExecutable(path, "not a regular file")
    if os.access(candidate, os.X_OK) is False:
        raise NotExecutable(path, "missing execute permission")
    return str(candidate.resolve())


class ExecutableResolver:
    """Pick the node executable for a configuration.

    Precedence is explicit path, then a cached copy of the selected version,
    then the search path, then a fresh download. The cache is checked whenever
    a version is selected; the download step only runs when a downloader is
    available.
    """

    _config: NodeConfig
    _version: str | None
    _downloader: Downloader | None
    _cache: Downloader | None

    def __init__(
        self,
        config: NodeConfig,
        version: str | None = None,
        downloader: Downloader | None = None,
    ) -> None:
        """Initialize the resolver.

        :param config: Node configuration.
        :param version: Selected release version; defaults to ``BITCOIND_VERSION``.
        :param downloader: Download capability; built from the environment when
            ``config.download`` is set and none is given.
        """
        self._config = config
        self._version = version if version is not None else env_version()
        if downloader is None and config.download is True and self._version is not None:
            downloader = Downloader.from_env()
        self._downloader = downloader
        self._cache = downloader
        if self._cache is None and self._version is not None:
            self._cache = Downloader()

    @property
    def version(self) -> str | None:
        return self._version

    @property
    def can_download(self) -> bool:
        """Report whether this resolver carries the download capability."""
        return self._downloader is not None and self._version is not None

    def resolve(self) -> str:
        """Return the path of the executable to launch.

        :returns: Absolute executable path.
        :raises NotExecutable: If the explicit path is unusable.
        :raises NotFound: If nothing is cached, on the path, or downloadable.
        """
        explicit: str | None = self._config.executable
        if explicit is not None:
            _LOGGER.debug("Using explicit executable %s", explicit)
            return check_executable(explicit)

        if self._cache is not None and self._version is not None:
            cached: Path | None = self._cache.cached_executable(self._version)
            if cached is not None:
                _LOGGER.debug("Using cached bitcoind %s at %s", self._version, cached)
                return check_executable(str(cached))

        found: str | None = shutil.which(EXECUTABLE_NAME)
        if found is not None:
            _LOGGER.debug("Using %s from PATH", found)
            return check_executable(found)

        if self._downloader is not None and self._version is not None:
            installed: Path = self._downloader.install(self._version)
            return check_executable(str(installed))

        raise NotFound(
            f"No {EXECUTABLE_NAME} executable: set BITCOIND_EXE, put {EXECUTABLE_NAME} on PATH, "
            + "or select a version with BITCOIND_VERSION to download one"
        )


def exe_path() -> str:
    """Return the executable configured through the environment or found on PATH.

    :returns: Absolute executable path.
    """
    configured: str | None = env_executable()
    return ExecutableResolver(NodeConfig(executable=configured)).resolve()


def downloaded_exe_path(version: str | None = None, downloader: Downloader | None = None) -> str:
    """Return the cached executable for ``version``, downloading it if needed.

    :param version: Release version; defaults to ``BITCOIND_VERSION``.
    :param downloader: Download capability; defaults to one built from the environment.
    :returns: Absolute executable path.
    :raises NotFound: If no version is selected.
    """
    if version is None:
        version = env_version()
    if version is None:
        raise NotFound("No bitcoind version selected; set BITCOIND_VERSION")
    if downloader is None:
        downloader = Downloader.from_env()
    return check_executable(str(downloader.install(version)))
