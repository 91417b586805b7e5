"""Verified download of Bitcoin Core release archives.

Archives are only ever extracted after their SHA-256 digest matched a pinned
value, and the extracted tree is moved into the cache in one rename so a
half-written cache entry is never observed.
"""

import hashlib
import io
import logging
import os
import platform
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

import requests

from regtestd.config import cache_root
from regtestd.config import env_sha256
from regtestd.config import env_sha256sums
from regtestd.errors import ChecksumMismatch
from regtestd.errors import MalformedArchive
from regtestd.errors import ResolutionError
from regtestd.errors import UnsupportedPlatform

_LOGGER: logging.Logger = logging.getLogger(__name__)

RELEASE_URL_TEMPLATE: str = "https://bitcoincore.org/bin/bitcoin-core-{version}/{archive_name}"
DEFAULT_HTTP_TIMEOUT: float = 120.0

_LINUX_SUFFIXES: dict[str, str] = {
    "x86_64": "x86_64-linux-gnu",
    "amd64": "x86_64-linux-gnu",
    "aarch64": "aarch64-linux-gnu",
    "arm64": "aarch64-linux-gnu",
    "armv7l": "arm-linux-gnueabihf",
}


def _major_version(version: str) -> int:
    """Return the major release number, treating ``0.21.1`` as ``21``.

    :param version: Dotted release version.
    :returns: Major release number.
    :raises ValueError: If the version is not dotted numeric.
    """
    parts: list[int] = [int(part) for part in version.split(".")]
    if len(parts) == 0:
        raise ValueError(f"Invalid version: {version!r}")
    if parts[0] == 0 and len(parts) > 1:
        return parts[1]
    return parts[0]


def platform_suffix(version: str, system: str | None = None, machine: str | None = None) -> str:
    """Map a host to the platform suffix used in release archive names.

    :param version: Release version, e.g. ``23.0`` or ``0.21.1``.
    :param system: Operating system name; defaults to the host's.
    :param machine: Machine architecture; defaults to the host's.
    :returns: Suffix such as ``x86_64-linux-gnu`` or ``win64``.
    :raises UnsupportedPlatform: If no release is published for the host.
    """
    if system is None:
        system = platform.system()
    if machine is None:
        machine = platform.machine()
    system_key: str = system.lower()
    machine_key: str = machine.lower()
    try:
        major: int = _major_version(version)
    except ValueError as exc:
        raise UnsupportedPlatform(version, system, machine, str(exc)) from exc

    if system_key == "linux":
        suffix: str | None = _LINUX_SUFFIXES.get(machine_key)
        if suffix is not None:
            return suffix
    elif system_key == "darwin":
        if machine_key in ("x86_64", "amd64"):
            if major >= 23:
                return "x86_64-apple-darwin"
            return "osx64"
        if machine_key in ("arm64", "aarch64") and major >= 23:
            return "arm64-apple-darwin"
    elif system_key == "windows":
        if machine_key in ("amd64", "x86_64"):
            return "win64"
    raise UnsupportedPlatform(version, system, machine)


def parse_sha256sums(text: str) -> dict[str, str]:
    """Parse a ``SHA256SUMS`` manifest into ``{file name: hex digest}``.

    :param text: Manifest contents, one ``<digest>  <name>`` pair per line.
    :returns: Mapping of archive file names to lowercase digests.
    """
    digests: dict[str, str] = {}
    for raw_line in text.splitlines():
        line: str = raw_line.strip()
        if len(line) == 0 or line.startswith("#") is True:
            continue
        parts: list[str] = line.split(None, 1)
        if len(parts) != 2:
            continue
        digest: str = parts[0].lower()
        name: str = parts[1].strip().lstrip("*")
        digests[os.path.basename(name)] = digest
    return digests


@dataclass(frozen=True)
class DownloadSpec:
    """Everything needed to fetch and check one release archive."""

    version: str
    suffix: str
    sha256: str

    @classmethod
    def for_host(
        cls,
        version: str,
        digests: dict[str, str],
        system: str | None = None,
        machine: str | None = None,
    ) -> "DownloadSpec":
        """Build the spec for ``version`` on the given (or current) host.

        :param version: Release version.
        :param digests: Pinned digests keyed by archive file name.
        :param system: Operating system override.
        :param machine: Architecture override.
        :returns: Download spec with the pinned digest filled in.
        :raises UnsupportedPlatform: If the host or the pinned digest is unknown.
        """
        suffix: str = platform_suffix(version, system, machine)
        spec: DownloadSpec = cls(version=version, suffix=suffix, sha256="")
        digest: str | None = digests.get(spec.archive_name)
        if digest is None:
            raise UnsupportedPlatform(
                version,
                system or platform.system(),
                machine or platform.machine(),
                f"no pinned digest for {spec.archive_name}",
            )
        return cls(version=version, suffix=suffix, sha256=digest.lower())

    @property
    def archive_kind(self) -> str:
        if self.suffix == "win64":
            return "zip"
        return "tar.gz"

    @property
    def archive_name(self) -> str:
        return f"bitcoin-{self.version}-{self.suffix}.{self.archive_kind}"

    @property
    def url(self) -> str:
        return RELEASE_URL_TEMPLATE.format(version=self.version, archive_name=self.archive_name)

    @property
    def executable_name(self) -> str:
        if self.suffix == "win64":
            return "bitcoind.exe"
        return "bitcoind"


def _find_executable(root: Path, executable_name: str) -> Path:
    """Locate the single ``bin/<executable_name>`` inside an extracted tree.

    :param root: Extraction root.
    :param executable_name: Expected file name.
    :returns: Path to the executable.
    :raises MalformedArchive: If zero or several candidates exist.
    """
    matches: list[Path] = sorted(
        path for path in root.rglob(executable_name) if path.is_file() is True and path.parent.name == "bin"
    )
    if len(matches) != 1:
        raise MalformedArchive(f"Expected exactly one bin/{executable_name} in archive, found {len(matches)}")
    return matches[0]


class Downloader:
    """Download capability handed to the executable resolver.

    Owns the cache layout ``<cache_dir>/<version>/<suffix>/`` and the pinned
    digests used to verify archives.
    """

    _cache_dir: Path
    _digests: dict[str, str]
    _sha256: str | None
    _timeout: float
    _system: str | None
    _machine: str | None

    def __init__(
        self,
        cache_dir: str | os.PathLike[str] | None = None,
        sha256sums: str | os.PathLike[str] | None = None,
        sha256: str | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        system: str | None = None,
        machine: str | None = None,
    ) -> None:
        """Initialize the downloader.

        :param cache_dir: Cache root; defaults to ``BITCOIND_DOWNLOAD_DIR``.
        :param sha256sums: Path of a pinned ``SHA256SUMS`` manifest.
        :param sha256: Pinned digest of the archive for this host.
        :param timeout: HTTP timeout in seconds.
        :param system: Operating system override, mainly for tests.
        :param machine: Architecture override, mainly for tests.
        """
        if cache_dir is None:
            self._cache_dir = cache_root()
        else:
            self._cache_dir = Path(cache_dir)
        self._digests = {}
        if sha256sums is not None:
            manifest_text: str = Path(sha256sums).read_text(encoding="utf-8")
            self._digests = parse_sha256sums(manifest_text)
        self._sha256 = None if sha256 is None else sha256.lower()
        self._timeout = timeout
        self._system = system
        self._machine = machine

    @classmethod
    def from_env(cls) -> "Downloader":
        """Build a downloader from ``BITCOIND_*`` environment variables."""
        return cls(sha256sums=env_sha256sums(), sha256=env_sha256())

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def install_dir(self, version: str) -> Path:
        """Return the cache directory for ``version`` on this host."""
        suffix: str = platform_suffix(version, self._system, self._machine)
        return self._cache_dir / version / suffix

    def spec_for(self, version: str) -> DownloadSpec:
        """Build the download spec for ``version`` using the pinned digests.

        :param version: Release version.
        :returns: Download spec.
        :raises UnsupportedPlatform: If the host or its digest is unknown.
        """
        if self._sha256 is not None:
            suffix: str = platform_suffix(version, self._system, self._machine)
            return DownloadSpec(version=version, suffix=suffix, sha256=self._sha256)
        return DownloadSpec.for_host(version, self._digests, self._system, self._machine)

    def cached_executable(self, version: str) -> Path | None:
        """Return the cached executable for ``version`` if it was downloaded before.

        :param version: Release version.
        :returns: Executable path or ``None``.
        """
        try:
            install_dir: Path = self.install_dir(version)
        except UnsupportedPlatform:
            return None
        if install_dir.is_dir() is False:
            return None
        executable_name: str = "bitcoind.exe" if install_dir.name == "win64" else "bitcoind"
        try:
            return _find_executable(install_dir, executable_name)
        except MalformedArchive:
            return None

    def fetch(self, spec: DownloadSpec) -> bytes:
        """Fetch the archive bytes for ``spec``.

        :param spec: Download spec.
        :returns: Raw archive bytes.
        :raises ResolutionError: If the transfer fails.
        """
        _LOGGER.info("Downloading %s", spec.url)
        try:
            response: requests.Response = requests.get(spec.url, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ResolutionError(f"Failed to download {spec.url}: {exc}") from exc
        return response.content

    def verify(self, spec: DownloadSpec, data: bytes) -> None:
        """Check ``data`` against the pinned digest.

        :param spec: Download spec carrying the expected digest.
        :param data: Archive bytes.
        :raises ChecksumMismatch: If the digests differ.
        """
        actual: str = hashlib.sha256(data).hexdigest()
        if actual != spec.sha256:
            raise ChecksumMismatch(spec.url, spec.sha256, actual)
        _LOGGER.debug("Verified sha256 %s for %s", actual, spec.archive_name)

    def extract(self, spec: DownloadSpec, data: bytes, destination: Path) -> Path:
        """Extract verified archive bytes and return the executable path.

        :param spec: Download spec.
        :param data: Verified archive bytes.
        :param destination: Directory to extract into.
        :returns: Path of the node executable inside ``destination``.
        :raises MalformedArchive: If the archive is unreadable or lacks the executable.
        :raises ResolutionError: If this interpreter cannot filter tar members.
        """
        if spec.archive_kind != "zip" and hasattr(tarfile, "data_filter") is False:
            raise ResolutionError(
                f"Cannot extract {spec.archive_name}: tar extraction filters need Python 3.10.12, 3.11.4 or 3.12+"
            )
        try:
            with io.BytesIO(data) as buffer:
                if spec.archive_kind == "zip":
                    with zipfile.ZipFile(buffer) as archive:
                        archive.extractall(destination)
                else:
                    with tarfile.open(fileobj=buffer, mode="r:gz") as archive:
                        archive.extractall(destination, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as exc:
            raise MalformedArchive(f"Cannot extract {spec.archive_name}: {exc}") from exc
        return _find_executable(destination, spec.executable_name)

    def install(self, version: str) -> Path:
        """Return the executable for ``version``, downloading it when not cached.

        :param version: Release version.
        :returns: Path of the cached node executable.
        """
        cached: Path | None = self.cached_executable(version)
        if cached is not None:
            return cached

        spec: DownloadSpec = self.spec_for(version)
        data: bytes = self.fetch(spec)
        self.verify(spec, data)

        install_dir: Path = self._cache_dir / spec.version / spec.suffix
        install_dir.parent.mkdir(parents=True, exist_ok=True)
        staging: Path = Path(tempfile.mkdtemp(prefix=".staging-", dir=install_dir.parent))
        try:
            staged_executable: Path = self.extract(spec, data, staging)
            relative: Path = staged_executable.relative_to(staging)
            try:
                os.replace(staging, install_dir)
            except OSError:
                # Another process finished the same download first.
                concurrent: Path | None = self.cached_executable(version)
                if concurrent is None:
                    raise
                return concurrent
        finally:
            if staging.exists() is True:
                shutil.rmtree(staging, ignore_errors=True)
        _LOGGER.info("Cached bitcoind %s in %s", version, install_dir)
        return install_dir / relative
