"""Shared fixtures for the regtestd tests."""

import sys
from collections.abc import Callable
from collections.abc import Iterator
from pathlib import Path

import pytest

from regtestd import NodeConfig

FIXTURES_DIR: Path = Path(__file__).parent / "fixtures"
_ENV_VARS: tuple[str, ...] = (
    "BITCOIND_EXE",
    "BITCOIND_VERSION",
    "BITCOIND_DOWNLOAD_DIR",
    "BITCOIND_SHA256SUMS",
    "BITCOIND_SHA256",
    "TEMPDIR_ROOT",
    "REGTESTD_STARTUP_TIMEOUT",
)


def write_fake_bitcoind(directory: Path, mode: str = "ready") -> str:
    """Write an executable wrapper that runs the fake node in ``mode``.

    :param directory: Directory to place the wrapper in.
    :param mode: Fake node behaviour.
    :returns: Path of the executable wrapper.
    """
    directory.mkdir(parents=True, exist_ok=True)
    script: Path = directory / f"bitcoind-{mode}"
    script.write_text(
        f"#!{sys.executable}\n"
        + "import sys\n"
        + f"sys.path.insert(0, {str(FIXTURES_DIR)!r})\n"
        + "from fake_bitcoind import main\n"
        + f"sys.exit(main({mode!r}, sys.argv[1:]))\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return str(script)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep the caller's ``BITCOIND_*`` settings out of the tests.

    :yields: Control to the active test.
    """
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def fake_exe(tmp_path: Path) -> Callable[[str], str]:
    """Return a factory for fake node executables.

    :returns: Callable mapping a mode to an executable path.
    """
    if sys.platform == "win32":
        pytest.skip("fake bitcoind wrappers rely on shebang scripts")
    bin_dir: Path = tmp_path / "bin"

    def factory(mode: str = "ready") -> str:
        return write_fake_bitcoind(bin_dir, mode)

    return factory


@pytest.fixture
def nodes_dir(tmp_path: Path) -> Path:
    """Directory under which each test's node work dirs are created."""
    directory: Path = tmp_path / "nodes"
    directory.mkdir()
    return directory


@pytest.fixture
def fast_config(nodes_dir: Path) -> NodeConfig:
    """Node configuration with short polling intervals for the fake node."""
    return NodeConfig(
        tmpdir=str(nodes_dir),
        startup_timeout=15.0,
        poll_interval=0.05,
        max_poll_interval=0.2,
        stop_timeout=5.0,
    )
