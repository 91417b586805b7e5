"""Tests for verified release downloads."""

import hashlib
import io
import os
import tarfile
import zipfile
from pathlib import Path

import pytest
import requests

from regtestd import ChecksumMismatch
from regtestd import DownloadSpec
from regtestd import Downloader
from regtestd import MalformedArchive
from regtestd import ResolutionError
from regtestd import UnsupportedPlatform
from regtestd.download import parse_sha256sums
from regtestd.download import platform_suffix

NODE_SCRIPT: bytes = b"#!/bin/sh\necho fake bitcoind\n"


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    content: bytes
    status_code: int

    def __init__(self, content: bytes, status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


def make_tar_gz(members: dict[str, bytes]) -> bytes:
    """Build a gzip-compressed tarball from ``{name: content}``."""
    buffer: io.BytesIO = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in members.items():
            info: tarfile.TarInfo = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def make_zip(members: dict[str, bytes]) -> bytes:
    buffer: io.BytesIO = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def serve(monkeypatch: pytest.MonkeyPatch, response: FakeResponse) -> list[str]:
    """Route ``requests.get`` to ``response`` and record requested URLs.

    :returns: List that collects the requested URLs.
    """
    requested: list[str] = []

    def fake_get(url: str, timeout: float) -> FakeResponse:
        requested.append(url)
        return response

    monkeypatch.setattr("regtestd.download.requests.get", fake_get)
    return requested


def linux_downloader(cache_dir: Path, data: bytes) -> Downloader:
    return Downloader(
        cache_dir=cache_dir,
        sha256=hashlib.sha256(data).hexdigest(),
        system="Linux",
        machine="x86_64",
    )


def test_platform_suffix_follows_release_naming() -> None:
    assert platform_suffix("23.0", "Linux", "x86_64") == "x86_64-linux-gnu"
    assert platform_suffix("0.21.1", "Linux", "aarch64") == "aarch64-linux-gnu"
    assert platform_suffix("22.0", "Darwin", "x86_64") == "osx64"
    assert platform_suffix("23.0", "Darwin", "x86_64") == "x86_64-apple-darwin"
    assert platform_suffix("23.0", "Darwin", "arm64") == "arm64-apple-darwin"
    assert platform_suffix("23.0", "Windows", "AMD64") == "win64"


def test_unknown_platform_is_unsupported() -> None:
    with pytest.raises(UnsupportedPlatform) as exc_info:
        platform_suffix("0.21.1", "Darwin", "arm64")
    assert exc_info.value.machine == "arm64"
    with pytest.raises(UnsupportedPlatform):
        platform_suffix("23.0", "FreeBSD", "amd64")


def test_parse_sha256sums_keys_by_file_name() -> None:
    manifest: str = (
        "# pinned release digests\n"
        + "aa11  bitcoin-23.0-x86_64-linux-gnu.tar.gz\n"
        + "BB22 *bitcoin-23.0-win64.zip\n"
        + "garbage\n"
    )
    digests: dict[str, str] = parse_sha256sums(manifest)
    assert digests == {
        "bitcoin-23.0-x86_64-linux-gnu.tar.gz": "aa11",
        "bitcoin-23.0-win64.zip": "bb22",
    }


def test_download_spec_for_host_uses_pinned_digest() -> None:
    digests: dict[str, str] = {"bitcoin-0.21.1-x86_64-linux-gnu.tar.gz": "ABCD"}
    spec: DownloadSpec = DownloadSpec.for_host("0.21.1", digests, "Linux", "x86_64")
    assert spec.sha256 == "abcd"
    assert spec.archive_kind == "tar.gz"
    assert spec.url == (
        "https://bitcoincore.org/bin/bitcoin-core-0.21.1/bitcoin-0.21.1-x86_64-linux-gnu.tar.gz"
    )
    with pytest.raises(UnsupportedPlatform, match="no pinned digest"):
        DownloadSpec.for_host("23.0", digests, "Linux", "x86_64")


def test_downloader_reads_manifest_file(tmp_path: Path) -> None:
    manifest: Path = tmp_path / "SHA256SUMS"
    manifest.write_text("ff00  bitcoin-23.0-x86_64-linux-gnu.tar.gz\n", encoding="utf-8")
    downloader: Downloader = Downloader(cache_dir=tmp_path / "cache", sha256sums=manifest, system="Linux", machine="x86_64")
    assert downloader.spec_for("23.0").sha256 == "ff00"


def test_install_downloads_once_then_uses_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A verified archive is extracted into the cache and reused afterwards."""
    data: bytes = make_tar_gz({"bitcoin-23.0/bin/bitcoind": NODE_SCRIPT, "bitcoin-23.0/bin/bitcoin-cli": b"cli"})
    requested: list[str] = serve(monkeypatch, FakeResponse(data))
    cache_dir: Path = tmp_path / "cache"
    downloader: Downloader = linux_downloader(cache_dir, data)

    first: Path = downloader.install("23.0")
    second: Path = downloader.install("23.0")

    assert first == second
    assert first == cache_dir / "23.0" / "x86_64-linux-gnu" / "bitcoin-23.0" / "bin" / "bitcoind"
    assert first.read_bytes() == NODE_SCRIPT
    assert os.access(first, os.X_OK) is True
    assert len(requested) == 1
    leftovers: list[str] = [path.name for path in (cache_dir / "23.0").iterdir()]
    assert leftovers == ["x86_64-linux-gnu"]


def test_corrupted_archive_fails_before_extraction(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A single flipped byte is a fatal checksum mismatch and nothing is cached."""
    data: bytes = make_tar_gz({"bitcoin-23.0/bin/bitcoind": NODE_SCRIPT})
    corrupted: bytearray = bytearray(data)
    corrupted[len(corrupted) // 2] ^= 0xFF
    serve(monkeypatch, FakeResponse(bytes(corrupted)))
    cache_dir: Path = tmp_path / "cache"
    downloader: Downloader = linux_downloader(cache_dir, data)

    with pytest.raises(ChecksumMismatch) as exc_info:
        downloader.install("23.0")

    assert exc_info.value.expected == hashlib.sha256(data).hexdigest()
    assert exc_info.value.actual == hashlib.sha256(bytes(corrupted)).hexdigest()
    assert cache_dir.exists() is False
    assert downloader.cached_executable("23.0") is None


def test_tar_extraction_requires_member_filters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Interpreters without tar member filters refuse to unpack rather than extract unchecked."""
    data: bytes = make_tar_gz({"bitcoin-23.0/bin/bitcoind": NODE_SCRIPT})
    serve(monkeypatch, FakeResponse(data))
    monkeypatch.delattr(tarfile, "data_filter", raising=False)
    downloader: Downloader = linux_downloader(tmp_path / "cache", data)

    with pytest.raises(ResolutionError, match="extraction filters"):
        downloader.install("23.0")

    assert downloader.cached_executable("23.0") is None


@pytest.mark.parametrize(
    "members",
    [
        {"bitcoin-23.0/bin/bitcoin-cli": b"cli"},
        {"a/bin/bitcoind": NODE_SCRIPT, "b/bin/bitcoind": NODE_SCRIPT},
    ],
)
def test_archive_without_single_executable_is_malformed(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    members: dict[str, bytes],
) -> None:
    data: bytes = make_tar_gz(members)
    serve(monkeypatch, FakeResponse(data))
    cache_dir: Path = tmp_path / "cache"
    downloader: Downloader = linux_downloader(cache_dir, data)

    with pytest.raises(MalformedArchive):
        downloader.install("23.0")

    assert downloader.cached_executable("23.0") is None
    assert (cache_dir / "23.0" / "x86_64-linux-gnu").exists() is False


def test_unreadable_archive_is_malformed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data: bytes = b"this is not a tarball"
    serve(monkeypatch, FakeResponse(data))
    with pytest.raises(MalformedArchive):
        linux_downloader(tmp_path / "cache", data).install("23.0")


def test_windows_release_is_a_zip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data: bytes = make_zip({"bitcoin-23.0/bin/bitcoind.exe": b"MZ", "bitcoin-23.0/README.md": b"docs"})
    requested: list[str] = serve(monkeypatch, FakeResponse(data))
    downloader: Downloader = Downloader(
        cache_dir=tmp_path / "cache",
        sha256=hashlib.sha256(data).hexdigest(),
        system="Windows",
        machine="AMD64",
    )

    installed: Path = downloader.install("23.0")

    assert installed.name == "bitcoind.exe"
    assert requested == ["https://bitcoincore.org/bin/bitcoin-core-23.0/bitcoin-23.0-win64.zip"]
    assert downloader.cached_executable("23.0") == installed


def test_http_failure_is_a_resolution_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    serve(monkeypatch, FakeResponse(b"", status_code=404))
    downloader: Downloader = linux_downloader(tmp_path / "cache", b"")
    with pytest.raises(ResolutionError, match="Failed to download"):
        downloader.install("23.0")
