"""User-facing API entrypoints for regtestd."""

from regtestd.config import NodeConfig
from regtestd.download import Downloader
from regtestd.node import BitcoinD
from regtestd.resolver import ExecutableResolver


def launch(executable: str | None = None, **options: object) -> BitcoinD:
    """Start a ready regtest node.

    :param executable: Executable override; ``BITCOIND_EXE`` or ``PATH`` otherwise.
    :param options: :class:`~regtestd.config.NodeConfig` fields.
    :returns: A node whose RPC already answers.
    """
    config: NodeConfig = NodeConfig.from_env(**options)
    return BitcoinD(config, executable=executable)


def launch_downloaded(
    version: str | None = None,
    downloader: Downloader | None = None,
    **options: object,
) -> BitcoinD:
    """Start a ready regtest node from a verified release download.

    The explicit ``executable`` option still wins when given.

    :param version: Release version; defaults to ``BITCOIND_VERSION``.
    :param downloader: Download capability; defaults to one built from the environment.
    :param options: :class:`~regtestd.config.NodeConfig` fields.
    :returns: A node whose RPC already answers.
    """
    config: NodeConfig = NodeConfig.from_env(**options).with_overrides(download=True)
    if downloader is None:
        downloader = Downloader.from_env()
    resolver: ExecutableResolver = ExecutableResolver(config, version=version, downloader=downloader)
    return BitcoinD(config, resolver=resolver)
