"""
Version discovery strategies for pattern providers.

Each strategy answers one question: which build numbers exist for the
current (os, arch, branch)? Placeholders in URLs and paths are rendered by
the calling provider through the `render` callable.
"""

from abc import ABC, abstractmethod
from typing import Callable, List

from buildresolver.constants import DEFAULT_REQUEST_TIMEOUT
from buildresolver.log_utils import logger

from .async_client import AsyncHttpClient
from .descriptors import (
    DISCOVERY_HTML_AUTOINDEX,
    DISCOVERY_JSON_API,
    VersionDiscoveryConfig,
    compile_html_pattern,
)
from .json_path import parse_json_path

Renderer = Callable[[str], str]


class VersionDiscovery(ABC):
    """Abstract base class for discovery strategies."""

    requires_network = True

    @abstractmethod
    async def discover(self, client: AsyncHttpClient, render: Renderer) -> List[int]:
        """
        Discover the available versions.

        Parameters:
            client (AsyncHttpClient): Transport used for remote listings.
            render (Renderer): Substitutes placeholders for the current platform and branch.

        Returns:
            List[int]: Distinct versions sorted descending.

        Raises:
            ProviderError: When the listing cannot be fetched.
            UnsupportedJsonPathError: When the rendered JSON path is outside the supported grammar.
        """


class JsonApiDiscovery(VersionDiscovery):
    """Reads versions out of a JSON document using the path mini-language."""

    def __init__(self, url: str, json_path: str) -> None:
        self.url = url
        self.json_path = json_path

    async def discover(self, client: AsyncHttpClient, render: Renderer) -> List[int]:
        url = render(self.url)
        path = parse_json_path(render(self.json_path))
        document = await client.get_json(url, timeout=DEFAULT_REQUEST_TIMEOUT)
        versions = path.extract_versions(document)
        logger.debug("json-api discovery found %d versions at %s", len(versions), url)
        return versions


class HtmlAutoindexDiscovery(VersionDiscovery):
    """
    Scrapes a directory listing.

    Group 1 of the pattern is the version. When a second group is present it
    is read as the file size in bytes, and entries smaller than
    `min_file_size_bytes` are dropped as incomplete uploads.
    """

    def __init__(self, url: str, html_pattern: str, min_file_size_bytes: int = 0) -> None:
        self.url = url
        self.pattern = compile_html_pattern(html_pattern)
        self.min_file_size_bytes = min_file_size_bytes

    async def discover(self, client: AsyncHttpClient, render: Renderer) -> List[int]:
        url = render(self.url)
        html = await client.get_text(url, timeout=DEFAULT_REQUEST_TIMEOUT)
        versions = set()
        for match in self.pattern.finditer(html):
            raw_version = (match.group(1) or "").strip()
            if not raw_version.isdigit():
                continue
            if self.min_file_size_bytes > 0 and self.pattern.groups >= 2:
                raw_size = (match.group(2) or "").strip()
                if raw_size.isdigit() and int(raw_size) < self.min_file_size_bytes:
                    logger.debug(
                        "Skipping version %s at %s: %s bytes is below the minimum",
                        raw_version,
                        url,
                        raw_size,
                    )
                    continue
            versions.add(int(raw_version))
        return sorted(versions, reverse=True)


class StaticListDiscovery(VersionDiscovery):
    """Returns an operator-maintained list without touching the network."""

    requires_network = False

    def __init__(self, versions: List[int]) -> None:
        self.versions = sorted({v for v in versions if v >= 0}, reverse=True)

    async def discover(self, client: AsyncHttpClient, render: Renderer) -> List[int]:
        return list(self.versions)


def create_discovery(config: VersionDiscoveryConfig) -> VersionDiscovery:
    """Select the strategy named by a descriptor's discovery block."""
    if config.method == DISCOVERY_JSON_API:
        return JsonApiDiscovery(config.url or "", config.json_path or "")
    if config.method == DISCOVERY_HTML_AUTOINDEX:
        return HtmlAutoindexDiscovery(
            config.url or "", config.html_pattern or "", config.min_file_size_bytes
        )
    return StaticListDiscovery(config.static_versions)
