"""
Index-API provider.

Fetches one consolidated JSON document per mirror and walks it as
``rootPath -> branch -> platform [-> base|patch] -> filename -> url``.
Filenames are matched against the descriptor's full-build and diff
templates to recover version numbers; names that match neither are skipped.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from buildresolver.constants import (
    INDEX_FETCH_TIMEOUT,
    INDEX_GROUP_BASE,
    INDEX_GROUP_PATCH,
)
from buildresolver.exceptions import ProviderError
from buildresolver.log_utils import logger

from .async_client import AsyncHttpClient
from .branches import is_branch_listed, normalize_branch
from .descriptors import (
    STRUCTURE_GROUPED,
    ProviderDescriptor,
    compile_file_name_pattern,
)
from .interfaces import (
    SOURCE_TYPE_MIRROR,
    CachedVersionEntry,
    PatchStep,
    SpeedProbeResult,
    VersionProvider,
)
from .speed import SpeedProbe, newest_build_url


@dataclass
class IndexedFiles:
    """Files for one (branch, platform) after filename parsing."""

    full_builds: Dict[int, str] = field(default_factory=dict)
    diffs: Dict[Tuple[int, int], str] = field(default_factory=dict)


class IndexVersionProvider(VersionProvider):
    """
    Mirror backed by a single JSON index document.

    The document is memoized for the descriptor's index TTL; when a refresh
    fails the last good document keeps being served.
    """

    source_type = SOURCE_TYPE_MIRROR

    def __init__(self, descriptor: ProviderDescriptor, client: AsyncHttpClient) -> None:
        if descriptor.index is None:
            raise ValueError(f"Descriptor {descriptor.id} has no index block")
        self.descriptor = descriptor
        self.config = descriptor.index
        self.client = client
        self.source_id = descriptor.id
        self.display_name = descriptor.name
        self.priority = descriptor.priority
        self._index_ttl = timedelta(minutes=descriptor.cache.index_ttl_minutes)
        self._document: Optional[Any] = None
        self._fetched_at: Optional[datetime] = None
        self._fetch_lock = asyncio.Lock()
        self._speed = SpeedProbe(
            client,
            source_id=descriptor.id,
            source_name=descriptor.name,
            ping_url=descriptor.speed_test.ping_url or self.config.api_url or None,
            ping_timeout_seconds=descriptor.speed_test.ping_timeout_seconds,
            sample_size_bytes=descriptor.speed_test.speed_test_size_bytes,
            ttl_minutes=descriptor.cache.speed_test_ttl_minutes,
            sample_url_factory=lambda os_name, arch: newest_build_url(self, os_name, arch),
        )

    def is_available(self) -> bool:
        return True

    def is_diff_only_branch(self, branch: str) -> bool:
        return is_branch_listed(self.config.diff_based_branches, branch)

    def describe_layout(self) -> str:
        return (
            f"{self.display_name} ({self.source_id}): {self.config.structure} index "
            f"at {self.config.api_url}"
        )

    # -------------------------------------------------------------------------
    # Index document
    # -------------------------------------------------------------------------

    def _document_is_fresh(self) -> bool:
        return (
            self._document is not None
            and self._fetched_at is not None
            and datetime.now(timezone.utc) - self._fetched_at < self._index_ttl
        )

    async def fetch_index(self) -> Optional[Any]:
        """
        Return the index document, fetching it when the memoized copy has expired.

        Returns:
            Optional[Any]: The decoded document, the last good one after a failed refresh, or None.
        """
        if self._document_is_fresh():
            return self._document

        async with self._fetch_lock:
            if self._document_is_fresh():
                return self._document
            try:
                logger.debug("Fetching index for %s from %s", self.source_id, self.config.api_url)
                document = await self.client.get_json(
                    self.config.api_url, timeout=INDEX_FETCH_TIMEOUT
                )
            except ProviderError as e:
                logger.warning("Failed to fetch index for %s: %s", self.source_id, e)
                return self._document
            self._document = document
            self._fetched_at = datetime.now(timezone.utc)
            return document

    def _file_map(
        self, document: Any, os_name: str, branch: str, group: Optional[str]
    ) -> Dict[str, str]:
        node = document.get(self.config.root_path) if isinstance(document, dict) else None
        node = node.get(branch) if isinstance(node, dict) else None
        platform_key = self.config.platform_mapping.get(os_name, os_name)
        node = node.get(platform_key) if isinstance(node, dict) else None
        if group is not None:
            node = node.get(group) if isinstance(node, dict) else None
        if not isinstance(node, dict):
            return {}
        return {
            name: url
            for name, url in node.items()
            if isinstance(url, str) and url.strip()
        }

    async def index_files(self, os_name: str, arch: str, branch: str) -> IndexedFiles:
        """
        Parse the files published for a branch and platform.
        """
        branch = normalize_branch(branch)
        indexed = IndexedFiles()
        document = await self.fetch_index()
        if document is None:
            return indexed

        names = self.config.file_name_pattern
        full_re = compile_file_name_pattern(names.full, os_name, arch)
        diff_re = compile_file_name_pattern(names.diff, os_name, arch)

        if self.config.structure == STRUCTURE_GROUPED:
            full_files = self._file_map(document, os_name, branch, INDEX_GROUP_BASE)
            diff_files = self._file_map(document, os_name, branch, INDEX_GROUP_PATCH)
        else:
            full_files = diff_files = self._file_map(document, os_name, branch, None)

        recognized = set()
        for name, url in full_files.items():
            match = full_re.match(name)
            if match and match.groupdict().get("version") is not None:
                indexed.full_builds[int(match.group("version"))] = url
                recognized.add(name)

        for name, url in diff_files.items():
            match = diff_re.match(name)
            if not match:
                continue
            groups = match.groupdict()
            if groups.get("from_version") is None or groups.get("to_version") is None:
                continue
            indexed.diffs[(int(groups["from_version"]), int(groups["to_version"]))] = url
            recognized.add(name)

        skipped = len(set(full_files) | set(diff_files)) - len(recognized)
        if skipped > 0:
            logger.debug(
                "Skipped %d unrecognized files in %s index for %s", skipped, self.source_id, branch
            )
        return indexed

    # -------------------------------------------------------------------------
    # Provider contract
    # -------------------------------------------------------------------------

    async def get_versions(
        self, os_name: str, arch: str, branch: str
    ) -> List[CachedVersionEntry]:
        indexed = await self.index_files(os_name, arch, branch)
        if self.is_diff_only_branch(branch):
            entries = [
                CachedVersionEntry(version=to_version, pwr_url=url, from_version=from_version)
                for (from_version, to_version), url in indexed.diffs.items()
            ]
            entries.sort(key=lambda e: (-e.version, e.from_version))
            return entries

        return [
            CachedVersionEntry(version=version, pwr_url=url)
            for version, url in sorted(indexed.full_builds.items(), reverse=True)
        ]

    async def get_patch_chain(
        self, os_name: str, arch: str, branch: str
    ) -> List[PatchStep]:
        indexed = await self.index_files(os_name, arch, branch)
        steps = [
            PatchStep(from_version=from_version, to_version=to_version, pwr_url=url)
            for (from_version, to_version), url in sorted(
                indexed.diffs.items(), key=lambda item: (item[0][1], item[0][0])
            )
        ]
        if steps or self.is_diff_only_branch(branch):
            return steps
        return [
            PatchStep(from_version=0, to_version=version, pwr_url=url)
            for version, url in sorted(indexed.full_builds.items())
        ]

    async def resolve_download_url(
        self, os_name: str, arch: str, branch: str, version: int
    ) -> Optional[str]:
        indexed = await self.index_files(os_name, arch, branch)
        if self.is_diff_only_branch(branch):
            if version != 1:
                return None
            return indexed.diffs.get((0, 1))
        return indexed.full_builds.get(version)

    async def resolve_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        indexed = await self.index_files(os_name, arch, branch)
        return indexed.diffs.get((from_version, to_version))

    async def probe_speed(
        self, force: bool = False, os_name: Optional[str] = None, arch: Optional[str] = None
    ) -> SpeedProbeResult:
        return await self._speed.run(force=force, os_name=os_name, arch=arch)

    def cached_speed_result(self) -> Optional[SpeedProbeResult]:
        return self._speed.cached()
