"""
Pattern-template provider.

Builds artifact URLs by substituting ``{base}``, ``{os}``, ``{arch}``,
``{branch}``, ``{version}``, ``{from}`` and ``{to}`` into operator-supplied
templates. Which versions exist is answered by one of the discovery
strategies in `discovery`.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from buildresolver.exceptions import ProviderError, ValidationError
from buildresolver.log_utils import logger

from .async_client import AsyncHttpClient
from .branches import is_branch_listed, normalize_branch
from .descriptors import ProviderDescriptor
from .discovery import create_discovery
from .interfaces import (
    SOURCE_TYPE_MIRROR,
    CachedVersionEntry,
    PatchStep,
    SpeedProbeResult,
    VersionProvider,
)
from .speed import SpeedProbe, newest_build_url


class PatternVersionProvider(VersionProvider):
    """
    Mirror that exposes builds at predictable, templated URLs.

    Discovered version lists are memoized per (os, arch, branch) for the
    descriptor's index TTL. When a refresh fails, the previous list is served.
    Branches listed as diff-based never produce full-build URLs.
    """

    source_type = SOURCE_TYPE_MIRROR

    def __init__(self, descriptor: ProviderDescriptor, client: AsyncHttpClient) -> None:
        """
        Build the provider from a validated descriptor.

        Parameters:
            descriptor (ProviderDescriptor): Descriptor whose source kind is "pattern".
            client (AsyncHttpClient): Transport shared with the other providers.
        """
        if descriptor.pattern is None:
            raise ValueError(f"Descriptor {descriptor.id} has no pattern block")
        self.descriptor = descriptor
        self.config = descriptor.pattern
        self.client = client
        self.source_id = descriptor.id
        self.display_name = descriptor.name
        self.priority = descriptor.priority
        self.discovery = create_discovery(self.config.version_discovery)
        self._index_ttl = timedelta(minutes=descriptor.cache.index_ttl_minutes)
        self._discovered: Dict[Tuple[str, str, str], Tuple[datetime, List[int]]] = {}
        self._discovery_lock = asyncio.Lock()
        self._speed = SpeedProbe(
            client,
            source_id=descriptor.id,
            source_name=descriptor.name,
            ping_url=descriptor.speed_test.ping_url or self.config.base_url or None,
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
            f"{self.display_name} ({self.source_id}): pattern "
            f"{self.config.full_build_url} via {self.config.version_discovery.method}"
        )

    # -------------------------------------------------------------------------
    # URL building
    # -------------------------------------------------------------------------

    def render(
        self,
        template: str,
        os_name: str,
        arch: str,
        branch: str,
        version: int = 0,
        from_version: int = 0,
        to_version: int = 0,
    ) -> str:
        """
        Substitute placeholders into a template after applying the remap tables.
        """
        branch = normalize_branch(branch)
        values = {
            "{base}": self.config.base_url,
            "{os}": self.config.os_mapping.get(os_name, os_name),
            "{arch}": self.config.arch_mapping.get(arch, arch),
            "{branch}": self.config.branch_mapping.get(branch, branch),
            "{version}": str(version),
            "{from}": str(from_version),
            "{to}": str(to_version),
        }
        for token, value in values.items():
            template = template.replace(token, value)
        return template

    def _full_url(self, os_name: str, arch: str, branch: str, version: int) -> str:
        return self.render(
            self.config.full_build_url, os_name, arch, branch, version, 0, version
        )

    def _signature_url(
        self, os_name: str, arch: str, branch: str, version: int
    ) -> Optional[str]:
        if not self.config.signature_url:
            return None
        return self.render(
            self.config.signature_url, os_name, arch, branch, version, 0, version
        )

    def _diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        if not self.config.diff_patch_url:
            return None
        return self.render(
            self.config.diff_patch_url,
            os_name,
            arch,
            branch,
            to_version,
            from_version,
            to_version,
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _fresh_discovery(self, key: Tuple[str, str, str]) -> Optional[List[int]]:
        cached = self._discovered.get(key)
        if cached and datetime.now(timezone.utc) - cached[0] < self._index_ttl:
            return cached[1]
        return None

    async def discover_versions(self, os_name: str, arch: str, branch: str) -> List[int]:
        """
        Return the versions published for a branch, sorted descending.

        Failures are logged and answered with the last successful discovery,
        or an empty list when there is none.
        """
        branch = normalize_branch(branch)
        key = (os_name, arch, branch)
        fresh = self._fresh_discovery(key)
        if fresh is not None:
            return fresh

        async with self._discovery_lock:
            fresh = self._fresh_discovery(key)
            if fresh is not None:
                return fresh

            def _render(template: str) -> str:
                return self.render(template, os_name, arch, branch)

            try:
                versions = await self.discovery.discover(self.client, _render)
            except ValidationError as e:
                logger.error("Mirror %s has an unusable discovery config: %s", self.source_id, e)
                versions = []
            except ProviderError as e:
                logger.warning("Version discovery failed for %s: %s", self.source_id, e)
                previous = self._discovered.get(key)
                return previous[1] if previous else []

            if versions:
                self._discovered[key] = (datetime.now(timezone.utc), versions)
                logger.debug(
                    "Mirror %s discovered %d versions for %s", self.source_id, len(versions), branch
                )
            return versions

    # -------------------------------------------------------------------------
    # Provider contract
    # -------------------------------------------------------------------------

    async def get_versions(
        self, os_name: str, arch: str, branch: str
    ) -> List[CachedVersionEntry]:
        versions = await self.discover_versions(os_name, arch, branch)
        if self.is_diff_only_branch(branch):
            return [
                CachedVersionEntry(
                    version=step.to_version,
                    pwr_url=step.pwr_url,
                    from_version=step.from_version,
                )
                for step in reversed(self._diff_chain(os_name, arch, branch, versions))
            ]

        return [
            CachedVersionEntry(
                version=version,
                pwr_url=self._full_url(os_name, arch, branch, version),
                sig_url=self._signature_url(os_name, arch, branch, version),
            )
            for version in versions
        ]

    def _diff_chain(
        self, os_name: str, arch: str, branch: str, versions: List[int]
    ) -> List[PatchStep]:
        steps = []
        previous = 0
        for version in sorted(versions):
            url = self._diff_url(os_name, arch, branch, previous, version)
            if url is None:
                return []
            steps.append(PatchStep(from_version=previous, to_version=version, pwr_url=url))
            previous = version
        return steps

    async def get_patch_chain(
        self, os_name: str, arch: str, branch: str
    ) -> List[PatchStep]:
        versions = await self.discover_versions(os_name, arch, branch)
        if not versions:
            return []

        steps = self._diff_chain(os_name, arch, branch, versions)
        if steps or self.is_diff_only_branch(branch):
            return steps

        return [
            PatchStep(
                from_version=0,
                to_version=version,
                pwr_url=self._full_url(os_name, arch, branch, version),
                sig_url=self._signature_url(os_name, arch, branch, version),
            )
            for version in sorted(versions)
        ]

    async def resolve_download_url(
        self, os_name: str, arch: str, branch: str, version: int
    ) -> Optional[str]:
        if self.is_diff_only_branch(branch):
            # Only the first build of a diff-only branch is reachable from nothing
            if version == 1:
                return self._diff_url(os_name, arch, branch, 0, 1)
            return None
        return self._full_url(os_name, arch, branch, version)

    async def resolve_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        return self._diff_url(os_name, arch, branch, from_version, to_version)

    async def probe_speed(
        self, force: bool = False, os_name: Optional[str] = None, arch: Optional[str] = None
    ) -> SpeedProbeResult:
        return await self._speed.run(force=force, os_name=os_name, arch=arch)

    def cached_speed_result(self) -> Optional[SpeedProbeResult]:
        return self._speed.cached()
