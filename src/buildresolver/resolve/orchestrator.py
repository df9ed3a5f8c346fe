"""
Resolution Orchestrator

This module implements the layer that merges what every provider reports
into one cached view per branch, answers version and URL queries from that
view, and falls back to live mirror lookups and speed-based mirror
selection when the cache cannot answer.
"""

import asyncio
from collections import deque
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from buildresolver.constants import (
    DEFAULT_VERSION_TTL_MINUTES,
    OFFICIAL_SOURCE_ID,
    OFFICIAL_SOURCE_NAME,
)
from buildresolver.exceptions import BuildResolverError, VersionNotFoundError
from buildresolver.log_utils import logger
from buildresolver.platform_info import get_arch, get_os

from .branches import normalize_branch
from .cache import CacheRepository, PatchesCacheSnapshot, VersionsCacheSnapshot
from .interfaces import (
    SOURCE_TYPE_MIRROR,
    SOURCE_TYPE_OFFICIAL,
    CachedVersionEntry,
    PatchStep,
    SpeedProbeResult,
    VersionInfo,
    VersionListResponse,
    VersionProvider,
)
from .loader import ProviderLoader
from .speed import SpeedSelector

# Failures a single provider may surface; they never abort a fetch cycle
PROVIDER_FAILURES = (
    BuildResolverError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
    ValueError,
    TypeError,
    KeyError,
)


def find_contiguous_chain(
    steps: Sequence[PatchStep], from_version: int, to_version: int
) -> Optional[List[PatchStep]]:
    """
    Find the shortest run of steps leading from `from_version` to `to_version`.

    Returns:
        Optional[List[PatchStep]]: The ordered steps (empty when both versions are equal), or None when the steps do not connect.
    """
    if from_version == to_version:
        return []

    edges: Dict[int, List[PatchStep]] = {}
    for step in steps:
        if step.from_version < step.to_version <= to_version:
            edges.setdefault(step.from_version, []).append(step)

    previous: Dict[int, PatchStep] = {}
    queue = deque([from_version])
    visited = {from_version}
    while queue:
        current = queue.popleft()
        for step in edges.get(current, []):
            if step.to_version in visited:
                continue
            visited.add(step.to_version)
            previous[step.to_version] = step
            if step.to_version == to_version:
                chain = []
                node = to_version
                while node != from_version:
                    chain.append(previous[node])
                    node = previous[node].from_version
                return list(reversed(chain))
            queue.append(step.to_version)
    return None


class ResolutionOrchestrator:
    """
    Coordinates providers, the two-part cache and mirror selection.

    The orchestrator holds:
    - The optional official provider and the mirrors, by ascending priority
    - In-memory copies of the version and patch snapshots
    - The currently selected mirror
    - A single lock serializing fetch cycles
    """

    def __init__(
        self,
        cache_repository: CacheRepository,
        official_provider: Optional[VersionProvider] = None,
        mirrors: Iterable[VersionProvider] = (),
        loader: Optional[ProviderLoader] = None,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
        version_ttl: timedelta = timedelta(minutes=DEFAULT_VERSION_TTL_MINUTES),
        speed_selector: Optional[SpeedSelector] = None,
    ) -> None:
        """
        Create an orchestrator over the given providers.

        Parameters:
            cache_repository (CacheRepository): Storage for the version and patch snapshots.
            official_provider (Optional[VersionProvider]): The first-party provider, if configured.
            mirrors (Iterable[VersionProvider]): Mirror providers; sorted by priority on construction.
            loader (Optional[ProviderLoader]): Used by reload_providers() to rebuild the mirror set.
            os_name (Optional[str]): Platform OS token; detected when omitted.
            arch (Optional[str]): Platform architecture token; detected when omitted.
            version_ttl (timedelta): How long a fetched branch is served from cache.
            speed_selector (Optional[SpeedSelector]): Strategy for choosing the fastest mirror.
        """
        self.cache_repository = cache_repository
        self.official_provider = official_provider
        self.mirrors: List[VersionProvider] = sorted(mirrors, key=lambda m: m.priority)
        self.loader = loader
        self.os_name = os_name or get_os()
        self.arch = arch or get_arch()
        self.version_ttl = version_ttl
        self.speed_selector = speed_selector or SpeedSelector()
        self.selected_mirror: Optional[VersionProvider] = None

        self._versions: Optional[VersionsCacheSnapshot] = None
        self._patches: Optional[PatchesCacheSnapshot] = None
        self._fetch_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Provider state
    # -------------------------------------------------------------------------

    @property
    def has_official_account(self) -> bool:
        return self.official_provider is not None and self.official_provider.is_available()

    @property
    def enabled_mirror_count(self) -> int:
        return len(self.mirrors)

    def has_any_download_source(self) -> bool:
        return self.has_official_account or bool(self.mirrors)

    def list_mirrors(self) -> List[Tuple[str, str]]:
        return [(mirror.source_id, mirror.display_name) for mirror in self.mirrors]

    def is_diff_based_branch(self, branch: str) -> bool:
        """
        Report whether the active mirror (or the first one) only publishes patches for `branch`.
        """
        mirror = self.selected_mirror or (self.mirrors[0] if self.mirrors else None)
        return mirror is not None and mirror.is_diff_only_branch(normalize_branch(branch))

    def _mirror_ids(self) -> List[str]:
        ids: List[str] = []
        for mirror in self.mirrors:
            if mirror.source_id not in ids:
                ids.append(mirror.source_id)
        return ids

    def _providers(self) -> List[VersionProvider]:
        providers = list(self.mirrors)
        if self.official_provider is not None:
            providers.append(self.official_provider)
        return sorted(providers, key=lambda p: p.priority)

    def reload_providers(self) -> None:
        """
        Rebuild the mirror set from the loader.

        The selected mirror is reset. When no download source remains, the
        version cache is cleared.
        """
        if self.loader is None:
            logger.warning("No provider loader configured; cannot reload mirrors")
            return

        self.mirrors = sorted(self.loader.load_all(), key=lambda m: m.priority)
        self.selected_mirror = None
        logger.info("Reloaded mirrors: %d enabled", len(self.mirrors))

        for snapshot in (self._versions, self._patches):
            if snapshot is not None:
                self._sanitize(snapshot)

        if not self.has_any_download_source():
            logger.info("No download sources remain; clearing version cache")
            self.clear_version_cache()

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def _sanitize(self, snapshot):
        removed = snapshot.drop_unknown_mirrors(self._mirror_ids())
        if removed:
            logger.debug("Dropped cached data of unknown mirrors: %s", ", ".join(removed))
        return snapshot

    def _load_versions(self) -> VersionsCacheSnapshot:
        if self._versions is None:
            snapshot = self.cache_repository.load_versions()
            if snapshot is not None and not snapshot.matches_platform(self.os_name, self.arch):
                logger.info(
                    "Ignoring version cache built for %s/%s", snapshot.os, snapshot.arch
                )
                snapshot = None
            if snapshot is None:
                snapshot = VersionsCacheSnapshot(os=self.os_name, arch=self.arch)
            self._versions = self._sanitize(snapshot)
        return self._versions

    def _load_patches(self) -> PatchesCacheSnapshot:
        if self._patches is None:
            snapshot = self.cache_repository.load_patches()
            if snapshot is not None and not snapshot.matches_platform(self.os_name, self.arch):
                logger.info(
                    "Ignoring patch cache built for %s/%s", snapshot.os, snapshot.arch
                )
                snapshot = None
            if snapshot is None:
                snapshot = PatchesCacheSnapshot(os=self.os_name, arch=self.arch)
            self._patches = self._sanitize(snapshot)
        return self._patches

    def _persist(self, versions: bool = True, patches: bool = True) -> None:
        if versions and self._versions is not None:
            if not self.cache_repository.save_versions(self._sanitize(self._versions)):
                logger.warning("Failed to save version cache")
        if patches and self._patches is not None:
            if not self.cache_repository.save_patches(self._sanitize(self._patches)):
                logger.warning("Failed to save patch cache")

    def _source_buckets(self, snapshot) -> List[Tuple[str, str, Dict[str, list]]]:
        """Return (source type, source id, bucket) in lookup order: official first, then mirrors by priority."""
        buckets = [(SOURCE_TYPE_OFFICIAL, OFFICIAL_SOURCE_ID, snapshot.official)]
        for mirror_id in self._mirror_ids():
            bucket = snapshot.mirrors.get(mirror_id)
            if bucket is not None:
                buckets.append((SOURCE_TYPE_MIRROR, mirror_id, bucket))
        return buckets

    def _merged_sources(self, branch: str) -> Dict[int, Tuple[str, str]]:
        """
        Map every known version of `branch` to the (source type, source id) serving it.

        Mirrors are applied in ascending priority so the first mirror that
        lists a version keeps it; official entries override mirrors.
        """
        snapshot = self._load_versions()
        merged: Dict[int, Tuple[str, str]] = {}
        for mirror_id in self._mirror_ids():
            for entry in snapshot.mirrors.get(mirror_id, {}).get(branch, []):
                merged.setdefault(entry.version, (SOURCE_TYPE_MIRROR, mirror_id))
        for entry in snapshot.official.get(branch, []):
            merged[entry.version] = (SOURCE_TYPE_OFFICIAL, OFFICIAL_SOURCE_ID)
        return merged

    def _merged_versions(self, branch: str) -> List[int]:
        return sorted(self._merged_sources(branch), reverse=True)

    def _fresh_versions(self, branch: str, max_age: timedelta) -> Optional[List[int]]:
        snapshot = self._load_versions()
        if not snapshot.is_branch_fresh(branch, max_age):
            return None
        versions = self._merged_versions(branch)
        return versions or None

    # -------------------------------------------------------------------------
    # Fetch cycle
    # -------------------------------------------------------------------------

    async def _fetch_branch(self, branch: str) -> List[int]:
        """
        Ask every available provider for `branch` and record the answers.

        Must be called with the fetch lock held. A provider that fails or
        returns nothing keeps whatever the cache held for it before.
        """
        versions = self._load_versions()
        patches = self._load_patches()
        refreshed_versions = set()
        refreshed_patches = set()

        for provider in self._providers():
            if not provider.is_available():
                logger.debug("Source %s not available, skipping", provider.source_id)
                continue
            official = provider.source_type == SOURCE_TYPE_OFFICIAL
            logger.info("Fetching from %s for %s...", provider.source_id, branch)

            try:
                entries = await provider.get_versions(self.os_name, self.arch, branch)
            except PROVIDER_FAILURES as e:
                logger.warning("%s fetch failed for %s: %s", provider.source_id, branch, e)
                entries = []
            if entries:
                bucket = versions.official if official else versions.mirrors.setdefault(
                    provider.source_id, {}
                )
                if provider.source_id in refreshed_versions:
                    bucket[branch] = bucket.get(branch, []) + list(entries)
                else:
                    bucket[branch] = list(entries)
                refreshed_versions.add(provider.source_id)
                logger.info(
                    "%s returned %d versions for %s", provider.source_id, len(entries), branch
                )
            else:
                logger.warning("%s returned no versions for %s", provider.source_id, branch)

            try:
                steps = await provider.get_patch_chain(self.os_name, self.arch, branch)
            except PROVIDER_FAILURES as e:
                logger.debug(
                    "%s patch chain fetch failed for %s: %s", provider.source_id, branch, e
                )
                steps = []
            if steps:
                bucket = patches.official if official else patches.mirrors.setdefault(
                    provider.source_id, {}
                )
                if provider.source_id in refreshed_patches:
                    bucket[branch] = bucket.get(branch, []) + list(steps)
                else:
                    bucket[branch] = list(steps)
                refreshed_patches.add(provider.source_id)
                logger.debug(
                    "%s returned %d patch steps for %s", provider.source_id, len(steps), branch
                )

        versions.os = patches.os = self.os_name
        versions.arch = patches.arch = self.arch
        versions.mark_fetched(branch)
        patches.mark_fetched(branch)
        self._persist()

        result = self._merged_versions(branch)
        logger.info("Total versions for %s: %s", branch, result)
        return result

    async def force_refresh(self, branch: str) -> List[int]:
        """
        Discard the in-memory snapshots and refetch `branch` from every provider.

        Returns:
            List[int]: The merged version list after the refresh.
        """
        branch = normalize_branch(branch)
        async with self._fetch_lock:
            self._versions = None
            self._patches = None
            return await self._fetch_branch(branch)

    # -------------------------------------------------------------------------
    # Version queries
    # -------------------------------------------------------------------------

    async def get_versions(self, branch: str) -> List[int]:
        return await self.get_version_list(branch)

    async def get_version_list(self, branch: str) -> List[int]:
        """
        Return every known version of `branch`, newest first.

        A branch fetched within the version TTL is answered from cache without
        network traffic. Otherwise one fetch cycle runs; concurrent callers
        wait for it and then read the warm cache.

        Returns:
            List[int]: Distinct versions sorted descending; empty when no source knows the branch.
        """
        branch = normalize_branch(branch)
        cached = self._fresh_versions(branch, self.version_ttl)
        if cached is not None:
            logger.debug("Using cached versions for %s", branch)
            return cached

        async with self._fetch_lock:
            cached = self._fresh_versions(branch, self.version_ttl)
            if cached is not None:
                return cached
            return await self._fetch_branch(branch)

    def try_get_cached_versions(
        self, branch: str, max_age: timedelta
    ) -> Optional[List[int]]:
        """
        Return cached versions of `branch` fetched within `max_age`, without touching the network.

        Returns:
            Optional[List[int]]: The merged list, or None when the cache is stale or empty.
        """
        return self._fresh_versions(normalize_branch(branch), max_age)

    async def get_versions_with_source(self, branch: str) -> VersionListResponse:
        """
        List the versions of `branch` tagged with the source serving each one.
        """
        branch = normalize_branch(branch)
        await self.get_version_list(branch)

        sources = self._merged_sources(branch)
        infos = [
            VersionInfo(
                version=version,
                source=sources[version][0],
                source_id=sources[version][1],
                is_latest=index == 0,
            )
            for index, version in enumerate(sorted(sources, reverse=True))
        ]
        return VersionListResponse(
            versions=infos,
            has_official_account=self.has_official_account,
            official_source_available=not self.is_official_unavailable(branch),
            has_download_sources=self.has_any_download_source(),
            enabled_mirror_count=self.enabled_mirror_count,
        )

    def get_version_source(self, branch: str) -> str:
        """Return SOURCE_TYPE_OFFICIAL when the official provider has cached data for `branch`."""
        if self.is_official_unavailable(branch):
            return SOURCE_TYPE_MIRROR
        return SOURCE_TYPE_OFFICIAL

    def is_official_unavailable(self, branch: str) -> bool:
        """Report whether the cache holds no official versions for `branch`."""
        snapshot = self._load_versions()
        return not snapshot.official.get(normalize_branch(branch))

    # -------------------------------------------------------------------------
    # URL resolution
    # -------------------------------------------------------------------------

    def _lookup_entry(self, branch: str, version: int) -> Optional[CachedVersionEntry]:
        for _, source_id, bucket in self._source_buckets(self._load_versions()):
            for entry in bucket.get(branch, []):
                if entry.version == version:
                    logger.debug("Found v%d for %s in %s cache", version, branch, source_id)
                    return entry
        return None

    def _lookup_diff(
        self, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        for _, _, bucket in self._source_buckets(self._load_patches()):
            for step in bucket.get(branch, []):
                if step.from_version == from_version and step.to_version == to_version:
                    return step.pwr_url
        return None

    async def resolve_version_entry(self, branch: str, version: int) -> CachedVersionEntry:
        """
        Find the cached entry for `version`, refreshing the branch once on a miss.

        Raises:
            VersionNotFoundError: If no source offers the version after the refresh.
        """
        branch = normalize_branch(branch)
        entry = self._lookup_entry(branch, version)
        if entry is not None:
            return entry

        logger.info("v%d not cached for %s; refreshing", version, branch)
        await self.force_refresh(branch)
        entry = self._lookup_entry(branch, version)
        if entry is not None:
            return entry
        raise VersionNotFoundError(branch, version)

    async def resolve_url(self, branch: str, version: int) -> str:
        entry = await self.resolve_version_entry(branch, version)
        return entry.pwr_url

    async def resolve_diff_url(
        self, branch: str, from_version: int, to_version: int
    ) -> str:
        """
        Resolve the URL of the patch from `from_version` to `to_version`.

        The patch cache is consulted first, then once more after a refresh,
        then the mirrors are asked directly.

        Raises:
            VersionNotFoundError: If no source offers the patch.
        """
        branch = normalize_branch(branch)
        url = self._lookup_diff(branch, from_version, to_version)
        if url:
            return url

        await self.force_refresh(branch)
        url = self._lookup_diff(branch, from_version, to_version)
        if url:
            return url

        url = await self.get_mirror_diff_url(branch, from_version, to_version)
        if url:
            return url
        raise VersionNotFoundError(branch, to_version, from_version=from_version)

    def _find_chain(
        self, branch: str, from_version: int, to_version: int
    ) -> Optional[List[PatchStep]]:
        for _, source_id, bucket in self._source_buckets(self._load_patches()):
            chain = find_contiguous_chain(bucket.get(branch, []), from_version, to_version)
            if chain is not None:
                logger.debug(
                    "Using %d-step chain from %s for %s v%d -> v%d",
                    len(chain),
                    source_id,
                    branch,
                    from_version,
                    to_version,
                )
                return chain
        return None

    async def get_patch_chain(
        self, branch: str, from_version: int, to_version: int
    ) -> List[PatchStep]:
        """
        Return the patch steps that take an installation from `from_version` to `to_version`.

        Each source is tried on its own (official first, then mirrors by
        priority); steps of different sources are never mixed.

        Raises:
            VersionNotFoundError: If no single source has a complete chain.
        """
        branch = normalize_branch(branch)
        await self.get_version_list(branch)
        chain = self._find_chain(branch, from_version, to_version)
        if chain is not None:
            return chain

        await self.force_refresh(branch)
        chain = self._find_chain(branch, from_version, to_version)
        if chain is not None:
            return chain
        raise VersionNotFoundError(branch, to_version, from_version=from_version)

    # -------------------------------------------------------------------------
    # Cache control
    # -------------------------------------------------------------------------

    def invalidate(self, branch: str, version: int, source_id: Optional[str] = None) -> bool:
        """
        Forget `version` of `branch`, e.g. after its URL turned out to be stale.

        Parameters:
            branch (str): Branch the version belongs to.
            version (int): Version to remove; patch steps leading to it are removed too.
            source_id (Optional[str]): "official" or a mirror id; None removes it from every source.

        Returns:
            bool: True if anything was removed.
        """
        branch = normalize_branch(branch)
        versions = self._load_versions()
        patches = self._load_patches()

        removed_entries = versions.remove_items(
            branch, lambda entry: entry.version == version, source_id
        )
        removed_steps = patches.remove_items(
            branch, lambda step: step.to_version == version, source_id
        )
        if removed_entries:
            logger.info(
                "Invalidated v%d from %s cache for %s", version, source_id or "every", branch
            )
        if removed_entries or removed_steps:
            self._persist(versions=bool(removed_entries), patches=bool(removed_steps))
        return bool(removed_entries or removed_steps)

    def clear_version_cache(self) -> None:
        self._versions = None
        self._patches = None
        self.cache_repository.clear()
        logger.info("Cleared version cache")

    # -------------------------------------------------------------------------
    # Mirror selection
    # -------------------------------------------------------------------------

    async def select_best_mirror(self, force: bool = False) -> Optional[VersionProvider]:
        """
        Probe the mirrors and remember the fastest one in `selected_mirror`.

        Throughput is sampled from builds for this orchestrator's platform.
        """
        self.selected_mirror = await self.speed_selector.select(
            self.mirrors, force=force, os_name=self.os_name, arch=self.arch
        )
        return self.selected_mirror

    async def _mirror_candidates(self) -> List[VersionProvider]:
        preferred = self.selected_mirror or await self.select_best_mirror()
        candidates = [preferred] if preferred is not None else []
        candidates.extend(m for m in self.mirrors if m is not preferred)
        return candidates

    async def get_mirror_download_url(self, branch: str, version: int) -> Optional[str]:
        """
        Ask the mirrors directly for `version`, preferred mirror first.

        The mirror that answers becomes the selected mirror.
        """
        branch = normalize_branch(branch)
        for mirror in await self._mirror_candidates():
            try:
                url = await mirror.resolve_download_url(self.os_name, self.arch, branch, version)
            except PROVIDER_FAILURES as e:
                logger.warning(
                    "Mirror %s failed for %s v%d: %s", mirror.source_id, branch, version, e
                )
                continue
            if url and url.strip():
                if mirror is not self.selected_mirror:
                    self.selected_mirror = mirror
                    logger.info(
                        "Switched active mirror to %s for %s v%d", mirror.source_id, branch, version
                    )
                return url
        return None

    async def get_mirror_diff_url(
        self, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        branch = normalize_branch(branch)
        for mirror in await self._mirror_candidates():
            try:
                url = await mirror.resolve_diff_url(
                    self.os_name, self.arch, branch, from_version, to_version
                )
            except PROVIDER_FAILURES as e:
                logger.warning(
                    "Mirror %s failed for %s v%d~%d: %s",
                    mirror.source_id,
                    branch,
                    from_version,
                    to_version,
                    e,
                )
                continue
            if url and url.strip():
                if mirror is not self.selected_mirror:
                    self.selected_mirror = mirror
                    logger.info(
                        "Switched active mirror to %s for %s v%d~%d",
                        mirror.source_id,
                        branch,
                        from_version,
                        to_version,
                    )
                return url
        return None

    async def test_mirror_speed(self, mirror_id: str, force: bool = False) -> SpeedProbeResult:
        """
        Probe one mirror by id; an unknown id yields an unavailable result.
        """
        for mirror in self.mirrors:
            if mirror.source_id.lower() == mirror_id.lower():
                return await mirror.probe_speed(
                    force=force, os_name=self.os_name, arch=self.arch
                )
        logger.warning(
            "Mirror %r not found among %d loaded mirrors", mirror_id, len(self.mirrors)
        )
        return SpeedProbeResult(source_id=mirror_id, source_name=mirror_id)

    async def test_official_speed(self, force: bool = False) -> SpeedProbeResult:
        if not self.has_official_account:
            return SpeedProbeResult(
                source_id=OFFICIAL_SOURCE_ID, source_name=OFFICIAL_SOURCE_NAME
            )
        return await self.official_provider.probe_speed(  # type: ignore[union-attr]
            force=force, os_name=self.os_name, arch=self.arch
        )
