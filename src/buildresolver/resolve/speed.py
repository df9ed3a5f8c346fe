"""
Speed probing and mirror selection.

`SpeedProbe` measures one provider: latency through a lightweight
reachability request, throughput through a bounded ranged download. Results
are memoized for the provider's speed TTL. `SpeedSelector` probes several
mirrors concurrently and ranks them.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, FrozenSet, List, Optional, Sequence, Tuple

from buildresolver.constants import (
    BRANCH_PRE_RELEASE,
    BRANCH_RELEASE,
    BYTES_PER_MEGABYTE,
    PING_ACCEPTED_STATUSES,
    SPEED_SAMPLE_TIMEOUT,
)
from buildresolver.exceptions import ProviderError
from buildresolver.log_utils import logger
from buildresolver.platform_info import get_arch, get_os

from .async_client import AsyncHttpClient
from .interfaces import SpeedProbeResult, VersionProvider

SampleUrlFactory = Callable[[Optional[str], Optional[str]], Awaitable[Optional[str]]]


async def newest_build_url(
    provider: VersionProvider, os_name: Optional[str] = None, arch: Optional[str] = None
) -> Optional[str]:
    """
    Find a real artifact URL to sample, preferring the newest pre-release build.

    The platform defaults to the host when `os_name` or `arch` is not given.
    """
    os_name = os_name or get_os()
    arch = arch or get_arch()
    for branch in (BRANCH_PRE_RELEASE, BRANCH_RELEASE):
        entries = await provider.get_versions(os_name, arch, branch)
        if entries:
            return entries[0].pwr_url
    return None


class SpeedProbe:
    """
    Memoized latency and throughput measurement for a single provider.

    Concurrent callers on the same probe are serialized; the second caller
    reuses the result the first one produced.
    """

    def __init__(
        self,
        client: AsyncHttpClient,
        source_id: str,
        source_name: str,
        ping_url: Optional[str],
        ping_timeout_seconds: float,
        sample_size_bytes: int,
        ttl_minutes: float,
        sample_url_factory: Optional[SampleUrlFactory] = None,
        accepted_statuses: FrozenSet[int] = PING_ACCEPTED_STATUSES,
    ) -> None:
        self.client = client
        self.source_id = source_id
        self.source_name = source_name
        self.ping_url = ping_url
        self.ping_timeout_seconds = ping_timeout_seconds
        self.sample_size_bytes = sample_size_bytes
        self.ttl = timedelta(minutes=ttl_minutes)
        self.sample_url_factory = sample_url_factory
        self.accepted_statuses = accepted_statuses
        self._result: Optional[SpeedProbeResult] = None
        self._lock = asyncio.Lock()

    def _ping_succeeded(self, status: int) -> bool:
        return 200 <= status < 300 or status in self.accepted_statuses

    def cached(self) -> Optional[SpeedProbeResult]:
        """Return the memoized result while it is younger than the TTL."""
        if self._result is None:
            return None
        if datetime.now(timezone.utc) - self._result.tested_at >= self.ttl:
            return None
        return self._result

    async def run(
        self, force: bool = False, os_name: Optional[str] = None, arch: Optional[str] = None
    ) -> SpeedProbeResult:
        """
        Probe the provider, reusing a fresh memoized result unless `force` is set.

        `os_name` and `arch` pick the platform whose build is sampled for throughput.

        Returns:
            SpeedProbeResult: The measurement. Transport failures yield an unavailable result.
        """
        if not force:
            cached = self.cached()
            if cached is not None:
                return cached

        async with self._lock:
            if not force:
                cached = self.cached()
                if cached is not None:
                    return cached
            self._result = await self._measure(os_name, arch)
            return self._result

    async def _measure(self, os_name: Optional[str], arch: Optional[str]) -> SpeedProbeResult:
        result = SpeedProbeResult(
            source_id=self.source_id,
            source_name=self.source_name,
            probe_url=self.ping_url or "",
        )
        if not self.ping_url:
            logger.debug("No probe endpoint for %s; reporting unavailable", self.source_id)
            return result

        try:
            started = time.monotonic()
            status = await self.client.probe(
                self.ping_url, method="HEAD", timeout=self.ping_timeout_seconds
            )
            if not self._ping_succeeded(status):
                # Some servers refuse HEAD outright; retry the ping with GET
                started = time.monotonic()
                status = await self.client.probe(
                    self.ping_url, method="GET", timeout=self.ping_timeout_seconds
                )
            result.latency_ms = int((time.monotonic() - started) * 1000)

            if not self._ping_succeeded(status):
                logger.warning(
                    "Speed test ping for %s failed with status %d", self.source_id, status
                )
                return result

            result.is_available = True
            sample_url = (
                await self.sample_url_factory(os_name, arch) if self.sample_url_factory else None
            )
            if sample_url:
                started = time.monotonic()
                received = await self.client.sample_download(
                    sample_url, self.sample_size_bytes, timeout=SPEED_SAMPLE_TIMEOUT
                )
                elapsed = time.monotonic() - started
                if elapsed > 0 and received > 0:
                    result.throughput_mbps = (received / BYTES_PER_MEGABYTE) / elapsed
            logger.info(
                "Speed test for %s: %dms ping, %.2f MB/s",
                self.source_id,
                result.latency_ms,
                result.throughput_mbps,
            )
        except ProviderError as e:
            logger.warning("Speed test for %s failed: %s", self.source_id, e)
            result.is_available = False
        finally:
            result.tested_at = datetime.now(timezone.utc)
        return result


class SpeedSelector:
    """
    Chooses the fastest mirror.

    A single mirror is chosen without probing. Otherwise every mirror is
    probed concurrently, candidates that are available with a positive
    throughput are ordered by throughput (descending) then latency
    (ascending), and the first configured mirror is the fallback when no
    candidate qualifies.
    """

    async def probe_all(
        self,
        mirrors: Sequence[VersionProvider],
        force: bool = False,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> List[Tuple[VersionProvider, SpeedProbeResult]]:
        outcomes = await asyncio.gather(
            *(
                mirror.probe_speed(force=force, os_name=os_name, arch=arch)
                for mirror in mirrors
            ),
            return_exceptions=True,
        )
        results = []
        for mirror, outcome in zip(mirrors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("Speed probe for %s raised: %s", mirror.source_id, outcome)
                outcome = SpeedProbeResult(
                    source_id=mirror.source_id, source_name=mirror.display_name
                )
            results.append((mirror, outcome))
        return results

    @staticmethod
    def rank(
        results: Sequence[Tuple[VersionProvider, SpeedProbeResult]],
    ) -> List[Tuple[VersionProvider, SpeedProbeResult]]:
        """Keep usable candidates, fastest first, lower latency breaking ties."""
        usable = [
            pair
            for pair in results
            if pair[1].is_available and pair[1].throughput_mbps > 0
        ]
        return sorted(
            usable,
            key=lambda pair: (
                -pair[1].throughput_mbps,
                pair[1].latency_ms if pair[1].latency_ms >= 0 else float("inf"),
            ),
        )

    async def select(
        self,
        mirrors: Sequence[VersionProvider],
        force: bool = False,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> Optional[VersionProvider]:
        """
        Pick the best mirror.

        Parameters:
            mirrors (Sequence[VersionProvider]): Candidates in configured order.
            force (bool): Ignore memoized probe results.
            os_name (Optional[str]): Platform whose builds are sampled; the host when None.
            arch (Optional[str]): Architecture whose builds are sampled; the host when None.

        Returns:
            Optional[VersionProvider]: The chosen mirror, or None when there are no mirrors.
        """
        if not mirrors:
            return None
        if len(mirrors) == 1:
            return mirrors[0]

        results = await self.probe_all(mirrors, force=force, os_name=os_name, arch=arch)
        ranked = self.rank(results)
        if ranked:
            best, result = ranked[0]
            logger.info(
                "Selected mirror %s (%.2f MB/s, %dms)",
                best.source_id,
                result.throughput_mbps,
                result.latency_ms,
            )
            return best

        logger.warning(
            "No mirror passed the speed test; falling back to %s", mirrors[0].source_id
        )
        return mirrors[0]
