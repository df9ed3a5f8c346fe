"""
Core Interfaces for the Resolution Subsystem

This module defines the data structures exchanged between providers, the
cache and the orchestrator, plus the contract every version provider
implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SOURCE_TYPE_OFFICIAL = "official"
SOURCE_TYPE_MIRROR = "mirror"


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass
class CachedVersionEntry:
    """One resolved build for a (branch, os, arch) triple."""

    version: int
    """The build number this entry resolves to"""

    pwr_url: str
    """URL of the build artifact (full build, or the diff when from_version > 0)"""

    pwr_head_url: Optional[str] = None
    """Optional URL of the artifact header"""

    sig_url: Optional[str] = None
    """Optional URL of the detached signature"""

    from_version: int = 0
    """0 for a full build, otherwise the version this incremental step starts from"""

    @property
    def is_full_build(self) -> bool:
        """
        True when the artifact installs from nothing.

        That includes the 0 -> 1 patch that opens a diff-only branch, whose
        URL points at a diff yet needs no prior build.
        """
        return self.from_version == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "pwr_url": self.pwr_url,
            "pwr_head_url": self.pwr_head_url,
            "sig_url": self.sig_url,
            "from_version": self.from_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["CachedVersionEntry"]:
        """
        Build an entry from its cached form.

        Returns:
            Optional[CachedVersionEntry]: The entry, or None when the record is missing a version or URL.
        """
        try:
            version = int(data["version"])
            from_version = int(data.get("from_version") or 0)
        except (KeyError, TypeError, ValueError):
            return None
        pwr_url = data.get("pwr_url")
        if not isinstance(pwr_url, str) or not pwr_url or version < 0:
            return None
        return cls(
            version=version,
            pwr_url=pwr_url,
            pwr_head_url=_optional_str(data.get("pwr_head_url")),
            sig_url=_optional_str(data.get("sig_url")),
            from_version=from_version,
        )


@dataclass
class PatchStep:
    """A directed edge from one build to another."""

    from_version: int
    """Build the step starts from (0 means a fresh install)"""

    to_version: int
    """Build the step produces"""

    pwr_url: str
    """URL of the patch (or full build when from_version is 0)"""

    pwr_head_url: Optional[str] = None
    """Optional URL of the patch header"""

    sig_url: Optional[str] = None
    """Optional URL of the detached signature"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "pwr_url": self.pwr_url,
            "pwr_head_url": self.pwr_head_url,
            "sig_url": self.sig_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PatchStep"]:
        try:
            from_version = int(data["from_version"])
            to_version = int(data["to_version"])
        except (KeyError, TypeError, ValueError):
            return None
        pwr_url = data.get("pwr_url")
        if not isinstance(pwr_url, str) or not pwr_url:
            return None
        return cls(
            from_version=from_version,
            to_version=to_version,
            pwr_url=pwr_url,
            pwr_head_url=_optional_str(data.get("pwr_head_url")),
            sig_url=_optional_str(data.get("sig_url")),
        )


@dataclass
class SpeedProbeResult:
    """Outcome of a latency and throughput probe against one provider."""

    source_id: str
    """Identifier of the probed provider"""

    source_name: str = ""
    """Display name of the probed provider"""

    probe_url: str = ""
    """URL used for the reachability check"""

    latency_ms: int = -1
    """Round-trip time of the reachability check, -1 when unknown"""

    throughput_mbps: float = 0.0
    """Measured sample download speed in megabytes per second"""

    is_available: bool = False
    """Whether the provider answered the reachability check"""

    tested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    """When the probe finished"""


@dataclass
class VersionInfo:
    """A version as presented to consumers, tagged with the source that supplies it."""

    version: int
    source: str
    source_id: str
    is_latest: bool = False


@dataclass
class VersionListResponse:
    """Result of a source-aware version listing."""

    versions: List[VersionInfo] = field(default_factory=list)
    has_official_account: bool = False
    official_source_available: bool = False
    has_download_sources: bool = False
    enabled_mirror_count: int = 0


class VersionProvider(ABC):
    """
    Abstract base class for version providers.

    A VersionProvider knows which builds exist for a branch on a platform and
    how to reach them. Implementations never raise for partial or missing
    data: they return what they can resolve and log the rest.

    Concrete providers set these attributes:
        source_id (str): Stable identifier, "official" for the first-party source.
        display_name (str): Human-readable name.
        priority (int): Lower values are preferred.
        source_type (str): SOURCE_TYPE_OFFICIAL or SOURCE_TYPE_MIRROR.
    """

    source_id: str
    display_name: str
    priority: int
    source_type: str

    @abstractmethod
    def is_available(self) -> bool:
        """
        Report whether the provider can currently serve requests.

        Returns:
            bool: `True` if the provider is usable, `False` otherwise.
        """

    @abstractmethod
    def is_diff_only_branch(self, branch: str) -> bool:
        """
        Report whether the provider publishes only incremental patches for `branch`.
        """

    @abstractmethod
    async def get_versions(
        self, os_name: str, arch: str, branch: str
    ) -> List[CachedVersionEntry]:
        """
        Retrieve the builds this provider currently knows about.

        Parameters:
            os_name (str): Canonical OS token.
            arch (str): Canonical architecture token.
            branch (str): Normalized branch name.

        Returns:
            List[CachedVersionEntry]: Entries sorted by version descending; empty when unavailable.
        """

    @abstractmethod
    async def get_patch_chain(
        self, os_name: str, arch: str, branch: str
    ) -> List[PatchStep]:
        """
        Retrieve the incremental update graph for a branch.

        Returns:
            List[PatchStep]: Steps ordered by target version; empty if unsupported.
        """

    @abstractmethod
    async def resolve_download_url(
        self, os_name: str, arch: str, branch: str, version: int
    ) -> Optional[str]:
        """
        Resolve the URL used to obtain `version` directly.

        Returns:
            Optional[str]: The URL, or None when this provider cannot serve the version.
        """

    @abstractmethod
    async def resolve_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        """
        Resolve the URL of the patch from `from_version` to `to_version`.

        Returns:
            Optional[str]: The URL, or None when no such patch is offered.
        """

    @abstractmethod
    async def probe_speed(
        self, force: bool = False, os_name: Optional[str] = None, arch: Optional[str] = None
    ) -> SpeedProbeResult:
        """
        Measure latency and throughput for this provider.

        Parameters:
            force (bool): Ignore a still-valid memoized result.
            os_name (Optional[str]): Platform whose newest build is sampled; the host when None.
            arch (Optional[str]): Architecture whose newest build is sampled; the host when None.

        Returns:
            SpeedProbeResult: The measurement; `is_available` is False when no probe endpoint exists.
        """

    @abstractmethod
    def cached_speed_result(self) -> Optional[SpeedProbeResult]:
        """
        Return the last probe result if it is still within its time-to-live.
        """

    def describe_layout(self) -> str:
        """Return a one-line description of the provider for debug logging."""
        return f"{self.display_name} ({self.source_id}, priority {self.priority})"
