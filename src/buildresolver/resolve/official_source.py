"""
Official provider.

Talks to the first-party patch API:

    GET {patches_url}/{os}/{arch}/{branch}/{from_build}
    Authorization: Bearer <token>

which answers ``{"steps": [{"from", "to", "pwr", "pwrHead", "sig"}]}``.
Token acquisition lives outside this library; the provider only consumes
an AccessTokenProvider.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from buildresolver.constants import (
    DEFAULT_PING_TIMEOUT_SECONDS,
    DEFAULT_SPEED_TEST_SIZE_BYTES,
    DEFAULT_SPEED_TEST_TTL_MINUTES,
    OFFICIAL_CACHE_TTL_SECONDS,
    OFFICIAL_MAX_AUTH_ATTEMPTS,
    OFFICIAL_PATCHES_URL,
    OFFICIAL_PRIORITY,
    OFFICIAL_SOURCE_ID,
    OFFICIAL_SOURCE_NAME,
    PING_ACCEPTED_STATUSES,
)
from buildresolver.exceptions import AuthenticationError, HTTPError, ProviderError
from buildresolver.log_utils import logger

from .async_client import AsyncHttpClient
from .branches import normalize_branch
from .interfaces import (
    SOURCE_TYPE_OFFICIAL,
    CachedVersionEntry,
    PatchStep,
    SpeedProbeResult,
    VersionProvider,
)
from .speed import SpeedProbe, newest_build_url


class AccessTokenProvider(ABC):
    """
    Supplies bearer tokens for the official API.

    Implementations wrap whatever account/session machinery the host
    application uses.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """Report whether an account is present that can produce tokens."""

    @abstractmethod
    async def get_access_token(self) -> Optional[str]:
        """Return the current token, refreshing it only if it is known to be expired."""

    @abstractmethod
    async def refresh_access_token(self) -> Optional[str]:
        """Force a refresh and return the new token (None when refreshing failed)."""


class StaticTokenProvider(AccessTokenProvider):
    """Token provider for a fixed token, e.g. one handed over by a launcher."""

    def __init__(self, token: Optional[str]) -> None:
        self.token = token

    def is_available(self) -> bool:
        return bool(self.token)

    async def get_access_token(self) -> Optional[str]:
        return self.token

    async def refresh_access_token(self) -> Optional[str]:
        return self.token


def parse_patch_steps(document: Any) -> List[PatchStep]:
    """
    Parse the ``steps`` array of a patch API response.

    Malformed steps are skipped with a warning.
    """
    raw_steps = document.get("steps") if isinstance(document, dict) else None
    if not isinstance(raw_steps, list):
        logger.warning("Official patch response has no steps array")
        return []

    steps = []
    for raw in raw_steps:
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed patch step: expected dict, got %s", type(raw).__name__)
            continue
        try:
            from_version = int(raw.get("from", 0))
            to_version = int(raw["to"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping patch step with invalid from/to: %r", raw)
            continue
        pwr = raw.get("pwr")
        if not isinstance(pwr, str) or not pwr:
            logger.warning("Skipping patch step %d -> %d without pwr url", from_version, to_version)
            continue
        head = raw.get("pwrHead")
        sig = raw.get("sig")
        steps.append(
            PatchStep(
                from_version=from_version,
                to_version=to_version,
                pwr_url=pwr,
                pwr_head_url=head if isinstance(head, str) and head else None,
                sig_url=sig if isinstance(sig, str) and sig else None,
            )
        )
    return sorted(steps, key=lambda s: (s.to_version, s.from_version))


class OfficialVersionProvider(VersionProvider):
    """
    First-party provider with the highest fixed priority.

    Responses are memoized per (os, arch, branch, from_build) for fifteen
    minutes. A 401/403 answer triggers one forced token refresh and a retry.
    """

    source_type = SOURCE_TYPE_OFFICIAL

    def __init__(
        self,
        client: AsyncHttpClient,
        token_provider: AccessTokenProvider,
        patches_url: str = OFFICIAL_PATCHES_URL,
    ) -> None:
        self.client = client
        self.token_provider = token_provider
        self.patches_url = patches_url.rstrip("/")
        self.source_id = OFFICIAL_SOURCE_ID
        self.display_name = OFFICIAL_SOURCE_NAME
        self.priority = OFFICIAL_PRIORITY
        self._ttl = timedelta(seconds=OFFICIAL_CACHE_TTL_SECONDS)
        self._responses: Dict[Tuple[str, str, str, int], Tuple[datetime, List[PatchStep]]] = {}
        self._speed = SpeedProbe(
            client,
            source_id=self.source_id,
            source_name=self.display_name,
            ping_url=self.patches_url,
            ping_timeout_seconds=DEFAULT_PING_TIMEOUT_SECONDS,
            sample_size_bytes=DEFAULT_SPEED_TEST_SIZE_BYTES,
            ttl_minutes=DEFAULT_SPEED_TEST_TTL_MINUTES,
            sample_url_factory=lambda os_name, arch: newest_build_url(self, os_name, arch),
            # The API rejects anonymous requests but answering proves it is up
            accepted_statuses=PING_ACCEPTED_STATUSES | {401, 403},
        )

    def is_available(self) -> bool:
        return self.token_provider.is_available()

    def is_diff_only_branch(self, branch: str) -> bool:
        return False

    def clear_cache(self) -> None:
        self._responses.clear()

    async def fetch_steps(
        self, os_name: str, arch: str, branch: str, from_build: int
    ) -> List[PatchStep]:
        """
        Fetch the patch steps the API offers starting at `from_build`.

        Returns:
            List[PatchStep]: Steps sorted by target version; empty when no token is available.

        Raises:
            AuthenticationError: When the API keeps rejecting refreshed tokens.
            ProviderError: On transport failures or other error statuses.
        """
        branch = normalize_branch(branch)
        key = (os_name, arch, branch, from_build)
        cached = self._responses.get(key)
        if cached and datetime.now(timezone.utc) - cached[0] < self._ttl:
            return cached[1]

        if not self.token_provider.is_available():
            return []

        url = f"{self.patches_url}/{os_name}/{arch}/{branch}/{from_build}"
        for attempt in range(1, OFFICIAL_MAX_AUTH_ATTEMPTS + 1):
            if attempt == 1:
                token = await self.token_provider.get_access_token()
            else:
                token = await self.token_provider.refresh_access_token()
            if not token:
                logger.warning("No access token available for the official patch API")
                return []

            try:
                document = await self.client.get_json(
                    url, headers={"Authorization": f"Bearer {token}"}
                )
            except HTTPError as e:
                if not e.is_auth_failure:
                    raise
                if attempt < OFFICIAL_MAX_AUTH_ATTEMPTS:
                    logger.info("Official API rejected the token (%s); refreshing", e.status_code)
                    self._responses.clear()
                    continue
                raise AuthenticationError(
                    "Official API rejected the refreshed token",
                    source_id=self.source_id,
                    url=url,
                ) from e

            steps = parse_patch_steps(document)
            self._responses[key] = (datetime.now(timezone.utc), steps)
            return steps
        return []

    async def get_versions(
        self, os_name: str, arch: str, branch: str
    ) -> List[CachedVersionEntry]:
        try:
            steps = await self.fetch_steps(os_name, arch, branch, 0)
        except ProviderError as e:
            logger.warning("Official version check failed: %s", e)
            return []
        if not steps:
            return []
        latest = max(steps, key=lambda s: s.to_version)
        return [
            CachedVersionEntry(
                version=latest.to_version,
                pwr_url=latest.pwr_url,
                pwr_head_url=latest.pwr_head_url,
                sig_url=latest.sig_url,
            )
        ]

    async def get_patch_chain(
        self, os_name: str, arch: str, branch: str
    ) -> List[PatchStep]:
        try:
            return await self.fetch_steps(os_name, arch, branch, 1)
        except ProviderError as e:
            logger.warning("Official patch chain fetch failed: %s", e)
            return []

    async def resolve_download_url(
        self, os_name: str, arch: str, branch: str, version: int
    ) -> Optional[str]:
        for entry in await self.get_versions(os_name, arch, branch):
            if entry.version == version:
                return entry.pwr_url
        return None

    async def resolve_diff_url(
        self, os_name: str, arch: str, branch: str, from_version: int, to_version: int
    ) -> Optional[str]:
        try:
            steps = await self.fetch_steps(os_name, arch, branch, from_version)
        except ProviderError as e:
            logger.warning("Official diff lookup failed: %s", e)
            return None
        for step in steps:
            if step.from_version == from_version and step.to_version == to_version:
                return step.pwr_url
        return None

    async def probe_speed(
        self, force: bool = False, os_name: Optional[str] = None, arch: Optional[str] = None
    ) -> SpeedProbeResult:
        return await self._speed.run(force=force, os_name=os_name, arch=arch)

    def cached_speed_result(self) -> Optional[SpeedProbeResult]:
        return self._speed.cached()
