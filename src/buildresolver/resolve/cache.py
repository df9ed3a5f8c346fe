"""
Cache Management for the Resolution Subsystem

Two documents are persisted: a version index (``versions.json``) and a
patch-chain index (``patches.json``). Each carries the OS/arch it was built
for, a global fetch timestamp and one timestamp per branch, so branches
expire independently. Documents are always rewritten whole.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

from buildresolver.constants import APP_NAME, PATCHES_CACHE_FILE, VERSIONS_CACHE_FILE
from buildresolver.exceptions import CacheError
from buildresolver.log_utils import logger

from .files import atomic_write_json, read_json
from .interfaces import CachedVersionEntry, PatchStep

_KNOWN_KEYS = frozenset(
    {"fetched_at_utc", "os", "arch", "branch_fetched_at", "official", "mirrors"}
)


def _parse_iso_datetime_utc(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp and normalize it to UTC.

    Returns:
        A timezone-aware datetime in UTC if parsing succeeds, `None` otherwise.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class CacheSnapshot:
    """
    Common envelope of both cache documents.

    `official` maps branch to items; `mirrors` maps mirror id to branch to
    items. Top-level keys this version does not understand are kept in
    `extra` and written back unchanged.
    """

    item_type: ClassVar[Type[Any]]

    os: str = ""
    arch: str = ""
    fetched_at_utc: Optional[datetime] = None
    branch_fetched_at: Dict[str, datetime] = field(default_factory=dict)
    official: Dict[str, List[Any]] = field(default_factory=dict)
    mirrors: Dict[str, Dict[str, List[Any]]] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def matches_platform(self, os_name: str, arch: str) -> bool:
        return self.os == os_name and self.arch == arch

    def has_branch_data(self, branch: str) -> bool:
        if self.official.get(branch):
            return True
        return any(branches.get(branch) for branches in self.mirrors.values())

    def is_branch_fresh(self, branch: str, ttl: timedelta) -> bool:
        """
        Report whether `branch` was fetched within `ttl`.

        Documents written before per-branch stamps existed fall back to the
        global timestamp, but only when the branch actually has data.
        """
        stamp = self.branch_fetched_at.get(branch)
        if stamp is None and self.has_branch_data(branch):
            stamp = self.fetched_at_utc
        if stamp is None:
            return False
        return datetime.now(timezone.utc) - stamp < ttl

    def mark_fetched(self, branch: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now(timezone.utc)
        self.branch_fetched_at[branch] = when
        self.fetched_at_utc = when

    def drop_unknown_mirrors(self, known_ids: List[str]) -> List[str]:
        """
        Remove mirror buckets whose id is not in `known_ids`.

        Returns:
            List[str]: The removed mirror ids.
        """
        removed = [mirror_id for mirror_id in self.mirrors if mirror_id not in known_ids]
        for mirror_id in removed:
            del self.mirrors[mirror_id]
        return removed

    def remove_items(
        self, branch: str, predicate: Callable[[Any], bool], source_id: Optional[str]
    ) -> int:
        """
        Remove items of one branch matching `predicate` from one source, or from all when `source_id` is None.

        Returns:
            int: Number of removed items.
        """
        buckets: List[Dict[str, List[Any]]] = []
        if source_id is None or source_id == "official":
            buckets.append(self.official)
        if source_id is None:
            buckets.extend(self.mirrors.values())
        elif source_id in self.mirrors:
            buckets.append(self.mirrors[source_id])

        removed = 0
        for bucket in buckets:
            items = bucket.get(branch)
            if not items:
                continue
            kept = [item for item in items if not predicate(item)]
            removed += len(items) - len(kept)
            bucket[branch] = kept
        return removed

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "fetched_at_utc": self.fetched_at_utc.isoformat()
                if self.fetched_at_utc
                else None,
                "os": self.os,
                "arch": self.arch,
                "branch_fetched_at": {
                    branch: stamp.isoformat()
                    for branch, stamp in self.branch_fetched_at.items()
                },
                "official": {
                    branch: [item.to_dict() for item in items]
                    for branch, items in self.official.items()
                },
                "mirrors": {
                    mirror_id: {
                        branch: [item.to_dict() for item in items]
                        for branch, items in branches.items()
                    }
                    for mirror_id, branches in self.mirrors.items()
                },
            }
        )
        return data

    @classmethod
    def _parse_bucket(cls, value: Any) -> Dict[str, List[Any]]:
        if not isinstance(value, dict):
            return {}
        bucket: Dict[str, List[Any]] = {}
        for branch, raw_items in value.items():
            if not isinstance(raw_items, list):
                continue
            items = [
                parsed
                for parsed in (
                    cls.item_type.from_dict(raw) for raw in raw_items if isinstance(raw, dict)
                )
                if parsed is not None
            ]
            bucket[str(branch)] = items
        return bucket

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CacheSnapshot"]:
        """
        Build a snapshot from its persisted form.

        Returns:
            The snapshot, or None when `data` is not a JSON object.
        """
        if not isinstance(data, dict):
            return None
        branch_stamps = {}
        raw_stamps = data.get("branch_fetched_at")
        if isinstance(raw_stamps, dict):
            for branch, raw in raw_stamps.items():
                parsed = _parse_iso_datetime_utc(raw)
                if parsed is not None:
                    branch_stamps[str(branch)] = parsed
        raw_mirrors = data.get("mirrors")
        mirrors = {}
        if isinstance(raw_mirrors, dict):
            mirrors = {
                str(mirror_id): cls._parse_bucket(branches)
                for mirror_id, branches in raw_mirrors.items()
            }
        return cls(
            os=str(data.get("os") or ""),
            arch=str(data.get("arch") or ""),
            fetched_at_utc=_parse_iso_datetime_utc(data.get("fetched_at_utc")),
            branch_fetched_at=branch_stamps,
            official=cls._parse_bucket(data.get("official")),
            mirrors=mirrors,
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )


@dataclass
class VersionsCacheSnapshot(CacheSnapshot):
    """Version index: CachedVersionEntry lists per source and branch."""

    item_type: ClassVar[Type[Any]] = CachedVersionEntry


@dataclass
class PatchesCacheSnapshot(CacheSnapshot):
    """Patch-chain index: PatchStep lists per source and branch."""

    item_type: ClassVar[Type[Any]] = PatchStep


class CacheRepository(ABC):
    """
    Persistence boundary for the two cache documents.

    The orchestrator only talks to this interface so its merge and TTL logic
    can run against InMemoryCacheRepository in tests.
    """

    @abstractmethod
    def load_versions(self) -> Optional[VersionsCacheSnapshot]:
        """Return the persisted version index, or None when absent or unreadable."""

    @abstractmethod
    def save_versions(self, snapshot: VersionsCacheSnapshot) -> bool:
        """Replace the persisted version index; return whether it was written."""

    @abstractmethod
    def load_patches(self) -> Optional[PatchesCacheSnapshot]:
        """Return the persisted patch index, or None when absent or unreadable."""

    @abstractmethod
    def save_patches(self, snapshot: PatchesCacheSnapshot) -> bool:
        """Replace the persisted patch index; return whether it was written."""

    @abstractmethod
    def clear(self) -> None:
        """Delete both documents."""


class FileCacheRepository(CacheRepository):
    """
    Stores the cache documents as JSON files in a cache directory.

    Writes go through a temporary file and an atomic replace.
    """

    def __init__(self, cache_dir: Optional[str] = None) -> None:
        """
        Parameters:
            cache_dir (Optional[str]): Directory for the cache files. If None, the platform user cache directory is used.

        Raises:
            CacheError: If the directory cannot be created.
        """
        self.cache_dir = cache_dir or self._get_default_cache_dir()
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
        except OSError as e:
            logger.error("Could not create cache directory %s: %s", self.cache_dir, e)
            raise CacheError(
                "Could not create cache directory", path=self.cache_dir, details=str(e)
            ) from e
        self.versions_path = os.path.join(self.cache_dir, VERSIONS_CACHE_FILE)
        self.patches_path = os.path.join(self.cache_dir, PATCHES_CACHE_FILE)

    def _get_default_cache_dir(self) -> str:
        import platformdirs

        return platformdirs.user_cache_dir(APP_NAME)

    def load_versions(self) -> Optional[VersionsCacheSnapshot]:
        snapshot = VersionsCacheSnapshot.from_dict(read_json(self.versions_path))
        return snapshot  # type: ignore[return-value]

    def save_versions(self, snapshot: VersionsCacheSnapshot) -> bool:
        return atomic_write_json(self.versions_path, snapshot.to_dict())

    def load_patches(self) -> Optional[PatchesCacheSnapshot]:
        snapshot = PatchesCacheSnapshot.from_dict(read_json(self.patches_path))
        return snapshot  # type: ignore[return-value]

    def save_patches(self, snapshot: PatchesCacheSnapshot) -> bool:
        return atomic_write_json(self.patches_path, snapshot.to_dict())

    def clear(self) -> None:
        for path in (self.versions_path, self.patches_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not delete cache file %s: %s", path, e)
            else:
                logger.debug("Deleted cache file %s", path)


class InMemoryCacheRepository(CacheRepository):
    """
    Keeps serialized documents in memory.

    Documents round-trip through their dict form so callers cannot mutate
    stored state by accident.
    """

    def __init__(self) -> None:
        self.versions_data: Optional[Dict[str, Any]] = None
        self.patches_data: Optional[Dict[str, Any]] = None
        self.save_count = 0

    def load_versions(self) -> Optional[VersionsCacheSnapshot]:
        return VersionsCacheSnapshot.from_dict(self.versions_data)  # type: ignore[return-value]

    def save_versions(self, snapshot: VersionsCacheSnapshot) -> bool:
        self.versions_data = snapshot.to_dict()
        self.save_count += 1
        return True

    def load_patches(self) -> Optional[PatchesCacheSnapshot]:
        return PatchesCacheSnapshot.from_dict(self.patches_data)  # type: ignore[return-value]

    def save_patches(self, snapshot: PatchesCacheSnapshot) -> bool:
        self.patches_data = snapshot.to_dict()
        self.save_count += 1
        return True

    def clear(self) -> None:
        self.versions_data = None
        self.patches_data = None
