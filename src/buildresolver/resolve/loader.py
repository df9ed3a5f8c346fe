"""
Descriptor store and provider factory.

Mirrors are configured by ``<id>.mirror.json`` files in a providers
directory. The loader reads and validates them, builds the matching
provider for each enabled descriptor, and writes descriptors back for
callers that manage mirrors.
"""

import os
from typing import Any, Dict, Iterable, List, Optional

from buildresolver.constants import DESCRIPTOR_FILE_SUFFIX
from buildresolver.exceptions import ConfigValidationError, ValidationError
from buildresolver.log_utils import logger

from .async_client import AsyncHttpClient
from .descriptors import (
    SOURCE_KIND_INDEX,
    SOURCE_KIND_PATTERN,
    ProviderDescriptor,
    descriptor_to_dict,
    parse_descriptor,
    validate_descriptor,
)
from .files import atomic_write_json, read_json
from .index_source import IndexVersionProvider
from .interfaces import VersionProvider
from .pattern_source import PatternVersionProvider


class ProviderLoader:
    """
    Reads mirror descriptors from disk and turns them into providers.

    A broken descriptor never prevents the others from loading: it is
    skipped with a warning naming the file and the problem.
    """

    def __init__(
        self,
        providers_dir: str,
        client: AsyncHttpClient,
        default_descriptors: Iterable[Dict[str, Any]] = (),
    ) -> None:
        """
        Parameters:
            providers_dir (str): Directory holding ``*.mirror.json`` files.
            client (AsyncHttpClient): Transport handed to every created provider.
            default_descriptors (Iterable[Dict[str, Any]]): Raw descriptors written to an empty directory on first load.
        """
        self.providers_dir = providers_dir
        self.client = client
        self.default_descriptors = list(default_descriptors)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _descriptor_path(self, descriptor_id: str) -> str:
        if (
            not descriptor_id
            or not descriptor_id.strip()
            or os.sep in descriptor_id
            or (os.altsep and os.altsep in descriptor_id)
            or descriptor_id in (".", "..")
        ):
            raise ConfigValidationError(
                "Mirror id must be a non-blank file name", details=repr(descriptor_id)
            )
        return os.path.join(self.providers_dir, descriptor_id + DESCRIPTOR_FILE_SUFFIX)

    def _descriptor_files(self) -> List[str]:
        try:
            names = os.listdir(self.providers_dir)
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Could not list mirror directory %s: %s", self.providers_dir, e)
            return []
        return sorted(
            os.path.join(self.providers_dir, name)
            for name in names
            if name.endswith(DESCRIPTOR_FILE_SUFFIX)
        )

    def seed_defaults(self) -> int:
        """
        Write the built-in descriptors into the providers directory.

        Seeding is best-effort; failures are logged and loading continues.

        Returns:
            int: Number of descriptor files written.
        """
        written = 0
        for raw in self.default_descriptors:
            descriptor_id = raw.get("id") if isinstance(raw, dict) else None
            if not isinstance(descriptor_id, str) or not descriptor_id.strip():
                logger.warning("Skipping built-in mirror without an id")
                continue
            try:
                path = self._descriptor_path(descriptor_id)
            except ConfigValidationError as e:
                logger.warning("Skipping built-in mirror %r: %s", descriptor_id, e)
                continue
            if atomic_write_json(path, raw):
                written += 1
        if written:
            logger.info("Seeded %d built-in mirror descriptors into %s", written, self.providers_dir)
        return written

    def _read_descriptor(self, path: str) -> Optional[ProviderDescriptor]:
        data = read_json(path)
        if data is None:
            logger.warning("Skipping mirror file %s: not readable JSON", path)
            return None
        try:
            descriptor = parse_descriptor(data)
            validate_descriptor(descriptor)
        except ValidationError as e:
            logger.warning("Skipping mirror file %s: %s", path, e)
            return None
        return descriptor

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def list_descriptors(self) -> List[ProviderDescriptor]:
        """
        Return every valid descriptor on disk, enabled or not, by ascending priority.
        """
        descriptors = []
        for path in self._descriptor_files():
            descriptor = self._read_descriptor(path)
            if descriptor is not None:
                descriptors.append(descriptor)
        return sorted(descriptors, key=lambda d: d.priority)

    def create_provider(self, descriptor: ProviderDescriptor) -> VersionProvider:
        """
        Build the provider implementation selected by the descriptor's source kind.

        Raises:
            ConfigValidationError: For a source kind without an implementation.
        """
        if descriptor.source_kind == SOURCE_KIND_PATTERN:
            return PatternVersionProvider(descriptor, self.client)
        if descriptor.source_kind == SOURCE_KIND_INDEX:
            return IndexVersionProvider(descriptor, self.client)
        raise ConfigValidationError(
            f"No provider for source kind {descriptor.source_kind!r}",
            details=descriptor.id,
        )

    def load_all(self) -> List[VersionProvider]:
        """
        Load every enabled mirror.

        An empty or missing directory is seeded from the built-in descriptors
        first. Duplicate ids are all loaded, with a warning.

        Returns:
            List[VersionProvider]: Providers sorted by ascending priority.
        """
        if not self._descriptor_files() and self.default_descriptors:
            self.seed_defaults()

        providers: List[VersionProvider] = []
        seen_ids = set()
        for descriptor in self.list_descriptors():
            if not descriptor.enabled:
                logger.info("Mirror %s is disabled; skipping", descriptor.id)
                continue
            if descriptor.id in seen_ids:
                logger.warning("Mirror id %s is defined more than once", descriptor.id)
            seen_ids.add(descriptor.id)
            provider = self.create_provider(descriptor)
            logger.debug("Loaded mirror %s", provider.describe_layout())
            providers.append(provider)

        logger.info("Loaded %d mirrors from %s", len(providers), self.providers_dir)
        return providers

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    def save_descriptor(self, descriptor: ProviderDescriptor) -> bool:
        """
        Write a descriptor to ``<id>.mirror.json``, replacing any existing file.

        Returns:
            bool: True when the file was written.

        Raises:
            ConfigValidationError: If the descriptor id is blank or not usable as a file name.
        """
        path = self._descriptor_path(descriptor.id)
        saved = atomic_write_json(path, descriptor_to_dict(descriptor))
        if saved:
            logger.info("Saved mirror descriptor %s", descriptor.id)
        return saved

    def delete_descriptor(self, descriptor_id: str) -> bool:
        try:
            path = self._descriptor_path(descriptor_id)
        except ConfigValidationError:
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Could not delete mirror descriptor %s: %s", path, e)
            return False
        logger.info("Deleted mirror descriptor %s", descriptor_id)
        return True

    def descriptor_exists(self, descriptor_id: str) -> bool:
        try:
            return os.path.isfile(self._descriptor_path(descriptor_id))
        except ConfigValidationError:
            return False
