"""
Build Resolution Subsystem

This package answers "which builds exist for a branch, and where can each
one be downloaded" by merging several providers behind one cached view.

Core Components:
- interfaces: Data types and the VersionProvider contract
- descriptors: Mirror descriptor model, parsing and validation
- discovery: Version discovery strategies for pattern mirrors
- pattern_source: Pattern-template mirrors
- index_source: Index-API mirrors
- official_source: The authenticated first-party provider
- loader: Descriptor store and provider factory
- cache: Version and patch snapshots and their storage
- speed: Speed probes and mirror selection
- orchestrator: Query API coordinating all of the above
"""

from .async_client import AsyncHttpClient, create_http_client
from .cache import (
    CacheRepository,
    FileCacheRepository,
    InMemoryCacheRepository,
    PatchesCacheSnapshot,
    VersionsCacheSnapshot,
)
from .descriptors import (
    ProviderDescriptor,
    descriptor_to_dict,
    parse_descriptor,
    validate_descriptor,
)
from .index_source import IndexVersionProvider
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
from .json_path import JsonPath, parse_json_path
from .loader import ProviderLoader
from .official_source import (
    AccessTokenProvider,
    OfficialVersionProvider,
    StaticTokenProvider,
)
from .orchestrator import ResolutionOrchestrator
from .pattern_source import PatternVersionProvider
from .speed import SpeedProbe, SpeedSelector

__all__ = [
    # Interfaces
    "VersionProvider",
    "CachedVersionEntry",
    "PatchStep",
    "SpeedProbeResult",
    "VersionInfo",
    "VersionListResponse",
    "SOURCE_TYPE_OFFICIAL",
    "SOURCE_TYPE_MIRROR",
    # Descriptors
    "ProviderDescriptor",
    "parse_descriptor",
    "validate_descriptor",
    "descriptor_to_dict",
    "JsonPath",
    "parse_json_path",
    # Providers
    "PatternVersionProvider",
    "IndexVersionProvider",
    "OfficialVersionProvider",
    "AccessTokenProvider",
    "StaticTokenProvider",
    "ProviderLoader",
    # Cache
    "CacheRepository",
    "FileCacheRepository",
    "InMemoryCacheRepository",
    "VersionsCacheSnapshot",
    "PatchesCacheSnapshot",
    # Orchestration
    "ResolutionOrchestrator",
    "SpeedProbe",
    "SpeedSelector",
    # Transport
    "AsyncHttpClient",
    "create_http_client",
]
