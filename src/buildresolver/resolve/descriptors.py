"""
Provider descriptors.

A descriptor is the on-disk JSON document (``<id>.mirror.json``) that
configures one mirror. Keys are camelCase. Unknown keys are ignored and
missing optional keys take defaults so that documents written for newer
schema versions still load.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from buildresolver.constants import (
    DEFAULT_FULL_BUILD_TEMPLATE,
    DEFAULT_INDEX_DIFF_PATTERN,
    DEFAULT_INDEX_FULL_PATTERN,
    DEFAULT_INDEX_ROOT_PATH,
    DEFAULT_INDEX_TTL_MINUTES,
    DEFAULT_MIRROR_PRIORITY,
    DEFAULT_PING_TIMEOUT_SECONDS,
    DEFAULT_SPEED_TEST_SIZE_BYTES,
    DEFAULT_SPEED_TEST_TTL_MINUTES,
    DESCRIPTOR_SCHEMA_VERSION,
)
from buildresolver.exceptions import DescriptorError, PatternError
from buildresolver.log_utils import logger

from .json_path import parse_json_path

SOURCE_KIND_PATTERN = "pattern"
SOURCE_KIND_INDEX = "index"
_SOURCE_KIND_ALIASES = {
    "pattern": SOURCE_KIND_PATTERN,
    "index": SOURCE_KIND_INDEX,
    "json-index": SOURCE_KIND_INDEX,
}

DISCOVERY_JSON_API = "json-api"
DISCOVERY_HTML_AUTOINDEX = "html-autoindex"
DISCOVERY_STATIC_LIST = "static-list"
DISCOVERY_METHODS = (DISCOVERY_JSON_API, DISCOVERY_HTML_AUTOINDEX, DISCOVERY_STATIC_LIST)

STRUCTURE_FLAT = "flat"
STRUCTURE_GROUPED = "grouped"

_PLACEHOLDER_RE = re.compile(r"\{[A-Za-z]+\}")


@dataclass
class VersionDiscoveryConfig:
    """How a pattern provider learns which versions exist."""

    method: str = DISCOVERY_STATIC_LIST
    url: Optional[str] = None
    json_path: Optional[str] = None
    html_pattern: Optional[str] = None
    min_file_size_bytes: int = 0
    static_versions: List[int] = field(default_factory=list)


@dataclass
class PatternConfig:
    """URL templates and discovery settings for a pattern provider."""

    base_url: str = ""
    full_build_url: str = DEFAULT_FULL_BUILD_TEMPLATE
    diff_patch_url: Optional[str] = None
    signature_url: Optional[str] = None
    version_discovery: VersionDiscoveryConfig = field(
        default_factory=VersionDiscoveryConfig
    )
    os_mapping: Dict[str, str] = field(default_factory=dict)
    arch_mapping: Dict[str, str] = field(default_factory=dict)
    branch_mapping: Dict[str, str] = field(default_factory=dict)
    diff_based_branches: List[str] = field(default_factory=list)


@dataclass
class IndexFileNamePattern:
    """Filename templates used to recover versions from index entries."""

    full: str = DEFAULT_INDEX_FULL_PATTERN
    diff: str = DEFAULT_INDEX_DIFF_PATTERN


@dataclass
class IndexConfig:
    """Endpoint and document shape for an index provider."""

    api_url: str = ""
    root_path: str = DEFAULT_INDEX_ROOT_PATH
    structure: str = STRUCTURE_FLAT
    platform_mapping: Dict[str, str] = field(default_factory=dict)
    file_name_pattern: IndexFileNamePattern = field(
        default_factory=IndexFileNamePattern
    )
    diff_based_branches: List[str] = field(default_factory=list)


@dataclass
class SpeedTestConfig:
    ping_url: Optional[str] = None
    ping_timeout_seconds: int = DEFAULT_PING_TIMEOUT_SECONDS
    speed_test_size_bytes: int = DEFAULT_SPEED_TEST_SIZE_BYTES


@dataclass
class CacheConfig:
    index_ttl_minutes: int = DEFAULT_INDEX_TTL_MINUTES
    speed_test_ttl_minutes: int = DEFAULT_SPEED_TEST_TTL_MINUTES


@dataclass
class ProviderDescriptor:
    """Configuration of one mirror as read from its descriptor file."""

    id: str
    """Unique identifier, also used as the descriptor file stem"""

    source_kind: str
    """Either "pattern" or "index"; selects the provider implementation"""

    name: str = ""
    """Display name, defaults to the id"""

    description: Optional[str] = None

    priority: int = DEFAULT_MIRROR_PRIORITY
    """Lower values are preferred"""

    enabled: bool = True

    schema_version: int = DESCRIPTOR_SCHEMA_VERSION

    pattern: Optional[PatternConfig] = None
    """Pattern settings, required for pattern providers"""

    index: Optional[IndexConfig] = None
    """Index settings, required for index providers"""

    speed_test: SpeedTestConfig = field(default_factory=SpeedTestConfig)

    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id

    def diff_based_branches(self) -> List[str]:
        if self.pattern is not None:
            return self.pattern.diff_based_branches
        if self.index is not None:
            return self.index.diff_based_branches
        return []


# =============================================================================
# Parsing helpers
# =============================================================================


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any, default: Optional[str] = None) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _as_str_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _as_int_list(value: Any) -> List[int]:
    if not isinstance(value, list):
        return []
    result = []
    for item in value:
        parsed = _as_int(item, -1)
        if parsed >= 0:
            result.append(parsed)
    return result


def _section(data: Dict[str, Any], *keys: str) -> Optional[Dict[str, Any]]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, dict):
            return value
    return None


def _parse_discovery(data: Optional[Dict[str, Any]]) -> VersionDiscoveryConfig:
    if data is None:
        return VersionDiscoveryConfig()
    return VersionDiscoveryConfig(
        method=(_as_str(data.get("method"), DISCOVERY_STATIC_LIST) or "").lower(),
        url=_as_str(data.get("url")),
        json_path=_as_str(data.get("jsonPath")),
        html_pattern=_as_str(data.get("htmlPattern")),
        min_file_size_bytes=max(_as_int(data.get("minFileSizeBytes"), 0), 0),
        static_versions=_as_int_list(data.get("staticVersions")),
    )


def _parse_pattern(data: Dict[str, Any]) -> PatternConfig:
    return PatternConfig(
        base_url=(_as_str(data.get("baseUrl"), "") or "").rstrip("/"),
        full_build_url=_as_str(data.get("fullBuildUrl"), DEFAULT_FULL_BUILD_TEMPLATE)
        or DEFAULT_FULL_BUILD_TEMPLATE,
        diff_patch_url=_as_str(data.get("diffPatchUrl")),
        signature_url=_as_str(data.get("signatureUrl")),
        version_discovery=_parse_discovery(_section(data, "versionDiscovery")),
        os_mapping=_as_str_map(data.get("osMapping")),
        arch_mapping=_as_str_map(data.get("archMapping")),
        branch_mapping=_as_str_map(data.get("branchMapping")),
        diff_based_branches=_as_str_list(data.get("diffBasedBranches")),
    )


def _parse_index(data: Dict[str, Any]) -> IndexConfig:
    names = _section(data, "fileNamePattern") or {}
    return IndexConfig(
        api_url=_as_str(data.get("apiUrl"), "") or "",
        root_path=_as_str(data.get("rootPath"), DEFAULT_INDEX_ROOT_PATH)
        or DEFAULT_INDEX_ROOT_PATH,
        structure=(_as_str(data.get("structure"), STRUCTURE_FLAT) or "").lower(),
        platform_mapping=_as_str_map(data.get("platformMapping")),
        file_name_pattern=IndexFileNamePattern(
            full=_as_str(names.get("full"), DEFAULT_INDEX_FULL_PATTERN)
            or DEFAULT_INDEX_FULL_PATTERN,
            diff=_as_str(names.get("diff"), DEFAULT_INDEX_DIFF_PATTERN)
            or DEFAULT_INDEX_DIFF_PATTERN,
        ),
        diff_based_branches=_as_str_list(data.get("diffBasedBranches")),
    )


def parse_descriptor(data: Any) -> ProviderDescriptor:
    """
    Build a ProviderDescriptor from decoded JSON.

    Parameters:
        data (Any): The decoded descriptor document.

    Returns:
        ProviderDescriptor: The parsed descriptor. It still needs validate_descriptor() before use.

    Raises:
        DescriptorError: If the document is not an object, lacks an id, or names an unknown source kind.
    """
    if not isinstance(data, dict):
        raise DescriptorError(
            "Descriptor must be a JSON object", value=type(data).__name__
        )

    descriptor_id = _as_str(data.get("id"))
    if not descriptor_id:
        raise DescriptorError("Descriptor is missing an id", field="id")

    schema_version = _as_int(data.get("schemaVersion"), DESCRIPTOR_SCHEMA_VERSION)
    if schema_version > DESCRIPTOR_SCHEMA_VERSION:
        logger.debug(
            "Descriptor %s uses schema version %d; reading known fields only",
            descriptor_id,
            schema_version,
        )

    raw_kind = _as_str(data.get("sourceKind")) or _as_str(data.get("sourceType"))
    source_kind = _SOURCE_KIND_ALIASES.get((raw_kind or "").lower())
    if source_kind is None:
        raise DescriptorError(
            f"Descriptor {descriptor_id} has unknown source kind",
            field="sourceKind",
            value=raw_kind,
        )

    pattern_data = _section(data, "pattern")
    index_data = _section(data, "index", "jsonIndex")
    speed_data = _section(data, "speedTest") or {}
    cache_data = _section(data, "cache") or {}

    return ProviderDescriptor(
        id=descriptor_id,
        source_kind=source_kind,
        name=_as_str(data.get("name"), descriptor_id) or descriptor_id,
        description=_as_str(data.get("description")),
        priority=_as_int(data.get("priority"), DEFAULT_MIRROR_PRIORITY),
        enabled=_as_bool(data.get("enabled"), True),
        schema_version=schema_version,
        pattern=_parse_pattern(pattern_data) if pattern_data is not None else None,
        index=_parse_index(index_data) if index_data is not None else None,
        speed_test=SpeedTestConfig(
            ping_url=_as_str(speed_data.get("pingUrl")),
            ping_timeout_seconds=max(
                _as_int(
                    speed_data.get("pingTimeoutSeconds"), DEFAULT_PING_TIMEOUT_SECONDS
                ),
                1,
            ),
            speed_test_size_bytes=max(
                _as_int(
                    speed_data.get("speedTestSizeBytes"), DEFAULT_SPEED_TEST_SIZE_BYTES
                ),
                1,
            ),
        ),
        cache=CacheConfig(
            index_ttl_minutes=max(
                _as_int(cache_data.get("indexTtlMinutes"), DEFAULT_INDEX_TTL_MINUTES),
                0,
            ),
            speed_test_ttl_minutes=max(
                _as_int(
                    cache_data.get("speedTestTtlMinutes"),
                    DEFAULT_SPEED_TEST_TTL_MINUTES,
                ),
                0,
            ),
        ),
    )


def compile_html_pattern(pattern: Optional[str]) -> "re.Pattern[str]":
    """
    Compile a directory-listing scrape pattern.

    Raises:
        PatternError: If the pattern is missing, invalid, or has no capture group.
    """
    if not pattern:
        raise PatternError("html-autoindex discovery requires htmlPattern", field="htmlPattern")
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise PatternError(
            "Invalid htmlPattern", field="htmlPattern", value=pattern, details=str(e)
        ) from e
    if compiled.groups < 1:
        raise PatternError(
            "htmlPattern needs a capture group for the version",
            field="htmlPattern",
            value=pattern,
        )
    return compiled


_NUMERIC_PLACEHOLDERS = {
    "{version}": r"(?P<version>\d+)",
    "{from}": r"(?P<from_version>\d+)",
    "{to}": r"(?P<to_version>\d+)",
}


def compile_file_name_pattern(template: str, os_name: str, arch: str) -> "re.Pattern[str]":
    """
    Turn a filename template into an anchored, case-insensitive regex.

    ``{os}`` and ``{arch}`` become literals for the requested platform while
    ``{version}``, ``{from}`` and ``{to}`` capture digits.

    Raises:
        PatternError: If the template cannot be compiled, e.g. it repeats a numeric placeholder.
    """
    parts = re.split(r"(\{[a-z]+\})", template)
    pattern = []
    for part in parts:
        if part in _NUMERIC_PLACEHOLDERS:
            pattern.append(_NUMERIC_PLACEHOLDERS[part])
        elif part == "{os}":
            pattern.append(re.escape(os_name.lower()))
        elif part == "{arch}":
            pattern.append(re.escape(arch.lower()))
        else:
            pattern.append(re.escape(part))
    try:
        return re.compile("^" + "".join(pattern) + "$", re.IGNORECASE)
    except re.error as e:
        raise PatternError(
            "Invalid filename template", field="fileNamePattern", value=template, details=str(e)
        ) from e


def validate_descriptor(descriptor: ProviderDescriptor) -> None:
    """
    Check that a descriptor can be turned into a working provider.

    Raises:
        DescriptorError: When the kind-specific block or a required URL is missing, or the discovery method is unknown.
        UnsupportedJsonPathError: When a json-api discovery uses an unsupported path.
        PatternError: When an html-autoindex pattern or an index filename template cannot be used.
    """
    if descriptor.source_kind == SOURCE_KIND_PATTERN:
        config = descriptor.pattern
        if config is None:
            raise DescriptorError(
                f"Pattern descriptor {descriptor.id} has no pattern block",
                field="pattern",
            )
        discovery = config.version_discovery
        if discovery.method not in DISCOVERY_METHODS:
            raise DescriptorError(
                f"Unsupported discovery method for {descriptor.id}",
                field="versionDiscovery.method",
                value=discovery.method,
            )
        if discovery.method != DISCOVERY_STATIC_LIST and not discovery.url:
            raise DescriptorError(
                f"Discovery method {discovery.method} requires a url",
                field="versionDiscovery.url",
            )
        if discovery.method == DISCOVERY_JSON_API:
            parse_json_path(_PLACEHOLDER_RE.sub("x", discovery.json_path or ""))
        elif discovery.method == DISCOVERY_HTML_AUTOINDEX:
            compile_html_pattern(discovery.html_pattern)
        if "{base}" in config.full_build_url and not config.base_url:
            raise DescriptorError(
                f"Pattern descriptor {descriptor.id} uses {{base}} without baseUrl",
                field="baseUrl",
            )
    elif descriptor.source_kind == SOURCE_KIND_INDEX:
        config_index = descriptor.index
        if config_index is None:
            raise DescriptorError(
                f"Index descriptor {descriptor.id} has no index block", field="index"
            )
        if not config_index.api_url:
            raise DescriptorError(
                f"Index descriptor {descriptor.id} has no apiUrl", field="apiUrl"
            )
        if config_index.structure not in (STRUCTURE_FLAT, STRUCTURE_GROUPED):
            raise DescriptorError(
                f"Unsupported index structure for {descriptor.id}",
                field="structure",
                value=config_index.structure,
            )
        names = config_index.file_name_pattern
        if "{version}" not in names.full:
            raise PatternError(
                "Full filename template needs {version}",
                field="fileNamePattern.full",
                value=names.full,
            )
        if "{from}" not in names.diff or "{to}" not in names.diff:
            raise PatternError(
                "Diff filename template needs {from} and {to}",
                field="fileNamePattern.diff",
                value=names.diff,
            )
        compile_file_name_pattern(names.full, "os", "arch")
        compile_file_name_pattern(names.diff, "os", "arch")


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def descriptor_to_dict(descriptor: ProviderDescriptor) -> Dict[str, Any]:
    """
    Serialize a descriptor into its camelCase on-disk form.
    """
    data: Dict[str, Any] = {
        "schemaVersion": descriptor.schema_version,
        "id": descriptor.id,
        "name": descriptor.name,
        "description": descriptor.description,
        "priority": descriptor.priority,
        "enabled": descriptor.enabled,
        "sourceKind": descriptor.source_kind,
    }
    if descriptor.pattern is not None:
        p = descriptor.pattern
        d = p.version_discovery
        data["pattern"] = _drop_none(
            {
                "baseUrl": p.base_url,
                "fullBuildUrl": p.full_build_url,
                "diffPatchUrl": p.diff_patch_url,
                "signatureUrl": p.signature_url,
                "versionDiscovery": _drop_none(
                    {
                        "method": d.method,
                        "url": d.url,
                        "jsonPath": d.json_path,
                        "htmlPattern": d.html_pattern,
                        "minFileSizeBytes": d.min_file_size_bytes,
                        "staticVersions": list(d.static_versions),
                    }
                ),
                "osMapping": dict(p.os_mapping),
                "archMapping": dict(p.arch_mapping),
                "branchMapping": dict(p.branch_mapping),
                "diffBasedBranches": list(p.diff_based_branches),
            }
        )
    if descriptor.index is not None:
        i = descriptor.index
        data["index"] = {
            "apiUrl": i.api_url,
            "rootPath": i.root_path,
            "structure": i.structure,
            "platformMapping": dict(i.platform_mapping),
            "fileNamePattern": {
                "full": i.file_name_pattern.full,
                "diff": i.file_name_pattern.diff,
            },
            "diffBasedBranches": list(i.diff_based_branches),
        }
    data["speedTest"] = _drop_none(
        {
            "pingUrl": descriptor.speed_test.ping_url,
            "pingTimeoutSeconds": descriptor.speed_test.ping_timeout_seconds,
            "speedTestSizeBytes": descriptor.speed_test.speed_test_size_bytes,
        }
    )
    data["cache"] = {
        "indexTtlMinutes": descriptor.cache.index_ttl_minutes,
        "speedTestTtlMinutes": descriptor.cache.speed_test_ttl_minutes,
    }
    return _drop_none(data)
