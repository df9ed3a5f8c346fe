"""
Constants and configuration values for buildresolver.

This module contains all hardcoded values, URLs, timeouts, and other constants
used throughout the resolver.
"""

# Application identity
APP_NAME = "buildresolver"

# Official patch API
OFFICIAL_PATCHES_URL = "https://account-data.hytale.com/patches"
OFFICIAL_SOURCE_ID = "official"
OFFICIAL_SOURCE_NAME = "Official Hytale"
OFFICIAL_PRIORITY = 0
OFFICIAL_CACHE_TTL_SECONDS = 15 * 60
OFFICIAL_MAX_AUTH_ATTEMPTS = 2

# Branches
BRANCH_RELEASE = "release"
BRANCH_PRE_RELEASE = "pre-release"
BRANCH_BETA = "beta"
BRANCH_ALPHA = "alpha"
BRANCH_SYNONYMS = {
    "release": BRANCH_RELEASE,
    "pre-release": BRANCH_PRE_RELEASE,
    "prerelease": BRANCH_PRE_RELEASE,
    "pre_release": BRANCH_PRE_RELEASE,
    "beta": BRANCH_BETA,
    "alpha": BRANCH_ALPHA,
}

# Network timeouts (in seconds)
DEFAULT_REQUEST_TIMEOUT = 15
INDEX_FETCH_TIMEOUT = 15
SPEED_SAMPLE_TIMEOUT = 30
DEFAULT_CHUNK_SIZE = 81920
BYTES_PER_MEGABYTE = 1024 * 1024

# Ping statuses that prove a mirror is reachable even when HEAD is refused
PING_ACCEPTED_STATUSES = frozenset({400, 405, 422})

# Descriptor defaults
DESCRIPTOR_SCHEMA_VERSION = 1
DESCRIPTOR_FILE_SUFFIX = ".mirror.json"
DEFAULT_MIRROR_PRIORITY = 100
DEFAULT_FULL_BUILD_TEMPLATE = "{base}/{os}/{arch}/{branch}/0/{version}.pwr"
DEFAULT_INDEX_ROOT_PATH = "hytale"
DEFAULT_INDEX_FULL_PATTERN = "v{version}-{os}-{arch}.pwr"
DEFAULT_INDEX_DIFF_PATTERN = "v{from}~{to}-{os}-{arch}.pwr"
DEFAULT_PING_TIMEOUT_SECONDS = 5
DEFAULT_SPEED_TEST_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_INDEX_TTL_MINUTES = 30
DEFAULT_SPEED_TEST_TTL_MINUTES = 60

# Index groups
INDEX_GROUP_BASE = "base"
INDEX_GROUP_PATCH = "patch"

# Resolution cache
DEFAULT_VERSION_TTL_MINUTES = 15
VERSIONS_CACHE_FILE = "versions.json"
PATCHES_CACHE_FILE = "patches.json"

# Configuration
CONFIG_FILE_NAME = "buildresolver.yaml"
PROVIDERS_DIR_NAME = "mirrors"
CACHE_DIR_ENV_VAR = "BUILDRESOLVER_CACHE_DIR"
PROVIDERS_DIR_ENV_VAR = "BUILDRESOLVER_PROVIDERS_DIR"

# Logging configuration
LOGGER_NAME = "buildresolver"
LOG_FILE_NAME = "buildresolver.log"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
INFO_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DEBUG_LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s: %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT = 5

# Environment variable names
LOG_LEVEL_ENV_VAR = "BUILDRESOLVER_LOG_LEVEL"
