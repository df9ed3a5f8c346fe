"""
Configuration loading and wiring.

Settings live in ``buildresolver.yaml`` inside the platform config
directory and are handled as a plain dict with UPPERCASE keys. Missing
keys fall back to defaults; a few keys can be overridden from the
environment.
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import platformdirs
import yaml

from buildresolver.constants import (
    APP_NAME,
    CACHE_DIR_ENV_VAR,
    CONFIG_FILE_NAME,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_VERSION_TTL_MINUTES,
    OFFICIAL_PATCHES_URL,
    PROVIDERS_DIR_ENV_VAR,
    PROVIDERS_DIR_NAME,
)
from buildresolver.exceptions import ConfigFileError, ConfigValidationError
from buildresolver.log_utils import add_file_logging, logger, set_log_level
from buildresolver.resolve.async_client import AsyncHttpClient
from buildresolver.resolve.cache import FileCacheRepository
from buildresolver.resolve.loader import ProviderLoader
from buildresolver.resolve.official_source import (
    AccessTokenProvider,
    OfficialVersionProvider,
)
from buildresolver.resolve.orchestrator import ResolutionOrchestrator

CONFIG_DIR = platformdirs.user_config_dir(APP_NAME)
CONFIG_FILE = os.path.join(CONFIG_DIR, CONFIG_FILE_NAME)

_POSITIVE_NUMBER_KEYS = ("VERSION_TTL_MINUTES", "REQUEST_TIMEOUT_SECONDS")


def default_config() -> Dict[str, Any]:
    """
    Build the configuration used when no settings file exists.
    """
    return {
        "CACHE_DIR": platformdirs.user_cache_dir(APP_NAME),
        "PROVIDERS_DIR": os.path.join(
            platformdirs.user_config_dir(APP_NAME), PROVIDERS_DIR_NAME
        ),
        "VERSION_TTL_MINUTES": DEFAULT_VERSION_TTL_MINUTES,
        "REQUEST_TIMEOUT_SECONDS": DEFAULT_REQUEST_TIMEOUT,
        "OFFICIAL_PATCHES_URL": OFFICIAL_PATCHES_URL,
        "LOG_LEVEL": None,
        "LOG_DIR": None,
    }


def _validate(config: Dict[str, Any]) -> None:
    for key in _POSITIVE_NUMBER_KEYS:
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigValidationError(
                f"{key} must be a positive number", details=repr(value)
            )
    for key in ("CACHE_DIR", "PROVIDERS_DIR", "OFFICIAL_PATCHES_URL"):
        value = config.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigValidationError(f"{key} must be a non-empty string", details=repr(value))


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the buildresolver settings file merged over the defaults.

    Parameters:
        path (Optional[str]): Explicit settings file. If None, ``buildresolver.yaml`` in the platform config directory is used.

    Returns:
        Dict[str, Any]: Configuration with every known key present.

    Raises:
        ConfigFileError: If the file cannot be read or does not hold a mapping.
        ConfigValidationError: If a value has the wrong type or range.
    """
    config = default_config()
    config_path = path or CONFIG_FILE

    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigFileError(
                f"Could not read settings file {config_path}", details=str(e)
            ) from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigFileError(
                f"Settings file {config_path} must contain a mapping",
                details=type(loaded).__name__,
            )
        config.update({str(key).upper(): value for key, value in loaded.items()})
        logger.debug("Loaded settings from %s", config_path)
    elif path:
        raise ConfigFileError(f"Settings file {config_path} does not exist")

    # Environment overrides
    if os.environ.get(CACHE_DIR_ENV_VAR):
        config["CACHE_DIR"] = os.environ[CACHE_DIR_ENV_VAR]
    if os.environ.get(PROVIDERS_DIR_ENV_VAR):
        config["PROVIDERS_DIR"] = os.environ[PROVIDERS_DIR_ENV_VAR]

    _validate(config)
    return config


def apply_logging_config(config: Dict[str, Any]) -> None:
    """Apply LOG_LEVEL and LOG_DIR from the configuration, when set."""
    level = config.get("LOG_LEVEL")
    if level:
        set_log_level(str(level))
    log_dir = config.get("LOG_DIR")
    if log_dir:
        add_file_logging(Path(log_dir), str(level or "INFO"))


def http_client_from_config(config: Dict[str, Any]) -> AsyncHttpClient:
    return AsyncHttpClient(timeout=config["REQUEST_TIMEOUT_SECONDS"])


def build_orchestrator(
    config: Dict[str, Any],
    http_client: AsyncHttpClient,
    token_provider: Optional[AccessTokenProvider] = None,
) -> ResolutionOrchestrator:
    """
    Wire the loader, file cache, providers and orchestrator from a configuration.

    Parameters:
        config (Dict[str, Any]): Result of load_config().
        http_client (AsyncHttpClient): Transport shared by every provider.
        token_provider (Optional[AccessTokenProvider]): Account token source; without it no official provider is created.

    Returns:
        ResolutionOrchestrator: Ready to answer queries; mirrors are already loaded.
    """
    loader = ProviderLoader(config["PROVIDERS_DIR"], http_client)
    official = None
    if token_provider is not None:
        official = OfficialVersionProvider(
            http_client, token_provider, patches_url=config["OFFICIAL_PATCHES_URL"]
        )
    return ResolutionOrchestrator(
        cache_repository=FileCacheRepository(config["CACHE_DIR"]),
        official_provider=official,
        mirrors=loader.load_all(),
        loader=loader,
        version_ttl=timedelta(minutes=config["VERSION_TTL_MINUTES"]),
    )
