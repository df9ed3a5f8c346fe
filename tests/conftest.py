from unittest.mock import AsyncMock

import platformdirs
import pytest

_ASYNC_NETWORK_BLOCK_MSG = (
    "Async network access is blocked during tests. Mock aiohttp.ClientSession."
)


async def _async_block_network(*_args, **_kwargs):
    """
    Prevent async network calls during tests by raising a RuntimeError.

    Raises:
        RuntimeError: `_ASYNC_NETWORK_BLOCK_MSG` explaining that async network access is blocked and suggesting mocking `aiohttp.ClientSession`.
    """
    raise RuntimeError(_ASYNC_NETWORK_BLOCK_MSG)


# Configure pytest-asyncio mode - only register if available
try:
    import importlib

    importlib.import_module("pytest_asyncio")
    pytest_plugins = ("pytest_asyncio",)
except ImportError:
    pytest_plugins = ()


def pytest_configure(config):
    """
    Register the markers used across the suite.

    Parameters:
        config: pytest.Config
            The pytest configuration object used to register markers.
    """
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test (auto-detected)"
    )
    config.addinivalue_line("markers", "unit: fast tests without I/O outside tmp dirs")
    config.addinivalue_line(
        "markers", "core_downloads: provider, cache and resolution behavior"
    )
    config.addinivalue_line("markers", "infrastructure: logging, config and packaging")


@pytest.fixture(autouse=True)
def _isolate_test_environment(tmp_path_factory, monkeypatch):
    """
    Point every platformdirs location and buildresolver environment variable into a temporary tree.
    """
    base = tmp_path_factory.mktemp("buildresolver")
    cache_dir = base / "cache"
    config_dir = base / "config"
    log_dir = base / "log"

    for path in (cache_dir, config_dir, log_dir):
        path.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CACHE_HOME", str(cache_dir))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_dir))
    monkeypatch.delenv("BUILDRESOLVER_CACHE_DIR", raising=False)
    monkeypatch.delenv("BUILDRESOLVER_PROVIDERS_DIR", raising=False)

    monkeypatch.setattr(
        platformdirs, "user_cache_dir", lambda *_args, **_kwargs: str(cache_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_config_dir", lambda *_args, **_kwargs: str(config_dir)
    )
    monkeypatch.setattr(
        platformdirs, "user_log_dir", lambda *_args, **_kwargs: str(log_dir)
    )

    import buildresolver.config as config_module

    monkeypatch.setattr(config_module, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(
        config_module,
        "CONFIG_FILE",
        str(config_dir / config_module.CONFIG_FILE_NAME),
    )


def pytest_runtest_setup():
    """
    Prevent real network requests during tests by replacing aiohttp entry points with an async blocker.
    """
    try:
        import aiohttp  # type: ignore[import-not-found]

        aiohttp.request = _async_block_network
        aiohttp.ClientSession.request = _async_block_network  # type: ignore[assignment]
        aiohttp.ClientSession.get = _async_block_network  # type: ignore[assignment]
        aiohttp.ClientSession.post = _async_block_network  # type: ignore[assignment]
        aiohttp.ClientSession.head = _async_block_network  # type: ignore[assignment]
    except ImportError:
        pass


# =============================================================================
# Async Test Fixtures
# =============================================================================


@pytest.fixture
def mock_aiohttp_session(mocker):
    """
    Provide a mock aiohttp.ClientSession for testing async HTTP operations.
    """
    import aiohttp

    mock_session = mocker.MagicMock(spec=aiohttp.ClientSession)
    mock_session.closed = False
    yield mock_session


@pytest.fixture
def mock_async_response(mocker):
    """
    Provide a factory that creates mock aiohttp responses usable as async context managers.

    Returns:
        factory (callable): Builds a context manager whose response exposes `status`, an async `text()` and optional `content.iter_chunked` chunks.
    """

    def _create_response(status=200, text="", content_chunks=None):
        import aiohttp

        response = AsyncMock(spec=aiohttp.ClientResponse)
        response.status = status
        response.text = AsyncMock(return_value=text)

        if content_chunks is not None:

            async def _async_iter_chunks():
                for chunk in content_chunks:
                    yield chunk

            mock_content = mocker.MagicMock()
            mock_content.iter_chunked = mocker.Mock(return_value=_async_iter_chunks())
            response.content = mock_content

        context = mocker.MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)
        return context

    return _create_response


@pytest.fixture
def fake_client():
    """Provide a scripted stand-in for AsyncHttpClient."""
    from tests.fakes import FakeHttpClient

    return FakeHttpClient()
