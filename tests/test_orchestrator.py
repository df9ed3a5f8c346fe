"""
Tests for the resolution orchestrator: merging, caching, resolution and mirror fallback.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from buildresolver.exceptions import NetworkError, VersionNotFoundError
from buildresolver.resolve.cache import InMemoryCacheRepository, VersionsCacheSnapshot
from buildresolver.resolve.descriptors import parse_descriptor
from buildresolver.resolve.interfaces import (
    SOURCE_TYPE_MIRROR,
    SOURCE_TYPE_OFFICIAL,
    PatchStep,
    SpeedProbeResult,
)
from buildresolver.resolve.loader import ProviderLoader
from buildresolver.resolve.orchestrator import (
    ResolutionOrchestrator,
    find_contiguous_chain,
)
from buildresolver.resolve.pattern_source import PatternVersionProvider
from tests.fakes import StubProvider, entries

pytestmark = [pytest.mark.unit, pytest.mark.core_downloads]

RELEASE = "release"


def make_orchestrator(repo=None, official=None, mirrors=(), **kwargs):
    return ResolutionOrchestrator(
        cache_repository=repo or InMemoryCacheRepository(),
        official_provider=official,
        mirrors=mirrors,
        os_name="linux",
        arch="amd64",
        **kwargs,
    )


def step(from_version, to_version, source="s"):
    return PatchStep(
        from_version=from_version,
        to_version=to_version,
        pwr_url=f"https://{source}/{from_version}-{to_version}.pwr",
    )


class TestFindContiguousChain:
    """Test find_contiguous_chain."""

    def test_same_version(self):
        assert find_contiguous_chain([step(1, 2)], 2, 2) == []

    def test_prefers_shortest_chain(self):
        steps = [step(1, 2), step(2, 3), step(3, 4), step(1, 3)]

        chain = find_contiguous_chain(steps, 1, 4)

        assert [(s.from_version, s.to_version) for s in chain] == [(1, 3), (3, 4)]

    def test_gap_yields_none(self):
        assert find_contiguous_chain([step(1, 2), step(3, 4)], 1, 4) is None

    def test_steps_past_target_are_ignored(self):
        assert find_contiguous_chain([step(1, 5), step(5, 3)], 1, 3) is None


@pytest.mark.asyncio
class TestVersionListing:
    """Test merged version listing and the TTL cache."""

    async def test_official_wins_over_mirror(self):
        official = StubProvider(
            "official", priority=0, official=True, versions={RELEASE: entries("off", 3)}
        )
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 3, 2)})
        orchestrator = make_orchestrator(official=official, mirrors=[mirror])

        response = await orchestrator.get_versions_with_source(RELEASE)

        assert [(v.version, v.source, v.source_id, v.is_latest) for v in response.versions] == [
            (3, SOURCE_TYPE_OFFICIAL, "official", True),
            (2, SOURCE_TYPE_MIRROR, "m1", False),
        ]
        assert response.has_official_account is True
        assert response.official_source_available is True
        assert response.enabled_mirror_count == 1
        assert await orchestrator.resolve_url(RELEASE, 3) == "https://off/3.pwr"

    async def test_versions_are_distinct_and_descending(self):
        a = StubProvider("a", priority=1, versions={RELEASE: entries("a", 5, 3)})
        b = StubProvider("b", priority=2, versions={RELEASE: entries("b", 4, 3, 1)})
        orchestrator = make_orchestrator(mirrors=[b, a])

        assert await orchestrator.get_versions(RELEASE) == [5, 4, 3, 1]
        response = await orchestrator.get_versions_with_source(RELEASE)
        assert {v.version: v.source_id for v in response.versions}[3] == "a"
        assert orchestrator.get_version_source(RELEASE) == SOURCE_TYPE_MIRROR

    async def test_fresh_branch_is_served_without_fetching(self):
        repo = InMemoryCacheRepository()
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(repo, mirrors=[mirror])

        await orchestrator.get_version_list(RELEASE)
        await orchestrator.get_version_list(RELEASE)
        assert mirror.fetch_count == 1

        restarted = make_orchestrator(repo, mirrors=[mirror])
        assert await restarted.get_version_list(RELEASE) == [2]
        assert mirror.fetch_count == 1

    async def test_expired_branch_is_refetched(self):
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(mirrors=[mirror], version_ttl=timedelta(0))

        await orchestrator.get_version_list(RELEASE)
        await orchestrator.get_version_list(RELEASE)

        assert mirror.fetch_count == 2

    async def test_branches_expire_independently(self):
        mirror = StubProvider(
            "m1", versions={RELEASE: entries("m1", 2), "beta": entries("m1", 7)}
        )
        orchestrator = make_orchestrator(mirrors=[mirror])

        await orchestrator.get_version_list(RELEASE)
        assert orchestrator.try_get_cached_versions("beta", timedelta(hours=1)) is None

        assert await orchestrator.get_version_list("beta") == [7]
        assert mirror.fetch_count == 2

    async def test_concurrent_callers_share_one_fetch(self):
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(mirrors=[mirror])

        results = await asyncio.gather(
            *(orchestrator.get_version_list(RELEASE) for _ in range(5))
        )

        assert results == [[2]] * 5
        assert mirror.fetch_count == 1

    async def test_failed_provider_keeps_previous_data(self, mocker):
        mock_logger = mocker.patch("buildresolver.resolve.orchestrator.logger")
        a = StubProvider("a", priority=1, versions={RELEASE: entries("a", 4)})
        b = StubProvider("b", priority=2, versions={RELEASE: entries("b", 2)})
        orchestrator = make_orchestrator(mirrors=[a, b])
        await orchestrator.get_version_list(RELEASE)

        a.error = NetworkError("connection reset", source_id="a")
        b.versions = {RELEASE: entries("b", 3)}

        assert await orchestrator.force_refresh(RELEASE) == [4, 3]
        assert any(
            "fetch failed" in call.args[0] for call in mock_logger.warning.call_args_list
        )

    async def test_unavailable_provider_is_skipped(self):
        official = StubProvider(
            "official", official=True, available=False, versions={RELEASE: entries("o", 9)}
        )
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 1)})
        orchestrator = make_orchestrator(official=official, mirrors=[mirror])

        assert await orchestrator.get_version_list(RELEASE) == [1]
        assert official.fetch_count == 0
        assert orchestrator.is_official_unavailable(RELEASE) is True
        assert orchestrator.has_official_account is False

    async def test_branch_names_are_normalized(self):
        mirror = StubProvider("m1", versions={"pre-release": entries("m1", 8)})
        orchestrator = make_orchestrator(mirrors=[mirror])

        assert await orchestrator.get_version_list("PreRelease") == [8]
        assert orchestrator.try_get_cached_versions("pre_release", timedelta(hours=1)) == [8]

    async def test_no_sources(self):
        orchestrator = make_orchestrator()

        assert await orchestrator.get_version_list(RELEASE) == []
        response = await orchestrator.get_versions_with_source(RELEASE)
        assert response.has_download_sources is False
        assert response.versions == []


@pytest.mark.asyncio
class TestPersistedCache:
    """Test handling of persisted snapshots."""

    async def test_other_platform_is_ignored(self):
        repo = InMemoryCacheRepository()
        repo.save_versions(
            VersionsCacheSnapshot(
                os="windows",
                arch="amd64",
                branch_fetched_at={RELEASE: datetime.now(timezone.utc)},
                mirrors={"m1": {RELEASE: entries("m1", 99)}},
            )
        )
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})

        orchestrator = make_orchestrator(repo, mirrors=[mirror])

        assert await orchestrator.get_version_list(RELEASE) == [2]
        assert repo.versions_data["os"] == "linux"

    async def test_unknown_mirrors_are_dropped(self):
        repo = InMemoryCacheRepository()
        repo.save_versions(
            VersionsCacheSnapshot(
                os="linux",
                arch="amd64",
                branch_fetched_at={RELEASE: datetime.now(timezone.utc)},
                mirrors={
                    "m1": {RELEASE: entries("m1", 2)},
                    "removed": {RELEASE: entries("removed", 50)},
                },
            )
        )
        mirror = StubProvider("m1")
        orchestrator = make_orchestrator(repo, mirrors=[mirror])

        assert await orchestrator.get_version_list(RELEASE) == [2]
        assert mirror.fetch_count == 0

        await orchestrator.force_refresh(RELEASE)
        assert "removed" not in repo.versions_data["mirrors"]

    async def test_clear_version_cache(self):
        repo = InMemoryCacheRepository()
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(repo, mirrors=[mirror])
        await orchestrator.get_version_list(RELEASE)

        orchestrator.clear_version_cache()

        assert repo.versions_data is None
        await orchestrator.get_version_list(RELEASE)
        assert mirror.fetch_count == 2


@pytest.mark.asyncio
class TestResolution:
    """Test URL, diff and patch chain resolution."""

    async def test_cached_url_needs_no_fetch(self):
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(mirrors=[mirror])
        await orchestrator.get_version_list(RELEASE)

        entry = await orchestrator.resolve_version_entry(RELEASE, 2)

        assert entry.pwr_url == "https://m1/2.pwr"
        assert mirror.fetch_count == 1

    async def test_missing_version_refreshes_once_then_raises(self):
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 2)})
        orchestrator = make_orchestrator(mirrors=[mirror])

        with pytest.raises(VersionNotFoundError) as exc_info:
            await orchestrator.resolve_url(RELEASE, 7)

        assert exc_info.value.branch == RELEASE
        assert exc_info.value.version == 7
        assert mirror.fetch_count == 1

    async def test_invalidate_forces_refetch(self):
        repo = InMemoryCacheRepository()
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 3, 2)})
        orchestrator = make_orchestrator(repo, mirrors=[mirror])
        await orchestrator.get_version_list(RELEASE)

        assert orchestrator.invalidate(RELEASE, 3) is True
        assert orchestrator.invalidate(RELEASE, 3) is False
        assert [e["version"] for e in repo.versions_data["mirrors"]["m1"][RELEASE]] == [2]

        mirror.versions = {RELEASE: entries("fresh", 3, 2)}
        assert await orchestrator.resolve_url(RELEASE, 3) == "https://fresh/3.pwr"
        assert mirror.fetch_count == 2

    async def test_invalidate_single_source(self):
        official = StubProvider(
            "official", official=True, versions={RELEASE: entries("off", 3)}
        )
        mirror = StubProvider("m1", versions={RELEASE: entries("m1", 3)})
        orchestrator = make_orchestrator(official=official, mirrors=[mirror])
        await orchestrator.get_version_list(RELEASE)

        assert orchestrator.invalidate(RELEASE, 3, source_id="official") is True

        assert await orchestrator.resolve_url(RELEASE, 3) == "https://m1/3.pwr"

    async def test_diff_url_from_patch_cache(self):
        mirror = StubProvider("m1", steps={RELEASE: [step(1, 2, "m1")]})
        orchestrator = make_orchestrator(mirrors=[mirror])
        await orchestrator.get_version_list(RELEASE)

        assert await orchestrator.resolve_diff_url(RELEASE, 1, 2) == "https://m1/1-2.pwr"
        assert mirror.fetch_count == 1

    async def test_diff_url_falls_back_to_mirror_lookup(self):
        mirror = StubProvider("m1")
        mirror.diff_urls[(RELEASE, 1, 2)] = "https://m1/live-1-2.pwr"
        orchestrator = make_orchestrator(mirrors=[mirror])

        assert await orchestrator.resolve_diff_url(RELEASE, 1, 2) == "https://m1/live-1-2.pwr"
        assert orchestrator.selected_mirror is mirror

    async def test_missing_diff_raises(self):
        orchestrator = make_orchestrator(mirrors=[StubProvider("m1")])

        with pytest.raises(VersionNotFoundError) as exc_info:
            await orchestrator.resolve_diff_url(RELEASE, 1, 2)

        assert exc_info.value.from_version == 1

    async def test_patch_chain_uses_one_source(self):
        official = StubProvider(
            "official",
            official=True,
            steps={RELEASE: [step(1, 2, "off"), step(3, 4, "off")]},
        )
        mirror = StubProvider(
            "m1", steps={RELEASE: [step(1, 2, "m1"), step(2, 3, "m1"), step(3, 4, "m1")]}
        )
        orchestrator = make_orchestrator(official=official, mirrors=[mirror])

        chain = await orchestrator.get_patch_chain(RELEASE, 1, 4)

        assert [s.pwr_url for s in chain] == [
            "https://m1/1-2.pwr",
            "https://m1/2-3.pwr",
            "https://m1/3-4.pwr",
        ]

    async def test_patch_chain_prefers_official(self):
        official = StubProvider("official", official=True, steps={RELEASE: [step(1, 2, "off")]})
        mirror = StubProvider("m1", steps={RELEASE: [step(1, 2, "m1")]})
        orchestrator = make_orchestrator(official=official, mirrors=[mirror])

        chain = await orchestrator.get_patch_chain(RELEASE, 1, 2)

        assert chain[0].pwr_url == "https://off/1-2.pwr"

    async def test_broken_patch_chain_raises(self):
        mirror = StubProvider("m1", steps={RELEASE: [step(1, 2), step(3, 4)]})
        orchestrator = make_orchestrator(mirrors=[mirror])

        with pytest.raises(VersionNotFoundError):
            await orchestrator.get_patch_chain(RELEASE, 1, 4)
        assert mirror.fetch_count == 2


@pytest.mark.asyncio
class TestMirrorSelection:
    """Test mirror selection and live mirror lookups."""

    async def test_answering_mirror_becomes_selected(self, mocker):
        mock_logger = mocker.patch("buildresolver.resolve.orchestrator.logger")
        a = StubProvider("a", priority=1)
        b = StubProvider("b", priority=2)
        b.download_urls[(RELEASE, 5)] = "https://b/5.pwr"
        orchestrator = make_orchestrator(mirrors=[a, b])
        orchestrator.selected_mirror = a

        assert await orchestrator.get_mirror_download_url(RELEASE, 5) == "https://b/5.pwr"
        assert orchestrator.selected_mirror is b
        mock_logger.info.assert_any_call(
            "Switched active mirror to %s for %s v%d", "b", RELEASE, 5
        )

    async def test_failing_mirror_is_skipped(self):
        a = StubProvider("a", priority=1)
        b = StubProvider("b", priority=2)
        b.download_urls[(RELEASE, 5)] = "https://b/5.pwr"

        async def _boom(*_args):
            raise NetworkError("down", source_id="a")

        a.resolve_download_url = _boom
        orchestrator = make_orchestrator(mirrors=[a, b])
        orchestrator.selected_mirror = a

        assert await orchestrator.get_mirror_download_url(RELEASE, 5) == "https://b/5.pwr"

    async def test_no_mirror_answers(self):
        orchestrator = make_orchestrator(mirrors=[StubProvider("a")])

        assert await orchestrator.get_mirror_download_url(RELEASE, 5) is None
        assert await make_orchestrator().get_mirror_download_url(RELEASE, 5) is None

    async def test_select_best_mirror_uses_speed(self):
        a = StubProvider("a", priority=1)
        b = StubProvider("b", priority=2)
        a.speed = SpeedProbeResult(source_id="a", throughput_mbps=1.0, is_available=True)
        b.speed = SpeedProbeResult(source_id="b", throughput_mbps=6.0, is_available=True)
        orchestrator = make_orchestrator(mirrors=[a, b])

        assert await orchestrator.select_best_mirror() is b
        assert orchestrator.selected_mirror is b

    async def test_speed_tests_use_orchestrator_platform(self):
        official = StubProvider("official", official=True)
        a = StubProvider("a", priority=1)
        b = StubProvider("b", priority=2)
        orchestrator = ResolutionOrchestrator(
            cache_repository=InMemoryCacheRepository(),
            official_provider=official,
            mirrors=[a, b],
            os_name="windows",
            arch="arm64",
        )

        await orchestrator.select_best_mirror(force=True)
        await orchestrator.test_mirror_speed("a")
        await orchestrator.test_official_speed()

        assert a.speed_requests == [(True, "windows", "arm64"), (False, "windows", "arm64")]
        assert b.speed_requests == [(True, "windows", "arm64")]
        assert official.speed_requests == [(False, "windows", "arm64")]

    async def test_mirror_speed_lookup(self):
        mirror = StubProvider("Fast")
        mirror.speed = SpeedProbeResult(source_id="Fast", is_available=True)
        orchestrator = make_orchestrator(mirrors=[mirror])

        assert (await orchestrator.test_mirror_speed("fast")).is_available is True
        unknown = await orchestrator.test_mirror_speed("nope")
        assert unknown.is_available is False
        assert unknown.source_id == "nope"

    async def test_official_speed_without_account(self):
        result = await make_orchestrator().test_official_speed()

        assert result.source_id == "official"
        assert result.is_available is False


class TestProviderState:
    """Test provider bookkeeping."""

    def test_diff_based_branch_follows_active_mirror(self):
        a = StubProvider("a", priority=1)
        b = StubProvider("b", priority=2, diff_only=("pre-release",))
        orchestrator = make_orchestrator(mirrors=[a, b])

        assert orchestrator.is_diff_based_branch("pre-release") is False
        orchestrator.selected_mirror = b
        assert orchestrator.is_diff_based_branch("prerelease") is True
        assert make_orchestrator().is_diff_based_branch("pre-release") is False

    def test_list_mirrors_by_priority(self):
        orchestrator = make_orchestrator(
            mirrors=[StubProvider("late", priority=9), StubProvider("early", priority=1)]
        )

        assert orchestrator.list_mirrors() == [("early", "Early"), ("late", "Late")]
        assert orchestrator.enabled_mirror_count == 2
        assert orchestrator.has_any_download_source() is True

    def test_reload_resets_selection(self, mocker):
        loader = mocker.Mock()
        replacement = StubProvider("new")
        loader.load_all.return_value = [replacement]
        orchestrator = make_orchestrator(mirrors=[StubProvider("old")], loader=loader)
        orchestrator.selected_mirror = orchestrator.mirrors[0]

        orchestrator.reload_providers()

        assert orchestrator.mirrors == [replacement]
        assert orchestrator.selected_mirror is None

    def test_reload_without_sources_clears_cache(self, mocker):
        repo = InMemoryCacheRepository()
        repo.save_versions(VersionsCacheSnapshot(os="linux", arch="amd64"))
        loader = mocker.Mock()
        loader.load_all.return_value = []
        orchestrator = make_orchestrator(repo, mirrors=[StubProvider("old")], loader=loader)

        orchestrator.reload_providers()

        assert repo.versions_data is None
        assert orchestrator.has_any_download_source() is False

    def test_reload_without_loader(self, mocker):
        mock_logger = mocker.patch("buildresolver.resolve.orchestrator.logger")
        mirror = StubProvider("m1")
        orchestrator = make_orchestrator(mirrors=[mirror])

        orchestrator.reload_providers()

        assert orchestrator.mirrors == [mirror]
        mock_logger.warning.assert_called_once()


def pattern_mirror(client, mirror_id, discovery):
    descriptor = parse_descriptor(
        {
            "id": mirror_id,
            "sourceKind": "pattern",
            "pattern": {
                "baseUrl": f"https://{mirror_id}.example",
                "versionDiscovery": discovery,
            },
        }
    )
    return PatternVersionProvider(descriptor, client)


@pytest.mark.asyncio
class TestConfiguredMirrors:
    """Test the orchestrator over real providers and a scripted transport."""

    async def test_fresh_branch_makes_no_requests(self, fake_client):
        url = "https://m.example/versions.json"
        fake_client.add_json(url, {"versions": [3, 2]})
        mirror = pattern_mirror(
            fake_client, "m", {"method": "json-api", "url": url, "jsonPath": "versions"}
        )
        # Provider memo off, so only the orchestrator cache can spare the request.
        mirror._index_ttl = timedelta(0)
        repo = InMemoryCacheRepository()
        orchestrator = make_orchestrator(repo, mirrors=[mirror])

        assert await orchestrator.get_version_list(RELEASE) == [3, 2]
        requests = fake_client.call_count
        assert requests >= 1

        assert await orchestrator.get_version_list(RELEASE) == [3, 2]
        assert await orchestrator.resolve_url(RELEASE, 3) == (
            "https://m.example/linux/amd64/release/0/3.pwr"
        )
        restarted = make_orchestrator(repo, mirrors=[mirror])
        assert await restarted.get_version_list(RELEASE) == [3, 2]
        assert fake_client.call_count == requests

    async def test_mirror_with_bad_file_names_does_not_block_others(
        self, tmp_path, fake_client
    ):
        directory = tmp_path / "mirrors"
        directory.mkdir()
        (directory / "good.mirror.json").write_text(
            json.dumps(
                {
                    "id": "good",
                    "sourceKind": "pattern",
                    "pattern": {
                        "baseUrl": "https://good.example",
                        "versionDiscovery": {"method": "static-list", "staticVersions": [1]},
                    },
                }
            ),
            encoding="utf-8",
        )
        (directory / "repeats.mirror.json").write_text(
            json.dumps(
                {
                    "id": "repeats",
                    "sourceKind": "index",
                    "priority": 1,
                    "index": {
                        "apiUrl": "https://repeats.example/api",
                        "fileNamePattern": {"full": "v{version}_{version}.pwr"},
                    },
                }
            ),
            encoding="utf-8",
        )

        mirrors = ProviderLoader(str(directory), fake_client).load_all()
        orchestrator = make_orchestrator(mirrors=mirrors)

        assert await orchestrator.get_version_list(RELEASE) == [1]
        assert fake_client.calls_to("https://repeats.example/api") == 0
