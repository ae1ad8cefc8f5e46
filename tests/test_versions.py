"""
Tests for version specs, version sources and the version resolver.
"""

import json
from pathlib import Path
from unittest import mock

import pytest

from src.core.models.artifact import ArtifactRequest, Digest, Platform, ResolutionTier
from src.core.models.config import StrategySpec, ToolSpec
from src.core.reliability.retry import RetryExecutor, RetryPolicy
from src.core.services.fetch.errors import InvalidVersion
from src.core.services.fetch.pinned import PinnedTable
from src.core.services.fetch.provenance import ChecksumProvenanceResolver
from src.core.services.fetch.published import StaticFetcher
from src.core.services.fetch.versions import (
    StaticSource,
    VersionResolver,
    build_source,
    list_sources,
    matching_candidates,
    parse_version_spec,
)

AMD64 = Platform(os="linux", arch="amd64")
HEX = "c" * 64
EXECUTOR = RetryExecutor(RetryPolicy(max_attempts=1, base_delay=0))


def _ruby() -> ToolSpec:
    return ToolSpec(name="ruby", url="https://cache.ruby-lang.org/pub/ruby/{series}/ruby-{version}.tar.gz")


def _request(spec: str) -> ArtifactRequest:
    tool = _ruby()
    return ArtifactRequest(tool="ruby", version_spec=spec, platform=AMD64, url_template=tool.url)


def _resolver(versions: list[str], published: dict[str, str], *, pinned: PinnedTable | None = None) -> VersionResolver:
    tool = _ruby()
    provenance = ChecksumProvenanceResolver(pinned, tools={"ruby": tool})
    provenance.register("ruby", StaticFetcher(tool, digests=published))
    resolver = VersionResolver(provenance, tools={"ruby": tool})
    resolver.register("ruby", StaticSource(tool, versions=versions))
    return resolver


# ── Specs ────────────────────────────────────────────────────────────


class TestParseVersionSpec:
    @pytest.mark.parametrize("raw,parts", [
        ("3", (3,)), ("3.4", (3, 4)), ("3.4.6", (3, 4, 6)), ("v20.11.1", (20, 11, 1)), (" 1.22 ", (1, 22)),
    ])
    def test_valid(self, raw, parts):
        assert parse_version_spec(raw).parts == parts

    @pytest.mark.parametrize("raw", ["", "latest", "3.x", "1.2.3.4", "1.2.3-rc1", "../../1"])
    def test_invalid(self, raw):
        with pytest.raises(InvalidVersion):
            parse_version_spec(raw, field="RUBY_VERSION")

    def test_error_names_field(self):
        with pytest.raises(InvalidVersion) as exc_info:
            parse_version_spec("abc", field="NODE_VERSION")
        assert "NODE_VERSION" in str(exc_info.value)
        assert exc_info.value.context["field"] == "NODE_VERSION"

    def test_semver_format_requires_full(self):
        with pytest.raises(InvalidVersion):
            parse_version_spec("1.7", fmt="semver")
        assert parse_version_spec("1.7.1", fmt="semver").full

    def test_flexible_format(self):
        assert parse_version_spec("1.22", fmt="flexible").text == "1.22"
        with pytest.raises(InvalidVersion):
            parse_version_spec("1", fmt="flexible")


class TestMatchingCandidates:
    def test_prefix_newest_first(self):
        spec = parse_version_spec("3.4")
        available = ["3.3.9", "3.4.1", "v3.4.10", "3.4.2", "3.40.0", "3.4.0-preview1"]
        assert matching_candidates(spec, available) == ["3.4.10", "3.4.2", "3.4.1"]

    def test_limit(self):
        spec = parse_version_spec("1")
        assert matching_candidates(spec, ["1.0.0", "1.1.0", "1.2.0"], limit=2) == ["1.2.0", "1.1.0"]

    def test_deduplicates(self):
        assert matching_candidates(parse_version_spec("2"), ["2.0.0", "v2.0.0"]) == ["2.0.0"]


# ── Sources ──────────────────────────────────────────────────────────


class TestVersionSources:
    def test_registry(self):
        assert {"github_releases", "nodejs_index", "python_ftp", "go_dl", "ruby_downloads", "static"} <= set(list_sources())

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="Unknown version source"):
            build_source(_ruby(), StrategySpec(strategy="nope"))

    def test_bad_option(self):
        with pytest.raises(ValueError, match="Invalid options"):
            build_source(_ruby(), StrategySpec(strategy="static", bogus=1))

    def test_github_releases(self):
        releases = [
            {"tag_name": "v2.45.0"},
            {"tag_name": "v2.46.0-rc1", "prerelease": True},
            {"tag_name": "v2.47.0", "draft": True},
        ]
        source = build_source(ToolSpec(name="gh", url="x"), StrategySpec(strategy="github_releases", repo="cli/cli"))
        with mock.patch("src.core.services.fetch.http.fetch_json", return_value=releases) as fetch:
            assert source.list_versions(executor=EXECUTOR) == ["2.45.0"]
        assert fetch.call_args.args[0] == "https://api.github.com/repos/cli/cli/releases?per_page=100"

    def test_nodejs_index(self, tmp_path: Path):
        index = tmp_path / "index.json"
        index.write_text(json.dumps([{"version": "v20.11.1"}, {"version": "v18.19.0"}]))
        source = build_source(
            ToolSpec(name="node", url="x"),
            StrategySpec(strategy="nodejs_index", index_url=f"file://{index}"),
        )
        assert source.list_versions(executor=EXECUTOR) == ["v20.11.1", "v18.19.0"]

    def test_python_ftp(self, tmp_path: Path):
        listing = tmp_path / "listing.html"
        listing.write_text('<a href="3.12.7/">3.12.7/</a>\n<a href="3.13.0/">3.13.0/</a>\n<a href="doc/">doc/</a>')
        source = build_source(
            ToolSpec(name="python", url="x"),
            StrategySpec(strategy="python_ftp", listing_url=f"file://{listing}"),
        )
        assert source.list_versions(executor=EXECUTOR) == ["3.12.7", "3.13.0"]

    def test_go_dl_stable_only(self, tmp_path: Path):
        index = tmp_path / "go.json"
        index.write_text(json.dumps([
            {"version": "go1.22.1", "stable": True},
            {"version": "go1.23rc1", "stable": False},
        ]))
        source = build_source(
            ToolSpec(name="go", url="x"),
            StrategySpec(strategy="go_dl", index_url=f"file://{index}"),
        )
        assert source.list_versions(executor=EXECUTOR) == ["1.22.1"]

    def test_missing_listing_is_empty(self, tmp_path: Path):
        source = build_source(
            ToolSpec(name="python", url="x"),
            StrategySpec(strategy="python_ftp", listing_url=f"file://{tmp_path}/missing.html"),
        )
        assert source.list_versions(executor=EXECUTOR) == []


# ── Resolver ─────────────────────────────────────────────────────────


class TestVersionResolver:
    def test_full_version_is_exact(self):
        resolved = _resolver([], {}).resolve(_request("3.4.7"), executor=EXECUTOR)
        assert resolved.concrete == "3.4.7"
        assert resolved.tier == ResolutionTier.EXACT

    def test_skips_candidate_without_checksum(self):
        resolver = _resolver(["3.4.7", "3.4.6", "3.3.9"], {"3.4.6": HEX})
        resolved = resolver.resolve(_request("3.4"), executor=EXECUTOR)
        assert resolved.concrete == "3.4.6"
        assert resolved.spec == "3.4"
        assert resolved.tier == ResolutionTier.RESOLVED_LATEST_PATCH

    def test_pinned_candidate_counts(self):
        pinned = PinnedTable()
        pinned.add("ruby", "3.4.7", AMD64, Digest.parse(HEX))
        resolver = _resolver(["3.4.7", "3.4.6"], {"3.4.6": HEX}, pinned=pinned)
        assert resolver.resolve(_request("3.4"), executor=EXECUTOR).concrete == "3.4.7"

    def test_never_leaves_prefix(self):
        resolver = _resolver(["3.4.7", "3.3.9"], {"3.3.9": HEX})
        with pytest.raises(InvalidVersion) as exc_info:
            resolver.resolve(_request("3.4"), executor=EXECUTOR)
        assert exc_info.value.context["candidates"] == "3.4.7"

    def test_unsatisfiable_prefix(self):
        resolver = _resolver(["3.3.9"], {"3.3.9": HEX})
        with pytest.raises(InvalidVersion) as exc_info:
            resolver.resolve(_request("9.9"), executor=EXECUTOR)
        assert exc_info.value.exit_code == 2

    def test_partial_without_source(self):
        tool = _ruby()
        resolver = VersionResolver(ChecksumProvenanceResolver(), tools={"ruby": tool})
        with pytest.raises(InvalidVersion, match="no version source"):
            resolver.resolve(_request("3.4"), executor=EXECUTOR)

    def test_max_candidates(self):
        resolver = _resolver(["3.4.9", "3.4.8", "3.4.7", "3.4.6"], {"3.4.6": HEX})
        resolver.max_candidates = 2
        with pytest.raises(InvalidVersion):
            resolver.resolve(_request("3.4"), executor=EXECUTOR)

    def test_malformed_spec(self):
        with pytest.raises(InvalidVersion, match="RUBY_VERSION"):
            _resolver([], {}).resolve(_request("three"), executor=EXECUTOR)
