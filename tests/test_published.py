"""
Tests for Published-tier checksum strategies, served from file:// fixtures.
"""

import json
from pathlib import Path

import pytest

from src.core.models.artifact import Digest, Platform
from src.core.models.config import StrategySpec, ToolSpec
from src.core.reliability.retry import RetryExecutor, RetryPolicy
from src.core.services.fetch.errors import NetworkExhausted, TransientError
from src.core.services.fetch.published import (
    PublishedChecksumFetcher,
    build_fetcher,
    find_ruby_digest,
    get_fetcher_class,
    list_fetchers,
    register_fetcher,
)

AMD64 = Platform(os="linux", arch="amd64")
ARM64 = Platform(os="linux", arch="arm64")
EXECUTOR = RetryExecutor(RetryPolicy(max_attempts=2, base_delay=0))


def _tool(dist: Path, **kwargs) -> ToolSpec:
    return ToolSpec(name="demo", url=f"file://{dist}/demo_{{version}}_{{os}}_{{arch}}.tar.gz", **kwargs)


class TestRegistry:
    def test_builtin_strategies(self):
        assert {"checksums_file", "sidecar", "go_dl", "ruby_downloads", "static"} <= set(list_fetchers())

    def test_unknown_strategy(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Unknown checksum strategy"):
            build_fetcher(_tool(tmp_path), StrategySpec(strategy="carrier-pigeon"))

    def test_missing_required_option(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Invalid options"):
            build_fetcher(_tool(tmp_path), StrategySpec(strategy="checksums_file"))

    def test_unknown_option(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Invalid options"):
            build_fetcher(_tool(tmp_path), StrategySpec(strategy="sidecar", colour="blue"))

    def test_register_custom(self, tmp_path: Path):
        @register_fetcher("test_constant")
        class ConstantFetcher(PublishedChecksumFetcher):
            def __init__(self, tool, *, value: str, timeout: float = 30.0):
                super().__init__(tool, timeout=timeout)
                self.value = value

            def fetch(self, version, platform, filename, *, executor=None):
                return Digest.parse(self.value)

        assert get_fetcher_class("test_constant") is ConstantFetcher
        fetcher = build_fetcher(_tool(tmp_path), StrategySpec(strategy="test_constant", value="e" * 64))
        assert fetcher.strategy == "test_constant"
        assert fetcher.fetch("1.0.0", AMD64, "x").hex == "e" * 64


class TestChecksumsFile:
    def test_finds_exact_filename(self, dist_dir: Path):
        (dist_dir / "demo_1.2.3_checksums.txt").write_text(
            f"{'a' * 64}  demo_1.2.3_linux_amd64.tar.gz\n"
            f"{'b' * 64}  demo_1.2.3_linux_arm64.tar.gz\n"
            f"{'c' * 64}  demo_1.2.3_linux_amd64.tar.gz.sbom.json\n"
        )
        tool = _tool(dist_dir, os_aliases={}, arch_aliases={})
        fetcher = build_fetcher(
            tool, StrategySpec(strategy="checksums_file", url=f"file://{dist_dir}/demo_{{version}}_checksums.txt")
        )
        assert fetcher.fetch("1.2.3", AMD64, "demo_1.2.3_linux_amd64.tar.gz", executor=EXECUTOR).hex == "a" * 64
        assert fetcher.fetch("1.2.3", ARM64, "demo_1.2.3_linux_arm64.tar.gz", executor=EXECUTOR).hex == "b" * 64
        assert "demo_1.2.3_checksums.txt" in fetcher.describe("1.2.3", AMD64)

    def test_missing_manifest_is_none(self, dist_dir: Path):
        fetcher = build_fetcher(
            _tool(dist_dir), StrategySpec(strategy="checksums_file", url=f"file://{dist_dir}/nope_{{version}}.txt")
        )
        assert fetcher.fetch("1.2.3", AMD64, "demo.tar.gz", executor=EXECUTOR) is None

    def test_ambiguous_manifest_is_none(self, dist_dir: Path):
        (dist_dir / "sums.txt").write_text(f"{'a' * 64}  x.tgz\n{'b' * 64}  x.tgz\n")
        fetcher = build_fetcher(_tool(dist_dir), StrategySpec(strategy="checksums_file", url=f"file://{dist_dir}/sums.txt"))
        assert fetcher.fetch("1.0.0", AMD64, "x.tgz", executor=EXECUTOR) is None

    def test_transient_failures_exhaust(self, dist_dir: Path, monkeypatch):
        fetcher = build_fetcher(_tool(dist_dir), StrategySpec(strategy="checksums_file", url=f"file://{dist_dir}/sums.txt"))

        def down(url, *, timeout):
            raise TransientError("connection reset")

        monkeypatch.setattr("src.core.services.fetch.http.fetch_text", down)
        with pytest.raises(NetworkExhausted):
            fetcher.fetch("1.0.0", AMD64, "x.tgz", executor=EXECUTOR)


class TestSidecar:
    def test_default_sidecar_url(self, dist_dir: Path):
        (dist_dir / "demo_1.0.0_linux_amd64.tar.gz.sha256").write_text(f"{'d' * 64}  demo_1.0.0_linux_amd64.tar.gz\n")
        fetcher = build_fetcher(_tool(dist_dir), StrategySpec(strategy="sidecar"))
        assert fetcher.fetch("1.0.0", AMD64, "demo_1.0.0_linux_amd64.tar.gz", executor=EXECUTOR).hex == "d" * 64

    def test_sha512(self, dist_dir: Path):
        (dist_dir / "demo_1.0.0_linux_amd64.tar.gz.sha512").write_text("f" * 128)
        fetcher = build_fetcher(
            _tool(dist_dir), StrategySpec(strategy="sidecar", url="{url}.sha512", algorithm="sha512")
        )
        digest = fetcher.fetch("1.0.0", AMD64, "demo_1.0.0_linux_amd64.tar.gz", executor=EXECUTOR)
        assert digest.algorithm == "sha512"

    def test_wrong_algorithm_rejected(self, dist_dir: Path):
        (dist_dir / "demo_1.0.0_linux_amd64.tar.gz.sha256").write_text("f" * 128)
        fetcher = build_fetcher(_tool(dist_dir), StrategySpec(strategy="sidecar"))
        assert fetcher.fetch("1.0.0", AMD64, "demo_1.0.0_linux_amd64.tar.gz", executor=EXECUTOR) is None

    def test_unsupported_algorithm_option(self, dist_dir: Path):
        with pytest.raises(ValueError):
            build_fetcher(_tool(dist_dir), StrategySpec(strategy="sidecar", algorithm="md5"))


class TestGoDownloads:
    def test_index_lookup(self, tmp_path: Path):
        index = tmp_path / "go.json"
        index.write_text(json.dumps([
            {"version": "go1.22.1", "files": [
                {"filename": "go1.22.1.linux-amd64.tar.gz", "sha256": "a" * 64},
                {"filename": "go1.22.1.linux-arm64.tar.gz", "sha256": "b" * 64},
            ]},
            {"version": "go1.22.0", "files": [
                {"filename": "go1.22.0.linux-amd64.tar.gz", "sha256": "c" * 64},
            ]},
        ]))
        tool = ToolSpec(name="go", url="https://go.dev/dl/go{version}.{os}-{arch}.tar.gz")
        fetcher = build_fetcher(tool, StrategySpec(strategy="go_dl", index_url=f"file://{index}"))
        assert fetcher.fetch("1.22.1", ARM64, "go1.22.1.linux-arm64.tar.gz", executor=EXECUTOR).hex == "b" * 64
        assert fetcher.fetch("1.22.0", AMD64, "go1.22.0.linux-amd64.tar.gz", executor=EXECUTOR).hex == "c" * 64
        assert fetcher.fetch("1.21.0", AMD64, "go1.21.0.linux-amd64.tar.gz", executor=EXECUTOR) is None

    def test_malformed_entries_skipped(self, tmp_path: Path):
        index = tmp_path / "go.json"
        index.write_text(json.dumps([
            {"version": "go1.22.1", "files": [
                "go1.22.1.linux-amd64.tar.gz",
                None,
                {"filename": "go1.22.1.linux-amd64.tar.gz", "sha256": 42},
                {"filename": "go1.22.1.linux-amd64.tar.gz", "sha256": "a" * 64},
            ]},
            {"version": "go1.22.0", "files": {"filename": "go1.22.0.linux-amd64.tar.gz"}},
        ]))
        tool = ToolSpec(name="go", url="https://go.dev/dl/go{version}.{os}-{arch}.tar.gz")
        fetcher = build_fetcher(tool, StrategySpec(strategy="go_dl", index_url=f"file://{index}"))
        assert fetcher.fetch("1.22.1", AMD64, "go1.22.1.linux-amd64.tar.gz", executor=EXECUTOR).hex == "a" * 64
        assert fetcher.fetch("1.22.0", AMD64, "go1.22.0.linux-amd64.tar.gz", executor=EXECUTOR) is None


class TestRubyDownloads:
    PAGE = f"""
        <h3>Ruby 3.4.6</h3>
        <li><a href="https://cache.ruby-lang.org/pub/ruby/3.4/ruby-3.4.6.tar.gz">Ruby 3.4.6</a><br />
          sha256: {'a' * 64}</li>
        <li><a href="https://cache.ruby-lang.org/pub/ruby/3.3/ruby-3.3.9.tar.gz">Ruby 3.3.9</a><br />
          sha256: {'b' * 64}</li>
    """

    def test_find_digest(self):
        assert find_ruby_digest(self.PAGE, "3.4.6").hex == "a" * 64
        assert find_ruby_digest(self.PAGE, "3.3.9").hex == "b" * 64
        assert find_ruby_digest(self.PAGE, "3.4.7") is None

    def test_fetcher(self, tmp_path: Path):
        page = tmp_path / "downloads.html"
        page.write_text(self.PAGE)
        tool = ToolSpec(name="ruby", url="https://cache.ruby-lang.org/pub/ruby/{series}/ruby-{version}.tar.gz")
        fetcher = build_fetcher(tool, StrategySpec(strategy="ruby_downloads", page_url=f"file://{page}"))
        assert fetcher.fetch("3.3.9", AMD64, "ruby-3.3.9.tar.gz", executor=EXECUTOR).hex == "b" * 64


class TestStatic:
    def test_per_platform(self, tmp_path: Path):
        fetcher = build_fetcher(_tool(tmp_path), StrategySpec(
            strategy="static",
            digests={"1.0.0": {"linux-amd64": "a" * 64}, "2.0.0": "b" * 64},
        ))
        assert fetcher.fetch("1.0.0", AMD64, "x").hex == "a" * 64
        assert fetcher.fetch("1.0.0", ARM64, "x") is None
        assert fetcher.fetch("2.0.0", ARM64, "x").hex == "b" * 64

    def test_invalid_digest_is_none(self, tmp_path: Path):
        fetcher = build_fetcher(_tool(tmp_path), StrategySpec(strategy="static", digests={"1.0.0": "zz"}))
        assert fetcher.fetch("1.0.0", AMD64, "x") is None
