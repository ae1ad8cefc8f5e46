"""
Tests for domain models, digests, platforms and the build context.
"""

import io
import os
from pathlib import Path
from unittest import mock

import pytest
from pydantic import ValidationError

from src.core.context import BuildContext
from src.core.models.artifact import (
    ArtifactRequest,
    ChecksumRecord,
    Digest,
    DownloadAttempt,
    FetchState,
    Platform,
    TrustTier,
)
from src.core.models.config import ToolSpec
from src.core.services.fetch.digests import (
    compute_digest,
    compute_stream_digest,
    find_manifest_digest,
    first_token_digest,
)
from src.core.services.fetch.errors import InvalidVersion, UnsupportedPlatform
from src.core.services.fetch.platform import (
    detect_platform,
    ensure_supported,
    normalize_arch,
    parse_platform,
    template_vars,
)

HEX = "0123456789abcdef" * 4
AMD64 = Platform(os="linux", arch="amd64")


# ── Digest ───────────────────────────────────────────────────────────


class TestDigest:
    def test_parse_prefixed(self):
        d = Digest.parse(f"sha256:{HEX.upper()}")
        assert d.algorithm == "sha256"
        assert d.hex == HEX
        assert str(d) == f"sha256:{HEX}"

    def test_parse_infers_sha512(self):
        assert Digest.parse("ab" * 64).algorithm == "sha512"

    @pytest.mark.parametrize("value", ["", "xyz", "abc123", f"sha512:{HEX}", f"{HEX}0"])
    def test_parse_rejects(self, value):
        with pytest.raises(ValueError):
            Digest.parse(value)

    def test_is_valid(self):
        assert Digest.is_valid(HEX)
        assert Digest.is_valid(HEX, "sha256")
        assert not Digest.is_valid(HEX, "sha512")
        assert not Digest.is_valid("nope")

    def test_matches_requires_same_algorithm(self):
        assert Digest.parse(HEX).matches(Digest(algorithm="sha256", hex=HEX))
        assert not Digest.parse(HEX).matches(Digest(algorithm="sha512", hex=HEX))


# ── Request / records ────────────────────────────────────────────────


class TestArtifactRequest:
    def _request(self, **kwargs) -> ArtifactRequest:
        defaults = dict(
            tool="node",
            version_spec="20",
            platform=AMD64,
            url_template="https://nodejs.org/dist/v{version}/node-v{version}-{os}-{arch}.tar.xz",
            arch_aliases={"amd64": "x64"},
        )
        defaults.update(kwargs)
        return ArtifactRequest(**defaults)

    def test_render_url_applies_aliases(self):
        url = self._request().render_url("20.11.1")
        assert url == "https://nodejs.org/dist/v20.11.1/node-v20.11.1-linux-x64.tar.xz"

    def test_filename(self):
        assert self._request().filename("20.11.1") == "node-v20.11.1-linux-x64.tar.xz"

    def test_series_variable(self):
        request = self._request(url_template="https://cache.ruby-lang.org/pub/ruby/{series}/ruby-{version}.tar.gz")
        assert request.render_url("3.4.6") == "https://cache.ruby-lang.org/pub/ruby/3.4/ruby-3.4.6.tar.gz"

    def test_frozen(self):
        with pytest.raises(ValidationError):
            self._request().tool = "go"


class TestTrustTier:
    def test_order(self):
        assert TrustTier.GPG < TrustTier.PINNED < TrustTier.PUBLISHED < TrustTier.COMPUTED

    def test_only_computed_degraded(self):
        assert [t.label for t in TrustTier if t.degraded] == ["Computed"]

    def test_record_to_dict(self):
        record = ChecksumRecord(
            tool="gh", version="2.45.0", platform=AMD64,
            digest=Digest.parse(HEX), tier=TrustTier.PUBLISHED, source="published manifest x",
        )
        data = record.to_dict()
        assert data["tier"] == "Published"
        assert data["platform"] == "linux-amd64"
        assert data["degraded"] is False


class TestDownloadAttempt:
    def test_transitions_recorded(self):
        request = ArtifactRequest(tool="t", version_spec="1.0.0", platform=AMD64, url_template="file:///x")
        attempt = DownloadAttempt(request=request)
        attempt.transition(FetchState.RESOLVING_CHECKSUM)
        attempt.transition(FetchState.FAILED)
        assert attempt.history == [FetchState.RESOLVING_VERSION, FetchState.RESOLVING_CHECKSUM]
        assert attempt.outcome.value == "failed"


# ── Digests ──────────────────────────────────────────────────────────


class TestManifest:
    MANIFEST = (
        f"{'1' * 64}  tool_linux_amd64.tar.gz\n"
        f"{'2' * 64}  tool_linux_amd64.tar.gz.sbom\n"
        f"{'3' * 64} *tool_linux_arm64.tar.gz\n"
        f"SHA256 (tool_darwin_arm64.tar.gz) = {'4' * 64}\n"
        "# comment\n"
    )

    def test_exact_filename_match(self):
        assert find_manifest_digest(self.MANIFEST, "tool_linux_amd64.tar.gz").hex == "1" * 64

    def test_binary_marker(self):
        assert find_manifest_digest(self.MANIFEST, "tool_linux_arm64.tar.gz").hex == "3" * 64

    def test_bsd_format(self):
        assert find_manifest_digest(self.MANIFEST, "tool_darwin_arm64.tar.gz").hex == "4" * 64

    def test_no_substring_match(self):
        assert find_manifest_digest(self.MANIFEST, "tool_linux_amd64.tar") is None
        assert find_manifest_digest(self.MANIFEST, "linux_amd64.tar.gz") is None

    def test_conflicting_entries(self):
        text = f"{'1' * 64}  a.tgz\n{'2' * 64}  a.tgz\n"
        with pytest.raises(ValueError):
            find_manifest_digest(text, "a.tgz")

    def test_first_token(self):
        assert first_token_digest(f"{HEX}  kubectl\n").hex == HEX
        assert first_token_digest(f"{HEX}\n").hex == HEX
        assert first_token_digest("not-a-digest\n") is None
        assert first_token_digest(f"{HEX}\n", "sha512") is None

    def test_compute(self, tmp_path: Path):
        import hashlib

        path = tmp_path / "blob"
        path.write_bytes(b"hello")
        assert compute_digest(path).hex == hashlib.sha256(b"hello").hexdigest()
        assert compute_digest(path, "sha512").algorithm == "sha512"
        assert compute_stream_digest(io.BytesIO(b"hello")) == compute_digest(path)


# ── Platform ─────────────────────────────────────────────────────────


class TestPlatform:
    @pytest.mark.parametrize("raw,expected", [
        ("x86_64", "amd64"), ("aarch64", "arm64"), ("armv7l", "armhf"), ("i686", "i386"), ("AMD64", "amd64"),
    ])
    def test_normalize_arch(self, raw, expected):
        assert normalize_arch(raw) == expected

    def test_unknown_arch(self):
        with pytest.raises(UnsupportedPlatform) as exc_info:
            normalize_arch("riscv128")
        assert exc_info.value.exit_code == 2

    @pytest.mark.parametrize("raw,key", [
        ("linux/amd64", "linux-amd64"),
        ("linux-arm64", "linux-arm64"),
        ("linux/arm/v7", "linux-armhf"),
        ("darwin/arm64", "darwin-arm64"),
        ("aarch64", "linux-arm64"),
    ])
    def test_parse_platform(self, raw, key):
        assert parse_platform(raw).key == key

    def test_detect(self):
        with mock.patch("platform.machine", return_value="aarch64"), \
             mock.patch("platform.system", return_value="Linux"):
            assert detect_platform().key == "linux-arm64"

    def test_ensure_supported(self):
        ensure_supported(AMD64, [], tool="x")
        ensure_supported(AMD64, ["linux-amd64"], tool="x")
        with pytest.raises(UnsupportedPlatform, match="x is not available for linux-amd64"):
            ensure_supported(AMD64, ["linux-arm64"], tool="x")

    def test_template_vars(self):
        tool = ToolSpec(name="go", url="x", os_aliases={"linux": "Linux"}, arch_aliases={"amd64": "x86_64"})
        assert template_vars(tool, "1.22.1", AMD64) == {
            "version": "1.22.1", "series": "1.22", "os": "Linux", "arch": "x86_64",
        }


# ── Build context ────────────────────────────────────────────────────


class TestBuildContext:
    TOOL = ToolSpec(name="ruby", url="https://example.invalid/ruby-{version}.tar.gz", default_version=None)

    def test_explicit_values(self):
        ctx = BuildContext.from_env(self.TOOL, env={}, version_spec="3.4", platform="linux/arm64")
        assert ctx.version_spec == "3.4"
        assert ctx.platform.key == "linux-arm64"

    def test_env_fallbacks(self):
        env = {"RUBY_VERSION": "3.3", "TARGETPLATFORM": "linux/amd64"}
        ctx = BuildContext.from_env(self.TOOL, env=env)
        assert ctx.version_spec == "3.3"
        assert ctx.platform == AMD64

    def test_default_version(self):
        tool = self.TOOL.model_copy(update={"default_version": "3.2.4"})
        assert BuildContext.from_env(tool, env={}, platform=AMD64).version_spec == "3.2.4"

    def test_missing_version_names_field(self):
        with pytest.raises(InvalidVersion, match="RUBY_VERSION"):
            BuildContext.from_env(self.TOOL, env={}, platform=AMD64)

    def test_unsupported_platform(self):
        tool = self.TOOL.model_copy(update={"platforms": ["linux-amd64"]})
        with pytest.raises(UnsupportedPlatform):
            BuildContext.from_env(tool, env={"RUBY_VERSION": "3.3"}, platform="linux/arm64")

    def test_to_request(self):
        ctx = BuildContext.from_env(self.TOOL, env={}, version_spec="3.4.6", platform=AMD64)
        request = ctx.to_request(self.TOOL)
        assert request.render_url("3.4.6").endswith("ruby-3.4.6.tar.gz")

    def test_does_not_read_process_env_when_env_given(self):
        with mock.patch.dict(os.environ, {"RUBY_VERSION": "9.9"}):
            with pytest.raises(InvalidVersion):
                BuildContext.from_env(self.TOOL, env={}, platform=AMD64)
