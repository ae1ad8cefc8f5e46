"""
Tests for CLI commands — config check, artifact, pins, audit and global options.

Artifacts are served from ``file://`` URLs; nothing touches the network.
"""

import hashlib
import io
import json
import logging
import subprocess
import tarfile
import textwrap
from pathlib import Path
from unittest import mock

import pytest
from click.testing import CliRunner

from src.main import cli

PAYLOAD = b"#!/bin/sh\necho demo 1.2.3\n"
GOOD_SIGNATURE = (
    "[GNUPG:] GOODSIG 4ED778F539E3634C Release Team <release@example.org>\n"
    "[GNUPG:] VALIDSIG ABCDEF0123456789 2024-02-14 1707900000 0 4 0 1 10 00 ABCDEF\n"
)

_ENV_VARS = (
    "RETRY_MAX_ATTEMPTS",
    "RETRY_INITIAL_DELAY",
    "RETRY_MAX_DELAY",
    "REQUIRE_VERIFIED_DOWNLOADS",
    "PRODUCTION_MODE",
    "DEMO_VERSION",
    "DCF_LOG_LEVEL",
    "DCF_LOG_FILE",
)


@pytest.fixture(autouse=True)
def isolated(monkeypatch):
    """Clean env; restore the root logger the CLI reconfigures."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.raiseExceptions = True


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A devfetch.yml with one file:// tool, its artifact, and a pin for it."""
    dist = tmp_path / "dist"
    dist.mkdir()
    (dist / "demo-1.2.3-linux-amd64").write_bytes(PAYLOAD)

    config = tmp_path / "devfetch.yml"
    config.write_text(textwrap.dedent(f"""\
        settings:
          retry: {{max_attempts: 1, base_delay: 0}}
          workspace_dir: ws
        tools:
          demo:
            url: file://{dist}/demo-{{version}}-{{os}}-{{arch}}
            platforms: [linux-amd64, linux-arm64]
    """))
    (tmp_path / "checksums.yml").write_text(textwrap.dedent(f"""\
        schema_version: 1
        tools:
          demo:
            "1.2.3":
              linux-amd64: sha256:{hashlib.sha256(PAYLOAD).hexdigest()}
    """))
    return config


def _run(config: Path, *args: str, env: dict | None = None):
    return CliRunner().invoke(cli, ["-q", "--config", str(config), *args], env=env)


class TestCLIGlobal:
    """Tests for global CLI behavior."""

    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "verified tool downloads" in result.output
        for group in ("artifact", "pins", "audit", "config"):
            assert group in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "devfetch" in result.output
        assert "0.1.0" in result.output


class TestConfigCheckCommand:
    """Tests for the config check command."""

    def test_valid_config(self, project: Path):
        result = _run(project, "config", "check")
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output
        assert "Pinned checksums: 1" in result.output

    def test_valid_config_json(self, project: Path):
        result = _run(project, "config", "check", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["valid"] is True
        assert data["pin_count"] == 1

    def test_missing_config(self, tmp_path: Path):
        result = _run(tmp_path / "nope.yml", "config", "check")
        assert result.exit_code == 1
        assert "Configuration errors" in result.output

    def test_warnings_shown(self, project: Path):
        result = _run(project, "config", "check")
        assert "Warnings" in result.output
        assert "computed checksum" in result.output


class TestArtifactCommands:
    def test_version_exact(self, project: Path):
        result = _run(project, "artifact", "version", "demo", "1.2.3", "--platform", "linux/amd64")
        assert result.exit_code == 0
        assert "demo 1.2.3 → 1.2.3" in result.output

    def test_version_invalid(self, project: Path):
        result = _run(project, "artifact", "version", "demo", "1.two", "--platform", "linux/amd64")
        assert result.exit_code == 2
        assert "DEMO_VERSION" in result.output

    def test_checksum_pinned(self, project: Path):
        result = _run(project, "artifact", "checksum", "demo", "1.2.3", "--platform", "linux/amd64", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["tier"] == "Pinned"
        assert data["digest"] == hashlib.sha256(PAYLOAD).hexdigest()
        assert data["filename"] == "demo-1.2.3-linux-amd64"

    def test_checksum_rejects_partial_version(self, project: Path):
        result = _run(project, "artifact", "checksum", "demo", "1", "--platform", "linux/amd64", "--json")
        assert result.exit_code == 2
        data = json.loads(result.output)
        assert data["code"] == "E_INVALID_VERSION"

    def test_checksum_normalizes_version(self, project: Path):
        result = _run(project, "artifact", "checksum", "demo", "v1.2.3", "--platform", "linux/amd64", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["filename"] == "demo-1.2.3-linux-amd64"

    def test_unknown_tool(self, project: Path):
        result = _run(project, "artifact", "checksum", "nope", "1.0.0", "--platform", "linux/amd64")
        assert result.exit_code == 2
        assert "Unknown tool" in result.output

    def test_unsupported_platform(self, project: Path):
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/s390x")
        assert result.exit_code == 2

    def test_fetch_and_install(self, project: Path, tmp_path: Path):
        dest = tmp_path / "bin" / "demo"
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64", "--dest", str(dest))
        assert result.exit_code == 0, result.output
        assert "Verified demo-1.2.3-linux-amd64" in result.output
        assert "Pinned" in result.output
        assert dest.read_bytes() == PAYLOAD
        assert list((tmp_path / "ws").iterdir()) == []

    def test_fetch_json(self, project: Path):
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["tier"] == "Pinned"
        assert data["installed"] == []

    def test_fetch_extract(self, project: Path, tmp_path: Path):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tf:
            info = tarfile.TarInfo("demo-1.3.0/bin/demo")
            info.size = len(PAYLOAD)
            tf.addfile(info, io.BytesIO(PAYLOAD))
        archive = buf.getvalue()
        project.write_text(project.read_text().replace("demo-{version}-{os}-{arch}", "demo-{version}-{os}-{arch}.tar.gz"))
        (tmp_path / "dist" / "demo-1.3.0-linux-amd64.tar.gz").write_bytes(archive)
        result = _run(
            project, "pins", "add", "demo", "1.3.0", "linux/amd64", hashlib.sha256(archive).hexdigest(),
        )
        assert result.exit_code == 0, result.output

        dest = tmp_path / "opt"
        result = _run(
            project, "artifact", "fetch", "demo", "1.3.0", "--platform", "linux/amd64",
            "--dest", str(dest), "--extract", "--strip-components", "1",
        )
        assert result.exit_code == 0, result.output
        assert (dest / "bin" / "demo").read_bytes() == PAYLOAD

    def test_fetch_computed_is_degraded(self, project: Path, tmp_path: Path):
        (tmp_path / "dist" / "demo-1.2.3-linux-arm64").write_bytes(PAYLOAD)
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/arm64")
        assert result.exit_code == 0, result.output
        assert "DEGRADED" in result.output

    def test_fetch_require_verified(self, project: Path, tmp_path: Path):
        (tmp_path / "dist" / "demo-1.2.3-linux-arm64").write_bytes(PAYLOAD)
        result = _run(
            project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/arm64",
            env={"REQUIRE_VERIFIED_DOWNLOADS": "true"},
        )
        assert result.exit_code == 5
        assert "devfetch pins add" in result.output

    def test_fetch_mismatch(self, project: Path, tmp_path: Path):
        (tmp_path / "dist" / "demo-1.2.3-linux-amd64").write_bytes(PAYLOAD + b"tampered")
        dest = tmp_path / "demo"
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64", "--dest", str(dest))
        assert result.exit_code == 4
        assert "Checksum mismatch" in result.output
        assert not dest.exists()

    def test_fetch_missing_artifact(self, project: Path):
        result = _run(project, "artifact", "fetch", "demo", "9.9.9", "--platform", "linux/amd64")
        assert result.exit_code == 3

    def test_fetch_workspace_unusable(self, project: Path, tmp_path: Path):
        (tmp_path / "ws").write_text("not a directory")
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64", "--json")
        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        data = json.loads(result.output)
        assert data["code"] == "E_WORKSPACE"
        assert "Cannot create workspace" in data["error"]

    def test_extract_needs_dest(self, project: Path):
        result = _run(project, "artifact", "fetch", "demo", "1.2.3", "--extract")
        assert result.exit_code == 2
        assert "--dest" in result.output


class TestPinsCommands:
    def test_list(self, project: Path):
        result = _run(project, "pins", "list", "--json")
        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert rows[0]["tool"] == "demo"
        assert rows[0]["platform"] == "linux-amd64"

    def test_add_digest(self, project: Path, tmp_path: Path):
        result = _run(project, "pins", "add", "demo", "1.2.4", "linux/arm64", "b" * 64)
        assert result.exit_code == 0, result.output
        assert "Pinned demo 1.2.4 linux-arm64" in result.output
        assert "b" * 64 in (tmp_path / "checksums.yml").read_text()

    def test_add_from_file(self, project: Path, tmp_path: Path):
        artifact = tmp_path / "dist" / "demo-1.2.3-linux-amd64"
        result = _run(project, "pins", "add", "demo", "1.2.3", "linux/amd64", "--file", str(artifact))
        assert result.exit_code == 0
        assert "Already pinned" in result.output

    def test_add_conflict(self, project: Path):
        result = _run(project, "pins", "add", "demo", "1.2.3", "linux/amd64", "c" * 64)
        assert result.exit_code == 1
        assert "--force" in result.output

        result = _run(project, "pins", "add", "demo", "1.2.3", "linux/amd64", "c" * 64, "--force")
        assert result.exit_code == 0

    def test_add_needs_one_source(self, project: Path):
        result = _run(project, "pins", "add", "demo", "1.2.3", "linux/amd64")
        assert result.exit_code == 2

    def test_add_bad_digest(self, project: Path):
        result = _run(project, "pins", "add", "demo", "1.2.3", "linux/amd64", "not-a-digest")
        assert result.exit_code == 2

    def test_add_normalizes_version(self, project: Path, tmp_path: Path):
        result = _run(project, "pins", "add", "demo", "v1.2.4", "linux/arm64", "b" * 64)
        assert result.exit_code == 0, result.output
        assert "Pinned demo 1.2.4 linux-arm64" in result.output
        text = (tmp_path / "checksums.yml").read_text()
        assert "1.2.4" in text
        assert "v1.2.4" not in text

    @pytest.mark.parametrize("version", ["1.2", "latest", "1.2.3.4"])
    def test_add_rejects_partial_version(self, project: Path, tmp_path: Path, version: str):
        before = (tmp_path / "checksums.yml").read_text()
        result = _run(project, "pins", "add", "demo", version, "linux/arm64", "b" * 64)
        assert result.exit_code == 2
        assert "VERSION" in result.output
        assert (tmp_path / "checksums.yml").read_text() == before

    def test_update_rejects_partial_version(self, project: Path):
        result = _run(project, "pins", "update", "demo", "2", "-p", "linux/amd64")
        assert result.exit_code == 2
        assert "X.Y.Z" in result.output

    def test_update_from_published(self, project: Path, tmp_path: Path):
        dist = tmp_path / "dist"
        (dist / "demo-2.0.0-linux-amd64.sha256").write_text(f"{'d' * 64}  demo-2.0.0-linux-amd64\n")
        project.write_text(project.read_text() + "    published: {strategy: sidecar}\n")
        result = _run(project, "pins", "update", "demo", "2.0.0", "-p", "linux/amd64", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["results"][0]["tier"] == "Published"
        assert "d" * 64 in (tmp_path / "checksums.yml").read_text()

    def test_update_signed_artifact(self, project: Path, tmp_path: Path):
        dist = tmp_path / "dist"
        (dist / "demo-2.0.0-linux-amd64").write_bytes(PAYLOAD)
        (dist / "demo-2.0.0-linux-amd64.asc").write_bytes(b"-----BEGIN PGP SIGNATURE-----\n")
        keys = tmp_path / "gpg-keys" / "demo"
        keys.mkdir(parents=True)
        (keys / "release.asc").write_text("-----BEGIN PGP PUBLIC KEY BLOCK-----\n")
        project.write_text(project.read_text() + "    gpg: {mode: artifact}\n")

        def fake_run(cmd, **kwargs):
            stdout = GOOD_SIGNATURE if "--verify" in cmd else ""
            return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

        with mock.patch("shutil.which", return_value="/usr/bin/gpg"), \
             mock.patch("subprocess.run", side_effect=fake_run):
            result = _run(project, "pins", "update", "demo", "2.0.0", "-p", "linux/amd64", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["results"][0]["tier"] == "GPG"
        assert hashlib.sha256(PAYLOAD).hexdigest() in (tmp_path / "checksums.yml").read_text()

    def test_update_never_pins_computed(self, project: Path, tmp_path: Path):
        (tmp_path / "dist" / "demo-2.0.0-linux-amd64").write_bytes(PAYLOAD)
        result = _run(project, "pins", "update", "demo", "2.0.0", "-p", "linux/amd64")
        assert result.exit_code == 1
        assert "2.0.0" not in (tmp_path / "checksums.yml").read_text()

    def test_check(self, project: Path, tmp_path: Path):
        with (tmp_path / "checksums.yml").open("a") as f:
            f.write(f"  ghost:\n    \"1.0.0\":\n      linux-amd64: {'e' * 64}\n")
        result = _run(project, "pins", "check", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["pin_count"] == 2
        assert data["warnings"] == ["ghost: not a configured tool"]

    def test_check_broken_table(self, project: Path, tmp_path: Path):
        (tmp_path / "checksums.yml").write_text("schema_version: 2\n")
        result = _run(project, "pins", "check")
        assert result.exit_code == 1
        assert "Pinned table errors" in result.output


class TestAuditCommand:
    def test_log_after_fetch(self, project: Path, tmp_path: Path):
        _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64")
        (tmp_path / "dist" / "demo-1.2.3-linux-amd64").write_bytes(b"tampered")
        _run(project, "artifact", "fetch", "demo", "1.2.3", "--platform", "linux/amd64")

        result = _run(project, "audit", "log", "--json")
        assert result.exit_code == 0
        entries = json.loads(result.output)
        assert [e["outcome"] for e in entries] == ["verified", "failed"]
        assert entries[1]["error_code"] == "E_CHECKSUM_MISMATCH"

        result = _run(project, "audit", "log", "-n", "1")
        assert "E_CHECKSUM_MISMATCH" in result.output
        assert "Pinned" not in result.output

    def test_log_empty(self, project: Path):
        result = _run(project, "audit", "log", "--tool", "demo")
        assert result.exit_code == 0
        assert "No audit entries" in result.output
