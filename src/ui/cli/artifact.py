"""
CLI commands for artifact acquisition.

Thin wrappers over ``src.core.services.fetch.pipeline``.

Usage::

    devfetch artifact version node 20
    devfetch artifact checksum terraform 1.7.5 --platform linux/arm64
    devfetch artifact fetch node 20 --dest /usr/local/lib/node --extract --strip-components 1
    devfetch artifact fetch kubectl 1.29.2 --dest /usr/local/bin/kubectl
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from src.core.config.loader import ConfigError
from src.core.services.fetch.errors import FetchError


def _pipeline(ctx: click.Context):
    """Build the fetch pipeline from the configured devfetch.yml."""
    from src.core.config.loader import load_config
    from src.core.services.fetch.pipeline import FetchPipeline

    return FetchPipeline.from_config(load_config(ctx.obj.get("config_path")))


def _fail(exc: Exception, as_json: bool) -> NoReturn:
    """Report a failure and exit with its code."""
    if isinstance(exc, FetchError):
        code = exc.exit_code
        payload = exc.to_dict()
    else:
        code = 1
        payload = {"code": "E_CONFIG", "error": str(exc)}

    if as_json:
        click.echo(json.dumps({"ok": False, **payload}, indent=2))
    else:
        click.secho(f"❌ {exc}", fg="red", err=True)
    sys.exit(code)


def _show_record(data: dict) -> None:
    degraded = data.get("degraded")
    color = "yellow" if degraded else "green"
    click.secho(f"   Tier:     {data['tier']}{'  (DEGRADED)' if degraded else ''}", fg=color)
    click.echo(f"   Source:   {data['source']}")
    click.echo(f"   Digest:   {data['algorithm']}:{data['digest']}")


@click.group()
def artifact() -> None:
    """Artifacts — resolve versions and checksums, fetch verified downloads."""


# ── Version ─────────────────────────────────────────────────────


@artifact.command("version")
@click.argument("tool")
@click.argument("spec", required=False)
@click.option("--platform", "platform_key", default=None, help="Target platform, e.g. linux/arm64.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def version_cmd(
    ctx: click.Context,
    tool: str,
    spec: str | None,
    platform_key: str | None,
    as_json: bool,
) -> None:
    """Resolve a version spec (e.g. 3.4) to a concrete release."""
    try:
        pipeline = _pipeline(ctx)
        request = pipeline.request(tool, spec, platform=platform_key)
        resolved = pipeline.resolve_version(request)
    except (FetchError, ConfigError) as exc:
        _fail(exc, as_json)

    if as_json:
        click.echo(json.dumps({
            "ok": True,
            "tool": tool,
            "platform": request.platform.key,
            **resolved.model_dump(mode="json"),
        }, indent=2))
        return

    click.secho(f"✅ {tool} {resolved.spec} → {resolved.concrete}", fg="green", bold=True)
    click.echo(f"   Resolution: {resolved.tier.value}")
    click.echo(f"   Platform:   {request.platform.key}")


# ── Checksum ────────────────────────────────────────────────────


@artifact.command("checksum")
@click.argument("tool")
@click.argument("version")
@click.option("--platform", "platform_key", default=None, help="Target platform, e.g. linux/arm64.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def checksum_cmd(
    ctx: click.Context,
    tool: str,
    version: str,
    platform_key: str | None,
    as_json: bool,
) -> None:
    """Show the expected checksum of TOOL VERSION and which tier vouches for it."""
    from src.core.services.fetch.versions import parse_version_spec

    try:
        version = parse_version_spec(version, field="VERSION", fmt="semver").text
        pipeline = _pipeline(ctx)
        request = pipeline.request(tool, version, platform=platform_key)
        record = pipeline.resolve_checksum(request, version)
    except (FetchError, ConfigError) as exc:
        _fail(exc, as_json)

    data = record.to_dict()
    if as_json:
        click.echo(json.dumps({"ok": True, "filename": request.filename(version), **data}, indent=2))
        return

    click.secho(f"🔐 {tool} {version} ({request.platform.key})", fg="cyan", bold=True)
    click.echo(f"   File:     {request.filename(version)}")
    _show_record(data)


# ── Fetch ───────────────────────────────────────────────────────


@artifact.command("fetch")
@click.argument("tool")
@click.argument("spec", required=False)
@click.option("--platform", "platform_key", default=None, help="Target platform, e.g. linux/arm64.")
@click.option(
    "--dest", type=click.Path(path_type=Path), default=None,
    help="Install path (file, or directory to copy/extract into).",
)
@click.option("--extract", is_flag=True, help="Unpack the archive into --dest.")
@click.option("--member", default=None, help="Install a single file from the archive.")
@click.option("--strip-components", type=int, default=0, show_default=True, help="Leading path components to drop.")
@click.option("--mode", default="755", show_default=True, help="File mode for installed files (octal).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def fetch_cmd(
    ctx: click.Context,
    tool: str,
    spec: str | None,
    platform_key: str | None,
    dest: Path | None,
    extract: bool,
    member: str | None,
    strip_components: int,
    mode: str,
    as_json: bool,
) -> None:
    """Download and verify TOOL, then install it to --dest.

    Without --dest the artifact is only verified.  SPEC defaults to
    $<TOOL>_VERSION, then the tool's default version.
    """
    from src.core.services.fetch import handoff

    if (extract or member) and dest is None:
        raise click.UsageError("--extract and --member need --dest")
    if extract and member:
        raise click.UsageError("--extract and --member are mutually exclusive")
    try:
        file_mode = int(mode, 8)
    except ValueError:
        raise click.BadParameter(f"not an octal mode: {mode!r}", param_hint="--mode")

    installed: list[Path] = []
    try:
        pipeline = _pipeline(ctx)
        with pipeline.acquire(tool, spec, platform=platform_key) as verified:
            data = verified.to_dict()
            if dest is not None:
                if member:
                    installed = [handoff.extract_member(verified, member, dest, mode=file_mode)]
                elif extract:
                    installed = handoff.extract(verified, dest, strip_components=strip_components)
                else:
                    installed = [handoff.install_to(verified, dest, mode=file_mode)]
    except (FetchError, ConfigError) as exc:
        _fail(exc, as_json)
    except KeyboardInterrupt:
        click.secho("❌ Cancelled", fg="red", err=True)
        sys.exit(130)

    if as_json:
        click.echo(json.dumps({
            "ok": True,
            **data,
            "installed": [str(p) for p in installed],
        }, indent=2))
        return

    click.secho(f"✅ Verified {data['filename']} ({data['size']} bytes)", fg="green", bold=True)
    click.echo(f"   Version:  {data['version']} (spec {data['spec']}, {data['resolution']})")
    _show_record(data)
    if data["degraded"]:
        click.secho("⚠️  Checksum was computed from the download itself: integrity only, no authenticity.", fg="yellow")
    if dest is not None:
        if extract:
            click.echo(f"   📦 Extracted {len(installed)} files → {dest}")
        else:
            for path in installed:
                click.echo(f"   📦 Installed → {path}")
