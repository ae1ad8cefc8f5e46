"""
CLI commands for the pinned checksum table (checksums.yml).

Pins are written at authoring time so image builds never depend on a
vendor's checksum endpoint being reachable.

Usage::

    devfetch pins list
    devfetch pins add kubectl 1.29.2 linux/amd64 sha256:7c2a…
    devfetch pins add mytool 2.0.0 linux/amd64 --file ./mytool-2.0.0.tar.gz
    devfetch pins update terraform 1.7.5 -p linux/amd64 -p linux/arm64
    devfetch pins check
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from src.core.config.loader import ConfigError
from src.core.services.fetch.errors import FetchError


def _load(ctx: click.Context):
    """Load config and the pinned table it points at."""
    from src.core.config.loader import load_config
    from src.core.services.fetch.pinned import PinnedTable

    config = load_config(ctx.obj.get("config_path"))
    return config, PinnedTable.load(config.pinned_table_path)


def _abort(exc: Exception) -> None:
    click.secho(f"❌ {exc}", fg="red", err=True)
    sys.exit(exc.exit_code if isinstance(exc, FetchError) else 1)


@click.group()
def pins() -> None:
    """Pinned checksums — list, add, update from vendors, check."""


# ── List ────────────────────────────────────────────────────────


@pins.command("list")
@click.argument("tool", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, tool: str | None, as_json: bool) -> None:
    """List pinned digests, optionally for one TOOL."""
    try:
        _config, table = _load(ctx)
    except ConfigError as exc:
        _abort(exc)

    rows = table.rows(tool)
    if as_json:
        click.echo(json.dumps([
            {"tool": name, "version": version, "platform": key, "digest": str(digest)}
            for name, version, key, digest in rows
        ], indent=2))
        return

    if not rows:
        click.echo(f"No pinned checksums{f' for {tool}' if tool else ''} in {table.path}")
        return

    click.secho(f"📌 Pinned checksums ({len(rows)}) — {table.path}", fg="cyan", bold=True)
    current = None
    for name, version, key, digest in rows:
        if name != current:
            click.secho(f"\n   {name}", fg="white", bold=True)
            current = name
        click.echo(f"     {version:<12} {key:<16} {digest.algorithm}:{digest.hex[:16]}…")
    click.echo()


# ── Add ─────────────────────────────────────────────────────────


@pins.command("add")
@click.argument("tool")
@click.argument("version")
@click.argument("platform_key", metavar="PLATFORM")
@click.argument("digest", required=False)
@click.option(
    "--file", "file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None, help="Compute the digest from a local copy of the artifact.",
)
@click.option("--algorithm", type=click.Choice(["sha256", "sha512"]), default="sha256", show_default=True)
@click.option("--force", is_flag=True, help="Replace an existing, different pin.")
@click.pass_context
def add_cmd(
    ctx: click.Context,
    tool: str,
    version: str,
    platform_key: str,
    digest: str | None,
    file_path: Path | None,
    algorithm: str,
    force: bool,
) -> None:
    """Pin DIGEST (or the digest of --file) for TOOL VERSION PLATFORM."""
    from src.core.models.artifact import Digest
    from src.core.services.fetch.digests import compute_digest
    from src.core.services.fetch.pinned import PinConflict
    from src.core.services.fetch.platform import parse_platform
    from src.core.services.fetch.versions import parse_version_spec

    if (digest is None) == (file_path is None):
        raise click.UsageError("Give exactly one of DIGEST or --file")

    try:
        config, table = _load(ctx)
        target = parse_platform(platform_key)
        if file_path is not None:
            value = compute_digest(file_path, algorithm)
        else:
            try:
                value = Digest.parse(digest or "")
            except ValueError as exc:
                raise click.BadParameter(str(exc), param_hint="DIGEST")
        if tool not in config.tools:
            click.secho(f"⚠️  {tool} is not a configured tool; the pin will not be used", fg="yellow")
        version = parse_version_spec(version, field="VERSION", fmt="semver").text
        changed = table.add(tool, version, target, value, replace=force)
        if changed:
            table.save(config.pinned_table_path)
    except PinConflict as exc:
        click.secho(f"❌ {exc}", fg="red", err=True)
        click.echo("   Use --force to replace it.", err=True)
        sys.exit(1)
    except (FetchError, ConfigError, OSError) as exc:
        _abort(exc)

    if changed:
        click.secho(f"✅ Pinned {tool} {version} {target.key} → {value}", fg="green")
    else:
        click.echo(f"Already pinned: {tool} {version} {target.key}")


# ── Update from vendors ─────────────────────────────────────────


@pins.command("update")
@click.argument("tool")
@click.argument("version")
@click.option(
    "--platform", "-p", "platform_keys", multiple=True,
    help="Platform to pin (repeatable). Default: the tool's platforms, else the current one.",
)
@click.option("--force", is_flag=True, help="Replace existing, different pins.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def update_cmd(
    ctx: click.Context,
    tool: str,
    version: str,
    platform_keys: tuple[str, ...],
    force: bool,
    as_json: bool,
) -> None:
    """Pin TOOL VERSION from the vendor's signed or published checksums.

    Only the GPG and Published tiers are consulted; a computed digest
    is never pinned.  Tools that sign the artifact itself are downloaded
    and pinned once their signature checks out.
    """
    from src.core.services.fetch.pinned import PinConflict, PinnedTable
    from src.core.services.fetch.pipeline import FetchPipeline
    from src.core.services.fetch.versions import parse_version_spec

    results: list[dict] = []
    failed = False
    try:
        version = parse_version_spec(version, field="VERSION", fmt="semver").text
        config, table = _load(ctx)
        strict = config.model_copy(
            update={"settings": config.settings.model_copy(update={"require_verified": True})}
        )
        pipeline = FetchPipeline.from_config(strict, pinned=PinnedTable())
        spec = pipeline.tool(tool)
        keys = list(platform_keys) or list(spec.platforms) or [None]

        for key in keys:
            request = pipeline.request(tool, version, platform=key)
            try:
                record = pipeline.authentic_checksum(request, version)
            except FetchError as exc:
                failed = True
                results.append({"platform": request.platform.key, "ok": False, **exc.to_dict()})
                continue
            try:
                changed = table.add(tool, version, request.platform, record.digest, replace=force)
            except PinConflict as exc:
                failed = True
                results.append({"platform": request.platform.key, "ok": False, "error": str(exc)})
                continue
            results.append({
                "platform": request.platform.key,
                "ok": True,
                "changed": changed,
                "digest": str(record.digest),
                "tier": record.tier.label,
                "source": record.source,
            })

        if any(r.get("changed") for r in results):
            table.save(config.pinned_table_path)
    except (FetchError, ConfigError, OSError) as exc:
        _abort(exc)

    if as_json:
        click.echo(json.dumps({"tool": tool, "version": version, "results": results}, indent=2))
        sys.exit(1 if failed else 0)
        return

    for r in results:
        if not r["ok"]:
            click.secho(f"❌ {tool} {version} {r['platform']}: {r['error']}", fg="red")
        elif r["changed"]:
            click.secho(f"✅ {tool} {version} {r['platform']} → {r['digest']}  [{r['tier']}]", fg="green")
        else:
            click.echo(f"   {tool} {version} {r['platform']} unchanged  [{r['tier']}]")

    if failed:
        sys.exit(1)


# ── Check ───────────────────────────────────────────────────────


@pins.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check_cmd(ctx: click.Context, as_json: bool) -> None:
    """Validate the pinned table against the configured tools."""
    errors: list[str] = []
    warnings: list[str] = []
    table = None
    try:
        config, table = _load(ctx)
    except ConfigError as exc:
        errors.append(str(exc))
    else:
        for name, version, key, _digest in table.rows():
            spec = config.tool(name)
            if spec is None:
                warnings.append(f"{name}: not a configured tool")
            elif spec.platforms and key not in spec.platforms:
                warnings.append(f"{name} {version}: {key} is not one of the tool's platforms")

    count = len(table) if table is not None else 0
    if as_json:
        click.echo(json.dumps({
            "valid": not errors,
            "pin_count": count,
            "errors": errors,
            "warnings": warnings,
        }, indent=2))
        sys.exit(0 if not errors else 1)
        return

    if errors:
        click.secho("❌ Pinned table errors:", fg="red", bold=True)
        for err in errors:
            click.echo(f"   • {err}")
    else:
        click.secho(f"✅ Pinned table is valid ({count} digests)", fg="green", bold=True)

    if warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in warnings:
            click.echo(f"   • {warn}")

    if errors:
        sys.exit(1)
