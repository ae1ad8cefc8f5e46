"""
CLI commands for the verification audit ledger.

Thin wrappers over ``src.core.persistence.audit``.

Usage::

    devfetch audit log
    devfetch audit log --tool node -n 5 --json
"""

from __future__ import annotations

import json
import sys

import click

from src.core.config.loader import ConfigError


@click.group()
def audit() -> None:
    """Audit — what was fetched, and which tier vouched for it."""


@audit.command("log")
@click.option("--tool", default=None, help="Only entries for this tool.")
@click.option("-n", "count", type=int, default=20, show_default=True, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def log_cmd(ctx: click.Context, tool: str | None, count: int, as_json: bool) -> None:
    """Show recent verification outcomes."""
    from src.core.config.loader import load_config
    from src.core.persistence.audit import AuditWriter

    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as exc:
        click.secho(f"❌ {exc}", fg="red", err=True)
        sys.exit(1)

    if config.audit_log_path is None:
        click.echo("Audit ledger is disabled (settings.audit_log is empty).")
        return

    writer = AuditWriter(config.audit_log_path)
    if tool:
        entries = [e for e in writer.read_all() if e.tool == tool]
        entries = entries[-count:] if count > 0 else []
    else:
        entries = writer.read_recent(count) if count > 0 else []

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo(f"No audit entries in {writer.path}")
        return

    click.secho(f"📜 Audit ledger — {writer.path}", fg="cyan", bold=True)
    click.echo()
    for e in entries:
        if e.outcome == "verified":
            icon, color = ("⚠️ ", "yellow") if e.degraded else ("✅", "green")
            detail = f"{e.tier} {e.digest[:23]}…"
        else:
            icon, color = "❌", "red"
            detail = f"{e.error_code} {e.error.splitlines()[0] if e.error else ''}"
        click.secho(f"   {icon} {e.timestamp[:19]}  {e.tool} {e.version or e.version_spec}", fg=color, nl=False)
        click.echo(f"  {e.platform}  {detail}")
    click.echo()
