"""
CLI commands for the binary cache: status, verify, clear.
"""

from __future__ import annotations

import json
import sys

import click

from binstall.core.config.loader import ConfigError, InstallSettings, load_settings


def load_cli_settings(ctx: click.Context) -> InstallSettings:
    """Load settings honouring ``--config``; exit 2 on a bad file."""
    try:
        return load_settings(ctx.obj.get("config_path") if ctx.obj else None)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


@click.group()
def cache() -> None:
    """Inspect and maintain the binary cache."""


@cache.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show cached entries and their size."""
    result = load_cli_settings(ctx).make_store().status()

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    click.secho(f"📁 Cache: {result['cache_dir']}", fg="cyan", bold=True)
    if not result["entries"]:
        click.echo("   (empty)")
        return
    for entry in result["entries"]:
        ident = entry["metadata"].get("id", "?")
        click.echo(f"   {entry['key']:<24} {ident:<28} {entry['size']:>12,} bytes")
    click.echo(f"   Total: {result['total_size_mb']} MB")


@cache.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def verify(ctx: click.Context, as_json: bool) -> None:
    """Check stored entries and remove corrupt ones."""
    result = load_cli_settings(ctx).make_store().verify_sync()

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    click.secho(
        f"✅ {result['verified']} verified, {result['removed']} removed, "
        f"{result['reclaimed_bytes']:,} bytes reclaimed",
        fg="green",
    )


@cache.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Delete the whole cache directory."""
    store = load_cli_settings(ctx).make_store()
    if not yes:
        click.confirm(f"Delete {store.root}?", abort=True)
    store.clear()
    click.secho(f"🗑️  Cleared {store.root}", fg="green")
