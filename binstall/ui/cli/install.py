"""
CLI command for installing the binary.

Thin wrapper over ``binstall.core.services.install.install``: builds the
options from settings and flags, drives the run on an event loop, and
renders each progress event.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from binstall.core.models.event import EventTag, ProgressEvent
from binstall.ui.cli.cache import load_cli_settings


@click.command()
@click.option("--force-reinstall", is_flag=True, help="Skip the cache and always provide afresh.")
@click.option("--version", "version", default=None, help="Binary version (default: provider default).")
@click.option("--name", "binary_name", default=None, help="Install under this file name.")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Cache directory (default: BINSTALL_CACHE or ~/.cache/binstall).",
)
@click.option("--build-flag", "build_flags", multiple=True, help="Extra provider flag (repeatable).")
@click.option("--timeout", type=float, default=None, help="Health-check timeout in seconds.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output events as JSON lines.")
@click.pass_context
def install(
    ctx: click.Context,
    force_reinstall: bool,
    version: str | None,
    binary_name: str | None,
    cache_dir: str | None,
    build_flags: tuple[str, ...],
    timeout: float | None,
    as_json: bool,
) -> None:
    """Install the binary into the current directory."""
    from binstall.core.services.install import FileCacheStore, InstallError
    from binstall.core.services.install import install as start_install

    settings = load_cli_settings(ctx)

    options: dict[str, Any] = {"force_reinstall": force_reinstall}
    if version or settings.version:
        options["version"] = version or settings.version
    if build_flags:
        options["build_flags"] = list(build_flags)
    if timeout or settings.check_timeout:
        options["timeout"] = timeout or settings.check_timeout
    name = binary_name or settings.binary_name
    if name:
        options["rename"] = lambda _default: name

    store = FileCacheStore(Path(cache_dir)) if cache_dir else settings.make_store()

    try:
        run = start_install(options, store=store, provider=settings.make_provider())
    except InstallError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)

    sys.exit(asyncio.run(_consume(run, as_json)))


async def _consume(run: Any, as_json: bool) -> int:
    try:
        async for event in run:
            _render(event, as_json)
    except asyncio.CancelledError:
        run.cancel()
        raise
    except Exception as e:
        if as_json:
            click.echo(json.dumps({"id": "error", "error": _error_dict(e)}))
        else:
            click.secho(f"❌ Install failed: {e}", fg="red", err=True)
        return 1

    if as_json:
        click.echo(json.dumps({"id": "complete"}))
    else:
        click.secho("✅ Installed", fg="green")
    return 0


def _render(event: ProgressEvent, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(event.to_dict(), default=str))
        return

    tag = event.id
    if tag.endswith(":fail"):
        click.secho(f"⚠️  {tag}: {event.error}", fg="yellow")
    elif tag == EventTag.SEARCH_CACHE:
        if event.payload.get("found"):
            click.echo(f"🔍 Found a cached binary: {event.payload.get('path')}")
        else:
            click.echo("🔍 No usable cached binary")
    elif tag == EventTag.RESTORE_CACHE:
        click.echo("📦 Restoring the cached binary...")
    elif tag == EventTag.CHECK_BINARY:
        click.echo("🩺 Checking the binary...")
    elif tag == EventTag.WRITE_CACHE:
        size = event.payload.get("original_size")
        click.echo(f"💾 Caching the binary{f' ({size:,} bytes)' if size else ''}...")
    elif tag.endswith(":complete"):
        click.echo(f"   ✓ {tag.removesuffix(':complete')}")
    else:
        click.echo(f"   {tag}")


def _error_dict(e: Exception) -> dict[str, Any]:
    to_dict = getattr(e, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"code": type(e).__name__, "message": str(e)}
