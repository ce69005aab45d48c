"""
binstall: CLI entrypoint.

Usage:
    binstall --help
    binstall install [--force-reinstall] [--version 0.15.4]
    binstall cache status
"""

from __future__ import annotations

from pathlib import Path

import click

from binstall import __version__
from binstall.core.observability.logging_config import resolve_level, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="binstall")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, dir_okay=False),
    default=None,
    help="Path to binstall.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """binstall: install a platform binary, reusing a local cache."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        quiet_third_party=not debug,
    )


# ── Register sub-groups ─────────────────────────────────────────

from binstall.ui.cli.cache import cache  # noqa: E402
from binstall.ui.cli.install import install  # noqa: E402

cli.add_command(install)
cli.add_command(cache)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
