"""CLI entry point for the brewengine package manager."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.markup import escape

from brewengine.analysis.status import derive_status
from brewengine.cli.renderers import (
    console,
    formula_details,
    formula_table,
    human_size,
    installed_table,
)
from brewengine.core.config import VERSION, discover_env
from brewengine.core.engine import Engine
from brewengine.core.errors import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    BrewError,
    TapError,
    format_error_message,
)
from brewengine.core.logging import configure_logging, get_logger
from brewengine.core.taps import OFFICIAL_TAPS

log = get_logger(__name__)

app = typer.Typer(
    help="brewengine: install formulae from source or bottles.",
    no_args_is_help=True,
    add_completion=False,
)

QUERY_FLAGS = {
    "--prefix": "prefix",
    "--cellar": "cellar",
    "--cache": "cache",
    "--repository": "repository",
    "--env": "env",
}


def handle_error(error: Exception) -> int:
    """Report an error and return the exit code.

    Args:
        error: The exception to handle.

    Returns:
        An integer exit code.
    """
    if isinstance(error, BrewError):
        log.error(
            "cli_error",
            error_type=type(error).__name__,
            message=error.message,
            context=error.context,
        )
        console.print(escape(format_error_message(error)), style="bold red", highlight=False)
        build_log = getattr(error, "log", "")
        if build_log:
            console.print(escape(build_log.rstrip()), style="dim", highlight=False)
    else:
        log.error(
            "unexpected_error",
            error=str(error),
            exc_info=True
        )
        console.print(
            escape(f"Error: Unexpected error occurred: {error}"), style="bold red", highlight=False
        )
    return EXIT_FAILURE


def engine_from(ctx: typer.Context) -> Engine:
    return ctx.obj


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"brewengine {VERSION}")
        raise typer.Exit(EXIT_SUCCESS)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to the console"),
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Print the version"
    ),
) -> None:
    """Read the environment once and build the engine for the command."""
    env = discover_env()
    configure_logging(
        level="DEBUG" if verbose else "INFO",
        log_file=env.logs / "brewengine.log",
        enable_console=verbose,
        force=True,
    )
    ctx.obj = Engine(env)


@app.command()
def prefix(ctx: typer.Context, formula: Optional[str] = typer.Argument(None)) -> None:
    """Print the prefix, or the keg path of a formula."""
    try:
        typer.echo(str(engine_from(ctx).prefix(formula)))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def cellar(ctx: typer.Context, formula: Optional[str] = typer.Argument(None)) -> None:
    """Print the Cellar, or the rack of a formula."""
    try:
        typer.echo(str(engine_from(ctx).cellar_path(formula)))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def cache(ctx: typer.Context, formula: Optional[str] = typer.Argument(None)) -> None:
    """Print the cache directory, or the cached artifact of a formula."""
    try:
        typer.echo(str(engine_from(ctx).cache_path(formula)))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def repository(ctx: typer.Context) -> None:
    """Print the repository path."""
    typer.echo(str(engine_from(ctx).env.repository))


@app.command()
def env(ctx: typer.Context) -> None:
    """Print the build environment."""
    for key, value in sorted(engine_from(ctx).build_environment().items()):
        typer.echo(f'{key}="{value}"')


@app.command()
def install(
    ctx: typer.Context,
    formula: str,
    force: bool = typer.Option(False, "--force", "-f", help="Reinstall if already installed"),
    build_from_source: bool = typer.Option(False, "--build-from-source", "-s"),
    build_bottle: bool = typer.Option(False, "--build-bottle", help="Build for later bottling"),
    with_: Optional[List[str]] = typer.Option(None, "--with", help="Enable an optional dependency"),
) -> None:
    """Install a formula and its dependencies."""
    try:
        options = [f"with-{w}" for w in with_ or []]
        results = engine_from(ctx).install(
            formula,
            options,
            force=force,
            build_from_source=build_from_source,
            build_bottle=build_bottle,
        )
        for result in results:
            count, size = result.slot.disk_usage()
            how = "bottle" if result.receipt.poured_from_bottle else "source"
            typer.echo(f"==> Installed {result.receipt.name} {result.receipt.version} from {how}")
            if result.link_error is not None:
                console.print(
                    escape(format_error_message(result.link_error)), style="yellow", highlight=False
                )
            typer.echo(f"{result.slot.path}: {count} files, {human_size(size)}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def uninstall(
    ctx: typer.Context,
    formulae: List[str] = typer.Argument(..., help="Formulae to remove"),
    force: bool = typer.Option(False, "--force", "-f", help="Ignore installed dependents"),
) -> None:
    """Uninstall formulae."""
    try:
        engine = engine_from(ctx)
        for name in formulae:
            for removed in engine.uninstall(name, force=force):
                typer.echo(
                    f"Uninstalling {removed.slot.name}... "
                    f"({removed.file_count} files, {human_size(removed.size_bytes)})"
                )
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def link(
    ctx: typer.Context,
    formula: str,
    force: bool = typer.Option(False, "--force", "-f", help="Link keg-only formulae"),
) -> None:
    """Symlink a formula's installed files into the prefix."""
    try:
        created = engine_from(ctx).link(formula, force=force)
        typer.echo(f"Linking {formula}... {len(created)} symlinks created")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def unlink(ctx: typer.Context, formula: str) -> None:
    """Remove a formula's symlinks from the prefix."""
    try:
        removed = engine_from(ctx).unlink(formula)
        typer.echo(f"Unlinking {formula}... {len(removed)} symlinks removed")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def upgrade(ctx: typer.Context, formula: str) -> None:
    """Install the newest version of an installed formula."""
    try:
        results = engine_from(ctx).upgrade(formula)
        if not results:
            typer.echo(f"{formula} is already up to date")
        for result in results:
            typer.echo(f"==> Upgraded {result.receipt.name} to {result.receipt.version}")
            typer.echo(str(result.slot.path))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def cleanup(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Also remove versions recorded by dependents"),
    prune: str = typer.Option("stale", "--prune", help="stale | all"),
) -> None:
    """Remove old kegs and cached downloads."""
    try:
        for path in engine_from(ctx).cleanup(prune=prune, force=force):
            typer.echo(f"Removing: {path}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def missing(ctx: typer.Context, formulae: Optional[List[str]] = typer.Argument(None)) -> None:
    """Print runtime dependencies that are not installed."""
    try:
        for name in engine_from(ctx).missing(formulae or None):
            typer.echo(name)
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def deps(ctx: typer.Context, formula: str) -> None:
    """Print dependencies in install order."""
    try:
        for dependency in engine_from(ctx).resolve(formula)[:-1]:
            typer.echo(dependency.full_name)
    except Exception as e:
        sys.exit(handle_error(e))


@app.command("list")
def list_command(ctx: typer.Context) -> None:
    """List installed formulae."""
    try:
        engine = engine_from(ctx)
        rows = []
        for receipt in engine.installed():
            try:
                formula = engine.lookup(receipt.name)
            except BrewError:
                formula = None
            status = derive_status(receipt, formula, engine.linker.linked_version(receipt.name))
            rows.append((receipt, formula, status))
        console.print(installed_table(rows))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def info(ctx: typer.Context, formula: str) -> None:
    """Show detailed information about a formula."""
    try:
        details = engine_from(ctx).info(formula)
        console.print(formula_details(details.formula, details.receipts, details.linked_version))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def outdated(ctx: typer.Context) -> None:
    """List installed formulae with a newer definition."""
    try:
        for receipt, formula in engine_from(ctx).outdated():
            typer.echo(f"{formula.full_name} ({receipt.version}) != {formula.version}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def search(ctx: typer.Context, term: str) -> None:
    """Search formulae by name or description."""
    try:
        console.print(formula_table(engine_from(ctx).registry.search(term)))
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def bottle(
    ctx: typer.Context,
    formula: str,
    no_revision: bool = typer.Option(False, "--no-revision", help="Omit the bottle revision"),
) -> None:
    """Package an installed formula as a bottle in the current directory."""
    try:
        path, checksum = engine_from(ctx).bottle(
            formula, Path.cwd(), revision=None if no_revision else 1
        )
        typer.echo(f"./{path.name}")
        typer.echo(f"sha256 \"{checksum}\"")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def tap(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None),
    source: Optional[Path] = typer.Argument(None, help="Local directory to tap from"),
    list_official: bool = typer.Option(False, "--list-official"),
    list_pinned: bool = typer.Option(False, "--list-pinned"),
) -> None:
    """List taps, or tap a local directory."""
    try:
        engine = engine_from(ctx)
        if list_official:
            for official in OFFICIAL_TAPS:
                typer.echo(official)
        elif list_pinned:
            for pinned in engine.taps.pinned():
                typer.echo(pinned.name)
        elif name is None:
            for existing in engine.registry.taps():
                typer.echo(existing.name)
        elif source is None:
            raise TapError(
                f"Cannot tap {name}: remote taps are not supported, pass a local path",
                context={"tap": name}
            )
        else:
            added = engine.taps.add(name, source)
            count = len(engine.registry.formula_files(added))
            typer.echo(f"Tapped {added.name} ({count} formulae)")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command("tap-info")
def tap_info(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None),
    json_format: Optional[str] = typer.Option(None, "--json", help="v1"),
    installed: bool = typer.Option(False, "--installed"),
) -> None:
    """Show information about taps."""
    try:
        engine = engine_from(ctx)
        taps = engine.registry.taps()
        if name is not None:
            taps = [engine.taps.require(name)]
        elif not installed and json_format is None:
            count = sum(len(engine.registry.formula_files(t)) for t in taps)
            typer.echo(f"{len(taps)} tap{'' if len(taps) == 1 else 's'}, {count} formulae")
            return

        infos = [engine.taps.info(t) for t in taps]
        if json_format is not None:
            if json_format != "v1":
                raise TapError(f"Invalid JSON version: {json_format}")
            typer.echo(json.dumps(infos))
            return
        for data in infos:
            pinned = " (pinned)" if data["pinned"] else ""
            typer.echo(f"{data['name']}: {len(data['formula_names'])} formulae{pinned}")
            typer.echo(data["path"])
            if data["remote"]:
                typer.echo(f"From: {data['remote']}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command("tap-pin")
def tap_pin(ctx: typer.Context, name: str) -> None:
    """Give a tap's formulae precedence over other non-core taps."""
    try:
        pinned = engine_from(ctx).taps.pin(name)
        typer.echo(f"Pinned {pinned.name}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command("tap-unpin")
def tap_unpin(ctx: typer.Context, name: str) -> None:
    """Remove a tap's pin."""
    try:
        unpinned = engine_from(ctx).taps.unpin(name)
        typer.echo(f"Unpinned {unpinned.name}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def untap(ctx: typer.Context, name: str) -> None:
    """Remove a tap."""
    try:
        removed = engine_from(ctx).taps.remove(name)
        typer.echo(f"Untapped {removed.name}")
    except Exception as e:
        sys.exit(handle_error(e))


@app.command()
def readall(
    ctx: typer.Context,
    tap_name: Optional[str] = typer.Argument(None, metavar="TAP"),
    aliases: bool = typer.Option(False, "--aliases", help="Check alias targets"),
    syntax: bool = typer.Option(False, "--syntax", help="Only check YAML syntax"),
) -> None:
    """Load every formula definition and report problems."""
    try:
        problems = engine_from(ctx).registry.validate(tap_name, aliases=aliases, syntax=syntax)
        for problem in problems:
            console.print(escape(problem), style="red", highlight=False)
        if problems:
            sys.exit(EXIT_FAILURE)
    except Exception as e:
        sys.exit(handle_error(e))


def normalise_argv(argv: list[str]) -> list[str]:
    """Rewrite a leading ``--prefix``-style query flag to its command.

    ``brewengine --prefix testball`` becomes ``brewengine prefix testball``.
    """
    args = list(argv)
    for i, arg in enumerate(args):
        if arg in QUERY_FLAGS:
            args[i] = QUERY_FLAGS[arg]
            break
        if not arg.startswith("-"):
            break
    return args


def main(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    app(args=normalise_argv(sys.argv[1:] if argv is None else argv), prog_name="brewengine")


if __name__ == "__main__":
    main()
