import dataclasses
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Annotated, cast

import typer

from .config import CONFIG_FILENAME, AppConfig, parse_size
from .log import setup_logging
from .replace import Replacer, ReplacementError
from .scan import Scanner, duplicate_groups
from .xattrs import DEFAULT_NAMESPACE

logger = logging.getLogger(__name__)

try:
    hashlink_version: str = version(distribution_name="hashlink")
except PackageNotFoundError:
    hashlink_version = "unknown (package not installed)"

app: typer.Typer = typer.Typer(
    help=f"hashlink — find duplicate files and replace them with links\n\nVersion: {hashlink_version}",
)


def print_version(is_version: bool) -> None:
    """
    Callback for the global --version / -V option.

    Prints the installed version and ends the program early by raising
    `typer.Exit()`, so --version works regardless of the subcommand.
    """
    if not is_version:
        return

    typer.echo(hashlink_version)
    raise typer.Exit()


def build_config(
    config_path: Path | None,
    *,
    rules: list[str] | None = None,
    prefer: list[str] | None = None,
    min_size: str | None = None,
    cross_device: bool | None = None,
    rescan: bool | None = None,
    rewrite: bool | None = None,
    all_links: bool | None = None,
    relative: bool | None = None,
    namespace: str | None = None,
    max_workers: int | None = None,
    max_inflight: int | None = None,
) -> AppConfig:
    """Load the config file and apply command line overrides on top of it."""
    cfg: AppConfig = AppConfig.load_or_default(config_path)

    overrides: dict[str, object] = {}
    if rules:
        overrides["rules"] = cfg.rules + tuple(rules)
    if prefer:
        overrides["prefer"] = cfg.prefer + tuple(prefer)
    if min_size is not None:
        try:
            overrides["min_size"] = parse_size(min_size)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--min-size")
    if cross_device is not None:
        overrides["cross_device"] = cross_device
    if rescan is not None:
        overrides["rescan"] = rescan
    if rewrite is not None:
        overrides["rewrite"] = rewrite
    if all_links is not None:
        overrides["collapse_links"] = not all_links
    if relative is not None:
        overrides["relative_symlinks"] = relative
    if namespace is not None:
        overrides["namespace"] = namespace
    if max_workers is not None:
        overrides["max_workers"] = max_workers
    if max_inflight is not None:
        overrides["max_inflight"] = max_inflight

    return dataclasses.replace(cfg, **overrides)  # type: ignore[arg-type]


def read_groups(raw: str) -> list[list[str]]:
    data: object = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of path arrays")

    groups: list[list[str]] = []
    for group in cast(list[object], data):
        if not isinstance(group, list) or not all(isinstance(p, str) for p in cast(list[object], group)):
            raise ValueError(f"expected an array of paths, got {group!r}")
        groups.append(cast(list[str], group))
    return groups


def write_groups(groups: list[list[str]]) -> None:
    json.dump(groups, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    sys.stdout.flush()


@app.command()
def init(
    rule: Annotated[list[str] | None, typer.Option(help="exclude:<glob> or include:<glob>")] = None,
    prefer: Annotated[list[str] | None, typer.Option(help="Glob of paths to keep as link targets")] = None,
    min_size: Annotated[str, typer.Option(help="Size in bytes, or with suffix K/M/G")] = "1",
    namespace: Annotated[str, typer.Option(help="Extended attribute prefix")] = DEFAULT_NAMESPACE,
    max_workers: Annotated[int, typer.Option()] = 1,
    max_inflight: Annotated[int, typer.Option(help="Files queued for hashing at once")] = 200,
    force: Annotated[bool, typer.Option()] = False,
) -> None:
    """
    Write a config file in the current directory.

    Rules and preferences given here are used by every later find and
    clean run; options given to those commands are appended to them.
    """
    if CONFIG_FILENAME.exists() and not force:
        typer.echo("Config file already exists. Use --force to overwrite.")
        raise typer.Exit(code=1)

    try:
        cfg: AppConfig = AppConfig(
            namespace=namespace,
            rules=tuple(rule or ()),
            prefer=tuple(prefer or ()),
            min_size=parse_size(min_size),
            max_workers=max_workers,
            max_inflight=max_inflight,
        )
        # Fail early on patterns that do not compile.
        _ = Scanner(cfg)
        _ = Replacer(cfg)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    cfg.save(CONFIG_FILENAME)
    typer.echo(f"Config written to {CONFIG_FILENAME}")


@app.command()
def find(
    roots: list[Path],
    config: Annotated[Path | None, typer.Option(help="Config file to load")] = None,
    rule: Annotated[
        list[str] | None, typer.Option(help="exclude:<glob> or include:<glob>; first match wins")
    ] = None,
    min_size: Annotated[str | None, typer.Option(help="Size in bytes, or with suffix K/M/G")] = None,
    cross_device: Annotated[
        bool | None, typer.Option("--cross-device/--one-file-system", help="Descend into other filesystems")
    ] = None,
    rescan: Annotated[bool | None, typer.Option(help="Don't trust cached hashes at all")] = None,
    rewrite: Annotated[bool | None, typer.Option(help="Upgrade cached hashes to the current format")] = None,
    all_links: Annotated[
        bool | None, typer.Option(help="Report every hardlink instead of one path per inode")
    ] = None,
    namespace: Annotated[str | None, typer.Option(help="Extended attribute prefix")] = None,
    max_workers: Annotated[int | None, typer.Option()] = None,
    max_inflight: Annotated[int | None, typer.Option(help="Files queued for hashing at once")] = None,
) -> None:
    """Scan directories and print groups of duplicate files as JSON."""
    try:
        cfg: AppConfig = build_config(
            config,
            rules=rule,
            min_size=min_size,
            cross_device=cross_device,
            rescan=rescan,
            rewrite=rewrite,
            all_links=all_links,
            namespace=namespace,
            max_workers=max_workers,
            max_inflight=max_inflight,
        )
        scanner: Scanner = Scanner(cfg)
    except (FileNotFoundError, TypeError, ValueError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)

    seen = scanner.scan(str(root) for root in roots)
    write_groups(duplicate_groups(seen, collapse_links=cfg.collapse_links))


@app.command()
def clean(
    input_file: Annotated[
        Path | None, typer.Option("--input", help="Read groups from this file instead of stdin")
    ] = None,
    config: Annotated[Path | None, typer.Option(help="Config file to load")] = None,
    prefer: Annotated[
        list[str] | None, typer.Option(help="Glob of paths to keep as link targets; earlier wins")
    ] = None,
    relative: Annotated[
        bool | None, typer.Option("--rel/--abs", help="Use relative paths when creating symlinks")
    ] = None,
) -> None:
    """Replace duplicate files, as printed by find, with links."""
    try:
        cfg: AppConfig = build_config(config, prefer=prefer, relative=relative)
        replacer: Replacer = Replacer(cfg)

        if input_file is None:
            raw: str = sys.stdin.read()
        else:
            raw = input_file.read_text(encoding="utf-8")
        groups: list[list[str]] = read_groups(raw)
    except (FileNotFoundError, TypeError, ValueError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)

    try:
        replacer.process(groups)
    except ReplacementError as e:
        logger.critical(f"exiting due to previous failures: {e}")
        raise typer.Exit(code=1)

    logger.info(f"Replaced {replacer.replaced} files with links")


@app.command(name="version")
def version_cmd() -> None:
    """Print the installed version of hashlink."""
    print_version(True)


@app.callback()
def main(
    _version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=print_version,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[int, typer.Option("--verbose", "-v", count=True, help="-v for info, -vv for debug")] = 0,
) -> None:
    """
    Global options for hashlink. All subcommands run after this callback
    unless --version is used.
    """
    setup_logging(verbose)


if __name__ == "__main__":
    app()
