"""treecheckout CLI - check out content-addressed commits."""

import logging
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from treecheckout import __version__
from treecheckout.checkout import checkout_at, opened_directory, resolve_subpath
from treecheckout.config import get_checkout_config
from treecheckout.devino import DevInoCache
from treecheckout.errors import CheckoutError, format_error
from treecheckout.objects import FileContent, Repository
from treecheckout.options import CheckoutMode, OverwriteMode

console = Console()


def _fail(error: CheckoutError) -> None:
    console.print(f"[red]{escape(format_error(error))}[/red]")
    sys.exit(1)


def _setup_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _open_repo(repo_path: str) -> Repository:
    result = Repository.open(Path(repo_path))
    if result.is_err():
        _fail(result.unwrap_err())
    return result.unwrap()


def _resolve_commit(repo: Repository, rev: str):
    rev_result = repo.resolve_rev(rev)
    if rev_result.is_err():
        _fail(rev_result.unwrap_err())
    commit_result = repo.load_commit(rev_result.unwrap())
    if commit_result.is_err():
        _fail(commit_result.unwrap_err())
    return commit_result.unwrap()


@click.group()
@click.version_option(version=__version__)
def main():
    """treecheckout: materialize content-addressed commits on disk."""
    pass


@main.command()
@click.argument("repo_path", metavar="REPO", type=click.Path(exists=True, file_okay=False))
@click.argument("rev")
@click.argument("destination", type=click.Path())
@click.option("--subpath", default="/", help="Check out only this path of the commit")
@click.option("--user-mode", "-U", is_flag=True, help="Keep your ownership, strip suid/sgid")
@click.option("--union", "union_files", is_flag=True, help="Merge into an existing tree")
@click.option("--union-identical", is_flag=True, help="Merge; existing files must be identical")
@click.option("--fsync", "enable_fsync", is_flag=True, help="fsync files and directories")
@click.option("--force-copy", "-C", is_flag=True, help="Never hardlink")
@click.option("--force-copy-zerosized", is_flag=True, help="Never hardlink empty files")
@click.option("--no-copy-fallback", is_flag=True, help="Fail if a hardlink is impossible")
@click.option("--whiteouts", is_flag=True, help="Process .wh.<name> deletion markers")
@click.option("--bareuseronly-dirs", is_flag=True, help="Create directories as 0755 (user mode)")
@click.option("--include", multiple=True, help="Only check out files matching this glob")
@click.option("--exclude", multiple=True, help="Skip paths matching this glob")
@click.option("--devino-cache", type=click.Path(dir_okay=False), help="Persisted dev/inode cache")
@click.option("--verbose", "-v", is_flag=True, help="Log every entry")
def checkout(
    repo_path,
    rev,
    destination,
    subpath,
    user_mode,
    union_files,
    union_identical,
    enable_fsync,
    force_copy,
    force_copy_zerosized,
    no_copy_fallback,
    whiteouts,
    bareuseronly_dirs,
    include,
    exclude,
    devino_cache,
    verbose,
):
    """Check out REV of REPO to DESTINATION."""
    _setup_logging(verbose)

    if union_files and union_identical:
        raise click.UsageError("--union and --union-identical are mutually exclusive")

    repo = _open_repo(repo_path)
    commit = _resolve_commit(repo, rev)

    # Flags only switch behaviour on; everything else comes from config
    config = get_checkout_config(repo.path)
    if user_mode:
        config.mode = CheckoutMode.USER.value
    if union_files:
        config.overwrite_mode = OverwriteMode.ADD_FILES.value
    if union_identical:
        config.overwrite_mode = OverwriteMode.UNION_IDENTICAL.value
    config.enable_fsync = config.enable_fsync or enable_fsync
    config.force_copy = config.force_copy or force_copy
    config.force_copy_zerosized = config.force_copy_zerosized or force_copy_zerosized
    config.no_copy_fallback = config.no_copy_fallback or no_copy_fallback
    config.process_whiteouts = config.process_whiteouts or whiteouts
    config.bareuseronly_dirs = config.bareuseronly_dirs or bareuseronly_dirs
    config.include = [*config.include, *include]
    config.exclude = [*config.exclude, *exclude]

    cache = None
    if devino_cache:
        cache_result = DevInoCache.load(Path(devino_cache))
        if cache_result.is_err():
            _fail(cache_result.unwrap_err())
        cache = cache_result.unwrap()

    try:
        options = config.to_options(subpath=subpath, devino_to_csum_cache=cache)
    except ValueError as e:
        raise click.UsageError(f"Invalid checkout configuration: {e}") from e

    dest = Path(destination).absolute()
    try:
        with opened_directory(dest.parent) as dfd:
            result = checkout_at(repo, options, dfd, dest.name, commit.checksum)
    except OSError as e:
        console.print(f"[red]Cannot open {escape(str(dest.parent))}: {escape(e.strerror or str(e))}[/red]")
        sys.exit(1)

    if result.is_err():
        _fail(result.unwrap_err())

    if cache is not None:
        save_result = cache.save(Path(devino_cache))
        if save_result.is_err():
            _fail(save_result.unwrap_err())

    stats = result.unwrap()
    console.print(f"[green]✓[/green] Checked out {commit.checksum[:12]} to {escape(str(dest))}")
    console.print(
        f"  [dim]{stats.directories} directories, {stats.files} files "
        f"({stats.files_copied} copied, {stats.files_linked} linked, {stats.files_kept} kept), "
        f"{stats.symlinks} symlinks, {stats.skipped} skipped[/dim]"
    )


@main.command()
@click.argument("repo_path", metavar="REPO", type=click.Path(exists=True, file_okay=False))
@click.argument("rev")
@click.argument("path", default="/")
def ls(repo_path, rev, path):
    """List the directory PATH of REV."""
    repo = _open_repo(repo_path)
    commit = _resolve_commit(repo, rev)

    entry_result = resolve_subpath(repo, commit.root_contents, commit.root_meta, path)
    if entry_result.is_err():
        _fail(entry_result.unwrap_err())
    entry = entry_result.unwrap()
    if not entry.is_dir:
        console.print(f"[red]Not a directory: {escape(path)}[/red]")
        sys.exit(1)

    listing_result = repo.load_dirtree(entry.checksum)
    if listing_result.is_err():
        _fail(listing_result.unwrap_err())
    listing = listing_result.unwrap()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Mode")
    table.add_column("Size", justify="right")
    table.add_column("Checksum", style="dim")
    table.add_column("Name")

    for child in listing.dirs:
        meta_result = repo.load_dirmeta(child.meta_checksum)
        if meta_result.is_err():
            _fail(meta_result.unwrap_err())
        table.add_row(
            stat.filemode(meta_result.unwrap().mode), "-", child.checksum[:12], f"{child.name}/"
        )

    for child in listing.files:
        file_result = repo.load_file(child.checksum)
        if file_result.is_err():
            _fail(file_result.unwrap_err())
        obj = file_result.unwrap()
        if isinstance(obj, FileContent):
            size, name = str(obj.size), child.name
        else:
            size, name = "-", f"{child.name} -> {obj.target}"
        table.add_row(stat.filemode(obj.header.mode), size, child.checksum[:12], escape(name))

    console.print(table)


@main.command()
@click.argument("repo_path", metavar="REPO", type=click.Path(exists=True, file_okay=False))
@click.argument("rev")
def show(repo_path, rev):
    """Show the commit REV resolves to."""
    repo = _open_repo(repo_path)
    commit = _resolve_commit(repo, rev)

    console.print(f"[bold]commit[/bold] {commit.checksum}")
    if commit.parent:
        console.print(f"[dim]Parent:[/dim]  {commit.parent}")
    when = datetime.fromtimestamp(commit.timestamp, tz=timezone.utc)
    console.print(f"[dim]Date:[/dim]    {when.isoformat()}")
    console.print(f"[dim]Tree:[/dim]    {commit.root_contents}")
    console.print(f"[dim]Meta:[/dim]    {commit.root_meta}")
    console.print()
    console.print(f"    {escape(commit.subject)}")
    if commit.body:
        console.print()
        for line in commit.body.splitlines():
            console.print(f"    {escape(line)}")


if __name__ == "__main__":
    main()
