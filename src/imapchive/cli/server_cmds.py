"""Commands that talk to the IMAP server: list, fetch."""

import logging
import sys
from functools import partial

import click
from click import argument, echo, option
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..archive import open_archive
from ..config import Config, archive_path
from ..imap import connect_server
from ..sync import ProgressSnapshot, run_fetch
from .utils import console, err, server_options

log = logging.getLogger("imapchive")


def bar_reporter(progress: Progress, task: TaskID):
    """Return a run_fetch `report` callback that moves the scan bar."""
    def report(snap: ProgressSnapshot) -> None:
        progress.update(
            task,
            total=snap.to_scan,
            completed=snap.scanned,
            description=f"{snap.fetched:,} fetched, {snap.labels:,} label updates",
        )
    return report


@click.command("list")
@server_options
def list_(config: Config, server: str, email: str, password: str):
    """List available mailboxes."""
    try:
        client = connect_server(server, email, password)
    except Exception as e:
        err(f"Listing mailboxes: {e}")
        sys.exit(1)
    try:
        for name in client.list_mailboxes():
            echo(name)
    except Exception as e:
        err(f"Listing mailboxes: {e}")
        sys.exit(1)
    finally:
        client.close()


@click.command(no_args_is_help=True)
@option('-C', '--concurrency', type=click.IntRange(min=1), help="Number of parallel fetch connections (default 4)")
@option('-d', '--archive-dir', type=click.Path(file_okay=False), help="Directory holding archive files")
@server_options
@argument('mailbox')
def fetch(
    config: Config,
    server: str,
    email: str,
    password: str,
    concurrency: int | None,
    archive_dir: str | None,
    mailbox: str,
):
    """Fetch new mail from MAILBOX into its archive.

    \b
    Examples:
      imapchive fetch INBOX
      imapchive fetch "[Gmail]/All Mail" -C 8
    """
    concurrency = concurrency or config.concurrency
    path = archive_path(mailbox, archive_dir or config.archive_dir)

    try:
        log.info("Opening archive %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        store = open_archive(path)
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)

    try:
        log.info("Have %d messages", store.size())
        connect = partial(connect_server, server, email, password, mailbox)
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]Scanning"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TextColumn("{task.description}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("", total=None)
            snap = run_fetch(
                connect,
                store,
                concurrency=concurrency,
                report_interval=config.report_interval,
                report=bar_reporter(progress, task),
            )
        echo(f"Scanned: {snap.scanned:,}")
        echo(f"Fetched: {snap.fetched:,}")
        if snap.labels:
            echo(f"Label updates: {snap.labels:,}")
        echo(f"Total in archive: {store.size():,}")
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)
    finally:
        store.close()
