"""Commands reading a local archive file: mbox, info, verify."""

import sys

import click
import humanize
from click import argument, echo, style

from ..archive import load_index, open_archive
from ..mbox import write_mbox
from .utils import err


@click.command(no_args_is_help=True)
@argument('file', type=click.Path(exists=True, dir_okay=False))
def mbox(file: str):
    """Write an mbox file with all messages in FILE to stdout."""
    try:
        with open_archive(file, append=False) as store:
            write_mbox(store, sys.stdout.buffer)
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)


@click.command(no_args_is_help=True)
@argument('file', type=click.Path(exists=True, dir_okay=False))
def info(file: str):
    """Show message count, size and checkpoint state of FILE."""
    try:
        with open_archive(file, append=False) as store:
            echo(f"Messages: {store.size():,}")
            echo(f"Log size: {humanize.naturalsize(store.log_size())}")
            try:
                index = load_index(store.index_path)
            except FileNotFoundError:
                echo("Checkpoint: none")
            else:
                echo(f"Checkpoint: {len(index.records):,} messages at offset {index.file_offset:,}")
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)


@click.command(no_args_is_help=True)
@argument('file', type=click.Path(exists=True, dir_okay=False))
def verify(file: str):
    """Check every stored message against its SHA-256 digest."""
    try:
        with open_archive(file, append=False) as store:
            bad = store.verify()
            total = store.size()
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)

    if bad:
        err(style(f"{len(bad)} corrupt record(s): UIDs {', '.join(map(str, bad))}", fg="red"))
        sys.exit(1)
    echo(style(f"OK: {total:,} messages verified", fg="green"))
