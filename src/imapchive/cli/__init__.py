"""CLI package for imapchive.

- server_cmds.py: list, fetch
- archive_cmds.py: mbox, info, verify
- utils.py: shared helpers (logging, credentials, aliases)
"""

import sys

import click
from click import option
from dotenv import load_dotenv

from ..config import load_config
from .archive_cmds import info, mbox, verify
from .server_cmds import fetch, list_
from .utils import AliasGroup, err, setup_logging


@click.group(cls=AliasGroup, aliases={
    'f': 'fetch',
    'i': 'info',
    'l': 'list',
    'm': 'mbox',
})
@click.version_option(package_name="imapchive")
@option('-c', '--config', 'config_path', type=click.Path(dir_okay=False), help="YAML config file")
@option('-v', '--verbose', is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config_path: str | None, verbose: bool):
    """Archive IMAP mailboxes to local append-only files."""
    load_dotenv()
    setup_logging(verbose)
    try:
        ctx.obj = load_config(config_path)
    except Exception as e:
        err(f"Error: {e}")
        sys.exit(1)


main.add_command(fetch)
main.add_command(info)
main.add_command(list_)
main.add_command(mbox)
main.add_command(verify)


__all__ = [
    'main',
    'fetch',
    'info',
    'list_',
    'mbox',
    'verify',
]
