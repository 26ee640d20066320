"""Shared CLI utilities and helpers."""

import logging
import sys
from functools import wraps

import click
from click import option
from rich.console import Console
from rich.logging import RichHandler

from ..config import Config

# Log records and progress bars share one stderr console
console = Console(stderr=True)


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def setup_logging(verbose: bool) -> None:
    handler = RichHandler(console=console, show_path=False)
    logger = logging.getLogger("imapchive")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def server_options(f):
    """Add --server/--email/--password, falling back to env vars then config."""
    @option('-e', '--email', envvar="IMAP_EMAIL", help="Email address (or IMAP_EMAIL env)")
    @option('-p', '--password', envvar="IMAP_PASSWORD", help="Password (or IMAP_PASSWORD env)")
    @option('-s', '--server', envvar="IMAP_SERVER", help="Server address, host[:port] (or IMAP_SERVER env)")
    @click.pass_obj
    @wraps(f)
    def wrapper(config: Config, server, email, password, *args, **kwargs):
        server = server or config.server
        email = email or config.email
        password = password or config.password
        if not server or not email or not password:
            err("Missing credentials. Set IMAP_SERVER/IMAP_EMAIL/IMAP_PASSWORD or use -s/-e/-p flags.")
            sys.exit(1)
        return f(config, server, email, password, *args, **kwargs)
    return wrapper


# =============================================================================
# Command aliases
# =============================================================================


class AliasGroup(click.Group):
    """Group resolving short command names, listed next to each command in --help."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        return _, self.aliases.get(cmd_name, cmd_name), args

    def format_commands(self, ctx, formatter):
        by_command: dict[str, list[str]] = {}
        for alias, name in self.aliases.items():
            by_command.setdefault(name, []).append(alias)

        rows = []
        for name in self.list_commands(ctx):
            cmd = self.commands[name]
            if cmd.hidden:
                continue
            aliases = by_command.get(name)
            label = f"{name} ({', '.join(sorted(aliases))})" if aliases else name
            rows.append((label, cmd.get_short_help_str(limit=formatter.width)))

        if rows:
            with formatter.section("Commands"):
                formatter.write_dl(rows)
