"""Shared CLI utilities and helpers."""

import asyncio
import signal
import sys
from contextlib import contextmanager

import click
from click import prompt
from loguru import logger

from ..backup import CancelToken
from ..config import get_account, load_config, load_credentials
from ..errors import MailbakError
from ..factory import get_provider_for_account
from ..models import Account, ExportFormat
from ..providers import EmailProvider


LOG_FORMAT = "<green>{time:HH:mm:ss}</green> <level>{level: <8}</level> {message}"


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def configure_logging(verbose: int) -> None:
    """WARNING by default, INFO with -v, DEBUG with -vv."""
    level = "DEBUG" if verbose > 1 else "INFO" if verbose == 1 else "WARNING"
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)


def get_password(password_opt: str | None) -> str:
    """Get password from option, stdin (if piped), or prompt."""
    if password_opt:
        return password_opt
    elif not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    else:
        return prompt("Password", hide_input=True)


def require_account(account_id: str) -> Account:
    """Account by id, name or email; exits if missing."""
    account = get_account(account_id)
    if not account:
        err(f"Account '{account_id}' not found.")
        err("  mailbak account ls")
        sys.exit(1)
    return account


def open_provider(account: Account) -> EmailProvider:
    """Build a (not yet connected) provider with stored credentials and settings."""
    config = load_config()
    try:
        credentials = load_credentials(account.id)
        return get_provider_for_account(account, credentials, config.settings)
    except MailbakError as e:
        err(f"Error: {e}")
        sys.exit(1)


def run(coro):
    """Run a coroutine, reporting mailbak errors and exiting 1."""
    try:
        return asyncio.run(coro)
    except MailbakError as e:
        err(f"Error: {e}")
        sys.exit(1)


@contextmanager
def cancel_on_interrupt():
    """First Ctrl-C requests a cooperative cancel; the second one aborts."""
    token = CancelToken()

    def handler(signum, frame):
        if token.cancelled:
            raise KeyboardInterrupt
        err("\nCancelling after the current step (Ctrl-C again to abort)...")
        token.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


def parse_formats(ctx, param, value) -> list[ExportFormat]:
    """Validate --format values (repeatable or comma-separated)."""
    formats = []
    for v in value:
        for name in v.split(","):
            name = name.strip().lower()
            if not name:
                continue
            try:
                fmt = ExportFormat(name)
            except ValueError:
                raise click.BadParameter(
                    f"Unknown format '{name}'. Use one of: {', '.join(f.value for f in ExportFormat)}"
                )
            if fmt not in formats:
                formats.append(fmt)
    return formats


class AliasGroup(click.Group):
    """Click Group that supports command aliases."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}
        # Build reverse mapping: command -> list of aliases
        self._cmd_aliases: dict[str, list[str]] = {}
        for alias, cmd in self.aliases.items():
            self._cmd_aliases.setdefault(cmd, []).append(alias)

    def get_command(self, ctx, cmd_name):
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, cmd_name)

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return _, cmd_name, args

    def format_commands(self, ctx, formatter):
        """Write all commands with their aliases to the formatter."""
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            aliases = self._cmd_aliases.get(subcommand, [])
            if aliases:
                name = f"{subcommand} ({', '.join(sorted(aliases))})"
            else:
                name = subcommand
            help_text = cmd.get_short_help_str(limit=formatter.width)
            commands.append((name, help_text))

        if commands:
            with formatter.section("Commands"):
                formatter.write_dl(commands)
