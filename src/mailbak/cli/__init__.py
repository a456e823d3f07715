"""CLI package for mailbak - email backup and migration.

This package organizes CLI commands into modules:
- account.py: Account management (add, ls, rm, default)
- auth.py: OAuth setup (gmail)
- misc.py: test, folders
- backup.py: Export folders to MBOX/EML/JSON
- transfer.py: migrate, import
- utils.py: Shared utilities and helpers
"""

import click
from click import option
from dotenv import load_dotenv

from .utils import AliasGroup, configure_logging

# Import command groups and commands
from .account import account
from .auth import auth
from .backup import backup
from .misc import folders, test
from .transfer import import_cmd, migrate


# Main group with aliases
@click.group(cls=AliasGroup, aliases={
    'a': 'account',
    'b': 'backup',
    'f': 'folders',
    'i': 'import',
    'm': 'migrate',
    't': 'test',
})
@option('-v', '--verbose', count=True, help="More logging (-v info, -vv debug)")
def main(verbose: int):
    """Back up and migrate email across IMAP, Gmail and JMAP."""
    load_dotenv()
    configure_logging(verbose)


# Register command groups
main.add_command(account)
main.add_command(auth)

# Register individual commands
main.add_command(backup)
main.add_command(folders)
main.add_command(import_cmd)
main.add_command(migrate)
main.add_command(test)


# Export for convenience
__all__ = [
    'main',
    'account',
    'auth',
    'backup',
    'folders',
    'import_cmd',
    'migrate',
    'test',
]
