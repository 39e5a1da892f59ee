"""
Options and helpers shared by the subcommands.
"""

import sys
from pathlib import Path

import click

from softpatch.controllers.client_controller import ClientController
from softpatch.utils.app_info import AppInfo
from softpatch.utils.constants import CLIENT_FILE_ENV, EXIT_FAILED
from softpatch.utils.exception import ClientStateError

client_option = click.option(
    "--client",
    "client_file",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar=CLIENT_FILE_ENV,
    default=lambda: AppInfo().client_file,
    show_default="client.json in the application storage folder",
    help=f"Client state file. Can also be set via {CLIENT_FILE_ENV} environment variable.",
)


def load_client(client_file: Path) -> ClientController:
    """Load the client state or exit with an error message."""
    try:
        return ClientController.load(client_file)
    except ClientStateError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)


def is_interactive() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()
