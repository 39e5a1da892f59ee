"""
self-update subcommand, spawned by the launcher to finish replacements of
files the running application held open.
"""

import sys
import time

import click
from loguru import logger

from softpatch.cli.options import is_interactive
from softpatch.controllers.self_updater import (
    RecoveryChoice,
    SelfUpdater,
    load_max_execution_time,
)
from softpatch.utils.app_info import AppInfo
from softpatch.utils.constants import EXIT_OK, EXIT_USAGE
from softpatch.utils.replacement_file import PendingReplacement


def _choose(replacement: PendingReplacement, reason: str) -> RecoveryChoice:
    click.secho(reason, fg="red", err=True)
    if not is_interactive():
        logger.warning("No terminal to ask, recovering")
        return RecoveryChoice.RECOVER
    value = click.prompt(
        "Launch the application as it is now (recover) or stop (exit)?",
        type=click.Choice([choice.value for choice in RecoveryChoice]),
        default=RecoveryChoice.RECOVER.value,
        err=True,
    )
    return RecoveryChoice(value)


def _notify(message: str) -> None:
    click.echo(message, err=True)


@click.command(
    "self-update",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Do not print the completion message.",
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def self_update(quiet: bool, args: tuple[str, ...]) -> None:
    """Finish pending replacements and relaunch.

    \b
    ARGS: LOCK_DIR REPLACEMENT_FILE LAUNCH_COMMAND...
    """
    start_time = time.monotonic()
    if len(args) < 3:
        click.echo(
            "Usage: softpatch self-update LOCK_DIR REPLACEMENT_FILE LAUNCH_COMMAND..."
            f"\nReceived {len(args)} argument(s): {list(args)}",
            err=True,
        )
        sys.exit(EXIT_USAGE)

    lock_dir, replacement_file, *launch_command = args
    updater = SelfUpdater(
        lock_dir,
        replacement_file,
        launch_command,
        max_execution_time=load_max_execution_time(AppInfo().self_updater_config_file),
        chooser=_choose,
        notifier=_notify,
        start_time=start_time,
    )
    exit_code = updater.run()
    logger.info(f"Self-update finished with exit code {exit_code}")
    if exit_code == EXIT_OK and not quiet:
        click.echo("Self-update completed.")
    sys.exit(exit_code)
