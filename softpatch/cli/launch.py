"""
launch subcommand: apply downloaded patches, then start the application.
"""

import sys
from pathlib import Path

import click
from loguru import logger

from softpatch.cli.options import client_option, is_interactive, load_client
from softpatch.controllers.launcher_controller import LauncherController
from softpatch.controllers.self_updater import RecoveryChoice


def _choose_recovery(error: Exception) -> RecoveryChoice:
    click.secho(f"Patching failed: {error}", fg="red", err=True)
    if not is_interactive():
        logger.warning("No terminal to ask, recovering")
        return RecoveryChoice.RECOVER
    if click.confirm(
        "Revert the downloaded patches and launch the current version?",
        default=True,
        err=True,
    ):
        return RecoveryChoice.RECOVER
    return RecoveryChoice.EXIT


@click.command("launch")
@client_option
def launch(client_file: Path) -> None:
    """Apply downloaded patches and launch the application.

    Files held open by the running application are handed over to a
    separate self-update process, which relaunches this command once done.
    """
    client_controller = load_client(client_file)
    logger.info(
        f"Launching {client_file} at version {client_controller.client.version} "
        f"with {len(client_controller.client.patches)} patch(es) queued"
    )
    launcher = LauncherController(client_controller, chooser=_choose_recovery)
    sys.exit(launcher.start())
