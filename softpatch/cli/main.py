"""
Main CLI entry point for SoftPatch.

This module defines the Click command group and registers all subcommands.
"""

import click

from softpatch.cli.build_patch import build_patch
from softpatch.cli.download import download
from softpatch.cli.launch import launch
from softpatch.cli.self_update import self_update
from softpatch.utils.app_info import AppInfo


@click.group()
@click.version_option(version=AppInfo().app_version, prog_name="SoftPatch")
def cli() -> None:
    """SoftPatch - self-updating launcher

    Downloads patch chains, applies them to an installation and launches the
    application, handing locked files over to a second process.
    """
    pass


# Register subcommands
cli.add_command(launch)
cli.add_command(download)
cli.add_command(self_update)
cli.add_command(build_patch)


if __name__ == "__main__":
    cli()
