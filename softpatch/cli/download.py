"""
download subcommand: fetch the catalog and download the patches that upgrade
the installation.
"""

import sys
import time
from pathlib import Path

import click
import msgspec
import requests
from loguru import logger

from softpatch.cli.options import client_option, load_client
from softpatch.controllers.client_controller import ClientController
from softpatch.controllers.download_controller import (
    DownloadPatchesListener,
    PatchDownloader,
    calculate_total_length,
    get_suitable_patches,
)
from softpatch.models.download_state import DownloadPatchesResult
from softpatch.models.patch import Patch
from softpatch.utils.constants import (
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_OK,
    LAUNCH_LOCK_TIMEOUT,
    LOCK_RETRY_DELAY,
)
from softpatch.utils.exception import InvalidPatchError
from softpatch.utils.generic import format_file_size
from softpatch.utils.lock_util import LockType, acquire_typed_lock


class _ConsoleListener(DownloadPatchesListener):
    def __init__(self, client_controller: ClientController, quiet: bool) -> None:
        self.client_controller = client_controller
        self.quiet = quiet

    def download_patches_message(self, message: str) -> None:
        if not self.quiet:
            click.echo(message, err=True)

    def patch_downloaded(self, patch: Patch) -> None:
        self.client_controller.add_patch(patch)


_EXIT_CODES = {
    DownloadPatchesResult.COMPLETED: EXIT_OK,
    DownloadPatchesResult.DOWNLOAD_INTERRUPTED: EXIT_ABORTED,
}


@click.command("download")
@client_option
@click.option(
    "--retry-times",
    type=click.IntRange(min=0),
    default=3,
    show_default=True,
    help="Retries shared by every patch download.",
)
@click.option(
    "--retry-delay",
    type=click.FloatRange(min=0),
    default=1.0,
    show_default=True,
    help="Seconds to wait before each retry.",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress progress output (errors still shown).",
)
def download(client_file: Path, retry_times: int, retry_delay: float, quiet: bool) -> None:
    """Download the patches that upgrade the installation.

    The catalog is fetched conditionally, so an unchanged catalog costs one
    request. Downloaded patches are queued in the client state and applied
    by the next launch.
    """
    client_controller = load_client(client_file)
    client = client_controller.client
    if not client.catalog_url:
        click.secho("Error: the client state has no catalog_url.", fg="red", err=True)
        sys.exit(EXIT_FAILED)

    storage = client_controller.storage_path
    storage.mkdir(parents=True, exist_ok=True)
    downloader_lock = acquire_typed_lock(
        LockType.DOWNLOADER, storage, LAUNCH_LOCK_TIMEOUT, LOCK_RETRY_DELAY
    )
    if downloader_lock is None:
        logger.warning(f"Download skipped: {DownloadPatchesResult.ACQUIRE_LOCK_FAILED.name}")
        click.secho(
            "Error: another download or update is running.", fg="red", err=True
        )
        sys.exit(EXIT_FAILED)

    with downloader_lock:
        exit_code = _download(client_controller, retry_times, retry_delay, quiet)
    sys.exit(exit_code)


def _download(
    client_controller: ClientController, retry_times: int, retry_delay: float, quiet: bool
) -> int:
    client = client_controller.client
    downloader = PatchDownloader()
    fetched_at = int(time.time() * 1000)
    try:
        catalog = downloader.fetch_catalog(
            client.catalog_url, client.catalog_last_updated, retry_times, retry_delay
        )
    except (requests.RequestException, msgspec.MsgspecError, InvalidPatchError) as e:
        logger.error(f"Catalog fetch failed: {e}")
        click.secho(f"Error: failed to fetch the catalog: {e}", fg="red", err=True)
        return EXIT_FAILED
    if catalog is None:
        if not quiet:
            click.echo("No new patches.")
        return EXIT_OK

    patches = get_suitable_patches(
        catalog.patches, client.target_version, client.catalog_full_pack_only
    )
    if patches:
        logger.info(
            f"Downloading {len(patches)} patch(es) from {client.target_version} to "
            f"{patches[-1].version_to}, {format_file_size(calculate_total_length(patches))}"
        )
    result = downloader.download_patches(
        _ConsoleListener(client_controller, quiet),
        patches,
        client_controller.storage_path,
        retry_times,
        retry_delay,
    )
    logger.info(f"Download finished: {result.name}")
    if result is not DownloadPatchesResult.COMPLETED:
        click.secho(f"Error: download failed ({result.name}).", fg="red", err=True)
        return _EXIT_CODES.get(result, EXIT_FAILED)

    # Only a complete download moves the conditional-fetch marker forward
    client.catalog_last_updated = fetched_at
    client_controller.save()
    if not quiet:
        if patches:
            click.echo(f"Downloaded {len(patches)} patch(es), up to {patches[-1].version_to}.")
        else:
            click.echo("No new patches.")
    return EXIT_OK
