"""
Catalog fetch, patch chain selection and patch downloads.
"""

import io
import time
from pathlib import Path
from typing import Optional

import msgspec
import requests
from loguru import logger

from softpatch.controllers.batch_patcher import patch_file_path
from softpatch.models.download_state import DownloadPatchesResult, DownloadResult
from softpatch.models.patch import Catalog, Patch
from softpatch.utils.cancellation import CancellationToken
from softpatch.utils.constants import PROGRESS_UPDATE_INTERVAL
from softpatch.utils.download_progress import DownloadProgressUtil
from softpatch.utils.generic import (
    compare_version,
    format_file_size,
    format_remaining_time,
)
from softpatch.utils.http_downloader import DownloadProgressListener, HTTPDownloader


def calculate_total_length(patches: list[Patch]) -> int:
    return sum(max(patch.download_length, 0) for patch in patches)


def get_suitable_patches(
    all_patches: list[Patch], from_version: str, accept_only_full_pack: bool = False
) -> list[Patch]:
    """
    Choose the patch chain that upgrades `from_version` to the highest
    reachable version.

    Ties on the reached version go to the smaller total download size,
    then to the chain with fewer patches.

    Args:
        all_patches: Every patch in the catalog.
        from_version: Version to start from.
        accept_only_full_pack: Ignore patches whose type is not "full".

    Returns:
        list[Patch]: The chain in application order, empty if nothing applies.
    """
    best: list[Patch] = []
    max_version = from_version
    for patch in all_patches:
        if accept_only_full_pack and not patch.is_full_pack:
            continue
        if patch.version_from is not None:
            if patch.version_from != from_version:
                continue
        elif not patch.upgrades(from_version):
            continue

        chain = [patch] + get_suitable_patches(
            all_patches, patch.version_to, accept_only_full_pack
        )
        reached = chain[-1].version_to
        comparison = compare_version(reached, max_version)
        if comparison > 0:
            max_version = reached
            best = chain
        elif comparison == 0 and best:
            chain_cost = calculate_total_length(chain)
            best_cost = calculate_total_length(best)
            if chain_cost < best_cost or (
                chain_cost == best_cost and len(chain) < len(best)
            ):
                best = chain
    return best


class DownloadPatchesListener:
    """Callbacks of `PatchDownloader.download_patches`."""

    def download_patches_progress(self, percentage: float) -> None:
        pass

    def download_patches_message(self, message: str) -> None:
        pass

    def patch_downloaded(self, patch: Patch) -> None:
        """
        Persist a downloaded patch.

        Raise `ClientStateError` or any other OSError to stop with
        SAVE_TO_CLIENT_SCRIPT_FAIL.
        """


class _AggregateProgress(DownloadProgressListener):
    """Turns per-patch byte callbacks into overall progress over every patch."""

    def __init__(
        self,
        listener: DownloadPatchesListener,
        progress: DownloadProgressUtil,
        retries_remaining: list[int],
    ) -> None:
        self.listener = listener
        self.progress = progress
        self.retries_remaining = retries_remaining
        self.completed_size = 0
        self.patch_downloaded_size = 0
        self.unreported = 0
        self.last_refresh = 0.0

    def start_patch(self) -> None:
        self.patch_downloaded_size = 0
        self.unreported = 0

    def finish_patch(self, length: int) -> None:
        self.completed_size += length
        self.patch_downloaded_size = 0

    def _percentage(self) -> float:
        total = self.progress.total_size
        if total <= 0:
            return 0.0
        return min((self.completed_size + self.patch_downloaded_size) * 100 / total, 100)

    def byte_start(self, pos: int) -> None:
        self.patch_downloaded_size = pos
        self.progress.downloaded_size = self.completed_size + pos
        self.listener.download_patches_progress(self._percentage())

    def byte_downloaded(self, num_bytes: int) -> None:
        self.unreported += num_bytes
        now = time.monotonic()
        if now - self.last_refresh <= PROGRESS_UPDATE_INTERVAL:
            return
        self.last_refresh = now
        self.flush()
        # Downloading: 1.6 MB / 240.0 MB, 2.6 MB/s, 1m 32s remaining
        self.listener.download_patches_message(
            f"Downloading: {format_file_size(self.completed_size + self.patch_downloaded_size)}"
            f" / {format_file_size(self.progress.total_size)}, "
            f"{format_file_size(int(self.progress.speed))}/s, "
            f"{format_remaining_time(self.progress.time_remaining)} remaining"
        )

    def flush(self) -> None:
        self.patch_downloaded_size += self.unreported
        self.progress.feed(self.unreported)
        self.unreported = 0
        self.listener.download_patches_progress(self._percentage())

    def download_retry(self, result: DownloadResult) -> None:
        self.retries_remaining[0] -= 1
        logger.info(f"Retrying patch download after {result.name}")
        self.last_refresh = time.monotonic()
        self.progress.feed(self.unreported)
        self.unreported = 0
        self.byte_start(0)


class PatchDownloader:
    """
    Downloads patch payloads and the catalog.

    :param cancel_token: pause and cancel signal for the transfers
    :param session: requests session shared by every transfer
    """

    def __init__(
        self,
        cancel_token: Optional[CancellationToken] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.cancel_token = cancel_token or CancellationToken()
        self.session = session or requests.Session()

    def fetch_catalog(
        self, url: str, last_updated: int = -1, retry_times: int = 0, retry_delay: float = 0.0
    ) -> Optional[Catalog]:
        """
        Fetch the JSON catalog at `url`.

        Args:
            url: Catalog location.
            last_updated: Epoch ms of the previous fetch, -1 to fetch unconditionally.

        Returns:
            The catalog, or None if it was not modified since `last_updated`.

        Raises:
            requests.RequestException: If the catalog could not be downloaded.
            msgspec.ValidationError: If the catalog is malformed.
        """
        buffer = io.BytesIO()
        downloader = HTTPDownloader(
            output_to=buffer,
            if_modified_since=last_updated,
            cancel_token=self.cancel_token,
            session=self.session,
        )
        result = downloader.download(
            None, url, retry_times=retry_times, retry_delay=retry_delay
        )
        if result is DownloadResult.FILE_NOT_MODIFIED:
            logger.info(f"Catalog not modified since {last_updated}")
            return None
        if result is not DownloadResult.SUCCEED:
            raise requests.RequestException(f"Failed to fetch catalog {url}: {result.name}")
        try:
            return msgspec.json.decode(buffer.getvalue(), type=Catalog)
        except msgspec.MsgspecError:
            logger.error(f"Malformed catalog at {url}")
            raise

    def download_patches(
        self,
        listener: DownloadPatchesListener,
        patches: list[Patch],
        storage_path: Path | str,
        retry_times: int,
        retry_delay: float,
    ) -> DownloadPatchesResult:
        """
        Download every patch to ``<storage_path>/<id>.patch``.

        The retry budget is shared by all patches. `listener.patch_downloaded`
        runs after each patch so it can be queued in the client state.
        """
        if not patches:
            return DownloadPatchesResult.COMPLETED

        storage_path = Path(storage_path)
        listener.download_patches_progress(0)
        listener.download_patches_message("Getting patches ...")

        progress = DownloadProgressUtil()
        progress.total_size = calculate_total_length(patches)
        retries_remaining = [retry_times]
        aggregate = _AggregateProgress(listener, progress, retries_remaining)

        for patch in patches:
            if patch.download_length <= 0 or not patch.download_checksum:
                logger.error(f"Patch {patch.id} has no download length or checksum")
                return DownloadPatchesResult.ERROR
            aggregate.start_patch()
            downloader = HTTPDownloader(
                resume_file=patch_file_path(storage_path, patch),
                cancel_token=self.cancel_token,
                session=self.session,
            )
            result = downloader.download(
                aggregate,
                patch.download_url,
                patch.download_checksum,
                patch.download_length,
                max(retries_remaining[0], 0),
                retry_delay,
            )
            if result is DownloadResult.INTERRUPTED:
                return DownloadPatchesResult.DOWNLOAD_INTERRUPTED
            if result is not DownloadResult.SUCCEED:
                logger.error(f"Failed to download patch {patch.id}: {result.name}")
                return DownloadPatchesResult.ERROR
            aggregate.flush()
            aggregate.finish_patch(patch.download_length)

            try:
                listener.patch_downloaded(patch)
            except OSError as e:
                logger.warning(f"Failed to queue patch {patch.id}: {e}")
                return DownloadPatchesResult.SAVE_TO_CLIENT_SCRIPT_FAIL

        listener.download_patches_progress(100)
        listener.download_patches_message("Finished")
        return DownloadPatchesResult.COMPLETED
