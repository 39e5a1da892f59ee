"""
Applies an ordered chain of patches to an installation.

The caller must hold the UPDATER lock. Each patch gets an equal share of the
0-100 progress range. Replacements a patch could not complete are merged into
one `PendingReplacementMap` that spans the whole chain, so a later patch acts
on the staged content an earlier patch could not move into place.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from softpatch.models.patch import Patch
from softpatch.models.replacement import PendingReplacementMap, ReplacementRecord
from softpatch.utils.cancellation import CancellationToken
from softpatch.utils.constants import ACTION_LOG_NAME, PATCH_FILE_SUFFIX
from softpatch.utils.exception import PatchFolderError, PatchPayloadNotFoundError
from softpatch.utils.patcher import AESKey, Patcher

PatcherFactory = Callable[[Path, CancellationToken], Patcher]


class BatchPatcherListener:
    """Callbacks of a batch run. Exceptions raised here abort the run."""

    def patch_progress(self, percentage: float, message: str) -> None:
        pass

    def patch_finished(self, patch: Patch) -> None:
        pass

    def patch_invalid(self, patch: Patch) -> None:
        pass


@dataclass
class BatchPatchResult:
    """
    Outcome of a batch run.

    :param replacements: unresolved operations of the final patch, empty if it was skipped
    :param pending: every unresolved destination across the chain
    :param current_version: version reached by the chain
    :param all_resolved: False once any patch left a replacement unresolved
    """

    replacements: list[ReplacementRecord]
    pending: PendingReplacementMap
    current_version: str
    all_resolved: bool
    finished: list[Patch] = field(default_factory=list)
    invalid: list[Patch] = field(default_factory=list)


def patch_file_path(work_dir: Path, patch: Patch) -> Path:
    return work_dir / f"{patch.id}{PATCH_FILE_SUFFIX}"


def action_log_path(work_dir: Path, patch: Patch) -> Path:
    return work_dir / str(patch.id) / ACTION_LOG_NAME


class BatchPatcher:
    """
    Runs the patch chain.

    :param cancel_token: checked before each patch and passed to each patch step
    :param patcher_factory: builds the patch-apply collaborator from an action log path
    """

    def __init__(
        self,
        cancel_token: Optional[CancellationToken] = None,
        patcher_factory: PatcherFactory = Patcher,
    ) -> None:
        self.cancel_token = cancel_token or CancellationToken()
        self._patcher_factory = patcher_factory

    def apply_all(
        self,
        listener: BatchPatcherListener,
        install_dir: Path | str,
        work_dir: Path | str,
        current_version: str,
        patches: list[Patch],
    ) -> BatchPatchResult:
        """
        Apply `patches` in the given order.

        Args:
            listener: Progress, finished and invalid callbacks.
            install_dir: Installation folder.
            work_dir: Holds the ``<id>.patch`` payloads and a work folder per patch.
            current_version: Version the installation is at.
            patches: Patches to attempt, not re-sorted.

        Returns:
            BatchPatchResult: Pending replacements and the reached version.

        Raises:
            PatchFolderError: If a folder is missing or cannot be created.
            PatchPayloadNotFoundError: If a patch payload is missing.
            OperationCancelledError: If cancelled between patches.
        """
        install_dir = Path(install_dir)
        work_dir = Path(work_dir)
        if not install_dir.is_dir():
            raise PatchFolderError(f"Installation folder not found: {install_dir}")
        if not work_dir.is_dir():
            raise PatchFolderError(f"Work folder not found: {work_dir}")

        listener.patch_progress(0, "Starting ...")

        result = BatchPatchResult(
            replacements=[],
            pending=PendingReplacementMap(),
            current_version=current_version,
            all_resolved=True,
        )
        step = 100 / len(patches) if patches else 100

        for index, patch in enumerate(patches):
            self.cancel_token.check()
            base = index * step
            result.replacements = []

            if not patch.applies_to(result.current_version):
                logger.info(
                    f"Patch {patch.id} does not apply to version "
                    f"{result.current_version}, skipped"
                )
                result.invalid.append(patch)
                listener.patch_invalid(patch)
                continue

            patch_work_dir = work_dir / str(patch.id)
            try:
                patch_work_dir.mkdir(exist_ok=True)
            except OSError as e:
                raise PatchFolderError(
                    f"Failed to create work folder {patch_work_dir}: {e}"
                ) from e

            key = None
            if patch.download_encryption_key and patch.download_encryption_iv:
                key = AESKey.from_hex(
                    patch.download_encryption_key, patch.download_encryption_iv
                )

            patch_file = patch_file_path(work_dir, patch)
            if not patch_file.is_file():
                result.invalid.append(patch)
                listener.patch_invalid(patch)
                raise PatchPayloadNotFoundError(f"Patch file not found: {patch_file}")

            logger.info(
                f"Applying patch {patch.id} ({result.current_version} -> {patch.version_to})"
            )
            patcher = self._patcher_factory(
                action_log_path(work_dir, patch), self.cancel_token
            )

            def forward_progress(
                percentage: float, message: str, base: float = base
            ) -> None:
                listener.patch_progress(
                    min(base + percentage / 100 * step, 100), message
                )

            records = patcher.apply(
                forward_progress, patch_file, install_dir, patch_work_dir, key, result.pending
            )
            for record in records:
                result.pending.merge(record)
            if records:
                result.all_resolved = False

            result.current_version = patch.version_to
            result.replacements = records

            if result.all_resolved:
                result.finished.append(patch)
                listener.patch_finished(patch)
                patcher.clear_backup()
                patch_file.unlink(missing_ok=True)

        listener.patch_progress(100, "Finished.")
        if not result.all_resolved:
            logger.info(
                f"{len(result.pending.records())} replacement(s) left for the self-updater"
            )
        return result

    def revert_all(self, work_dir: Path | str, patches: list[Patch]) -> None:
        """Revert `patches` most recent first, using their action logs."""
        work_dir = Path(work_dir)
        for patch in reversed(patches):
            log_file = action_log_path(work_dir, patch)
            if not log_file.exists():
                continue
            logger.info(f"Reverting patch {patch.id}")
            self._patcher_factory(log_file, self.cancel_token).revert()
