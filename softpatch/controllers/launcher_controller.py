"""
Launcher flow: apply queued patches under the UPDATER lock, hand off locked
files to the self-updater, then launch the application under an INSTANCE lock.
"""

import atexit
import sys
from pathlib import Path
from typing import Callable, Optional

import click
from loguru import logger

from softpatch.controllers.batch_patcher import (
    BatchPatcher,
    BatchPatcherListener,
    BatchPatchResult,
)
from softpatch.controllers.client_controller import ClientController
from softpatch.controllers.self_updater import RecoveryChoice
from softpatch.models.client import Client
from softpatch.models.patch import Patch
from softpatch.utils.cancellation import CancellationToken
from softpatch.utils.constants import (
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_OK,
    LAUNCH_LOCK_TIMEOUT,
    LOCK_RETRY_DELAY,
    REPLACEMENT_FILE_NAME,
    LaunchAfter,
)
from softpatch.utils.exception import LaunchFailedError, UpdaterError
from softpatch.utils.generic import launch_process
from softpatch.utils.lock_util import LockType, acquire_typed_lock
from softpatch.utils.replacement_file import write_replacement_file

FailureChooser = Callable[[Exception], RecoveryChoice]


class _ClientPatchListener(BatchPatcherListener):
    """Keeps the client state file in step with the batch run."""

    def __init__(self, client_controller: ClientController) -> None:
        self.client_controller = client_controller

    def patch_progress(self, percentage: float, message: str) -> None:
        logger.debug(f"[{percentage:5.1f}%] {message}")

    def patch_finished(self, patch: Patch) -> None:
        self.client_controller.patch_finished(patch)

    def patch_invalid(self, patch: Patch) -> None:
        self.client_controller.patch_invalid(patch)


def self_update_command(storage_path: Path, replacement_file: Path, relaunch: list[str]) -> list[str]:
    """Command spawning the self-updater as an independent process."""
    return [
        sys.executable,
        "-m",
        "softpatch",
        "self-update",
        str(storage_path),
        str(replacement_file),
        *relaunch,
    ]


def relaunch_command(client_file: Path) -> list[str]:
    """Command the self-updater runs once done: this launcher again."""
    return [sys.executable, "-m", "softpatch", "launch", "--client", str(client_file)]


class LauncherController:
    """
    Starts the application, applying queued patches first.

    :param client_controller: client state of the installation
    :param chooser: asked to recover or exit when patching fails
    :param spawner: starts child processes
    """

    def __init__(
        self,
        client_controller: ClientController,
        chooser: Optional[FailureChooser] = None,
        cancel_token: Optional[CancellationToken] = None,
        batch_patcher: Optional[BatchPatcher] = None,
        spawner: Callable[..., object] = launch_process,
    ) -> None:
        self.client_controller = client_controller
        self.chooser = chooser or (lambda error: RecoveryChoice.EXIT)
        self.cancel_token = cancel_token or CancellationToken()
        self.batch_patcher = batch_patcher or BatchPatcher(self.cancel_token)
        self._spawner = spawner

    @property
    def client(self) -> Client:
        return self.client_controller.client

    def start(self) -> int:
        """
        Apply queued patches, then launch.

        Returns:
            int: Exit code for the launcher process.
        """
        storage = self.client_controller.storage_path
        storage.mkdir(parents=True, exist_ok=True)

        if self.client.patches:
            updater_lock = acquire_typed_lock(
                LockType.UPDATER, storage, LAUNCH_LOCK_TIMEOUT, LOCK_RETRY_DELAY
            )
            if updater_lock is None:
                logger.error("Cannot update: another instance or update process is running")
                return EXIT_FAILED
            try:
                try:
                    result = self.apply_patches()
                except (UpdaterError, OSError) as e:
                    logger.opt(exception=e).error("Patching failed")
                    if self.chooser(e) is not RecoveryChoice.RECOVER:
                        return EXIT_ABORTED
                    self.batch_patcher.revert_all(storage, list(self.client.patches))
                    logger.info("Reverted queued patches, launching the current version")
                else:
                    if result.pending.records():
                        return self.hand_off(result)
                    self.client_controller.set_full_pack_only(False)
            finally:
                updater_lock.release()

        return self.launch()

    def apply_patches(self) -> BatchPatchResult:
        """
        Run every queued patch.

        On failure the next catalog fetch is restricted to full packs and the
        error propagates.
        """
        try:
            return self.batch_patcher.apply_all(
                _ClientPatchListener(self.client_controller),
                self.client_controller.install_path,
                self.client_controller.storage_path,
                self.client.version,
                list(self.client.patches),
            )
        except (UpdaterError, OSError):
            self.client_controller.set_full_pack_only(True)
            raise

    def hand_off(self, result: BatchPatchResult) -> int:
        """Write the pending replacements and spawn the self-updater."""
        storage = self.client_controller.storage_path
        replacement_file = storage / REPLACEMENT_FILE_NAME
        count = write_replacement_file(replacement_file, result.pending.records())
        command = self_update_command(
            storage, replacement_file, relaunch_command(self.client_controller.client_file)
        )
        logger.info(f"Handing {count} replacement(s) over to the self-updater")
        try:
            self._spawner(command)
        except LaunchFailedError as e:
            logger.error(f"Failed to start the self-updater: {e}")
            return EXIT_FAILED
        return EXIT_OK

    def launch(self) -> int:
        """
        Launch the application under an INSTANCE lock.

        With `launch_after` "exit" the launcher returns right away, otherwise
        it forwards the application's output and returns its exit code.
        """
        storage = self.client_controller.storage_path
        instance_lock = acquire_typed_lock(
            LockType.INSTANCE, storage, LAUNCH_LOCK_TIMEOUT, LOCK_RETRY_DELAY
        )
        if instance_lock is None:
            logger.error("Cannot launch: an update is in progress")
            return EXIT_FAILED
        atexit.register(instance_lock.release)

        wait = self.client.launch_after is LaunchAfter.WAIT
        try:
            process = self._spawner(
                self.client.launch_commands,
                cwd=str(self.client_controller.install_path),
                detached=not wait,
                capture_output=wait,
            )
        except LaunchFailedError as e:
            logger.error(str(e))
            instance_lock.release()
            return EXIT_FAILED

        if not wait:
            instance_lock.release()
            return EXIT_OK

        stdout = getattr(process, "stdout", None)
        if stdout is not None:
            for line in stdout:
                click.echo(line, nl=False)
        return_code = process.wait()  # type: ignore[attr-defined]
        instance_lock.release()
        logger.info(f"Application exited with {return_code}")
        return return_code
