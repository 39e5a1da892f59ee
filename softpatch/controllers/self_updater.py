"""
Second-process handoff that finishes replacements the launcher could not do.

The launcher writes the pending-replacement file, spawns this routine as an
independent process and exits. The routine holds the lock folder's global
lock for the whole replacement loop, retries every rename until a deadline
measured from its own start, then relaunches the application.
"""

import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import msgspec
from loguru import logger

from softpatch.utils import patcher
from softpatch.utils.constants import (
    DEFAULT_MAX_EXECUTION_TIME,
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_OK,
    GLOBAL_LOCK_NAME,
    LOCK_RETRY_DELAY,
    MAX_EXECUTION_TIME_ENV,
    RENAME_RETRY_DELAY,
    UPDATER_LOCK_NAME,
)
from softpatch.utils.exception import LaunchFailedError, ReplacementFileError
from softpatch.utils.generic import env_float, launch_process
from softpatch.utils.lock_util import acquire_lock
from softpatch.utils.replacement_file import PendingReplacement, read_replacement_file


class RecoveryChoice(Enum):
    RECOVER = "recover"  # Stop replacing and relaunch what is on disk
    EXIT = "exit"  # Stop without relaunching


class SelfUpdaterConfig(msgspec.Struct):
    max_execution_time: int = int(DEFAULT_MAX_EXECUTION_TIME * 1000)  # ms


def load_max_execution_time(config_file: Optional[Path] = None) -> float:
    """
    Seconds the self-updater may run, measured from its start.

    The environment variable wins over the bundled config resource. Both are
    in milliseconds.
    """
    override = env_float(MAX_EXECUTION_TIME_ENV)
    if override is not None:
        return max(override, 0) / 1000
    if config_file is None or not config_file.is_file():
        return DEFAULT_MAX_EXECUTION_TIME
    try:
        config = msgspec.json.decode(config_file.read_bytes(), type=SelfUpdaterConfig)
    except (OSError, msgspec.MsgspecError) as e:
        logger.warning(f"Ignoring unreadable self-updater config {config_file}: {e}")
        return DEFAULT_MAX_EXECUTION_TIME
    return max(config.max_execution_time, 0) / 1000


Chooser = Callable[[PendingReplacement, str], RecoveryChoice]
Notifier = Callable[[str], None]


class SelfUpdater:
    """
    Performs the deferred renames listed in a pending-replacement file.

    :param lock_dir: the shared lock folder
    :param replacement_file: pending-replacement file written by the launcher
    :param launch_command: command relaunching the application
    :param max_execution_time: seconds from `start_time` before giving up
    :param chooser: asked what to do when a rename keeps failing
    :param notifier: shows operator-visible messages
    :param start_time: monotonic start of the process
    """

    def __init__(
        self,
        lock_dir: Path | str,
        replacement_file: Path | str,
        launch_command: list[str],
        max_execution_time: float = DEFAULT_MAX_EXECUTION_TIME,
        chooser: Optional[Chooser] = None,
        notifier: Optional[Notifier] = None,
        start_time: Optional[float] = None,
        retry_delay: float = RENAME_RETRY_DELAY,
        launcher: Callable[[list[str]], object] = launch_process,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.replacement_file = Path(replacement_file)
        self.launch_command = launch_command
        self.max_execution_time = max_execution_time
        self.chooser = chooser or (lambda replacement, reason: RecoveryChoice.RECOVER)
        self.notifier = notifier or (lambda message: None)
        self.start_time = time.monotonic() if start_time is None else start_time
        self.retry_delay = retry_delay
        self._launcher = launcher

    @property
    def deadline(self) -> float:
        return self.start_time + self.max_execution_time

    def _remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0)

    def _rename_until_deadline(self, source: Path, destination: Path) -> bool:
        while True:
            if patcher.try_rename(source, destination):
                return True
            remaining = self._remaining()
            if remaining <= 0:
                return False
            time.sleep(min(self.retry_delay, remaining))

    def _replace(self, replacement: PendingReplacement) -> Optional[str]:
        """Carry out one triple. Returns the failure reason, None on success."""
        destination = Path(replacement.destination)

        if replacement.destination and not replacement.new_file and not replacement.backup_file:
            try:
                destination.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                return f"Failed to create folder {destination}: {e}"
            return None

        if replacement.backup_file:
            backup = Path(replacement.backup_file)
            if destination.exists() and not backup.exists():
                if not self._rename_until_deadline(destination, backup):
                    return f"Failed to move {destination} to {backup}"
        if replacement.new_file:
            new_file = Path(replacement.new_file)
            if new_file.exists() and not destination.exists():
                if not self._rename_until_deadline(new_file, destination):
                    return f"Failed to move {new_file} to {destination}"
        return None

    def run(self) -> int:
        """
        Run the handoff.

        Returns:
            int: EXIT_OK after relaunching, EXIT_FAILED on contention or an
            unreadable file, EXIT_ABORTED when the operator chose to exit.
        """
        global_lock = acquire_lock(
            self.lock_dir / GLOBAL_LOCK_NAME, self._remaining(), LOCK_RETRY_DELAY
        )
        if global_lock is None:
            logger.error("Global lock unavailable, another update process is running")
            self.notifier("There is another update process running.")
            return EXIT_FAILED

        try:
            probe = acquire_lock(
                self.lock_dir / UPDATER_LOCK_NAME, self._remaining(), LOCK_RETRY_DELAY
            )
            if probe is None:
                logger.error("Updater lock unavailable, a downloader is running")
                self.notifier("There is another update process running.")
                return EXIT_FAILED
            probe.release()

            try:
                replacements = read_replacement_file(self.replacement_file)
            except ReplacementFileError as e:
                logger.error(str(e))
                self.notifier(f"Failed to read the replacement list: {e}")
                return EXIT_FAILED

            logger.info(f"Performing {len(replacements)} pending replacement(s)")
            for replacement in replacements:
                reason = self._replace(replacement)
                if reason is None:
                    continue
                logger.error(reason)
                choice = self.chooser(replacement, reason)
                logger.info(f"Operator chose {choice.name}")
                if choice is RecoveryChoice.RECOVER:
                    break
                return EXIT_ABORTED
        finally:
            global_lock.release()

        self.replacement_file.unlink(missing_ok=True)
        try:
            self._launcher(self.launch_command)
        except LaunchFailedError as e:
            logger.error(str(e))
            self.notifier(f"Failed to relaunch the application: {e}")
            return EXIT_FAILED
        return EXIT_OK
