"""
Applies one patch payload to an installation folder.

A payload is a ZIP archive holding ``patch.json`` (see
`softpatch.models.patch_manifest`) and the new content of every placed file
as ``files/<operation id>``. The archive may be AES-256-CBC encrypted as a
whole.

Applying runs in three stages: new content is staged in the work folder as
``<id>``, then each operation moves files into place (previous content goes
to ``old_<id>``), then the resulting installation is validated. A rename that
fails because the destination is locked does not abort the patch. It is
returned as a `ReplacementRecord` for the self-updater to finish later.

Every state change is appended to a JSON lines action log so an interrupted
run can resume, and so `Patcher.revert` can undo a run in reverse order.
"""

import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import msgspec
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from loguru import logger

from softpatch.models.patch_manifest import (
    FileType,
    FileValidation,
    PatchManifest,
    PatchOperation,
)
from softpatch.models.replacement import (
    OperationType,
    PendingReplacementMap,
    ReplacementRecord,
)
from softpatch.utils.cancellation import CancellationToken
from softpatch.utils.constants import (
    BACKUP_FILE_PATTERN,
    PATCH_FILES_FOLDER,
    PATCH_MANIFEST_NAME,
)
from softpatch.utils.exception import (
    InvalidPatchError,
    PatchApplyError,
    PatchFolderError,
)
from softpatch.utils.generic import sha256_of_file

ProgressCallback = Callable[[float, str], None]

CRYPT_BLOCK_SIZE = 65536
DECRYPTED_PAYLOAD_NAME = "payload.decrypted"
AES_ENCRYPTION_TYPE = "aes-256-cbc"


@dataclass(frozen=True)
class AESKey:
    """AES-256 key and CBC initialization vector."""

    key: bytes
    iv: bytes

    @classmethod
    def from_hex(cls, key_hex: str, iv_hex: str) -> "AESKey":
        try:
            key = bytes.fromhex(key_hex)
            iv = bytes.fromhex(iv_hex)
        except ValueError as e:
            raise InvalidPatchError(f"Encryption key or IV is not hex: {e}") from e
        if len(key) != 32:
            raise InvalidPatchError(f"Expected a 256-bit key, got {len(key) * 8} bits")
        if len(iv) != 16:
            raise InvalidPatchError(f"Expected a 128-bit IV, got {len(iv) * 8} bits")
        return cls(key, iv)


def _crypt_file(
    key: AESKey,
    source: Path,
    destination: Path,
    encrypt: bool,
    progress: Optional[Callable[[float], None]] = None,
) -> None:
    cipher = Cipher(algorithms.AES(key.key), modes.CBC(key.iv))
    if encrypt:
        transform = cipher.encryptor()
        pad = padding.PKCS7(algorithms.AES.block_size).padder()
    else:
        transform = cipher.decryptor()
        pad = padding.PKCS7(algorithms.AES.block_size).unpadder()

    total = max(source.stat().st_size, 1)
    done = 0
    with open(source, "rb") as fin, open(destination, "wb") as fout:
        for block in iter(lambda: fin.read(CRYPT_BLOCK_SIZE), b""):
            done += len(block)
            if encrypt:
                fout.write(transform.update(pad.update(block)))
            else:
                fout.write(pad.update(transform.update(block)))
            if progress is not None:
                progress(min(done / total, 1.0) * 100)
        if encrypt:
            fout.write(transform.update(pad.finalize()) + transform.finalize())
        else:
            fout.write(pad.update(transform.finalize()) + pad.finalize())


def encrypt_file(key: AESKey, source: Path, destination: Path) -> None:
    _crypt_file(key, source, destination, encrypt=True)


def decrypt_file(
    key: AESKey,
    source: Path,
    destination: Path,
    progress: Optional[Callable[[float], None]] = None,
) -> None:
    """
    Decrypt `source` into `destination`.

    Raises:
        PatchApplyError: If the padding is invalid (wrong key or corrupt file).
    """
    try:
        _crypt_file(key, source, destination, encrypt=False, progress=progress)
    except ValueError as e:
        raise PatchApplyError(f"Failed to decrypt {source}: {e}") from e


def try_rename(source: Path, destination: Path) -> bool:
    """
    Rename `source` to `destination`.

    Returns False instead of raising when the OS refuses, e.g. because the
    destination is held open by a running process on Windows.
    """
    try:
        os.rename(source, destination)
    except OSError as e:
        logger.debug(f"Rename {source} -> {destination} failed: {e}")
        return False
    return True


def _remove_path(path: Path) -> bool:
    try:
        if path.is_dir():
            path.rmdir()
        else:
            path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Failed to remove {path}: {e}")
        return False
    return True


class ActionLogEntry(msgspec.Struct, omit_defaults=True):
    """
    One line of the action log.

    action is one of "start", "resume", "done", "failed", "finish".
    """

    action: str
    id: int = 0
    operation: Optional[OperationType] = None
    file_type: Optional[FileType] = None
    destination: str = ""
    new_file: str = ""
    backup_file: str = ""
    created_folder: bool = False
    removed_folder: bool = False


class ActionLog:
    """Append-only JSON lines log of a single patch application."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._encoder = msgspec.json.Encoder()
        self._decoder = msgspec.json.Decoder(ActionLogEntry)

    def read(self) -> list[ActionLogEntry]:
        if not self.path.exists():
            return []
        entries: list[ActionLogEntry] = []
        with open(self.path, "rb") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entries.append(self._decoder.decode(line))
                except msgspec.DecodeError:
                    # A crash can leave a partial last line
                    logger.warning(f"Ignoring unreadable line in {self.path}")
                    break
        return entries

    def append(self, entry: ActionLogEntry) -> None:
        with open(self.path, "ab") as f:
            f.write(self._encoder.encode(entry) + b"\n")
            f.flush()
            os.fsync(f.fileno())


def _record_of(entry: ActionLogEntry) -> ReplacementRecord:
    assert entry.operation is not None
    return ReplacementRecord(
        operation=entry.operation,
        destination=entry.destination,
        new_file=entry.new_file,
        backup_file=entry.backup_file,
    )


class Patcher:
    """
    Applies, reverts and cleans up one patch, keyed by its action log.

    :param log_file: action log path, its folder is the patch's work folder
    :param cancel_token: checked between operations
    """

    def __init__(
        self, log_file: Path | str, cancel_token: Optional[CancellationToken] = None
    ) -> None:
        self.log_file = Path(log_file)
        self.cancel_token = cancel_token or CancellationToken()
        self._log = ActionLog(self.log_file)

    def apply(
        self,
        progress: ProgressCallback,
        patch_file: Path | str,
        install_dir: Path | str,
        work_dir: Path | str,
        key: Optional[AESKey] = None,
        pending: Optional[PendingReplacementMap] = None,
    ) -> list[ReplacementRecord]:
        """
        Apply the payload at `patch_file` to `install_dir`.

        Args:
            progress: Receives 0-100 and a message, non-decreasing.
            patch_file: Payload archive, possibly encrypted.
            install_dir: Installation folder.
            work_dir: Folder for staged and backed up files.
            key: Decryption key when the payload is encrypted.
            pending: Destinations still pending from earlier patches. Operations
                and validations on those destinations act on the pending content.

        Returns:
            list[ReplacementRecord]: Operations that could not be completed.

        Raises:
            PatchFolderError: If a folder is missing.
            PatchApplyError: If the payload is unreadable or the installation
                is not in the expected state.
            OperationCancelledError: If cancelled between operations.
        """
        patch_file = Path(patch_file)
        install_dir = Path(install_dir)
        work_dir = Path(work_dir)
        if not patch_file.is_file():
            raise PatchApplyError(f"Patch file not found: {patch_file}")
        if not install_dir.is_dir():
            raise PatchFolderError(f"Installation folder not found: {install_dir}")
        if not work_dir.is_dir():
            raise PatchFolderError(f"Work folder not found: {work_dir}")
        pending = pending if pending is not None else PendingReplacementMap()

        entries = self._log.read()
        if any(entry.action == "finish" for entry in entries):
            logger.info(f"Patch already applied according to {self.log_file}")
            progress(100, "Finished.")
            return []
        done_ids = {entry.id for entry in entries if entry.action == "done"}
        # Deferred to the self-updater by an earlier run
        deferred_ids = {
            entry.id for entry in entries if entry.action == "failed"
        } - done_ids

        decrypt_weight, prepare_weight, update_weight, validate_weight = (
            (25.0, 5.0, 50.0, 20.0) if key is not None else (0.0, 5.0, 65.0, 30.0)
        )
        base = 0.0

        payload = patch_file
        if key is not None:
            payload = work_dir / DECRYPTED_PAYLOAD_NAME
            decrypt_file(
                key,
                patch_file,
                payload,
                lambda pct: progress(pct / 100 * decrypt_weight, "Decrypting patch ..."),
            )
        base += decrypt_weight

        progress(base, "Preparing new patch ...")
        try:
            with zipfile.ZipFile(payload) as archive:
                manifest = msgspec.json.decode(
                    archive.read(PATCH_MANIFEST_NAME), type=PatchManifest
                )
                for operation in manifest.operations:
                    if operation.places_file and operation.id not in done_ids | deferred_ids:
                        self._stage(archive, operation, work_dir)
        except (zipfile.BadZipFile, KeyError, msgspec.MsgspecError) as e:
            raise PatchApplyError(f"Unreadable patch payload {patch_file}: {e}") from e
        finally:
            if payload != patch_file:
                payload.unlink(missing_ok=True)

        self._log.append(ActionLogEntry(action="resume" if entries else "start"))
        base += prepare_weight
        progress(base, "Updating ...")

        failed: list[ReplacementRecord] = []
        step = update_weight / max(len(manifest.operations), 1)
        for index, operation in enumerate(manifest.operations):
            if operation.id not in done_ids:
                self.cancel_token.check()
                record = self._run_operation(
                    operation, install_dir, work_dir, pending, operation.id in deferred_ids
                )
                if record is not None:
                    failed.append(record)
            progress(base + (index + 1) * step, "Updating ...")
        base += update_weight

        if deferred_ids and not failed:
            # Later patches of the chain may have superseded the handed off content
            logger.info(f"Skipping validation of handed off patch {patch_file.name}")
            self._log.append(ActionLogEntry(action="finish"))
        elif not failed:
            progress(base, "Validating files ...")
            step = validate_weight / max(len(manifest.validations), 1)
            for index, validation in enumerate(manifest.validations):
                self._validate(validation, install_dir, pending)
                progress(base + (index + 1) * step, "Validating files ...")
            self._log.append(ActionLogEntry(action="finish"))
        else:
            logger.info(f"{len(failed)} replacement(s) pending after {patch_file.name}")

        progress(100, "Finished.")
        return failed

    def _stage(
        self, archive: zipfile.ZipFile, operation: PatchOperation, work_dir: Path
    ) -> None:
        staged = work_dir / str(operation.id)
        if (
            staged.is_file()
            and operation.new_checksum is not None
            and sha256_of_file(staged) == operation.new_checksum
        ):
            return
        with archive.open(f"{PATCH_FILES_FOLDER}/{operation.id}") as src, open(
            staged, "wb"
        ) as dst:
            shutil.copyfileobj(src, dst)
        if (
            operation.new_checksum is not None
            and sha256_of_file(staged) != operation.new_checksum
        ):
            raise PatchApplyError(f"Staged content of operation {operation.id} is corrupt")

    def _check_old(self, operation: PatchOperation, destination: Path) -> None:
        if not destination.is_file():
            raise PatchApplyError(f"File to update is missing: {destination}")
        if operation.old_checksum is None:
            return
        if (
            destination.stat().st_size != operation.old_length
            or sha256_of_file(destination) != operation.old_checksum
        ):
            raise PatchApplyError(f"File to update has unexpected content: {destination}")

    def _is_new_content(self, operation: PatchOperation, path: Path) -> bool:
        return (
            path.is_file()
            and operation.new_checksum is not None
            and sha256_of_file(path) == operation.new_checksum
        )

    def _run_operation(
        self,
        operation: PatchOperation,
        install_dir: Path,
        work_dir: Path,
        pending: PendingReplacementMap,
        deferred: bool = False,
    ) -> Optional[ReplacementRecord]:
        destination = Path(pending.resolve(str(install_dir / operation.path)))
        staged = work_dir / str(operation.id)
        backup = work_dir / f"old_{operation.id}"

        entry = ActionLogEntry(
            action="done",
            id=operation.id,
            operation=operation.type,
            file_type=operation.file_type,
            destination=str(destination),
        )

        if operation.file_type is FileType.FOLDER:
            match operation.type:
                case OperationType.REMOVE:
                    if destination.is_dir():
                        if any(destination.iterdir()):
                            logger.debug(f"Folder not empty, kept: {destination}")
                        elif _remove_path(destination):
                            entry.removed_folder = True
                case _:
                    if destination.is_file():
                        raise PatchApplyError(f"Expected a folder, found a file: {destination}")
                    if not destination.is_dir():
                        try:
                            destination.mkdir(parents=True)
                        except OSError as e:
                            logger.debug(f"Failed to create folder {destination}: {e}")
                            entry.action = "failed"
                        else:
                            entry.created_folder = True
            self._log.append(entry)
            return _record_of(entry) if entry.action == "failed" else None

        if deferred and operation.places_file and not staged.exists():
            # Moved into place by the self-updater
            entry.new_file = str(staged)
            if operation.type is not OperationType.NEW:
                entry.backup_file = str(backup)
            self._log.append(entry)
            return None

        match operation.type:
            case OperationType.REMOVE:
                entry.backup_file = str(backup)
                if destination.exists() and not backup.exists():
                    if not try_rename(destination, backup):
                        entry.action = "failed"
            case OperationType.NEW:
                entry.new_file = str(staged)
                if destination.is_dir():
                    raise PatchApplyError(f"Expected a file, found a folder: {destination}")
                if not destination.exists():
                    destination.parent.mkdir(parents=True, exist_ok=True)
                    if not try_rename(staged, destination):
                        entry.action = "failed"
                elif not self._is_new_content(operation, destination):
                    raise PatchApplyError(f"File to create already exists: {destination}")
            case OperationType.REPLACE | OperationType.PATCH | OperationType.FORCE:
                entry.new_file = str(staged)
                entry.backup_file = str(backup)
                if destination.is_dir():
                    raise PatchApplyError(f"Expected a file, found a folder: {destination}")
                if backup.exists() and self._is_new_content(operation, destination):
                    # Interrupted after both renames
                    pass
                elif backup.exists() and not destination.exists():
                    # Interrupted between the two renames
                    if not try_rename(staged, destination):
                        entry.action = "failed"
                else:
                    if destination.exists() and operation.type is not OperationType.FORCE:
                        self._check_old(operation, destination)
                    elif not destination.exists() and operation.type is not OperationType.FORCE:
                        raise PatchApplyError(f"File to update is missing: {destination}")
                    if destination.exists() and not try_rename(destination, backup):
                        entry.action = "failed"
                    else:
                        destination.parent.mkdir(parents=True, exist_ok=True)
                        if not try_rename(staged, destination):
                            entry.action = "failed"

        self._log.append(entry)
        if entry.action == "failed":
            logger.info(f"Destination locked, replacement deferred: {destination}")
            return _record_of(entry)
        return None

    def _validate(
        self,
        validation: FileValidation,
        install_dir: Path,
        pending: PendingReplacementMap,
    ) -> None:
        path = Path(pending.resolve(str(install_dir / validation.path)))
        if validation.file_type is FileType.FOLDER:
            if not path.is_dir():
                raise PatchApplyError(f"Folder missed: {path}")
            return
        if not path.is_file():
            raise PatchApplyError(f"File missed: {path}")
        if path.stat().st_size != validation.length:
            raise PatchApplyError(
                f"File length not matched, file: {path}, expected: "
                f"{validation.length}, found: {path.stat().st_size}"
            )
        if sha256_of_file(path) != validation.checksum:
            raise PatchApplyError(f"File checksum incorrect: {path}")

    def revert(self) -> None:
        """
        Undo every logged operation, most recent first.

        Raises:
            PatchApplyError: If a file cannot be moved back.
        """
        entries = [
            entry
            for entry in self._log.read()
            if entry.action in ("done", "failed") and entry.destination
        ]
        for entry in reversed(entries):
            destination = Path(entry.destination)
            if entry.created_folder:
                if destination.is_dir() and not any(destination.iterdir()):
                    _remove_path(destination)
                continue
            if entry.removed_folder:
                destination.mkdir(parents=True, exist_ok=True)
                continue
            if entry.file_type is FileType.FOLDER:
                continue

            new_file = Path(entry.new_file) if entry.new_file else None
            backup_file = Path(entry.backup_file) if entry.backup_file else None
            if destination.exists() and (new_file is None or not new_file.exists()):
                if new_file is None:
                    if backup_file is not None and backup_file.exists():
                        _remove_path(destination)
                elif not try_rename(destination, new_file):
                    raise PatchApplyError(f"Failed to revert {destination}")
            if (
                not destination.exists()
                and backup_file is not None
                and backup_file.exists()
            ):
                if not try_rename(backup_file, destination):
                    raise PatchApplyError(f"Failed to restore {destination}")
        self.log_file.unlink(missing_ok=True)
        logger.info(f"Reverted patch logged in {self.log_file}")

    def clear_backup(self) -> None:
        """Delete the ``old_<id>`` backups left in the work folder."""
        work_dir = self.log_file.parent
        if not work_dir.is_dir():
            return
        for path in work_dir.iterdir():
            if BACKUP_FILE_PATTERN.match(path.name) and path.is_file():
                path.unlink(missing_ok=True)
