"""
Builds patch payloads by comparing two installation folders.
"""

import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import msgspec
from loguru import logger

from softpatch.models.patch_manifest import (
    FileType,
    FileValidation,
    PatchManifest,
    PatchOperation,
)
from softpatch.models.replacement import OperationType
from softpatch.utils.constants import PATCH_FILES_FOLDER, PATCH_MANIFEST_NAME
from softpatch.utils.generic import sha256_of_file
from softpatch.utils.patcher import AESKey, encrypt_file


@dataclass(frozen=True)
class BuiltPatch:
    """Download descriptor fields of a freshly built payload."""

    path: Path
    checksum: str
    length: int
    operation_count: int


def _scan(root: Optional[Path]) -> dict[str, FileType]:
    if root is None:
        return {}
    entries: dict[str, FileType] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        entries[relative] = FileType.FOLDER if path.is_dir() else FileType.FILE
    return entries


def _depth(relative: str) -> int:
    return relative.count("/")


def build_patch(
    old_dir: Optional[Path | str],
    new_dir: Path | str,
    output: Path | str,
    version_from: Optional[str] = None,
    version_to: Optional[str] = None,
    key: Optional[AESKey] = None,
) -> BuiltPatch:
    """
    Write a payload to `output` that turns `old_dir` into `new_dir`.

    Without `old_dir` the payload is a full pack: every file and folder of
    `new_dir` is written with FORCE and nothing is removed.

    Args:
        old_dir: Installation at the source version, None for a full pack.
        new_dir: Installation at the target version.
        output: Payload file to write.
        version_from: Recorded in the manifest only.
        version_to: Recorded in the manifest only.
        key: Encrypt the payload with this key.

    Returns:
        BuiltPatch: sha256 and length of the written payload.
    """
    old_root = Path(old_dir) if old_dir is not None else None
    new_root = Path(new_dir)
    output = Path(output)
    old_entries = _scan(old_root)
    new_entries = _scan(new_root)
    full_pack = old_root is None

    removals: list[tuple[str, FileType]] = []
    for relative, file_type in old_entries.items():
        if new_entries.get(relative) != file_type:
            removals.append((relative, file_type))
    # Files first, then folders deepest first so they are empty when removed
    removals.sort(
        key=lambda item: (item[1] is FileType.FOLDER, -_depth(item[0]), item[0])
    )

    additions: list[tuple[str, FileType, OperationType]] = []
    for relative, file_type in new_entries.items():
        old_type = old_entries.get(relative)
        if full_pack:
            additions.append((relative, file_type, OperationType.FORCE))
        elif old_type != file_type:
            additions.append((relative, file_type, OperationType.NEW))
        elif file_type is FileType.FILE and sha256_of_file(
            old_root / relative  # type: ignore[operator]
        ) != sha256_of_file(new_root / relative):
            additions.append((relative, file_type, OperationType.REPLACE))
    # Folders shallow first, then files
    additions.sort(
        key=lambda item: (item[1] is FileType.FILE, _depth(item[0]), item[0])
    )

    operations: list[PatchOperation] = []
    for relative, file_type in removals:
        operations.append(
            PatchOperation(
                id=len(operations) + 1,
                type=OperationType.REMOVE,
                file_type=file_type,
                path=relative,
            )
        )
    for relative, file_type, operation_type in additions:
        operation = PatchOperation(
            id=len(operations) + 1,
            type=operation_type,
            file_type=file_type,
            path=relative,
        )
        if file_type is FileType.FILE:
            new_file = new_root / relative
            operation.new_length = new_file.stat().st_size
            operation.new_checksum = sha256_of_file(new_file)
            if operation_type is OperationType.REPLACE:
                old_file = old_root / relative  # type: ignore[operator]
                operation.old_length = old_file.stat().st_size
                operation.old_checksum = sha256_of_file(old_file)
        operations.append(operation)

    validations = []
    for relative, file_type in new_entries.items():
        if file_type is FileType.FOLDER:
            validations.append(FileValidation(path=relative, file_type=file_type))
        else:
            path = new_root / relative
            validations.append(
                FileValidation(
                    path=relative,
                    file_type=file_type,
                    length=path.stat().st_size,
                    checksum=sha256_of_file(path),
                )
            )

    manifest = PatchManifest(
        version_from=version_from,
        version_to=version_to,
        operations=operations,
        validations=validations,
    )

    output.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory() as scratch:
        archive_path = Path(scratch) / "payload.zip" if key is not None else output
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(PATCH_MANIFEST_NAME, msgspec.json.encode(manifest))
            for operation in operations:
                if operation.places_file:
                    archive.write(
                        new_root / operation.path,
                        f"{PATCH_FILES_FOLDER}/{operation.id}",
                    )
        if key is not None:
            encrypt_file(key, archive_path, output)

    digest = sha256_of_file(output)
    logger.info(
        f"Built patch {output} with {len(operations)} operation(s), "
        f"{output.stat().st_size} bytes"
    )
    return BuiltPatch(
        path=output,
        checksum=digest,
        length=output.stat().st_size,
        operation_count=len(operations),
    )
