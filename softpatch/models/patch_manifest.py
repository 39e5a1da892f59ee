"""
Manifest stored as ``patch.json`` inside a patch payload archive.
"""

from enum import Enum
from typing import Optional

import msgspec

from softpatch.models.replacement import OperationType


class FileType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class PatchOperation(msgspec.Struct, omit_defaults=True):
    """
    One change to the installation.

    `path` is relative to the installation folder, '/' separated. Content for
    file operations that place a file is stored as ``files/<id>`` in the archive.
    """

    id: int
    type: OperationType
    file_type: FileType
    path: str
    old_length: int = -1
    old_checksum: Optional[str] = None
    new_length: int = -1
    new_checksum: Optional[str] = None

    @property
    def places_file(self) -> bool:
        return self.file_type is FileType.FILE and self.type is not OperationType.REMOVE


class FileValidation(msgspec.Struct, omit_defaults=True):
    """Expected state of one path after the patch applied. Folders use length -1."""

    path: str
    file_type: FileType
    length: int = -1
    checksum: Optional[str] = None


class PatchManifest(msgspec.Struct, omit_defaults=True):
    version_from: Optional[str] = None
    version_to: Optional[str] = None
    operations: list[PatchOperation] = msgspec.field(default_factory=list)
    validations: list[FileValidation] = msgspec.field(default_factory=list)
