from typing import Optional

import msgspec

from softpatch.utils.constants import PATCH_TYPE_FULL, PATCH_TYPE_PATCH
from softpatch.utils.exception import InvalidPatchError
from softpatch.utils.generic import compare_version, is_valid_sha256


class Patch(msgspec.Struct, omit_defaults=True):
    """
    Descriptor of one downloadable patch.

    Exactly one of `version_from` (exact source version) and
    `version_from_subsequent` (minimum source version) is set.
    Encryption key and IV are hex strings.
    """

    id: int
    version_to: str
    version_from: Optional[str] = None
    version_from_subsequent: Optional[str] = None
    type: str = PATCH_TYPE_PATCH
    download_url: str = ""
    download_checksum: str = ""
    download_length: int = -1
    download_encryption_type: Optional[str] = None
    download_encryption_key: Optional[str] = None
    download_encryption_iv: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.version_from is None) == (self.version_from_subsequent is None):
            raise InvalidPatchError(
                f"Patch {self.id}: exactly one of version_from and "
                "version_from_subsequent must be set"
            )
        if self.download_checksum and not is_valid_sha256(self.download_checksum):
            raise InvalidPatchError(
                f"Patch {self.id}: download_checksum is not a sha256 hex digest"
            )
        if (self.download_encryption_key is None) != (
            self.download_encryption_iv is None
        ):
            raise InvalidPatchError(
                f"Patch {self.id}: encryption key and IV must be set together"
            )

    @property
    def is_full_pack(self) -> bool:
        return self.type == PATCH_TYPE_FULL

    @property
    def is_encrypted(self) -> bool:
        return self.download_encryption_key is not None

    def applies_to(self, current_version: str) -> bool:
        """
        Check whether this patch can be applied on top of `current_version`.

        :param current_version: version the installation is at
        :return: True if the exact or the minimum source version matches
        """
        if self.version_from is not None:
            return self.version_from == current_version
        assert self.version_from_subsequent is not None
        return compare_version(current_version, self.version_from_subsequent) >= 0

    def upgrades(self, current_version: str) -> bool:
        """Check whether this patch applies to `current_version` and moves it forward."""
        return (
            self.applies_to(current_version)
            and compare_version(self.version_to, current_version) > 0
        )


class Catalog(msgspec.Struct, omit_defaults=True):
    """Remote list of every published patch."""

    patches: list[Patch] = msgspec.field(default_factory=list)
