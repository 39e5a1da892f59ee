import os
from pathlib import Path
from typing import Self

import msgspec
from loguru import logger
from msgspec import structs

from softpatch.models.client import Client
from softpatch.models.patch import Patch
from softpatch.utils.exception import ClientStateError


class ClientController:
    """Controller for loading, mutating and saving the client state file."""

    def __init__(self, client: Client, client_file: Path) -> None:
        self.client = client
        self.client_file = client_file

    @classmethod
    def load(cls, client_file: Path | str) -> Self:
        """Load the client state stored as JSON in `client_file`."""
        client_file = Path(client_file)
        try:
            client_bytes = client_file.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read client state {client_file}: {e}")
            raise ClientStateError(client_file, str(e)) from e
        try:
            client = msgspec.json.decode(client_bytes, type=Client)
        except msgspec.MsgspecError as e:
            logger.error(f"Invalid client state {client_file}: {e}")
            raise ClientStateError(client_file, str(e)) from e
        return cls(client, client_file)

    def _resolve(self, path: str) -> Path:
        resolved = Path(path)
        if not resolved.is_absolute():
            resolved = self.client_file.parent / resolved
        return resolved

    @property
    def storage_path(self) -> Path:
        """Lock folder and patch work folder. Relative paths resolve against the state file."""
        return self._resolve(self.client.storage_path)

    @property
    def install_path(self) -> Path:
        """Installation folder the queued patches apply to."""
        return self._resolve(self.client.install_path)

    def to_bytes(self) -> bytes:
        """Encode the client state to JSON bytes."""
        return msgspec.json.encode(self.client)

    def save(self) -> None:
        """
        Write the state file atomically: a sibling temp file is written then
        renamed over the state file.
        """
        temp_file = self.client_file.with_name(self.client_file.name + ".tmp")
        try:
            temp_file.write_bytes(self.to_bytes())
            os.replace(temp_file, self.client_file)
        except OSError as e:
            logger.error(f"Failed to save client state {self.client_file}: {e}")
            raise ClientStateError(self.client_file, str(e)) from e
        logger.debug(f"Saved client state {self.client_file}")

    def patch_invalid(self, patch: Patch) -> None:
        logger.warning(f"Patch {patch.id} does not apply to {self.client.version}, dropped")
        self.client.remove_patch(patch.id)
        self.save()

    def patch_finished(self, patch: Patch) -> None:
        logger.info(f"Patch {patch.id} applied, version is now {patch.version_to}")
        self.client.remove_patch(patch.id)
        self.client.version = patch.version_to
        self.save()

    def add_patch(self, patch: Patch) -> None:
        """Queue a downloaded patch, without its download fields."""
        stored = structs.replace(
            patch, download_url="", download_checksum="", download_length=-1
        )
        self.client.remove_patch(patch.id)
        self.client.patches.append(stored)
        self.save()

    def set_full_pack_only(self, value: bool) -> None:
        if self.client.catalog_full_pack_only != value:
            self.client.catalog_full_pack_only = value
            self.save()
