import msgspec

from softpatch.models.patch import Patch
from softpatch.utils.constants import LaunchAfter


class Client(msgspec.Struct):
    """
    Persistent state of one installed client.

    Pure data class. Loading and saving are handled by the client controller.
    """

    version: str
    storage_path: str
    install_path: str = "."
    launch_commands: list[str] = msgspec.field(default_factory=list)
    launch_after: LaunchAfter = LaunchAfter.EXIT
    # Downloaded but not yet applied, in application order
    patches: list[Patch] = msgspec.field(default_factory=list)
    catalog_url: str = ""
    catalog_last_updated: int = -1  # epoch ms of the last catalog fetch, -1 if never
    catalog_full_pack_only: bool = False

    @property
    def target_version(self) -> str:
        """Version the installation reaches once every queued patch is applied."""
        if self.patches:
            return self.patches[-1].version_to
        return self.version

    def remove_patch(self, patch_id: int) -> None:
        self.patches = [patch for patch in self.patches if patch.id != patch_id]
