"""
build-patch subcommand: build a patch payload and print its catalog entry.
"""

from pathlib import Path
from typing import Optional

import click
import msgspec
from msgspec import structs

from softpatch.models.patch import Patch
from softpatch.utils.constants import PATCH_TYPE_FULL, PATCH_TYPE_PATCH
from softpatch.utils.exception import InvalidPatchError
from softpatch.utils.patch_builder import build_patch as build_payload
from softpatch.utils.patcher import AES_ENCRYPTION_TYPE, AESKey


@click.command("build-patch")
@click.argument(
    "new_dir", type=click.Path(path_type=Path, exists=True, file_okay=False)
)
@click.argument("output", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--old",
    "old_dir",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    help="Installation at the source version. Omit to build a full pack.",
)
@click.option("--id", "patch_id", type=int, required=True, help="Patch id.")
@click.option("--version-to", required=True, help="Version the patch upgrades to.")
@click.option("--version-from", help="Exact source version.")
@click.option(
    "--version-from-subsequent",
    help="Minimum source version, for patches that apply to any later version.",
)
@click.option("--url", default="", help="Download URL recorded in the catalog entry.")
@click.option("--key", help="AES-256 key as 64 hex digits. Encrypts the payload.")
@click.option("--iv", help="AES IV as 32 hex digits, required with --key.")
def build_patch(
    new_dir: Path,
    output: Path,
    old_dir: Optional[Path],
    patch_id: int,
    version_to: str,
    version_from: Optional[str],
    version_from_subsequent: Optional[str],
    url: str,
    key: Optional[str],
    iv: Optional[str],
) -> None:
    """Build a patch payload turning --old into NEW_DIR.

    The catalog entry of the payload is printed as JSON.

    Examples:

    \b
      softpatch build-patch build/2.0 out/2.patch --old build/1.4.4 \\
          --id 2 --version-from 1.4.4 --version-to 2.0
    """
    if (key is None) != (iv is None):
        raise click.UsageError("--key and --iv must be given together")
    aes_key = None
    if key is not None and iv is not None:
        try:
            aes_key = AESKey.from_hex(key, iv)
        except InvalidPatchError as e:
            raise click.BadParameter(str(e), param_hint="--key/--iv") from e

    try:
        # Validate the descriptor before doing the work
        descriptor = Patch(
            id=patch_id,
            version_to=version_to,
            version_from=version_from,
            version_from_subsequent=version_from_subsequent,
        )
    except InvalidPatchError as e:
        raise click.UsageError(str(e)) from e

    built = build_payload(
        old_dir, new_dir, output, version_from or version_from_subsequent, version_to, aes_key
    )
    patch = structs.replace(
        descriptor,
        type=PATCH_TYPE_FULL if old_dir is None else PATCH_TYPE_PATCH,
        download_url=url,
        download_checksum=built.checksum,
        download_length=built.length,
        download_encryption_type=AES_ENCRYPTION_TYPE if aes_key else None,
        download_encryption_key=key,
        download_encryption_iv=iv,
    )
    click.echo(msgspec.json.format(msgspec.json.encode(patch)).decode())
