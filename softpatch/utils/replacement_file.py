"""
Pending-replacement file shared between the launcher and the self-updater.

UTF-8 text made of line triples: destination, staged new file, backup file.
The two last lines may be empty. An incomplete triple ends the list.
"""

from pathlib import Path
from typing import Iterable, NamedTuple

from loguru import logger

from softpatch.models.replacement import ReplacementRecord
from softpatch.utils.exception import ReplacementFileError


class PendingReplacement(NamedTuple):
    destination: str
    new_file: str
    backup_file: str


def write_replacement_file(path: Path, records: Iterable[ReplacementRecord]) -> int:
    """
    Write `records` as triples to `path`.

    :return: the number of triples written
    :raises ReplacementFileError: if the file cannot be written
    """
    lines: list[str] = []
    for record in records:
        for value in (record.destination, record.new_file, record.backup_file):
            if "\n" in value or "\r" in value:
                raise ReplacementFileError(f"Path contains a line break: {value!r}")
            lines.append(value)
    try:
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    except OSError as e:
        raise ReplacementFileError(f"Failed to write {path}: {e}") from e
    logger.debug(f"Wrote {len(lines) // 3} pending replacement(s) to {path}")
    return len(lines) // 3


def read_replacement_file(path: Path) -> list[PendingReplacement]:
    """
    Read the triples stored in `path`.

    :raises ReplacementFileError: if the file cannot be read
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ReplacementFileError(f"Failed to read {path}: {e}") from e

    lines = text.split("\n")
    if lines and lines[-1] == "":
        # Terminator of the last line
        lines.pop()
    replacements: list[PendingReplacement] = []
    for index in range(0, len(lines) - 2, 3):
        destination, new_file, backup_file = lines[index : index + 3]
        if not destination and not new_file and not backup_file:
            break
        replacements.append(
            PendingReplacement(
                destination.rstrip("\r"), new_file.rstrip("\r"), backup_file.rstrip("\r")
            )
        )
    return replacements
