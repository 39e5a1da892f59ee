import hashlib
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from packaging.version import InvalidVersion, Version

from softpatch.utils.constants import SHA256_PATTERN
from softpatch.utils.exception import InvalidPatchError, LaunchFailedError

HASH_READ_SIZE = 65536


def compare_version(version_a: str, version_b: str) -> int:
    """
    Compare two dotted numeric version strings component by component.

    :param version_a: first version, e.g. "1.4.4"
    :param version_b: second version, e.g. "2.0"
    :return: negative if a < b, 0 if equal, positive if a > b
    :raises InvalidPatchError: if either string is not a dotted numeric version
    """
    parsed = []
    for value in (version_a, version_b):
        if not value or not all(part.isdigit() for part in value.split(".")):
            raise InvalidPatchError(f"Invalid version string: {value!r}")
        try:
            parsed.append(Version(value))
        except InvalidVersion as e:
            raise InvalidPatchError(f"Invalid version string: {value!r}") from e
    if parsed[0] == parsed[1]:
        return 0
    return 1 if parsed[0] > parsed[1] else -1


def is_valid_sha256(checksum: str) -> bool:
    return SHA256_PATTERN.match(checksum) is not None


def sha256_of_file(path: Path | str) -> str:
    """Hex SHA-256 digest of the whole file at `path`."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_READ_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def format_file_size(size_in_bytes: int) -> str:
    """Format bytes to a human-readable string."""
    if size_in_bytes < 1024:
        return f"{size_in_bytes} B"
    elif size_in_bytes < 1024 * 1024:
        return f"{size_in_bytes / 1024:.1f} KB"
    elif size_in_bytes < 1024 * 1024 * 1024:
        return f"{size_in_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_in_bytes / (1024 * 1024 * 1024):.2f} GB"


def format_remaining_time(seconds: Optional[float]) -> str:
    """
    Format a remaining duration as "1h 2m 3s", "2m 3s" or "3s".

    Args:
        seconds: Remaining seconds, or None when it cannot be estimated.

    Returns:
        str: The formatted duration, "unknown" when not estimable.
    """
    if seconds is None or seconds < 0:
        return "unknown"
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def resolve_launch_command(command: list[str]) -> list[str]:
    """Substitute the running interpreter for a ``{python}`` placeholder."""
    return [sys.executable if arg == "{python}" else arg for arg in command]


def launch_process(
    command: list[str],
    cwd: Optional[str] = None,
    detached: bool = True,
    capture_output: bool = False,
) -> subprocess.Popen[bytes]:
    """
    Spawn `command` as a child process.

    With `detached`, the child gets its own session (POSIX) or process group
    (Windows) so it keeps running after this process exits.

    Raises:
        LaunchFailedError: If the command is empty or cannot be executed.
    """
    if not command:
        raise LaunchFailedError("Launch command is empty")
    popen_args = resolve_launch_command(command)
    kwargs: dict[str, object] = {"cwd": cwd}
    if capture_output:
        kwargs["stdout"] = subprocess.PIPE
        kwargs["stderr"] = subprocess.STDOUT
    if detached:
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # not Windows, so assume POSIX
            kwargs["start_new_session"] = True
    try:
        p = subprocess.Popen(popen_args, **kwargs)  # type: ignore[call-overload]
    except OSError as e:
        raise LaunchFailedError(f"Failed to launch {popen_args}: {e}") from e
    logger.info(f"Launched process {p.pid}: {popen_args}")
    return p


def env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric environment variable {name}={value!r}")
        return None
