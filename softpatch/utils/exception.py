from pathlib import Path


class UpdaterError(Exception):
    """Base exception for every failure raised by the updater."""

    pass


class LockFolderError(UpdaterError, ValueError):
    """
    Raised when the lock folder handed to a typed acquisition
    does not exist or is not a directory
    """

    pass


class PatchFolderError(UpdaterError, OSError):
    """
    Raised when the installation folder or the work folder is missing,
    or when a per-patch work folder cannot be created
    """

    pass


class PatchPayloadNotFoundError(UpdaterError, FileNotFoundError):
    """Raised when a patch payload file is not found in the work folder."""

    pass


class PatchApplyError(UpdaterError, OSError):
    """
    Raised when the installation is not in the state a patch expects
    (unexpected file type, checksum mismatch) or the payload cannot be read
    """

    pass


class InvalidPatchError(UpdaterError, ValueError):
    """Raised when a patch descriptor or a version string is malformed."""

    pass


class LaunchFailedError(UpdaterError):
    pass


class ReplacementFileError(UpdaterError, OSError):
    pass


class OperationCancelledError(UpdaterError):
    """Raised at a cancellation point once the cancellation token was cancelled."""

    pass


class ClientStateError(UpdaterError, OSError):
    """Raised when the client state file cannot be read, decoded or saved."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Client state {path}: {reason}")
        self.path = path
