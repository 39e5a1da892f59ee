"""
Download state models for resumable patch downloads.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class DownloadResult(Enum):
    """Outcome of a single resumable download."""

    SUCCEED = "succeed"
    FILE_NOT_MODIFIED = "file_not_modified"  # Conditional fetch answered 304
    EXPECTED_LENGTH_NOT_MATCH = "expected_length_not_match"  # Unexpected status
    CHECKSUM_FAILED = "checksum_failed"
    FAILED = "failed"  # Length mismatch or network error
    INTERRUPTED = "interrupted"  # Cancelled through the token
    RESUME_RANGE_FAILED = "resume_range_failed"
    RESUME_RANGE_RESPOND_INVALID = "resume_range_respond_invalid"
    RANGE_LENGTH_NOT_MATCH_CONTENT_LENGTH = "range_length_not_match_content_length"


class DownloadPatchesResult(Enum):
    """Outcome of downloading every selected patch."""

    COMPLETED = "completed"
    DOWNLOAD_INTERRUPTED = "download_interrupted"
    ERROR = "error"
    SAVE_TO_CLIENT_SCRIPT_FAIL = "save_to_client_script_fail"
    ACQUIRE_LOCK_FAILED = "acquire_lock_failed"


@dataclass
class DownloadState:
    """
    Mutable state of one download across its attempts.

    :param url: remote object
    :param expected_length: total length in bytes, -1 if unknown
    :param expected_checksum: sha256 hex digest, None to skip validation
    :param resume_file: file to append to, None to stream into memory only
    """

    url: str
    expected_length: int = -1
    expected_checksum: Optional[str] = None
    resume_file: Optional[Path] = None
    resume_offset: int = 0
    retry_count: int = 0
    bytes_this_attempt: int = 0

    def start_attempt(self, resume_offset: int) -> None:
        self.resume_offset = resume_offset
        self.bytes_this_attempt = 0
