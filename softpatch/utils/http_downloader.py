"""
Resumable, checksum-verified HTTP download.

The downloader appends to a resume file using ``Range: bytes=N-`` requests,
validates the server's ``Content-Range`` answer, hashes the complete file
(existing bytes plus the streamed tail) and retries within a caller supplied
budget. Network errors keep the partial file so the retry resumes. Protocol
and validation errors, a checksum mismatch included, discard it and restart
from byte zero, since the position of a corrupt byte is unknown.
"""

import hashlib
import time
from email.utils import formatdate
from pathlib import Path
from typing import BinaryIO, Optional

import requests
from loguru import logger

from softpatch.models.download_state import DownloadResult, DownloadState
from softpatch.utils.cancellation import CancellationToken
from softpatch.utils.constants import (
    APP_NAME,
    CONNECT_TIMEOUT,
    CONTENT_RANGE_PATTERN,
    DOWNLOAD_CHUNK_SIZE,
    READ_TIMEOUT,
)
from softpatch.utils.exception import OperationCancelledError
from softpatch.utils.generic import is_valid_sha256

HASH_READ_SIZE = 65536


class DownloadProgressListener:
    """
    Receives progress callbacks from `HTTPDownloader`.

    Callbacks run on the downloading thread and must not block.
    """

    def byte_start(self, pos: int) -> None:
        """Transfer starts (or is already complete) at byte `pos`."""

    def byte_total(self, total: int) -> None:
        """Total length of the remote object, -1 if unknown."""

    def byte_downloaded(self, num_bytes: int) -> None:
        """`num_bytes` more bytes were received."""

    def download_retry(self, result: DownloadResult) -> None:
        """The attempt ended with `result` and a retry follows."""


class _AttemptFailed(Exception):
    def __init__(self, result: DownloadResult, discard_resume_file: bool) -> None:
        super().__init__(result.value)
        self.result = result
        self.discard_resume_file = discard_resume_file


def _truncate(path: Optional[Path]) -> None:
    if path is not None and path.exists():
        with open(path, "wb"):
            pass


def _file_length(path: Optional[Path]) -> int:
    if path is None or not path.exists():
        return 0
    return path.stat().st_size


def _parse_length(value: Optional[str]) -> int:
    if value is None:
        return -1
    try:
        return int(value.strip())
    except ValueError:
        return -1


def _hash_file(path: Path) -> "hashlib._Hash":
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_READ_SIZE), b""):
            digest.update(block)
    return digest


class HTTPDownloader:
    """
    Downloads one remote object into a resume file and/or a binary sink.

    :param resume_file: file the content is written to and resumed from
    :param output_to: in-memory (or any binary) sink receiving the streamed bytes
    :param if_modified_since: epoch milliseconds for a conditional fetch, -1 to disable
    :param cancel_token: pause and cancel signal checked between chunks
    :param session: requests session to use, one is created if omitted
    """

    def __init__(
        self,
        resume_file: Optional[Path | str] = None,
        output_to: Optional[BinaryIO] = None,
        if_modified_since: int = -1,
        cancel_token: Optional[CancellationToken] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.resume_file = Path(resume_file) if resume_file is not None else None
        self.output_to = output_to
        self.if_modified_since = if_modified_since
        self.cancel_token = cancel_token or CancellationToken()
        self._session = session or requests.Session()

    def download(
        self,
        listener: Optional[DownloadProgressListener],
        url: str,
        checksum: Optional[str] = None,
        expected_length: int = -1,
        retry_times: int = 0,
        retry_delay: float = 0.0,
    ) -> DownloadResult:
        """
        Download `url`, resuming from the resume file if it has bytes.

        Args:
            listener: Progress callbacks, may be None.
            url: Remote object.
            checksum: Expected sha256 hex digest of the complete file, None to skip.
            expected_length: Expected total length in bytes, -1 if unknown.
            retry_times: Retry budget. 0 makes exactly one attempt.
            retry_delay: Seconds to sleep before each retry.

        Returns:
            DownloadResult: SUCCEED, or the result of the last attempt.

        Raises:
            ValueError: If `checksum` is not a lowercase sha256 hex digest
                or `retry_delay` is negative.
        """
        if checksum is not None and not is_valid_sha256(checksum):
            raise ValueError(
                f"Checksum format invalid, expected ^[0-9a-f]{{64}}$: {checksum}"
            )
        if retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {retry_delay}")

        state = DownloadState(
            url=url,
            expected_length=expected_length,
            expected_checksum=checksum,
            resume_file=self.resume_file,
        )
        while True:
            try:
                return self._attempt(listener, state)
            except _AttemptFailed as failure:
                result = failure.result
                if failure.discard_resume_file:
                    _truncate(state.resume_file)
            except OperationCancelledError:
                logger.info(f"Download interrupted: {url}")
                return DownloadResult.INTERRUPTED

            if state.retry_count >= retry_times:
                logger.warning(
                    f"Download of {url} failed with {result.name} "
                    f"after {state.retry_count} retries"
                )
                return result
            state.retry_count += 1
            logger.info(
                f"Download of {url} failed with {result.name}, "
                f"retry {state.retry_count}/{retry_times}"
            )
            if listener is not None:
                listener.download_retry(result)
            time.sleep(retry_delay)
            try:
                self.cancel_token.check()
            except OperationCancelledError:
                return DownloadResult.INTERRUPTED

    def _request_headers(self, start_range: int) -> dict[str, str]:
        headers = {
            "User-Agent": f"{APP_NAME} HTTP Downloader",
            "Accept-Encoding": "identity",
        }
        if start_range > 0:
            headers["Range"] = f"bytes={start_range}-"
        if self.if_modified_since != -1:
            headers["If-Modified-Since"] = formatdate(
                self.if_modified_since / 1000, usegmt=True
            )
        return headers

    def _attempt(
        self, listener: Optional[DownloadProgressListener], state: DownloadState
    ) -> DownloadResult:
        resume_file = state.resume_file
        checksum = state.expected_checksum
        expected_length = state.expected_length

        start_range = 0
        existing = _file_length(resume_file)
        if resume_file is not None and existing > 0:
            if expected_length >= 0 and existing == expected_length:
                if checksum is None or _hash_file(resume_file).hexdigest() == checksum:
                    logger.debug(f"Resume file already complete: {resume_file}")
                    if listener is not None:
                        listener.byte_start(existing)
                    return DownloadResult.SUCCEED
                logger.info(f"Complete resume file fails checksum, restarting: {resume_file}")
                _truncate(resume_file)
            elif expected_length >= 0 and existing > expected_length:
                logger.info(f"Resume file longer than expected, restarting: {resume_file}")
                _truncate(resume_file)
            else:
                start_range = existing
        state.start_attempt(start_range)

        try:
            with self._session.get(
                state.url,
                headers=self._request_headers(start_range),
                stream=True,
                timeout=(CONNECT_TIMEOUT, READ_TIMEOUT),
            ) as response:
                return self._receive(listener, state, response)
        except (requests.RequestException, OSError) as e:
            logger.warning(f"Network error downloading {state.url}: {e}")
            raise _AttemptFailed(DownloadResult.FAILED, False) from e

    def _receive(
        self,
        listener: Optional[DownloadProgressListener],
        state: DownloadState,
        response: requests.Response,
    ) -> DownloadResult:
        resume_file = state.resume_file
        start_range = state.resume_offset

        if response.status_code == 304 and self.if_modified_since != -1:
            if listener is not None:
                listener.byte_total(-1)
            return DownloadResult.FILE_NOT_MODIFIED

        content_length = _parse_length(response.headers.get("Content-Length"))
        if start_range != 0:
            content_range = response.headers.get("Content-Range")
            if content_range is None:
                # Server ignored the range, the body is the whole object
                logger.info(f"Server ignored range request for {state.url}")
                start_range = 0
                _truncate(resume_file)
                state.start_attempt(0)
            else:
                match = CONTENT_RANGE_PATTERN.match(content_range.strip())
                if match is None:
                    raise _AttemptFailed(
                        DownloadResult.RESUME_RANGE_RESPOND_INVALID, True
                    )
                range_start, range_end, content_length = (
                    int(value) for value in match.groups()
                )
                if range_start != start_range:
                    raise _AttemptFailed(DownloadResult.RESUME_RANGE_FAILED, True)
                if range_end != content_length - 1:
                    raise _AttemptFailed(
                        DownloadResult.RANGE_LENGTH_NOT_MATCH_CONTENT_LENGTH, True
                    )

        if listener is not None:
            listener.byte_total(content_length)

        if response.status_code not in (200, 206):
            logger.warning(f"Unexpected status {response.status_code} for {state.url}")
            raise _AttemptFailed(DownloadResult.EXPECTED_LENGTH_NOT_MATCH, True)
        if (
            content_length != -1
            and state.expected_length != -1
            and content_length != state.expected_length
        ):
            raise _AttemptFailed(DownloadResult.FAILED, True)

        if listener is not None:
            listener.byte_start(start_range)

        digest = None
        if state.expected_checksum is not None:
            digest = (
                _hash_file(resume_file)
                if start_range != 0 and resume_file is not None
                else hashlib.sha256()
            )

        if start_range == 0 and self.output_to is not None and self.output_to.seekable():
            # Drop what a failed attempt wrote
            self.output_to.seek(0)
            self.output_to.truncate()

        received = 0
        resume_out = (
            open(resume_file, "ab" if start_range != 0 else "wb")
            if resume_file is not None
            else None
        )
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                self.cancel_token.check()
                if digest is not None:
                    digest.update(chunk)
                if resume_out is not None:
                    resume_out.write(chunk)
                if self.output_to is not None:
                    self.output_to.write(chunk)
                received += len(chunk)
                state.bytes_this_attempt = received
                if listener is not None:
                    listener.byte_downloaded(len(chunk))
        finally:
            if resume_out is not None:
                resume_out.close()

        if content_length != -1 and received + start_range != content_length:
            logger.warning(
                f"Received {received + start_range} of {content_length} bytes from {state.url}"
            )
            raise _AttemptFailed(DownloadResult.FAILED, True)
        if digest is not None and digest.hexdigest() != state.expected_checksum:
            logger.warning(f"Checksum mismatch for {state.url}")
            raise _AttemptFailed(DownloadResult.CHECKSUM_FAILED, True)

        logger.debug(f"Downloaded {state.url} ({received} bytes this attempt)")
        return DownloadResult.SUCCEED
