"""
Unit tests for chain selection and the patch downloader.
"""

import hashlib
import time
from pathlib import Path

import msgspec
import pytest
import requests

from softpatch.controllers.download_controller import (
    DownloadPatchesListener,
    PatchDownloader,
    calculate_total_length,
    get_suitable_patches,
)
from softpatch.models.download_state import DownloadPatchesResult
from softpatch.models.patch import Patch
from softpatch.utils.cancellation import CancellationToken
from tests.conftest import FileServer


def patch(
    id: int,
    version_to: str,
    version_from: str | None = None,
    subsequent: str | None = None,
    length: int = 10,
    full: bool = False,
) -> Patch:
    return Patch(
        id=id,
        version_to=version_to,
        version_from=version_from,
        version_from_subsequent=subsequent,
        download_length=length,
        type="full" if full else "patch",
    )


class PatchesRecorder(DownloadPatchesListener):
    def __init__(self) -> None:
        self.progress: list[float] = []
        self.messages: list[str] = []
        self.downloaded: list[int] = []

    def download_patches_progress(self, percentage: float) -> None:
        self.progress.append(percentage)

    def download_patches_message(self, message: str) -> None:
        self.messages.append(message)

    def patch_downloaded(self, patch: Patch) -> None:
        self.downloaded.append(patch.id)


def served_patch(server: FileServer, id: int, body: bytes, version_from: str, version_to: str) -> Patch:
    server.files[f"/{id}.patch"] = body
    return Patch(
        id=id,
        version_from=version_from,
        version_to=version_to,
        download_url=server.url(f"/{id}.patch"),
        download_checksum=hashlib.sha256(body).hexdigest(),
        download_length=len(body),
    )


class TestGetSuitablePatches:
    """Tests for choosing the upgrade chain."""

    def test_highest_reachable_version(self) -> None:
        patches = [
            patch(1, "1.1", "1.0"),
            patch(2, "1.2", "1.1"),
            patch(3, "1.5", "1.0"),
            patch(4, "2.0", "1.2"),
        ]
        assert [p.id for p in get_suitable_patches(patches, "1.0")] == [1, 2, 4]

    def test_nothing_applies(self) -> None:
        patches = [patch(1, "1.1", "0.9")]
        assert get_suitable_patches(patches, "1.0") == []
        assert get_suitable_patches([], "1.0") == []

    def test_tie_prefers_smaller_download(self) -> None:
        patches = [
            patch(1, "1.1", "1.0", length=50),
            patch(2, "2.0", "1.1", length=50),
            patch(3, "2.0", "1.0", length=200),
        ]
        assert [p.id for p in get_suitable_patches(patches, "1.0")] == [1, 2]

    def test_tie_on_size_prefers_fewer_patches(self) -> None:
        patches = [
            patch(1, "1.1", "1.0", length=50),
            patch(2, "2.0", "1.1", length=50),
            patch(3, "2.0", "1.0", length=100),
        ]
        assert [p.id for p in get_suitable_patches(patches, "1.0")] == [3]

    def test_subsequent_versions(self) -> None:
        patches = [
            patch(1, "3.0", subsequent="1.0", full=True, length=500),
            patch(2, "2.1", "2.0"),
        ]
        assert [p.id for p in get_suitable_patches(patches, "2.0")] == [1]
        assert get_suitable_patches(patches, "3.0") == []
        assert get_suitable_patches(patches, "0.5") == []

    def test_full_pack_only(self) -> None:
        patches = [
            patch(1, "2.0", "1.0"),
            patch(2, "1.5", subsequent="1.0", full=True),
        ]
        assert [p.id for p in get_suitable_patches(patches, "1.0")] == [1]
        assert [p.id for p in get_suitable_patches(patches, "1.0", True)] == [2]

    def test_total_length_ignores_unknown(self) -> None:
        assert calculate_total_length([patch(1, "1.1", "1.0", length=-1), patch(2, "1.2", "1.1")]) == 10


class TestDownloadPatches:
    """Tests for downloading a chain into the storage folder."""

    def test_downloads_every_patch(self, file_server: FileServer, tmp_path: Path) -> None:
        first = served_patch(file_server, 1, b"a" * 40000, "1.0", "1.1")
        second = served_patch(file_server, 2, b"b" * 60000, "1.1", "1.2")
        recorder = PatchesRecorder()

        result = PatchDownloader().download_patches(
            recorder, [first, second], tmp_path, retry_times=0, retry_delay=0
        )

        assert result is DownloadPatchesResult.COMPLETED
        assert (tmp_path / "1.patch").read_bytes() == b"a" * 40000
        assert (tmp_path / "2.patch").read_bytes() == b"b" * 60000
        assert recorder.downloaded == [1, 2]
        assert recorder.progress[0] == 0
        assert recorder.progress[-1] == 100
        assert recorder.progress == sorted(recorder.progress)
        assert recorder.messages[0] == "Getting patches ..."
        assert recorder.messages[-1] == "Finished"

    def test_empty_chain(self, tmp_path: Path) -> None:
        recorder = PatchesRecorder()
        result = PatchDownloader().download_patches(recorder, [], tmp_path, 0, 0)
        assert result is DownloadPatchesResult.COMPLETED
        assert recorder.progress == []

    def test_retry_after_corrupt_download(
        self, file_server: FileServer, tmp_path: Path
    ) -> None:
        first = served_patch(file_server, 1, b"c" * 5000, "1.0", "1.1")
        file_server.corrupt.add("/1.patch")
        recorder = PatchesRecorder()
        result = PatchDownloader().download_patches(
            recorder, [first], tmp_path, retry_times=1, retry_delay=0
        )
        assert result is DownloadPatchesResult.COMPLETED
        assert (tmp_path / "1.patch").read_bytes() == b"c" * 5000

    def test_retry_budget_is_shared(self, file_server: FileServer, tmp_path: Path) -> None:
        first = served_patch(file_server, 1, b"d" * 5000, "1.0", "1.1")
        second = served_patch(file_server, 2, b"e" * 5000, "1.1", "1.2")
        file_server.corrupt.update({"/1.patch", "/2.patch"})
        recorder = PatchesRecorder()
        result = PatchDownloader().download_patches(
            recorder, [first, second], tmp_path, retry_times=1, retry_delay=0
        )
        assert result is DownloadPatchesResult.ERROR
        assert recorder.downloaded == [1]

    def test_missing_patch_is_an_error(
        self, file_server: FileServer, tmp_path: Path
    ) -> None:
        missing = Patch(
            id=3,
            version_from="1.0",
            version_to="1.1",
            download_url=file_server.url("/3.patch"),
            download_checksum="f" * 64,
            download_length=10,
        )
        recorder = PatchesRecorder()
        result = PatchDownloader().download_patches(recorder, [missing], tmp_path, 0, 0)
        assert result is DownloadPatchesResult.ERROR
        assert recorder.downloaded == []

    def test_patch_without_length_is_an_error(self, tmp_path: Path) -> None:
        result = PatchDownloader().download_patches(
            PatchesRecorder(), [patch(1, "1.1", "1.0", length=-1)], tmp_path, 0, 0
        )
        assert result is DownloadPatchesResult.ERROR

    def test_save_failure(self, file_server: FileServer, tmp_path: Path) -> None:
        first = served_patch(file_server, 1, b"g" * 1000, "1.0", "1.1")
        second = served_patch(file_server, 2, b"h" * 1000, "1.1", "1.2")

        class FailingRecorder(PatchesRecorder):
            def patch_downloaded(self, patch: Patch) -> None:
                raise OSError("read-only file system")

        result = PatchDownloader().download_patches(
            FailingRecorder(), [first, second], tmp_path, 0, 0
        )
        assert result is DownloadPatchesResult.SAVE_TO_CLIENT_SCRIPT_FAIL
        assert not (tmp_path / "2.patch").exists()

    def test_cancelled(self, file_server: FileServer, tmp_path: Path) -> None:
        first = served_patch(file_server, 1, b"i" * 1000, "1.0", "1.1")
        token = CancellationToken()
        token.cancel()
        recorder = PatchesRecorder()
        result = PatchDownloader(token).download_patches(recorder, [first], tmp_path, 3, 0)
        assert result is DownloadPatchesResult.DOWNLOAD_INTERRUPTED
        assert recorder.downloaded == []


class TestFetchCatalog:
    """Tests for the conditional catalog fetch."""

    CATALOG = msgspec.json.encode(
        {
            "patches": [
                {
                    "id": 1,
                    "version_from": "1.0",
                    "version_to": "1.1",
                    "download_url": "http://localhost/1.patch",
                    "download_checksum": "a" * 64,
                    "download_length": 10,
                }
            ]
        }
    )

    def test_fetch(self, file_server: FileServer) -> None:
        file_server.files["/catalog.json"] = self.CATALOG
        catalog = PatchDownloader().fetch_catalog(file_server.url("/catalog.json"))
        assert catalog is not None
        assert [p.id for p in catalog.patches] == [1]
        assert "If-Modified-Since" not in file_server.requests[0].headers

    def test_not_modified(self, file_server: FileServer) -> None:
        file_server.files["/catalog.json"] = self.CATALOG
        file_server.last_modified["/catalog.json"] = time.time() - 3600
        last_updated = int(time.time() * 1000)
        assert (
            PatchDownloader().fetch_catalog(file_server.url("/catalog.json"), last_updated)
            is None
        )
        assert "If-Modified-Since" in file_server.requests[0].headers

    def test_modified_since_last_fetch(self, file_server: FileServer) -> None:
        file_server.files["/catalog.json"] = self.CATALOG
        file_server.last_modified["/catalog.json"] = time.time()
        last_updated = int((time.time() - 3600) * 1000)
        catalog = PatchDownloader().fetch_catalog(
            file_server.url("/catalog.json"), last_updated
        )
        assert catalog is not None

    def test_malformed_catalog(self, file_server: FileServer) -> None:
        file_server.files["/catalog.json"] = b'{"patches": [{"id": "x"}]}'
        with pytest.raises(msgspec.ValidationError):
            PatchDownloader().fetch_catalog(file_server.url("/catalog.json"))

    def test_missing_catalog(self, file_server: FileServer) -> None:
        with pytest.raises(requests.RequestException):
            PatchDownloader().fetch_catalog(file_server.url("/catalog.json"))
