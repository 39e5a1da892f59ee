import re
import threading
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Generator, Optional

import pytest

from softpatch.models.download_state import DownloadResult
from softpatch.utils.http_downloader import DownloadProgressListener
from softpatch.utils.patch_builder import BuiltPatch, build_patch

# Installation trees of the patch chain used across the tests. None is a folder.
TREE_1_4_4: dict[str, Optional[bytes]] = {
    "app.bin": b"application 1.4.4",
    "readme.txt": b"readme",
    "data": None,
    "data/config.txt": b"config 1",
    "data/legacy.txt": b"removed in 2.0",
    "legacy": None,
}
TREE_2_0: dict[str, Optional[bytes]] = {
    "app.bin": b"application 2.0 with more bytes",
    "readme.txt": b"readme",
    "data": None,
    "data/config.txt": b"config 2",
    "data/new.txt": b"added in 2.0",
    "plugins": None,
}
TREE_3_0_9: dict[str, Optional[bytes]] = {
    "app.bin": b"application 3.0.9",
    "readme.txt": b"readme for 3.0.9",
    "data": None,
    "data/config.txt": b"config 2",
    "data/new.txt": b"changed in 3.0.9",
    "plugins": None,
    "plugins/extra.dll": b"\x00\x01plugin",
}


def write_tree(root: Path, tree: dict[str, Optional[bytes]]) -> Path:
    """Create the files and folders of `tree` under `root`."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in sorted(tree.items()):
        path = root / relative
        if content is None:
            path.mkdir(parents=True, exist_ok=True)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
    return root


def read_tree(root: Path) -> dict[str, Optional[bytes]]:
    """Inverse of `write_tree`."""
    tree: dict[str, Optional[bytes]] = {}
    for path in root.rglob("*"):
        relative = path.relative_to(root).as_posix()
        tree[relative] = None if path.is_dir() else path.read_bytes()
    return tree


@dataclass
class PatchChain:
    """The 1.4.4 -> 2.0 -> 3.0.9 chain built from the trees above."""

    install_dir: Path
    work_dir: Path
    patch_1: BuiltPatch
    patch_2: BuiltPatch


@pytest.fixture
def patch_chain(tmp_path: Path) -> PatchChain:
    sources = tmp_path / "sources"
    v1 = write_tree(sources / "1.4.4", TREE_1_4_4)
    v2 = write_tree(sources / "2.0", TREE_2_0)
    v3 = write_tree(sources / "3.0.9", TREE_3_0_9)
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return PatchChain(
        install_dir=write_tree(tmp_path / "install", TREE_1_4_4),
        work_dir=work_dir,
        patch_1=build_patch(v1, v2, work_dir / "1.patch", "1.4.4", "2.0"),
        patch_2=build_patch(v2, v3, work_dir / "2.patch", "2.0", "3.0.9"),
    )


class RecordingListener(DownloadProgressListener):
    """Records every downloader callback in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    def byte_start(self, pos: int) -> None:
        self.events.append(("start", pos))

    def byte_total(self, total: int) -> None:
        self.events.append(("total", total))

    def byte_downloaded(self, num_bytes: int) -> None:
        self.events.append(("downloaded", num_bytes))

    def download_retry(self, result: DownloadResult) -> None:
        self.events.append(("retry", result))

    def named(self, name: str) -> list[object]:
        return [value for event, value in self.events if event == name]


@dataclass
class ServedRequest:
    path: str
    headers: dict[str, str]


@dataclass
class FileServer:
    """
    Content and fault injection of the local HTTP server.

    :param files: body per request path
    :param last_modified: epoch seconds per path, enables 304 answers
    :param corrupt: paths whose next response has one flipped byte
    :param truncate: paths whose next response stops after that many bytes
    :param ignore_range: answer range requests with the whole body
    :param content_range: Content-Range header sent instead of the correct one
    :param status: status sent instead of 200/206 per path
    """

    base_url: str = ""
    files: dict[str, bytes] = field(default_factory=dict)
    last_modified: dict[str, float] = field(default_factory=dict)
    corrupt: set[str] = field(default_factory=set)
    truncate: dict[str, int] = field(default_factory=dict)
    ignore_range: bool = False
    content_range: Optional[str] = None
    status: dict[str, int] = field(default_factory=dict)
    requests: list[ServedRequest] = field(default_factory=list)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"


class _Handler(BaseHTTPRequestHandler):
    server: "_Server"

    def log_message(self, format: str, *args: object) -> None:
        pass

    def do_GET(self) -> None:
        state = self.server.state
        state.requests.append(ServedRequest(self.path, dict(self.headers.items())))

        body = state.files.get(self.path)
        if body is None:
            self.send_error(404)
            return

        since = self.headers.get("If-Modified-Since")
        modified = state.last_modified.get(self.path)
        if since is not None and modified is not None:
            if modified <= parsedate_to_datetime(since).timestamp():
                self.send_response(304)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

        if self.path in state.corrupt:
            state.corrupt.discard(self.path)
            body = body[:-1] + bytes([body[-1] ^ 0xFF])

        status = 200
        start = 0
        match = re.match(r"^bytes=(\d+)-$", self.headers.get("Range", ""))
        if match is not None and not state.ignore_range:
            status = 206
            start = int(match.group(1))
        status = state.status.get(self.path, status)

        self.send_response(status)
        self.send_header("Content-Length", str(len(body) - start))
        if status == 206:
            self.send_header(
                "Content-Range",
                state.content_range or f"bytes {start}-{len(body) - 1}/{len(body)}",
            )
        self.end_headers()

        payload = body[start:]
        limit = state.truncate.pop(self.path, None)
        if limit is not None:
            payload = payload[:limit]
        self.wfile.write(payload)


class _Server(ThreadingHTTPServer):
    daemon_threads = True
    state: FileServer


@pytest.fixture
def file_server() -> Generator[FileServer, None, None]:
    """Threaded local HTTP server supporting Range and If-Modified-Since."""
    server = _Server(("127.0.0.1", 0), _Handler)
    server.state = FileServer(base_url=f"http://127.0.0.1:{server.server_address[1]}")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.state
    server.shutdown()
    server.server_close()
    thread.join()
