import zipfile
from pathlib import Path

import msgspec

from softpatch.models.patch_manifest import FileType, PatchManifest
from softpatch.models.replacement import OperationType
from softpatch.utils.constants import PATCH_MANIFEST_NAME
from softpatch.utils.generic import sha256_of_file
from softpatch.utils.patch_builder import build_patch
from softpatch.utils.patcher import AESKey, Patcher
from tests.conftest import TREE_1_4_4, TREE_2_0, TREE_3_0_9, read_tree, write_tree

KEY = AESKey.from_hex("11" * 32, "22" * 16)


def read_manifest(payload: Path) -> PatchManifest:
    with zipfile.ZipFile(payload) as archive:
        return msgspec.json.decode(archive.read(PATCH_MANIFEST_NAME), type=PatchManifest)


class TestBuildPatch:
    """Tests for building payloads from two installation folders."""

    def test_operations_are_ordered(self, tmp_path: Path) -> None:
        old = write_tree(tmp_path / "old", TREE_1_4_4)
        new = write_tree(tmp_path / "new", TREE_2_0)
        built = build_patch(old, new, tmp_path / "1.patch", "1.4.4", "2.0")

        manifest = read_manifest(built.path)
        summary = [(op.type, op.file_type, op.path) for op in manifest.operations]
        assert summary == [
            (OperationType.REMOVE, FileType.FILE, "data/legacy.txt"),
            (OperationType.REMOVE, FileType.FOLDER, "legacy"),
            (OperationType.NEW, FileType.FOLDER, "plugins"),
            (OperationType.REPLACE, FileType.FILE, "app.bin"),
            (OperationType.REPLACE, FileType.FILE, "data/config.txt"),
            (OperationType.NEW, FileType.FILE, "data/new.txt"),
        ]
        assert [op.id for op in manifest.operations] == [1, 2, 3, 4, 5, 6]
        assert manifest.version_from == "1.4.4"
        assert manifest.version_to == "2.0"
        assert built.operation_count == 6

    def test_replace_records_old_and_new_content(self, tmp_path: Path) -> None:
        old = write_tree(tmp_path / "old", TREE_1_4_4)
        new = write_tree(tmp_path / "new", TREE_2_0)
        built = build_patch(old, new, tmp_path / "1.patch")

        replace = next(
            op for op in read_manifest(built.path).operations if op.path == "app.bin"
        )
        assert replace.old_length == len(TREE_1_4_4["app.bin"])  # type: ignore[arg-type]
        assert replace.old_checksum == sha256_of_file(old / "app.bin")
        assert replace.new_length == len(TREE_2_0["app.bin"])  # type: ignore[arg-type]
        assert replace.new_checksum == sha256_of_file(new / "app.bin")

    def test_validations_cover_the_new_tree(self, tmp_path: Path) -> None:
        old = write_tree(tmp_path / "old", TREE_2_0)
        new = write_tree(tmp_path / "new", TREE_3_0_9)
        built = build_patch(old, new, tmp_path / "2.patch")

        validations = read_manifest(built.path).validations
        assert sorted(v.path for v in validations) == sorted(TREE_3_0_9)
        assert built.checksum == sha256_of_file(built.path)
        assert built.length == built.path.stat().st_size

    def test_identical_trees_give_no_operations(self, tmp_path: Path) -> None:
        old = write_tree(tmp_path / "old", TREE_2_0)
        new = write_tree(tmp_path / "new", TREE_2_0)
        built = build_patch(old, new, tmp_path / "noop.patch")
        assert built.operation_count == 0

    def test_full_pack_installs_from_scratch(self, tmp_path: Path) -> None:
        new = write_tree(tmp_path / "new", TREE_3_0_9)
        built = build_patch(None, new, tmp_path / "full.patch", None, "3.0.9")
        manifest = read_manifest(built.path)
        assert {op.type for op in manifest.operations} == {OperationType.FORCE}

        install = tmp_path / "install"
        install.mkdir()
        work = tmp_path / "work"
        work.mkdir()
        records = Patcher(work / "action.log").apply(
            lambda pct, msg: None, built.path, install, work
        )
        assert records == []
        assert read_tree(install) == TREE_3_0_9

    def test_encrypted_payload(self, tmp_path: Path) -> None:
        old = write_tree(tmp_path / "old", TREE_1_4_4)
        new = write_tree(tmp_path / "new", TREE_2_0)
        built = build_patch(old, new, tmp_path / "1.patch", key=KEY)
        assert not zipfile.is_zipfile(built.path)
        assert built.checksum == sha256_of_file(built.path)
