"""
Unit tests for the launcher flow: apply, hand off, launch.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from softpatch.controllers.client_controller import ClientController
from softpatch.controllers.launcher_controller import LauncherController
from softpatch.controllers.self_updater import RecoveryChoice
from softpatch.utils import patcher as patcher_module
from softpatch.utils.constants import (
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_OK,
    REPLACEMENT_FILE_NAME,
    UPDATER_LOCK_NAME,
)
from softpatch.utils.exception import PatchApplyError
from softpatch.utils.lock_util import try_lock
from softpatch.utils.replacement_file import read_replacement_file
from tests.conftest import TREE_1_4_4, TREE_3_0_9, PatchChain, read_tree

LAUNCH_COMMANDS = ["app.bin", "--start"]


def write_client(
    path: Path, chain: PatchChain, queued: bool = True, **extra: object
) -> ClientController:
    state: dict[str, object] = {
        "version": "1.4.4",
        "storage_path": str(chain.work_dir),
        "install_path": str(chain.install_dir),
        "launch_commands": LAUNCH_COMMANDS,
    }
    if queued:
        state["patches"] = [
            {"id": 1, "version_from": "1.4.4", "version_to": "2.0"},
            {"id": 2, "version_from": "2.0", "version_to": "3.0.9"},
        ]
    state.update(extra)
    path.write_text(json.dumps(state))
    return ClientController.load(path)


@pytest.fixture
def client_file(tmp_path: Path) -> Path:
    return tmp_path / "client.json"


class TestLaunch:
    """Tests for starting the application."""

    def test_no_patches_launches_directly(
        self, patch_chain: PatchChain, client_file: Path
    ) -> None:
        controller = write_client(client_file, patch_chain, queued=False)
        spawner = MagicMock()
        assert LauncherController(controller, spawner=spawner).start() == EXIT_OK
        spawner.assert_called_once_with(
            LAUNCH_COMMANDS,
            cwd=str(patch_chain.install_dir),
            detached=True,
            capture_output=False,
        )
        assert read_tree(patch_chain.install_dir) == TREE_1_4_4

    def test_wait_returns_exit_code(
        self,
        patch_chain: PatchChain,
        client_file: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        controller = write_client(
            client_file,
            patch_chain,
            queued=False,
            launch_after="wait",
            launch_commands=["{python}", "-c", "print('hello'); raise SystemExit(5)"],
        )
        assert LauncherController(controller).start() == 5
        assert "hello" in capsys.readouterr().out

    def test_launch_failure(self, patch_chain: PatchChain, client_file: Path) -> None:
        controller = write_client(
            client_file, patch_chain, queued=False, launch_commands=[]
        )
        assert LauncherController(controller).start() == EXIT_FAILED


class TestApplyBeforeLaunch:
    """Tests for queued patches."""

    def test_chain_is_applied_then_launched(
        self, patch_chain: PatchChain, client_file: Path
    ) -> None:
        controller = write_client(client_file, patch_chain)
        spawner = MagicMock()
        assert LauncherController(controller, spawner=spawner).start() == EXIT_OK

        assert read_tree(patch_chain.install_dir) == TREE_3_0_9
        saved = ClientController.load(client_file).client
        assert saved.version == "3.0.9"
        assert saved.patches == []
        assert not saved.catalog_full_pack_only
        spawner.assert_called_once()
        assert spawner.call_args.args[0] == LAUNCH_COMMANDS

    def test_locked_file_is_handed_off(
        self,
        patch_chain: PatchChain,
        client_file: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        app = patch_chain.install_dir / "app.bin"
        real_rename = patcher_module.try_rename
        monkeypatch.setattr(
            patcher_module,
            "try_rename",
            lambda source, destination: app not in (Path(source), Path(destination))
            and real_rename(source, destination),
        )
        controller = write_client(client_file, patch_chain)
        spawner = MagicMock()
        assert LauncherController(controller, spawner=spawner).start() == EXIT_OK

        replacement_file = patch_chain.work_dir / REPLACEMENT_FILE_NAME
        replacements = read_replacement_file(replacement_file)
        assert [r.destination for r in replacements] == [str(app)]
        assert Path(replacements[0].new_file).read_bytes() == TREE_3_0_9["app.bin"]

        command = spawner.call_args.args[0]
        assert command[:6] == [
            sys.executable,
            "-m",
            "softpatch",
            "self-update",
            str(patch_chain.work_dir),
            str(replacement_file),
        ]
        assert command[6:] == [
            sys.executable,
            "-m",
            "softpatch",
            "launch",
            "--client",
            str(client_file),
        ]
        # The application itself is not started by the launcher
        spawner.assert_called_once()
        assert ClientController.load(client_file).client.version == "1.4.4"

    def test_failure_then_exit(self, patch_chain: PatchChain, client_file: Path) -> None:
        (patch_chain.install_dir / "app.bin").write_bytes(b"modified")
        controller = write_client(client_file, patch_chain)
        chooser = MagicMock(return_value=RecoveryChoice.EXIT)
        spawner = MagicMock()
        code = LauncherController(controller, chooser=chooser, spawner=spawner).start()

        assert code == EXIT_ABORTED
        assert isinstance(chooser.call_args.args[0], PatchApplyError)
        spawner.assert_not_called()
        assert ClientController.load(client_file).client.catalog_full_pack_only

    def test_failure_then_recover(self, patch_chain: PatchChain, client_file: Path) -> None:
        (patch_chain.install_dir / "app.bin").write_bytes(b"modified")
        controller = write_client(client_file, patch_chain)
        chooser = MagicMock(return_value=RecoveryChoice.RECOVER)
        spawner = MagicMock()
        code = LauncherController(controller, chooser=chooser, spawner=spawner).start()

        assert code == EXIT_OK
        expected = dict(TREE_1_4_4, **{"app.bin": b"modified"})
        assert read_tree(patch_chain.install_dir) == expected
        spawner.assert_called_once()

    def test_busy_updater_lock(self, patch_chain: PatchChain, client_file: Path) -> None:
        controller = write_client(client_file, patch_chain)
        held = try_lock(patch_chain.work_dir / UPDATER_LOCK_NAME)
        assert held is not None
        spawner = MagicMock()
        try:
            code = LauncherController(controller, spawner=spawner).start()
        finally:
            held.release()
        assert code == EXIT_FAILED
        spawner.assert_not_called()
        assert read_tree(patch_chain.install_dir) == TREE_1_4_4
