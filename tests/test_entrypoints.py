import pytest

import courseshell.__main__ as module_main
from courseshell import main
from courseshell.commands import CommandSpec
from courseshell.git_sync import GitSyncEngine
from courseshell.process_runner import ProcessRunner
from courseshell.workspace import WorkspaceManager


def test_module_entrypoint_calls_main_entry(monkeypatch) -> None:
    called = {"value": 0}
    monkeypatch.setattr(module_main, "main_entry", lambda: called.__setitem__("value", 1))
    module_main.main()
    assert called["value"] == 1


@pytest.mark.parametrize(
    "function",
    [
        GitSyncEngine.clone_path,
        WorkspaceManager.read_file,
        WorkspaceManager.write_file,
        WorkspaceManager.is_completed,
        WorkspaceManager.start_run,
        WorkspaceManager.start_test,
        ProcessRunner.stream,
        CommandSpec.with_args,
        main.build_parser,
    ],
    ids=lambda function: function.__qualname__,
)
def test_public_api_is_documented(function) -> None:
    assert (function.__doc__ or "").strip()
