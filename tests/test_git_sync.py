import asyncio
import shutil
from pathlib import Path

import pytest
from conftest import SLUG, amend_origin, git, requires_git

from courseshell.errors import GitFailure, NotFoundError
from courseshell.events import CollectingSink
from courseshell.git_sync import GitSyncEngine, parse_ahead_behind
from courseshell.process_runner import ProcessRunner
from courseshell.progress import CompletionStore
from courseshell.workspace import WorkspaceManager

HELLO = "1_basics/1_hello"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("0\t3", (0, 3)),
        ("2 5\n", (2, 5)),
        ("  7   1  ", (7, 1)),
        ("x 4", (0, 4)),
        ("4 y extra", (4, 0)),
        ("", (0, 0)),
        ("12", (0, 0)),
    ],
)
def test_parse_ahead_behind(text: str, expected: tuple[int, int]) -> None:
    assert parse_ahead_behind(text) == expected


def _engine(settings) -> GitSyncEngine:
    return GitSyncEngine(settings, ProcessRunner(grace_period=0.5))


def test_clone_then_check_reports_up_to_date(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    steps: list[tuple[str, int | None]] = []

    def progress(step: str, percent: int | None = None, message: str | None = None) -> None:
        steps.append((step, percent))

    async def scenario():
        path = await engine.clone(SLUG, progress=progress)
        status = await engine.check_update_available(SLUG)
        return path, status

    path, status = asyncio.run(scenario())
    assert path == settings.clone_dir(SLUG)
    assert (path / HELLO / "main.py").is_file()
    assert (status.update_available, status.ahead_by, status.behind_by) == (False, 0, 0)
    assert [step for step, _ in steps] == ["prepare", "cloning", "finalize"]
    percents = [percent for _, percent in steps]
    assert percents == sorted(percents)


def test_reclone_replaces_existing_destination(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    asyncio.run(engine.clone(SLUG))
    stray = settings.clone_dir(SLUG) / "stray.txt"
    stray.write_text("leftover", encoding="utf-8")

    asyncio.run(engine.clone(SLUG))
    assert not stray.exists()
    assert (settings.clone_dir(SLUG) / HELLO / "main.py").is_file()


@requires_git
def test_clone_of_bad_url_raises_git_failure(settings_for, tmp_path: Path) -> None:
    settings = settings_for((tmp_path / "no-such-repo").as_uri())
    engine = _engine(settings)
    logs: list[tuple[str, str]] = []

    with pytest.raises(GitFailure, match="git clone failed"):
        asyncio.run(engine.clone(SLUG, log=lambda stream, chunk: logs.append((stream, chunk))))
    assert any(stream == "stderr" for stream, _ in logs)


def test_check_without_clone_raises_not_found(origin, settings_for) -> None:
    engine = _engine(settings_for(origin.url))
    with pytest.raises(NotFoundError, match="Clone it first"):
        asyncio.run(engine.check_update_available(SLUG))


def test_check_detects_new_upstream_commit(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    asyncio.run(engine.clone(SLUG))
    origin.commit({"2_loops/2_while/loop.py": "while False:\n    pass\n"}, "add while")

    status = asyncio.run(engine.check_update_available(SLUG))
    assert status.update_available is True
    assert status.behind_by == 1
    assert status.ahead_by == 0


def test_pull_fast_forwards_and_refreshes_meta(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    manager = WorkspaceManager(settings, CompletionStore(":memory:"), engine.runner, CollectingSink())

    async def scenario():
        await engine.clone(SLUG)
        await manager.write_file(SLUG, HELLO, "main.py", "print('my work')\n")
        origin.commit(
            {
                f"{HELLO}/main.py": "print('upstream changed')\n",
                f"{HELLO}/_meta/task.md": "# Say hello, updated\n",
            },
            "update hello",
        )
        return await engine.pull(SLUG)

    result = asyncio.run(scenario())
    assert result.updated is True
    assert result.forced is False
    assert result.synced_meta_for == 1

    workspace = manager.workspace_dir(SLUG, HELLO)
    assert (workspace / "main.py").read_text(encoding="utf-8") == "print('my work')\n"
    assert (workspace / "_meta" / "task.md").read_text(encoding="utf-8") == "# Say hello, updated\n"
    clone_main = settings.clone_dir(SLUG) / HELLO / "main.py"
    assert clone_main.read_text(encoding="utf-8") == "print('upstream changed')\n"


def test_pull_force_syncs_diverged_history(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    manager = WorkspaceManager(settings, CompletionStore(":memory:"), engine.runner, CollectingSink())
    steps: list[str] = []

    async def scenario():
        await engine.clone(SLUG)
        await manager.write_file(SLUG, HELLO, "main.py", "print('keep me')\n")
        clone = settings.clone_dir(SLUG)
        (clone / "local-junk.txt").write_text("untracked", encoding="utf-8")
        amend_origin(origin, {f"{HELLO}/_meta/task.md": "# Rewritten task\n"})
        return await engine.pull(SLUG, progress=lambda step, percent=None, message=None: steps.append(step))

    result = asyncio.run(scenario())
    assert result.forced is True
    assert "force-sync" in steps
    assert steps[-1] == "finalize"

    clone = settings.clone_dir(SLUG)
    assert not (clone / "local-junk.txt").exists()
    assert git(clone, "rev-parse", "HEAD").strip() == git(origin.path, "rev-parse", "HEAD").strip()
    workspace = manager.workspace_dir(SLUG, HELLO)
    assert (workspace / "main.py").read_text(encoding="utf-8") == "print('keep me')\n"
    assert (workspace / "_meta" / "task.md").read_text(encoding="utf-8") == "# Rewritten task\n"


def test_pull_without_clone_raises_not_found(origin, settings_for) -> None:
    engine = _engine(settings_for(origin.url))
    with pytest.raises(NotFoundError):
        asyncio.run(engine.pull(SLUG))


def test_pull_drops_workspace_meta_removed_upstream(origin, settings_for) -> None:
    settings = settings_for(origin.url)
    engine = _engine(settings)
    manager = WorkspaceManager(settings, CompletionStore(":memory:"), engine.runner, CollectingSink())

    async def scenario():
        await engine.clone(SLUG)
        workspace = await manager.ensure_workspace(SLUG, HELLO)
        assert (workspace / "_meta" / "meta.json").is_file()
        shutil.rmtree(origin.path / HELLO / "_meta")
        origin.commit({}, "drop hello metadata")
        return await engine.pull(SLUG)

    result = asyncio.run(scenario())
    assert result.synced_meta_for == 1
    workspace = manager.workspace_dir(SLUG, HELLO)
    assert not (workspace / "_meta").exists()
    assert (workspace / "main.py").is_file()
    assert not (settings.clone_dir(SLUG) / HELLO / "_meta").exists()
