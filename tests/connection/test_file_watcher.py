"""Tests for the debounced file watcher."""

import asyncio

import pytest

from mcphub.connection.file_watcher import FileWatcher


@pytest.fixture
def watcher():
    w = FileWatcher(stability_threshold=0.1, poll_interval=0.02)
    yield w
    w.dispose()


async def _noop():
    pass


@pytest.mark.asyncio
async def test_disabled_watcher_arms_nothing(tmp_path):
    watcher = FileWatcher(enabled=False)

    watcher.setup_watchers("files", [str(tmp_path / "build" / "index.js")], _noop)

    assert watcher.watched_names() == []
    assert watcher.enabled is False


@pytest.mark.asyncio
async def test_callback_fires_after_write(watcher, tmp_path):
    target = tmp_path / "index.js"
    target.write_text("v1")
    fired = asyncio.Event()

    async def on_change():
        fired.set()

    watcher.setup_watchers("files", [str(target)], on_change)
    target.write_text("v2")

    await asyncio.wait_for(fired.wait(), timeout=5)


@pytest.mark.asyncio
async def test_burst_of_writes_fires_once(watcher, tmp_path):
    target = tmp_path / "index.js"
    target.write_text("v0")
    calls = []

    async def on_change():
        calls.append(target.read_text())

    watcher.setup_watchers("files", [str(target)], on_change)
    for i in range(5):
        target.write_text(f"v{i + 1}")
        await asyncio.sleep(0.01)

    await asyncio.sleep(1.0)

    assert calls == ["v5"]


@pytest.mark.asyncio
async def test_failing_callback_keeps_watching(watcher, tmp_path):
    target = tmp_path / "index.js"
    target.write_text("v1")
    calls = []

    async def on_change():
        calls.append(1)
        raise RuntimeError("restart failed")

    watcher.setup_watchers("files", [str(target)], on_change)

    target.write_text("v2")
    await asyncio.sleep(0.6)
    target.write_text("v3")
    await asyncio.sleep(0.6)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_setup_replaces_existing_watchers(watcher, tmp_path):
    first = tmp_path / "a.js"
    second = tmp_path / "b.js"
    first.write_text("a")
    second.write_text("b")
    calls = []

    async def on_first():
        calls.append("first")

    async def on_second():
        calls.append("second")

    watcher.setup_watchers("files", [str(first)], on_first)
    watcher.setup_watchers("files", [str(second)], on_second)
    first.write_text("a2")
    second.write_text("b2")
    await asyncio.sleep(0.6)

    assert watcher.watched_names() == ["files"]
    assert calls == ["second"]


@pytest.mark.asyncio
async def test_clear_one_name_keeps_others(watcher, tmp_path):
    target = tmp_path / "shared.json"
    target.write_text("{}")
    calls = []

    async def on_global():
        calls.append("global")

    async def on_project():
        calls.append("project")

    # Both handlers share the same directory watch
    watcher.setup_watchers("global", [str(target)], on_global)
    watcher.setup_watchers("project", [str(target)], on_project)
    watcher.clear_watchers("global")

    target.write_text('{"changed": true}')
    await asyncio.sleep(0.6)

    assert watcher.watched_names() == ["project"]
    assert calls == ["project"]


@pytest.mark.asyncio
async def test_clear_all(watcher, tmp_path):
    target = tmp_path / "index.js"
    target.write_text("v1")
    calls = []

    async def on_change():
        calls.append(1)

    watcher.setup_watchers("a", [str(target)], on_change)
    watcher.setup_watchers("b", [str(tmp_path)], on_change)
    watcher.clear_watchers()
    target.write_text("v2")
    await asyncio.sleep(0.4)

    assert watcher.watched_names() == []
    assert calls == []
