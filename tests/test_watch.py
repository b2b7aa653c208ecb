import logging
import threading
import time
from pathlib import Path

from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from plinth.build import Builder
from plinth.config import BuildConfig
from plinth.watch import Debouncer, Watcher, _ChangeHandler


def make_watcher(tmp_path: Path, files=None, **config) -> Watcher:
    build_config = BuildConfig.from_dict(tmp_path, config)
    build_config.input.mkdir(parents=True, exist_ok=True)
    for rel, content in (files or {}).items():
        path = build_config.input / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return Watcher(Builder(build_config))


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_debouncer_coalesces_bursts():
    calls = []
    debouncer = Debouncer(lambda: calls.append(1), delay=0.05)
    for _ in range(5):
        debouncer.trigger()

    assert wait_for(lambda: calls)
    time.sleep(0.15)
    assert calls == [1]


def test_debouncer_flush_and_cancel():
    calls = []
    debouncer = Debouncer(lambda: calls.append(1), delay=10)

    debouncer.trigger()
    assert debouncer.flush() is True
    assert calls == [1]
    assert debouncer.flush() is False

    debouncer.trigger()
    debouncer.cancel()
    assert debouncer.flush() is False
    assert calls == [1]


def test_debouncer_runs_once_more_after_triggers_during_run():
    calls = []
    started = threading.Event()
    release = threading.Event()

    def callback():
        calls.append(1)
        started.set()
        if len(calls) == 1:
            release.wait(2)

    debouncer = Debouncer(callback, delay=0.01)
    debouncer.trigger()
    assert started.wait(2)
    assert debouncer.running

    debouncer.trigger()
    debouncer.trigger()
    debouncer.trigger()
    release.set()

    assert wait_for(lambda: not debouncer.running)
    assert len(calls) == 2


def test_watcher_relative_filters_paths(tmp_path):
    watcher = make_watcher(tmp_path, output="src/_site")
    src = watcher.input_dir

    assert watcher.relative(src / "docs" / "a.html") == "docs/a.html"
    assert watcher.relative(str(src / "index.md")) == "index.md"
    assert watcher.relative(src / "_site" / "index.html") is None
    assert watcher.relative(tmp_path / "plinth.yaml") is None
    assert watcher.relative(src / ".sass-cache" / "x.scssc") is None
    assert watcher.relative(src / "page.html.swp") is None
    assert watcher.relative(src / "page.html~") is None
    assert watcher.relative(src / ".#page.html") is None
    assert watcher.relative(src / "upload.tmp") is None
    assert watcher.relative(src / ".DS_Store") is None


def test_watcher_changes_trigger_debounced_rebuild(tmp_path, monkeypatch):
    watcher = make_watcher(tmp_path)
    triggered = []
    monkeypatch.setattr(watcher.debouncer, "trigger", lambda: triggered.append(1))
    handler = _ChangeHandler(watcher)
    src = watcher.input_dir

    handler.on_created(FileCreatedEvent(str(src / "a.html")))
    handler.on_modified(FileModifiedEvent(str(src / "a.html")))
    handler.on_modified(DirModifiedEvent(str(src / "docs")))
    handler.on_modified(FileModifiedEvent(str(src / "a.html.swp")))
    handler.on_modified(FileModifiedEvent(str(watcher.output_dir / "a.html")))

    assert triggered == [1, 1]


def test_watcher_delete_removes_outputs(tmp_path):
    watcher = make_watcher(
        tmp_path,
        {"template.html": "<!-- build:content -->", "post.md": "# Post", "robots.txt": "x"},
    )
    watcher.builder.run(full=True)
    output = watcher.output_dir
    assert (output / "post.html").exists()

    handler = _ChangeHandler(watcher)
    (watcher.input_dir / "post.md").unlink()
    handler.on_deleted(FileDeletedEvent(str(watcher.input_dir / "post.md")))
    assert not (output / "post.html").exists()

    handler.on_deleted(FileDeletedEvent(str(watcher.input_dir / "robots.txt")))
    assert not (output / "robots.txt").exists()


def test_watcher_move_is_delete_plus_rebuild(tmp_path, monkeypatch):
    watcher = make_watcher(
        tmp_path, {"template.html": "<!-- build:content -->", "old.txt": "x"}
    )
    watcher.builder.run(full=True)
    triggered = []
    monkeypatch.setattr(watcher.debouncer, "trigger", lambda: triggered.append(1))

    src = watcher.input_dir
    (src / "old.txt").rename(src / "new.txt")
    _ChangeHandler(watcher).on_moved(FileMovedEvent(str(src / "old.txt"), str(src / "new.txt")))

    assert not (watcher.output_dir / "old.txt").exists()
    assert triggered == [1]


def test_rebuild_reports_results(tmp_path):
    watcher = make_watcher(tmp_path, {"template.html": "<!-- build:content -->", "a.txt": "a"})
    results = []
    watcher.on_rebuild = results.append

    result = watcher.rebuild()

    assert results == [result]
    assert result.copied == ["a.txt"]
    assert not result.full


def test_rebuild_failure_is_logged(tmp_path, caplog):
    watcher = make_watcher(tmp_path, {"index.html": "no template anywhere"})
    results = []
    watcher.on_rebuild = results.append

    with caplog.at_level(logging.ERROR, logger="plinth"):
        assert watcher.rebuild() is None

    assert results == []
    assert "Rebuild failed: Template file template.html not found" in caplog.text


def test_watcher_end_to_end(tmp_path):
    watcher = make_watcher(tmp_path, {"template.html": "<!-- build:content -->"})
    watcher.builder.run(full=True)
    watcher.debouncer.delay = 0.05
    page = watcher.output_dir / "index.html"

    watcher.start()
    try:
        (watcher.input_dir / "index.html").write_text(
            "<!-- build:content -->Hi<!-- /build:content -->", encoding="utf-8"
        )
        assert wait_for(
            lambda: page.exists() and page.read_text(encoding="utf-8") == "Hi", timeout=5
        )
    finally:
        watcher.stop()


def test_rebuild_skips_files_deleted_mid_run(tmp_path, monkeypatch):
    watcher = make_watcher(tmp_path, {"template.html": "<!-- build:content -->", "a.txt": "a"})
    builder = watcher.builder
    discovered = builder.discover()
    monkeypatch.setattr(builder, "discover", lambda: sorted(discovered + ["gone.html"]))

    result = watcher.rebuild()

    assert result is not None
    assert result.skipped == ["gone.html"]
    assert result.copied == ["a.txt"]


def test_rebuild_logs_filesystem_errors(tmp_path, monkeypatch, caplog):
    watcher = make_watcher(tmp_path, {"template.html": "<!-- build:content -->"})

    def fail(full=False):
        raise PermissionError(13, "Permission denied", "src/locked.html")

    monkeypatch.setattr(watcher.builder, "run", fail)
    with caplog.at_level(logging.ERROR, logger="plinth"):
        assert watcher.rebuild() is None

    assert "Rebuild failed: [Errno 13] Permission denied: 'src/locked.html'" in caplog.text
