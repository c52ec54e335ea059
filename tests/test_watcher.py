import types

import yaml

from pagesync import watcher
from pagesync.config import CONFIG_NAME
from pagesync.models import BuildStatus, Document
from pagesync.project_store import ProjectStore


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False
        self.joined = False

    def schedule(self, handler, path=".", recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self):
        self.joined = True


class RecordingScheduler:
    def __init__(self):
        self.changes = []

    def notify_change(self, name, path):
        self.changes.append((name, path))


def test_watch_filter():
    assert watcher.is_watched("/proj/main.tex")
    assert watcher.is_watched("/proj/refs.bib")
    assert not watcher.is_watched("/proj/main.aux")
    assert not watcher.is_watched("/proj/main.synctex.gz")
    assert not watcher.is_watched("/proj/_pagesync/main/output/page-1.svg")
    assert not watcher.is_watched("/proj/.git/index.tex")
    assert not watcher.is_watched("/proj/notes.qmd")
    assert watcher.is_watched("/proj/notes.qmd", watcher.HTML_WATCHED_SUFFIXES)


def test_handler_forwards_source_changes(tmp_path, capsys):
    scheduler = RecordingScheduler()
    handler = watcher.ChangeHandler(scheduler, Document("paper", tmp_path))
    main = str(tmp_path / "main.tex")
    handler.on_modified(types.SimpleNamespace(src_path=main, is_directory=False))
    handler.on_created(
        types.SimpleNamespace(src_path=str(tmp_path / "main.log"), is_directory=False)
    )
    handler.on_modified(
        types.SimpleNamespace(src_path=str(tmp_path / "sub.tex"), is_directory=True)
    )
    # editors that save through a temporary file
    handler.on_moved(
        types.SimpleNamespace(
            src_path=str(tmp_path / ".main.tex.swp"),
            dest_path=main,
            is_directory=False,
        )
    )
    assert scheduler.changes == [("paper", main), ("paper", main)]
    assert "Change detected" in capsys.readouterr().out


def test_observer_skips_derived_documents(tmp_path, monkeypatch):
    monkeypatch.setattr(watcher, "Observer", FakeObserver)
    documents = [
        Document("paper", tmp_path),
        Document("paper-diff", tmp_path, depends_on="paper"),
    ]
    observer = watcher.start_observer(RecordingScheduler(), documents)
    assert observer.started
    assert [(h.document.name, p, r) for h, p, r in observer.scheduled] == [
        ("paper", str(tmp_path), True)
    ]


def test_watch_command_shuts_down_on_interrupt(
    source_dir, fake_commands, monkeypatch, capsys
):
    (source_dir / CONFIG_NAME).write_text(
        yaml.safe_dump({"commands": fake_commands})
    )
    store = ProjectStore(source_dir / "_pagesync")
    document = store.create("main", source_dir=source_dir)
    document.build_status = BuildStatus.BUILDING
    store.save(document)
    observers = []

    def make_observer():
        observer = FakeObserver()
        observers.append(observer)
        return observer

    def interrupt(seconds):
        raise KeyboardInterrupt

    monkeypatch.setattr(watcher, "Observer", make_observer)
    monkeypatch.setattr(watcher.time, "sleep", interrupt)
    watcher.watch(str(source_dir / "main.tex"))

    (observer,) = observers
    assert observer.stopped and observer.joined
    handler, path, _ = observer.scheduled[0]
    assert handler.document.name == "main"
    assert path == str(source_dir)
    out = capsys.readouterr().out
    assert "Reset stale build state of main" in out
    assert "Watching" in out
    assert store.get("main").build_status is not BuildStatus.BUILDING
