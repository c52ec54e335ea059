import time
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .command_registry import register_command
from .commands import make_scheduler, open_document
from .project_store import is_build_junk

WATCHED_SUFFIXES = (".tex", ".bib", ".sty", ".cls", ".bst", ".def")
HTML_WATCHED_SUFFIXES = (".qmd", ".md", ".html", ".css", ".yml")
IGNORED_DIRS = ("_pagesync", ".staging", ".git")


def is_watched(path, suffixes=WATCHED_SUFFIXES):
    """Return True if a change to ``path`` should trigger a build."""
    path = Path(path)
    if any(part in IGNORED_DIRS for part in path.parts):
        return False
    if is_build_junk(path.name):
        return False
    return path.suffix in suffixes


class ChangeHandler(FileSystemEventHandler):
    """Forwards source changes under a document's directory to the scheduler."""

    def __init__(self, scheduler, document):
        self.scheduler = scheduler
        self.document = document
        if document.format == "html":
            self.suffixes = HTML_WATCHED_SUFFIXES
        else:
            self.suffixes = WATCHED_SUFFIXES

    def handle(self, path, is_directory):
        if is_directory or not is_watched(path, self.suffixes):
            return
        print(f"Change detected: {path}", flush=True)
        self.scheduler.notify_change(self.document.name, path)

    def on_modified(self, event):
        self.handle(event.src_path, event.is_directory)

    def on_created(self, event):
        self.handle(event.src_path, event.is_directory)

    def on_moved(self, event):
        self.handle(event.dest_path, event.is_directory)


def start_observer(scheduler, documents):
    """Start one watchdog observer covering every document's sources."""
    observer = Observer()
    for document in documents:
        if document.depends_on is not None:
            continue
        observer.schedule(
            ChangeHandler(scheduler, document),
            str(document.source_dir),
            recursive=True,
        )
    observer.start()
    return observer


@register_command(
    "Watch a document's sources and rebuild its pages on every change",
    help={
        "main": "Main source file",
        "poll": "Seconds between debounce timer checks",
        "html": "Build with the configured html command",
    },
)
def watch(main, poll=0.05, html=False):
    store, document = open_document(main, html)
    for name in store.reset_stale():
        print(f"Reset stale build state of {name}", flush=True)
    document = store.get(document.name)
    scheduler = make_scheduler(store, document)
    scheduler.register(document)
    scheduler.build_now(document.name)
    observer = start_observer(scheduler, [document])
    print(
        f"Watching {document.source_dir} (output in {document.output_dir})",
        flush=True,
    )
    try:
        while True:
            scheduler.pump()
            time.sleep(poll)
    except KeyboardInterrupt:
        pass
    finally:
        observer.stop()
        observer.join()
        scheduler.stop()
