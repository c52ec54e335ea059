import json
import logging
from pathlib import Path

from .command_registry import register_command
from .config import load_settings
from .coords import BBox, FixedPageMapper, find_nearby_lines
from .errors import PageSyncError
from .models import BuildStatus
from .project_store import ProjectStore
from .scheduler import BuildScheduler, SynchronousExecutor
from .signals import JsonFileStore
from .synctex import extract_lookup, read_lookup, write_lookup

logger = logging.getLogger(__name__)

STORE_DIR = "_pagesync"


def open_document(main, html=False):
    """Return the project store and persisted document for ``main``.

    Documents are kept in ``_pagesync/`` next to the main file and named
    after it; the first call creates the record.
    """
    main = Path(main)
    if not main.exists():
        raise FileNotFoundError(f"Main file not found: {main}")
    main = main.resolve()
    store = ProjectStore(main.parent / STORE_DIR)
    name = main.stem
    if store.exists(name):
        document = store.get(name)
    else:
        document = store.create(
            name,
            main_file=main.name,
            format="html" if html else "tex",
            source_dir=main.parent,
        )
    return store, document


def make_scheduler(store, document, executor=None):
    settings = load_settings(document.source_dir)
    signals = JsonFileStore(store.root)
    signals.bind(document.room, document.output_dir / "signals.json")
    return BuildScheduler(
        settings, store=store, shared_store=signals, executor=executor
    )


@register_command(
    "Build a document once, then extract its lookup table",
    help={
        "main": "Main source file",
        "structural": "Force a full (non-incremental) compile",
        "html": "Build with the configured html command",
    },
)
def build(main, structural=False, html=False):
    store, document = open_document(main, html)
    scheduler = make_scheduler(store, document, SynchronousExecutor())
    scheduler.register(document)
    print(f"Building {document.main_path}", flush=True)
    scheduler.build_now(document.name, structural=structural)
    if (
        document.format == "tex"
        and document.build_status is BuildStatus.SUCCESS
    ):
        scheduler.extract_now(document.name)
    status = scheduler.build_status(document.name)
    for line in status["log"]:
        print(line, flush=True)
    print(
        f"{document.name}: {status['status']} ({document.pages} pages)",
        flush=True,
    )
    if document.build_status is not BuildStatus.SUCCESS:
        raise PageSyncError(f"Build of {document.main_path} failed")


@register_command(
    "Write lookup.json from the SyncTeX log of an already compiled document",
    help={
        "main": "Main .tex file",
        "output": "Where to write the table (default: next to main)",
    },
)
def lookup(main, output=None):
    main = Path(main)
    if not main.exists():
        raise FileNotFoundError(f"Main file not found: {main}")
    synctex_path = main.with_suffix(".synctex.gz")
    if not synctex_path.exists() and main.with_suffix(".synctex").exists():
        synctex_path = main.with_suffix(".synctex")
    table = extract_lookup(main, synctex_path)
    if output is None:
        output = main.parent / "lookup.json"
    write_lookup(table, output)
    print(f"Wrote {len(table.lines)} lines to {output}", flush=True)


@register_command(
    "Print the source lines near a canvas region as JSON",
    help={
        "output_dir": "Output directory holding lookup.json",
        "min_x": "Left edge of the region in canvas pixels",
        "min_y": "Top edge of the region in canvas pixels",
        "max_x": "Right edge of the region in canvas pixels",
        "max_y": "Bottom edge of the region in canvas pixels",
    },
)
def nearby(output_dir, min_x: float, min_y: float, max_x: float, max_y: float):
    path = Path(output_dir) / "lookup.json"
    if not path.exists():
        raise FileNotFoundError(f"Lookup table not found: {path}")
    table = read_lookup(path)
    layout = load_settings().layout
    matches = find_nearby_lines(
        table,
        FixedPageMapper(layout),
        BBox(min_x, min_y, max_x, max_y),
        margin=layout.nearby_margin,
    )
    print(json.dumps(matches, indent=2))


@register_command(
    "List the documents built from a directory with their build status",
    help={
        "source_dir": "Directory holding the main source files",
        "log": "Also print the log of each document's last build",
    },
)
def status(source_dir=".", log=False):
    root = Path(source_dir) / STORE_DIR
    if not root.is_dir():
        print(f"No documents under {Path(source_dir).resolve()}", flush=True)
        return
    store = ProjectStore(root)
    for document in store.list():
        print(
            f"{document.name}: {document.build_status.value},"
            f" {document.pages} pages, last build {document.last_build}",
            flush=True,
        )
        if log:
            text = store.read_build_log(document.name)
            if text:
                print(text.rstrip(), flush=True)
