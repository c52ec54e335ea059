"""Source line lookup tables built from SyncTeX logs.

The log is read once, front to back. Only ``Input:`` declarations, the
unit/magnification pair, page markers and content records are looked at;
everything else is skipped.
"""

import gzip
import json
import logging
import os
import threading
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ExtractionFailure
from .models import LookupEntry, iso_timestamp, now_iso
from .preamble import discover_inputs

logger = logging.getLogger(__name__)

CONTENT_TYPES = frozenset("xkg$(h")
SNIPPET_LENGTH = 80
# how many log lines are read between cancellation checks
CANCEL_CHECK_INTERVAL = 20000


def _normalize(path, base_dir):
    return os.path.realpath(os.path.join(str(base_dir), str(path)))


def _is_code_line(text):
    stripped = text.strip()
    return bool(stripped) and not stripped.startswith("%")


@dataclass
class LookupTable:
    source_file: str
    lines: dict = field(default_factory=dict)
    total_lines: int = 0
    input_files: list = field(default_factory=list)
    generated_at: str = field(default_factory=now_iso)

    def get(self, key):
        return self.lines.get(str(key))

    def on_page(self, page):
        return [(k, v) for k, v in self.lines.items() if v.page == page]

    def to_dict(self):
        return {
            "meta": {
                "sourceFile": self.source_file,
                "generatedAt": self.generated_at,
                "totalLines": self.total_lines,
                "inputFiles": list(self.input_files),
            },
            "lines": {k: v.to_dict() for k, v in self.lines.items()},
        }

    @classmethod
    def from_dict(cls, data):
        meta = data.get("meta", {})
        lines = {
            k: LookupEntry(v["page"], v["x"], v["y"], v.get("content", ""))
            for k, v in data.get("lines", {}).items()
        }
        return cls(
            meta.get("sourceFile", meta.get("texFile", "")),
            lines,
            meta.get("totalLines", 0),
            meta.get("inputFiles", []),
            meta.get("generatedAt", meta.get("generated", "")),
        )


class SyncTexParser:
    """Single-pass parser producing a :class:`LookupTable`.

    ``tracked_files`` are the included files to index besides the main
    file; when omitted they are discovered from ``\\input``/``\\include``.
    """

    def __init__(self, main_path, tracked_files=None):
        self.main_path = Path(main_path).resolve()
        self.base_dir = self.main_path.parent
        if tracked_files is None:
            tracked_files = discover_inputs(self.main_path)
        self.main_key = _normalize(self.main_path, self.base_dir)
        # normalized path -> key prefix ("" for the main file)
        self.tracked = {self.main_key: ""}
        self.input_files = []
        for path in tracked_files:
            norm = _normalize(path, self.base_dir)
            if norm in self.tracked:
                continue
            self.tracked[norm] = Path(path).name + ":"
            self.input_files.append(Path(path).name)

    def scan(self, stream, token=None, deadline=None):
        """Return ``{key: (page, x, y)}`` in stream order, first record wins."""
        inputs = {}
        unit = 1.0
        magnification = 1000.0
        page = None
        found = {}
        for count, raw in enumerate(stream):
            if count % CANCEL_CHECK_INTERVAL == 0:
                if token is not None:
                    token.raise_if_cancelled()
                if deadline is not None and time.monotonic() > deadline:
                    raise ExtractionFailure("SyncTeX extraction timed out")
            line = raw.rstrip("\r\n")
            if not line:
                continue
            first = line[0]
            if first == "{":
                try:
                    page = int(line[1:])
                except ValueError:
                    page = None
                continue
            if first == "}":
                page = None
                continue
            if line.startswith("Input:"):
                parts = line.split(":", 2)
                if len(parts) == 3:
                    norm = _normalize(parts[2], self.base_dir)
                    # records of untracked files are dropped like unknown ids
                    if norm in self.tracked:
                        inputs[parts[1]] = self.tracked[norm]
                    else:
                        inputs.pop(parts[1], None)
                continue
            if line.startswith("Unit:"):
                unit = _number(line[5:], unit)
                continue
            if line.startswith("Magnification:"):
                magnification = _number(line[14:], magnification)
                continue
            if page is None or first not in CONTENT_TYPES:
                continue
            record = _parse_record(line)
            if record is None:
                continue
            tag, source_line, rx, ry = record
            prefix = inputs.get(tag)
            if prefix is None:
                continue
            key = f"{prefix}{source_line}"
            if key in found:
                continue
            scale = unit * magnification / 1000.0 / 65536.0
            found[key] = (page, rx * scale, ry * scale)
        return found

    def _sources(self):
        sources = {"": self.main_path}
        for norm, prefix in self.tracked.items():
            if prefix:
                sources[prefix] = Path(norm)
        return sources

    def parse(self, synctex_path, token=None, timeout=None):
        synctex_path = Path(synctex_path)
        if not synctex_path.exists():
            raise ExtractionFailure(f"SyncTeX log not found: {synctex_path}")
        deadline = None
        if timeout is not None:
            deadline = time.monotonic() + timeout
        try:
            mtime = synctex_path.stat().st_mtime
            if synctex_path.suffix == ".gz":
                handle = gzip.open(
                    synctex_path, "rt", encoding="utf-8", errors="replace"
                )
            else:
                handle = open(
                    synctex_path, "r", encoding="utf-8", errors="replace"
                )
            with handle as stream:
                found = self.scan(stream, token=token, deadline=deadline)
        except (OSError, EOFError, zlib.error) as e:
            raise ExtractionFailure(
                f"Could not read {synctex_path.name}: {e}"
            ) from e
        table = self.build_table(found)
        # an unchanged log gives a byte-identical table
        table.generated_at = iso_timestamp(mtime)
        return table

    def build_table(self, found):
        source_lines = {}
        for prefix, path in self._sources().items():
            try:
                source_lines[prefix] = path.read_text(
                    encoding="utf-8", errors="replace"
                ).split("\n")
            except OSError:
                logger.warning("could not read %s for snippets", path)
                source_lines[prefix] = []
        order = {prefix: j for j, prefix in enumerate(source_lines)}
        rows = []
        for key, (page, x, y) in found.items():
            prefix, _, number = key.rpartition(":")
            if prefix:
                prefix += ":"
            lineno = int(number)
            text_lines = source_lines.get(prefix, [])
            if lineno < 1 or lineno > len(text_lines):
                continue
            text = text_lines[lineno - 1]
            if not _is_code_line(text):
                continue
            rows.append(
                (
                    (order[prefix], lineno),
                    key,
                    LookupEntry(page, x, y, text[:SNIPPET_LENGTH]),
                )
            )
        rows.sort(key=lambda row: row[0])
        return LookupTable(
            self.main_path.name,
            {key: entry for _, key, entry in rows},
            len(source_lines[""]),
            list(self.input_files),
        )


def _number(text, default):
    try:
        return float(text.strip())
    except ValueError:
        return default


def _parse_record(line):
    # <type><tag>,<line>:<x>,<y>[:W,H,D]
    try:
        head, coords = line[1:].split(":", 2)[:2]
        tag, source_line = head.split(",", 1)
        rx, ry = coords.split(",", 1)
        return tag, int(source_line), float(int(rx)), float(int(ry))
    except ValueError:
        return None


def extract_lookup(
    main_path, synctex_path, tracked_files=None, token=None, timeout=None
):
    return SyncTexParser(main_path, tracked_files).parse(
        synctex_path, token=token, timeout=timeout
    )


def write_lookup(table, path, token=None):
    """Write ``table`` to ``path`` through a temporary file."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(table.to_dict(), indent=2), encoding="utf-8")
    if token is not None and token.cancelled:
        tmp.unlink()
        token.raise_if_cancelled()
    os.replace(tmp, path)


def read_lookup(path):
    with open(path, encoding="utf-8") as fp:
        return LookupTable.from_dict(json.load(fp))


class LookupStore:
    """Current lookup table per document.

    A table is swapped in whole; readers hold on to whatever table they got
    and never see a half-built one. Tables not yet extracted in this
    process are loaded from the document's ``lookup.json``.
    """

    def __init__(self):
        self._tables = {}
        self._lock = threading.Lock()

    def replace(self, name, table):
        with self._lock:
            self._tables[name] = table

    def get(self, document):
        with self._lock:
            table = self._tables.get(document.name)
        if table is not None:
            return table
        path = document.output_dir / "lookup.json"
        if not path.exists():
            return None
        try:
            table = read_lookup(path)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("could not read %s: %s", path, e)
            return None
        with self._lock:
            self._tables.setdefault(document.name, table)
            return self._tables[document.name]
