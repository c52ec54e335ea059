"""Rebuilding derived diff documents after their source document builds.

A diff document shows the current pages of a document next to the pages
of an older git revision. The old side (``old-page-N.svg`` and
``old-lookup.json``) is built once by a separate tool; after every full
render of the source document the current side is refreshed here and the
page pairing in ``diff-info.json`` is recomputed.
"""

import json
import logging
import os
import re
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path

from .errors import PageSyncError
from .models import ReloadSignal, now_iso
from .process import run_command
from .renderer import list_pages, page_path
from .synctex import read_lookup

logger = logging.getLogger(__name__)

HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@", re.M)
OLD_PAGE_RE = re.compile(r"^old-page-0*(\d+)\.svg$")
HIGHLIGHT_PADDING = 10.0
MERGE_GAP = 20.0


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int


def parse_hunks(diff_text):
    hunks = []
    for m in HUNK_RE.finditer(diff_text):
        hunks.append(
            Hunk(
                int(m.group(1)),
                int(m.group(2) if m.group(2) is not None else 1),
                int(m.group(3)),
                int(m.group(4) if m.group(4) is not None else 1),
            )
        )
    return hunks


def map_lines_to_positions(start, count, lines):
    """Per-page ``(page, y_top, y_bottom)`` bands covering a line range."""
    ranges = {}
    for line in range(start, start + count):
        entry = lines.get(str(line))
        if entry is None:
            continue
        if entry.page in ranges:
            low, high = ranges[entry.page]
            ranges[entry.page] = (min(low, entry.y), max(high, entry.y))
        else:
            ranges[entry.page] = (entry.y, entry.y)
    return [
        (page, low - HIGHLIGHT_PADDING, high + HIGHLIGHT_PADDING)
        for page, (low, high) in sorted(ranges.items())
    ]


def merge_highlights(highlights, gap=MERGE_GAP):
    if len(highlights) <= 1:
        return [dict(j) for j in highlights]
    ordered = sorted(highlights, key=lambda h: h["yTop"])
    merged = [dict(ordered[0])]
    for current in ordered[1:]:
        previous = merged[-1]
        if current["yTop"] <= previous["yBottom"] + gap:
            previous["yBottom"] = max(previous["yBottom"], current["yBottom"])
        else:
            merged.append(dict(current))
    return merged


def compute_pairing(
    hunks, lines, old_lines, current_pages, old_pages, git_ref
):
    """Build the ``diff-info.json`` record for one diff document."""
    current_highlights = {}
    old_highlights = {}
    changed_current = set()
    changed_old = set()
    pairs_by_page = {}
    for hunk in hunks:
        new_positions = (
            map_lines_to_positions(hunk.new_start, hunk.new_count, lines)
            if hunk.new_count > 0
            else []
        )
        old_positions = (
            map_lines_to_positions(hunk.old_start, hunk.old_count, old_lines)
            if hunk.old_count > 0
            else []
        )
        for page, top, bottom in new_positions:
            changed_current.add(page)
            current_highlights.setdefault(page, []).append(
                {"yTop": top, "yBottom": bottom}
            )
        for page, top, bottom in old_positions:
            changed_old.add(page)
            old_highlights.setdefault(page, []).append(
                {"yTop": top, "yBottom": bottom}
            )
        for page, _, _ in new_positions:
            linked = pairs_by_page.setdefault(page, set())
            linked.update(p for p, _, _ in old_positions)
    for page in list(current_highlights):
        current_highlights[page] = merge_highlights(current_highlights[page])
    for page in list(old_highlights):
        old_highlights[page] = merge_highlights(old_highlights[page])
    # old pages whose content disappeared hang off the nearest current page
    for old_page in sorted(changed_old):
        if any(old_page in linked for linked in pairs_by_page.values()):
            continue
        nearest = min(old_page, current_pages) if current_pages else old_page
        pairs_by_page.setdefault(nearest, set()).add(old_page)
        changed_current.add(nearest)
    pairs = []
    for page in range(1, current_pages + 1):
        linked = sorted(pairs_by_page.get(page, ()))
        entry = {
            "currentPage": page,
            "oldPages": linked,
            "hasChanges": page in changed_current,
        }
        if entry["hasChanges"]:
            highlights = {
                "current": current_highlights.get(page, []),
                "old": [
                    dict(page=old_page, **h)
                    for old_page in linked
                    for h in old_highlights.get(old_page, [])
                ],
            }
            entry["highlights"] = highlights
            if not linked and highlights["current"]:
                entry["newContent"] = True
        pairs.append(entry)
    return {
        "meta": {"gitRef": git_ref, "generated": now_iso()},
        "currentPages": current_pages,
        "oldPages": old_pages,
        "pairs": pairs,
    }


def git_diff(source_dir, git_ref, main_file, timeout=120.0):
    result = run_command(
        ["git", "diff", git_ref, "--", main_file],
        cwd=source_dir,
        timeout=timeout,
    )
    return result.stdout


def count_old_pages(directory):
    return sum(
        1 for path in Path(directory).iterdir() if OLD_PAGE_RE.match(path.name)
    )


class CascadeRebuilder:
    """Refreshes diff documents that depend on a freshly built document."""

    def __init__(self, dispatcher, timeout=120.0, lock_for=None):
        self.dispatcher = dispatcher
        self.timeout = timeout
        # returns the lock guarding writes into an output directory
        self.lock_for = lock_for

    def rebuild(self, source, dependent):
        """Run one cascade and return the dependent's new page count.

        Failures are logged and give None; they are never raised.
        """
        try:
            count = self._rebuild(source, dependent)
        except (PageSyncError, OSError, ValueError) as e:
            logger.warning(
                "[cascade] %s -> %s failed: %s", source.name, dependent.name, e
            )
            return None
        return count

    def _rebuild(self, source, dependent):
        out = dependent.output_dir
        out.mkdir(parents=True, exist_ok=True)
        if self.lock_for is not None:
            lock = self.lock_for(source.output_dir)
        else:
            lock = threading.Lock()
        # no source commit while copying
        with lock:
            current = list_pages(source.output_dir)
            for page, path in current.items():
                shutil.copyfile(path, page_path(out, page))
            count = max(current) if current else 0
            for page, path in list_pages(out).items():
                if page > count:
                    path.unlink()
            for name in ("lookup.json", "macros.json"):
                if (source.output_dir / name).exists():
                    shutil.copyfile(source.output_dir / name, out / name)
        lines = {}
        if (out / "lookup.json").exists():
            lines = read_lookup(out / "lookup.json").lines
        old_lines = {}
        if (out / "old-lookup.json").exists():
            old_lines = read_lookup(out / "old-lookup.json").lines
        hunks = []
        if dependent.git_ref:
            hunks = parse_hunks(
                git_diff(
                    source.source_dir,
                    dependent.git_ref,
                    source.main_file,
                    self.timeout,
                )
            )
        info = compute_pairing(
            hunks,
            lines,
            old_lines,
            count,
            count_old_pages(out),
            dependent.git_ref,
        )
        tmp = out / "diff-info.json.tmp"
        tmp.write_text(json.dumps(info, indent=2))
        os.replace(tmp, out / "diff-info.json")
        logger.info(
            "[cascade] %s -> %s: %d hunks, %d pages",
            source.name,
            dependent.name,
            len(hunks),
            count,
        )
        self.dispatcher.publish(dependent, ReloadSignal.full())
        return count
