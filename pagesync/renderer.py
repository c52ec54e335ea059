"""Page rendering: DVI to per-page SVG, and paginated web documents.

Converter output always lands in a per-job staging directory first. Pages
are moved into the output directory only after the job's token has been
checked, so a superseded job never replaces pages written by a newer one.
"""

import json
import logging
import os
import re
import shutil
import threading
import time
from pathlib import Path

from .errors import RenderFailure
from .models import PageArtifact
from .process import ensure_tool, fill_command, run_command

logger = logging.getLogger(__name__)

PAGE_RE = re.compile(r"^page-0*(\d+)\.svg$")
PAGE_INFO_NAME = "page-info.json"
STAGING_NAME = ".staging"


def page_path(output_dir, page):
    return Path(output_dir) / f"page-{page}.svg"


def normalize_page_names(directory):
    """Rename zero-padded converter output (``page-01.svg`` to ``page-1.svg``)."""
    directory = Path(directory)
    for path in list(directory.iterdir()):
        m = PAGE_RE.match(path.name)
        if m:
            target = page_path(directory, int(m.group(1)))
            if target != path:
                os.replace(path, target)


def list_pages(directory):
    """Return ``{page number: path}`` for the page files in ``directory``."""
    directory = Path(directory)
    if not directory.exists():
        return {}
    pages = {}
    for path in directory.iterdir():
        m = PAGE_RE.match(path.name)
        if m:
            pages[int(m.group(1))] = path
    return dict(sorted(pages.items()))


def format_page_spec(pages):
    if not pages:
        return "1-"
    return ",".join(str(j) for j in sorted(set(pages)))


class PageRenderer:
    def __init__(self, commands, timeout=600.0):
        self.commands = commands
        self.timeout = timeout
        self._locks = {}
        self._locks_guard = threading.Lock()

    def commit_lock(self, output_dir):
        """Lock serializing writes into one output directory."""
        key = str(Path(output_dir).resolve())
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _staging_dir(self, document, job_id):
        staging = document.output_dir / STAGING_NAME / job_id
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        return staging

    def render(self, document, pages=None, token=None, job_id="render", log=None):
        """Render ``pages`` of ``document`` (all pages when ``pages`` is None).

        A subset render overwrites only the requested pages. A full render
        also deletes pages numbered past the new page count. Returns the
        committed :class:`PageArtifact` list, ordered by page.
        """
        if log is None:
            log = logger.info
        full = pages is None
        spec = format_page_spec(pages)
        document.output_dir.mkdir(parents=True, exist_ok=True)
        staging = self._staging_dir(document, job_id)
        start = time.time()
        try:
            log(
                "Converting all pages..."
                if full
                else f"Converting priority pages [{spec}]..."
            )
            args = fill_command(
                self.commands["render"],
                pages=spec,
                output=str(staging / "page-%p.svg"),
                dvi=str(document.dvi_path),
            )
            ensure_tool(args[0])
            run_command(
                args,
                cwd=document.source_dir,
                timeout=self.timeout,
                token=token,
                failure=RenderFailure,
            )
            normalize_page_names(staging)
            produced = list_pages(staging)
            if not produced:
                raise RenderFailure(f"{args[0]} produced no pages for {spec}")
            artifacts = self._commit(document, produced, full, token)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        log(
            f"Rendered {len(artifacts)} page(s) in {time.time() - start:.1f}s"
        )
        return artifacts

    def _commit(self, document, produced, full, token):
        artifacts = []
        with self.commit_lock(document.output_dir):
            for page, path in produced.items():
                if token is not None:
                    token.raise_if_cancelled()
                target = page_path(document.output_dir, page)
                os.replace(path, target)
                artifacts.append(PageArtifact.from_path(page, target))
            if full:
                count = max(produced)
                for page, path in list_pages(document.output_dir).items():
                    if page > count:
                        if token is not None:
                            token.raise_if_cancelled()
                        path.unlink()
        return artifacts


class HtmlBuilder:
    """Builds a paginated web document with an external command.

    The command writes the page files and ``page-info.json`` into the
    directory passed as ``{output}``.
    """

    def __init__(self, commands, timeout=600.0, renderer=None):
        self.commands = commands
        self.timeout = timeout
        self.renderer = renderer

    def build(self, document, token=None, job_id="html", log=None):
        if log is None:
            log = logger.info
        template = self.commands.get("html")
        if not template:
            raise RenderFailure(
                f"No 'html' command configured for document {document.name}"
            )
        document.output_dir.mkdir(parents=True, exist_ok=True)
        staging = document.output_dir / STAGING_NAME / job_id
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        try:
            log("Building paginated document...")
            args = fill_command(
                template, main=document.main_file, output=str(staging)
            )
            ensure_tool(args[0])
            run_command(
                args,
                cwd=document.source_dir,
                timeout=self.timeout,
                token=token,
                failure=RenderFailure,
            )
            info_path = staging / PAGE_INFO_NAME
            if not info_path.exists():
                raise RenderFailure(f"{args[0]} did not write {PAGE_INFO_NAME}")
            page_infos = json.loads(info_path.read_text())
            count = self._commit(document, staging, page_infos, token)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        log(f"Built {count} page(s)")
        return count

    def _commit(self, document, staging, page_infos, token):
        out = document.output_dir
        old_info = out / PAGE_INFO_NAME
        old_files = set()
        if old_info.exists():
            old_files = {
                j["file"] for j in json.loads(old_info.read_text()) if "file" in j
            }
        page_files = {j["file"] for j in page_infos if j.get("file")}
        lock = (
            self.renderer.commit_lock(out)
            if self.renderer is not None
            else threading.Lock()
        )
        new_files = set()
        with lock:
            # assets the pages link to (site_libs/, *_files/) go in first
            for entry in sorted(staging.iterdir()):
                if entry.name in page_files or entry.name in (
                    PAGE_INFO_NAME,
                    STAGING_NAME,
                ):
                    continue
                if token is not None:
                    token.raise_if_cancelled()
                _replace_entry(entry, out / entry.name)
            for info in page_infos:
                name = info.get("file")
                if not name or not (staging / name).exists():
                    continue
                if token is not None:
                    token.raise_if_cancelled()
                os.replace(staging / name, out / name)
                new_files.add(name)
            if token is not None:
                token.raise_if_cancelled()
            # page-info.json is replaced after every page it lists
            os.replace(staging / PAGE_INFO_NAME, old_info)
            for name in old_files - new_files:
                if (out / name).exists():
                    (out / name).unlink()
        return len(page_infos)


def _replace_entry(source, target):
    """Move ``source`` to ``target``, replacing whatever was there."""
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    elif target.exists() and source.is_dir():
        target.unlink()
    os.replace(source, target)
