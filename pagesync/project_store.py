"""Documents persisted on disk.

Each document lives in ``<root>/<name>/``::

    project.json   metadata (name, title, main file, pages, build status...)
    source/        sources, unless the document points at another directory
    output/        pages, lookup.json, macros.json, signals.json
        build.log  log of the last build
"""

import json
import logging
import os
from pathlib import Path

from .errors import DocumentNotFoundError, PageSyncError
from .models import BuildStatus, Document, now_iso

logger = logging.getLogger(__name__)

PROJECT_FILE = "project.json"
BUILD_LOG = "build.log"

# byproducts the compiler leaves next to the sources
BUILD_JUNK = (
    ".aux",
    ".log",
    ".out",
    ".synctex.gz",
    ".synctex",
    ".fls",
    ".fdb_latexmk",
    ".bbl",
    ".blg",
    ".bcf",
    ".run.xml",
    ".toc",
    ".lof",
    ".lot",
    ".nav",
    ".snm",
    ".vrb",
    ".dvi",
    ".pdf",
    ".fmt",
)


def is_build_junk(name):
    return str(name).endswith(BUILD_JUNK)


class ProjectStore:
    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def project_dir(self, name):
        return self.root / name

    def _project_file(self, name):
        return self.project_dir(name) / PROJECT_FILE

    def exists(self, name):
        return self._project_file(name).exists()

    def create(
        self,
        name,
        title=None,
        main_file="main.tex",
        format="tex",
        source_dir=None,
        depends_on=None,
        git_ref=None,
    ):
        if self.exists(name):
            raise PageSyncError(f'Project "{name}" already exists')
        directory = self.project_dir(name)
        if source_dir is None:
            source_dir = directory / "source"
        Path(source_dir).mkdir(parents=True, exist_ok=True)
        (directory / "output").mkdir(parents=True, exist_ok=True)
        document = Document(
            name,
            source_dir,
            main_file=main_file,
            output_dir=directory / "output",
            title=title,
            format=format,
            depends_on=depends_on,
            git_ref=git_ref,
            created_at=now_iso(),
        )
        self.save(document)
        return document

    def read(self, name):
        path = self._project_file(name)
        if not path.exists():
            return None
        try:
            return Document.from_dict(json.loads(path.read_text()))
        except (ValueError, TypeError) as e:
            logger.warning("could not read %s: %s", path, e)
            return None

    def get(self, name):
        document = self.read(name)
        if document is None:
            raise DocumentNotFoundError(f'Project "{name}" not found')
        return document

    def save(self, document):
        path = self._project_file(document.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(PROJECT_FILE + ".tmp")
        tmp.write_text(json.dumps(document.to_dict(), indent=2))
        os.replace(tmp, path)

    def list(self):
        documents = []
        for directory in sorted(self.root.iterdir()):
            if (directory / PROJECT_FILE).exists():
                document = self.read(directory.name)
                if document is not None:
                    documents.append(document)
        return documents

    def reset_stale(self):
        """Mark documents left in ``building`` by a dead process as stale."""
        reset = []
        for document in self.list():
            if document.build_status is BuildStatus.BUILDING:
                logger.info(
                    'Resetting stale "building" state for %s', document.name
                )
                document.build_status = BuildStatus.STALE
                self.save(document)
                reset.append(document.name)
        return reset

    def read_build_log(self, name):
        path = self.get(name).output_dir / BUILD_LOG
        if not path.exists():
            return None
        return path.read_text()
