import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from .cancel import CancelToken

logger = logging.getLogger(__name__)


class BuildStatus(str, Enum):
    NONE = "none"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    STALE = "stale"
    CANCELLED = "cancelled"


class BuildPhase(str, Enum):
    COMPILING = "compiling"
    CONVERTING = "converting"
    EXTRACTING = "extracting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# phases during which a job holds subprocesses and may still write pages
ACTIVE_PHASES = (BuildPhase.COMPILING, BuildPhase.CONVERTING)


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def iso_timestamp(seconds):
    return datetime.fromtimestamp(seconds, timezone.utc).isoformat()


@dataclass
class Document:
    name: str
    source_dir: Path
    main_file: str = "main.tex"
    output_dir: Path = None
    title: str = None
    # "tex" uses the fixed-page regime, "html" the paginated-flow regime
    format: str = "tex"
    pages: int = 0
    build_status: BuildStatus = BuildStatus.NONE
    last_build: str = None
    # set on derived diff documents
    depends_on: str = None
    git_ref: str = None
    created_at: str = None

    def __post_init__(self):
        self.source_dir = Path(self.source_dir)
        if self.output_dir is None:
            self.output_dir = self.source_dir / "_pagesync" / self.name
        self.output_dir = Path(self.output_dir)
        if self.title is None:
            self.title = self.name
        self.build_status = BuildStatus(self.build_status)

    @property
    def main_path(self):
        return self.source_dir / self.main_file

    @property
    def base(self):
        return Path(self.main_file).stem

    @property
    def dvi_path(self):
        return self.source_dir / f"{self.base}.dvi"

    @property
    def synctex_path(self):
        return self.source_dir / f"{self.base}.synctex.gz"

    @property
    def room(self):
        """Name of the shared-store room for this document."""
        return f"doc-{self.name}"

    def to_dict(self):
        return {
            "name": self.name,
            "title": self.title,
            "source_dir": str(self.source_dir),
            "main_file": self.main_file,
            "output_dir": str(self.output_dir),
            "format": self.format,
            "pages": self.pages,
            "build_status": self.build_status.value,
            "last_build": self.last_build,
            "depends_on": self.depends_on,
            "git_ref": self.git_ref,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class BuildJob:
    """One in-flight build of a :class:`Document`."""

    def __init__(self, document_name, structural=False, priority_pages=None):
        self.job_id = uuid.uuid4().hex[:12]
        self.document_name = document_name
        self.structural = structural
        self.priority_pages = list(priority_pages or [1])
        self.phase = BuildPhase.COMPILING
        self.log = []
        self.token = CancelToken()
        self.started_at = now_iso()
        self.started = time.monotonic()
        self.error = None
        # set while no worker is running stages of this job
        self.finished = threading.Event()

    def __repr__(self):
        return (
            f"BuildJob({self.document_name!r}, {self.job_id},"
            f" {self.phase.value})"
        )

    @property
    def is_active(self):
        return self.phase in ACTIVE_PHASES

    def add_log(self, message):
        self.log.append(f"[{now_iso()}] {message}")
        logger.info("[build:%s] %s", self.document_name, message)

    def elapsed(self):
        return time.monotonic() - self.started


@dataclass
class PageArtifact:
    page: int
    path: Path
    mtime: float = 0.0

    @classmethod
    def from_path(cls, page, path):
        path = Path(path)
        return cls(page, path, path.stat().st_mtime)


@dataclass(frozen=True)
class LookupEntry:
    page: int
    x: float
    y: float
    content: str = ""

    def to_dict(self):
        return {
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "content": self.content,
        }


@dataclass
class ReloadSignal:
    type: str
    pages: list = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def partial(cls, pages):
        return cls("partial", sorted(pages))

    @classmethod
    def full(cls):
        return cls("full")

    def to_dict(self):
        result = {"type": self.type, "timestamp": self.timestamp}
        if self.pages is not None:
            result["pages"] = list(self.pages)
        return result


@dataclass
class PageBox:
    x: float
    y: float
    width: float
    height: float
    group: str = None
    group_index: int = None

    def contains_y(self, y, band_extra=0.0):
        return self.y <= y < self.y + self.height + band_extra

    def contains_x(self, x):
        return self.x <= x < self.x + self.width

    def distance_x(self, x):
        if x < self.x:
            return self.x - x
        return x - (self.x + self.width)
