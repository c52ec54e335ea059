import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import StageFailure, ToolNotFoundError
from .preamble import preamble_hash
from .process import fill_command, run_command

logger = logging.getLogger(__name__)


@dataclass
class PreambleFormat:
    """A precompiled preamble and the hash of the preamble it was built from."""

    name: str
    path: Path
    hash_path: Path
    hash: str = None
    available: bool = False

    def load(self):
        # A format on disk from an earlier session is reused if its hash file
        # is still present.
        if self.path.exists() and self.hash_path.exists():
            self.hash = self.hash_path.read_text().strip()
            self.available = True
        return self

    def is_valid(self, current_hash):
        return (
            self.available and self.hash == current_hash and self.path.exists()
        )


class FormatCache:
    """Per-document cache of precompiled preamble formats.

    ``ensure`` is called inline by the compile stage. It never raises for a
    failed format build; the entry just becomes unavailable and compiles
    fall back to the slow path until a later rebuild succeeds.
    """

    def __init__(self, commands, timeout=120.0):
        self.commands = commands
        self.timeout = timeout
        self._entries = {}

    def entry(self, document):
        if document.name not in self._entries:
            name = f"{document.base}-preamble"
            self._entries[document.name] = PreambleFormat(
                name,
                document.source_dir / f"{name}.fmt",
                document.source_dir / f"{name}.fmt.hash",
            ).load()
        return self._entries[document.name]

    def ensure(self, document, token=None, log=None):
        """Rebuild the format for ``document`` if its preamble changed.

        Returns whether a valid format is available afterwards.
        """
        entry = self.entry(document)
        text = document.main_path.read_text(encoding="utf-8", errors="replace")
        current = preamble_hash(text)
        if entry.is_valid(current):
            return True
        if not self.commands.get("format"):
            entry.available = False
            return False
        if log is not None:
            log("Preamble changed, rebuilding format")
        args = fill_command(
            self.commands["format"], main=document.main_file, fmt=entry.name
        )
        entry.available = False
        try:
            run_command(
                args,
                cwd=document.source_dir,
                timeout=self.timeout,
                token=token,
            )
        except (StageFailure, ToolNotFoundError) as e:
            logger.warning("format build failed for %s: %s", document.name, e)
            if log is not None:
                log(f"Format build failed, using slow path: {e}")
            return False
        if not entry.path.exists():
            if log is not None:
                log(f"Format build did not produce {entry.path.name}")
            return False
        if token is not None:
            token.raise_if_cancelled()
        entry.hash_path.write_text(current)
        entry.hash = current
        entry.available = True
        return True
