import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from .errors import CompileFailure
from .preamble import preamble_hash
from .process import ensure_tool, fill_command, run_command

logger = logging.getLogger(__name__)

STRUCTURAL_SUFFIXES = (".bib", ".bst", ".sty", ".cls", ".def")

# Diagnostics that mean another pass is needed to resolve references.
UNRESOLVED_MARKERS = [
    re.compile(r"There were undefined references"),
    re.compile(r"Rerun to get cross-references right"),
    re.compile(r"Citation `[^']*' .*undefined"),
    re.compile(r"Reference `[^']*' .*undefined"),
    re.compile(r"Label\(s\) may have changed"),
]


def has_unresolved_references(output):
    return any(marker.search(output) for marker in UNRESOLVED_MARKERS)


@dataclass
class CompileResult:
    dvi_path: Path
    fast: bool
    unresolved: bool = False
    output: str = ""
    elapsed: float = 0.0


class CompileStage:
    """Runs the TeX compiler for one document.

    The fast path is a single pass against the precompiled preamble format;
    the slow path is a full ``latexmk`` run.
    """

    def __init__(self, commands, format_cache, timeout=120.0):
        self.commands = commands
        self.format_cache = format_cache
        self.timeout = timeout
        # preamble hash seen by the last successful compile, per document
        self._compiled_preambles = {}

    def classify_change(self, document, changed_path):
        """Return True when the change at ``changed_path`` is structural."""
        changed_path = Path(changed_path)
        if changed_path.suffix in STRUCTURAL_SUFFIXES:
            return True
        if changed_path.resolve() != document.main_path.resolve():
            return False
        previous = self._compiled_preambles.get(document.name)
        if previous is None:
            return True
        try:
            text = document.main_path.read_text(
                encoding="utf-8", errors="replace"
            )
        except OSError:
            return True
        return preamble_hash(text) != previous

    def run(self, document, structural=False, token=None, log=None):
        """Compile ``document`` and return a :class:`CompileResult`.

        Raises :class:`CompileFailure` when the compiler exits non-zero,
        times out or leaves no DVI behind.
        """
        if log is None:
            log = logger.info
        start = time.time()
        if not document.main_path.exists():
            raise CompileFailure(f"Main file not found: {document.main_path}")
        text = document.main_path.read_text(encoding="utf-8", errors="replace")
        current_preamble = preamble_hash(text)
        available = self.format_cache.ensure(document, token=token, log=log)
        fast = available and not structural and bool(self.commands.get("fast"))
        if fast:
            log("Running fast compile against the cached format")
            args = fill_command(
                self.commands["fast"],
                main=document.main_file,
                fmt=self.format_cache.entry(document).name,
            )
        else:
            log("Running full compile")
            args = fill_command(self.commands["slow"], main=document.main_file)
        if token is not None:
            token.raise_if_cancelled()
        ensure_tool(args[0])
        if document.dvi_path.exists():
            document.dvi_path.unlink()
        result = run_command(
            args,
            cwd=document.source_dir,
            timeout=self.timeout,
            token=token,
            failure=CompileFailure,
        )
        if not document.dvi_path.exists():
            raise CompileFailure(
                f"{args[0]} did not produce {document.dvi_path.name}",
                result.stdout,
            )
        unresolved = fast and has_unresolved_references(result.stdout)
        if unresolved:
            log("Unresolved references found, next build will be structural")
        self._compiled_preambles[document.name] = current_preamble
        elapsed = time.time() - start
        log(f"Compile done in {elapsed:.1f}s")
        return CompileResult(
            document.dvi_path, fast, unresolved, result.stdout, elapsed
        )
