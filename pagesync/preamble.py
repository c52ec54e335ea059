"""Helpers for the part of a TeX source that comes before the body."""

import hashlib
import json
import os
import re
from pathlib import Path

from .models import now_iso

BEGIN_DOCUMENT = "\\begin{document}"

_input_re = re.compile(r"\\(?:input|include)\{([^}]+)\}")
_operator_re = re.compile(r"\\DeclareMathOperator(\*?)\{\\(\w+)\}\{([^}]+)\}")
_def_re = re.compile(r"\\def\\(\w+)\{([^{}]*(?:\{[^{}]*\}[^{}]*)*)\}")
_newcommand_re = re.compile(
    r"\\(?:re)?newcommand\*?\s*\{(\\[A-Za-z@]+)\}\s*(?:\[(\d+)\])?\s*"
)


def split_preamble(text):
    """Return ``(preamble, body)``; ``body`` is ``None`` without a body."""
    idx = text.find(BEGIN_DOCUMENT)
    if idx == -1:
        return text, None
    return text[:idx], text[idx:]


def preamble_hash(text):
    preamble, _ = split_preamble(text)
    return hashlib.sha256(preamble.encode("utf-8")).hexdigest()


def _brace_content(text, start):
    # returns (content, index of the closing brace) for the group at start
    depth = 0
    begin = None
    for i in range(start, len(text)):
        if text[i] == "{":
            if depth == 0:
                begin = i + 1
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0 and begin is not None:
                return text[begin:i], i
        elif depth == 0 and not text[i].isspace():
            return None, start
    return None, start


def extract_macros(preamble):
    """Collect user macros from ``preamble`` in a KaTeX-style mapping.

    Handles ``\\newcommand``/``\\renewcommand`` (with or without an argument
    count), ``\\DeclareMathOperator`` (starred or not) and simple ``\\def``.
    """
    macros = {}
    for m in _newcommand_re.finditer(preamble):
        content, _ = _brace_content(preamble, m.end())
        if content is not None:
            macros[m.group(1)] = content
    for star, name, text in _operator_re.findall(preamble):
        if star:
            macros["\\" + name] = "\\operatorname*{" + text + "}"
        else:
            macros["\\" + name] = "\\operatorname{" + text + "}"
    for name, definition in _def_re.findall(preamble):
        macros["\\" + name] = definition
    return macros


def write_macros(main_path, output_path, token=None):
    main_path = Path(main_path)
    preamble, _ = split_preamble(
        main_path.read_text(encoding="utf-8", errors="replace")
    )
    data = {
        "_source": main_path.name,
        "_extracted": now_iso(),
        "macros": extract_macros(preamble),
    }
    tmp = Path(str(output_path) + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    if token is not None and token.cancelled:
        tmp.unlink()
        token.raise_if_cancelled()
    os.replace(tmp, output_path)
    return data["macros"]


def discover_inputs(main_path):
    """Return the files pulled in by ``\\input``/``\\include``, recursively.

    Names without an extension get ``.tex``; files missing on disk and
    commented-out inclusions are skipped. The main file is not included.
    """
    main_path = Path(main_path).resolve()
    found = []
    seen = {main_path}
    pending = [main_path]
    while pending:
        current = pending.pop(0)
        try:
            text = current.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        for line in text.splitlines():
            code = line.split("%", 1)[0]
            for name in _input_re.findall(code):
                name = name.strip()
                if not name.endswith(".tex"):
                    name += ".tex"
                candidate = (main_path.parent / name).resolve()
                if candidate in seen or not candidate.exists():
                    continue
                seen.add(candidate)
                found.append(candidate)
                pending.append(candidate)
    return found
