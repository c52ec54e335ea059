import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pagesync.config import Settings  # noqa: E402

# Stand-ins for the TeX engine, dvisvgm and the web page builder. Each one
# appends its mode to calls.log in its working directory.
FAKE_TEX = r'''
import gzip, os, sys
mode = sys.argv[1]
main = sys.argv[-1]
with open("calls.log", "a") as fp:
    fp.write(mode + "\n")
stem = os.path.splitext(main)[0]
if mode == "format":
    with open(sys.argv[2] + ".fmt", "w") as fp:
        fp.write("format")
    sys.exit(0)
text = open(main).read()
if "\\fail" in text:
    print("! Undefined control sequence.")
    print("l.5 \\fail")
    sys.exit(1)
page = 1
records = [
    "SyncTeX Version:1",
    "Input:1:" + os.path.abspath(main),
    "Magnification:1000",
    "Unit:1",
    "Content:",
    "{1",
]
for number, line in enumerate(text.split("\n"), 1):
    if "\\newpage" in line:
        records.append("}%d" % page)
        page += 1
        records.append("{%d" % page)
    elif line.strip():
        records.append(
            "x1,%d:%d,%d" % (number, 72 * 65536, (100 + 10 * number) * 65536)
        )
records.append("}%d" % page)
with gzip.open(stem + ".synctex.gz", "wt") as fp:
    fp.write("\n".join(records) + "\n")
with open(stem + ".dvi", "w") as fp:
    fp.write(str(page))
if mode == "fast" and "\\ref{" in text:
    print("LaTeX Warning: There were undefined references.")
print("Output written on %s.dvi (%d pages)" % (stem, page))
'''

FAKE_DVISVGM = r'''
import sys
spec, pattern, dvi = sys.argv[1:4]
count = int(open(dvi).read().strip())
if spec.endswith("-"):
    pages = range(int(spec[:-1]), count + 1)
else:
    pages = [int(j) for j in spec.split(",") if int(j) <= count]
with open("calls.log", "a") as fp:
    fp.write("render " + spec + "\n")
for page in pages:
    with open(pattern.replace("%p", "%02d" % page), "w") as fp:
        fp.write("<svg>page %d</svg>" % page)
'''

FAKE_HTML = r'''
import json, os, sys
main, output = sys.argv[1:3]
chunks = open(main).read().split("\n---\n")
infos = []
for number, chunk in enumerate(chunks, 1):
    name = "page-%d.html" % number
    with open(os.path.join(output, name), "w") as fp:
        fp.write("<div>" + chunk + "</div>")
    infos.append({"file": name, "width": 600, "height": 800})
with open(os.path.join(output, "page-info.json"), "w") as fp:
    json.dump(infos, fp)
'''

SAMPLE_TEX = r"""\documentclass{article}
\newcommand{\R}{\mathbb{R}}
\DeclareMathOperator{\Tr}{Tr}
\begin{document}
First page text
\newpage
Second page text
\newpage
Third page text
\end{document}
"""


@pytest.fixture
def fake_commands(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    scripts = {}
    for name, text in (
        ("tex", FAKE_TEX),
        ("dvisvgm", FAKE_DVISVGM),
        ("html", FAKE_HTML),
    ):
        path = bin_dir / f"fake_{name}.py"
        path.write_text(text)
        scripts[name] = str(path)
    python = sys.executable
    return {
        "slow": [python, scripts["tex"], "slow", "{main}"],
        "fast": [python, scripts["tex"], "fast", "{fmt}", "{main}"],
        "format": [python, scripts["tex"], "format", "{fmt}", "{main}"],
        "render": [python, scripts["dvisvgm"], "{pages}", "{output}", "{dvi}"],
        "html": [python, scripts["html"], "{main}", "{output}"],
    }


@pytest.fixture
def fake_settings(fake_commands):
    return Settings(commands=fake_commands)


@pytest.fixture
def source_dir(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "main.tex").write_text(SAMPLE_TEX)
    return src


@pytest.fixture
def read_calls():
    def read(directory):
        path = Path(directory) / "calls.log"
        if not path.exists():
            return []
        return path.read_text().splitlines()

    return read
