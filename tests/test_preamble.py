import json

from pagesync.preamble import (
    discover_inputs,
    extract_macros,
    preamble_hash,
    split_preamble,
    write_macros,
)

PREAMBLE = r"""\documentclass{article}
\newcommand{\R}{\mathbb{R}}
\renewcommand{\vec}[1]{\mathbf{#1}}
\newcommand*{\set}[1]{\left\{#1\right\}}
\DeclareMathOperator{\Tr}{Tr}
\DeclareMathOperator*{\argmax}{arg\,max}
\def\eps{\varepsilon}
"""


def test_split_and_hash_only_look_at_the_preamble():
    text = PREAMBLE + "\\begin{document}\nBody\n\\end{document}\n"
    preamble, body = split_preamble(text)
    assert preamble == PREAMBLE
    assert body.startswith("\\begin{document}")
    edited = text.replace("Body", "Changed body")
    assert preamble_hash(edited) == preamble_hash(text)
    assert preamble_hash("\\usepackage{x}\n" + text) != preamble_hash(text)
    assert split_preamble("no body here") == ("no body here", None)


def test_extract_macros():
    macros = extract_macros(PREAMBLE)
    assert macros == {
        "\\R": "\\mathbb{R}",
        "\\vec": "\\mathbf{#1}",
        "\\set": "\\left\\{#1\\right\\}",
        "\\Tr": "\\operatorname{Tr}",
        "\\argmax": "\\operatorname*{arg\\,max}",
        "\\eps": "\\varepsilon",
    }


def test_write_macros(tmp_path):
    main = tmp_path / "main.tex"
    main.write_text(PREAMBLE + "\\begin{document}\n\\newcommand{\\late}{x}\n")
    out = tmp_path / "macros.json"
    write_macros(main, out)
    data = json.loads(out.read_text())
    assert data["_source"] == "main.tex"
    assert "\\R" in data["macros"]
    assert "\\late" not in data["macros"]
    assert not (tmp_path / "macros.json.tmp").exists()


def test_discover_inputs_recursively(tmp_path):
    (tmp_path / "sub").mkdir()
    main = tmp_path / "main.tex"
    main.write_text(
        "\\input{intro}\n"
        "% \\input{commented}\n"
        "text % \\include{also-commented}\n"
        "\\include{missing}\n"
        "\\input{intro.tex}\n"
    )
    (tmp_path / "intro.tex").write_text("\\input{sub/details}\n")
    (tmp_path / "sub" / "details.tex").write_text("\\input{main}\n")
    (tmp_path / "commented.tex").write_text("")
    (tmp_path / "also-commented.tex").write_text("")
    found = discover_inputs(main)
    assert found == [
        (tmp_path / "intro.tex").resolve(),
        (tmp_path / "sub" / "details.tex").resolve(),
    ]
