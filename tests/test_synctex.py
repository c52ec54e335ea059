import gzip

import pytest

from pagesync.cancel import CancelToken
from pagesync.errors import ExtractionFailure, Superseded
from pagesync.synctex import (
    LookupStore,
    SyncTexParser,
    extract_lookup,
    read_lookup,
    write_lookup,
)
from pagesync.models import Document


def _body(tmp_path, name="body.tex", extra=""):
    lines = [
        "\\documentclass{article}",
        "",
        "% a comment",
        "\\begin{document}",
    ]
    lines += [f"Line number {j}" for j in range(5, 16)]
    lines.append(extra)
    lines.append("\\end{document}")
    path = tmp_path / name
    path.write_text("\n".join(lines) + "\n")
    return path


def _write_log(path, records, gz=True):
    text = "\n".join(records) + "\n"
    if gz:
        with gzip.open(path, "wt") as fp:
            fp.write(text)
    else:
        path.write_text(text)
    return path


def test_content_record_becomes_lookup_entry(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [
            "SyncTeX Version:1",
            f"Input:3:{body}",
            "Output:dvi",
            "Magnification:1000",
            "Unit:1",
            "Content:",
            "{1",
            "x3,12:720897,180224",
            "}1",
        ],
    )
    table = extract_lookup(body, log)
    entry = table.get(12)
    assert entry.page == 1
    assert entry.x == pytest.approx(11.0, abs=1e-3)
    assert entry.y == pytest.approx(2.75, abs=1e-3)
    assert entry.content == "Line number 12"
    assert table.total_lines == 18
    assert table.source_file == "body.tex"


def test_first_record_for_a_line_wins(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [
            f"Input:1:{body}",
            "{1",
            "h1,6:65536,131072:10,10,0",
            "}1",
            "{2",
            "x1,6:655360,655360",
            "k1,7:655360,655360",
            "}2",
        ],
    )
    table = extract_lookup(body, log)
    assert table.get(6).page == 1
    assert table.get(6).x == pytest.approx(1.0)
    assert table.get(6).y == pytest.approx(2.0)
    assert table.get(7).page == 2


def test_records_outside_a_page_or_for_unknown_inputs_are_skipped(tmp_path):
    body = _body(tmp_path)
    other = tmp_path / "other.tex"
    other.write_text("text\n" * 20)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [
            "x1,5:65536,65536",
            "{1",
            "x1,8:65536,65536",
            f"Input:1:{body}",
            f"Input:4:{other}",
            "x4,9:65536,65536",
            "x1,10:abc,65536",
            "x1,11:65536",
            "g1,13:65536,65536",
            "}1",
            "x1,14:65536,65536",
        ],
    )
    table = extract_lookup(body, log)
    assert set(table.lines) == {"13"}


def test_blank_and_comment_lines_are_dropped(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [
            f"Input:1:{body}",
            "{1",
            "x1,2:65536,65536",
            "x1,3:65536,65536",
            "x1,16:65536,65536",
            "x1,5:65536,65536",
            "x1,99:65536,65536",
            "}1",
        ],
    )
    table = extract_lookup(body, log)
    assert list(table.lines) == ["5"]


def test_unit_and_magnification_scale_coordinates(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex",
        [
            f"Input:1:{body}",
            "Magnification:2000",
            "Unit:1",
            "{1",
            "x1,5:65536,131072",
            "}1",
        ],
        gz=False,
    )
    table = extract_lookup(body, log)
    assert table.get(5).x == pytest.approx(2.0)
    assert table.get(5).y == pytest.approx(4.0)


def test_included_files_get_prefixed_keys(tmp_path):
    main = _body(tmp_path, "main.tex", extra="\\input{chapter}")
    chapter = tmp_path / "chapter.tex"
    chapter.write_text("First\n\nThird line of the chapter\n")
    log = _write_log(
        tmp_path / "main.synctex.gz",
        [
            f"Input:1:{main}",
            "Input:2:./chapter.tex",
            "{1",
            "x2,3:65536,65536",
            "x1,6:65536,131072",
            "}1",
        ],
    )
    table = extract_lookup(main, log)
    assert list(table.lines) == ["6", "chapter.tex:3"]
    assert table.get("chapter.tex:3").content == "Third line of the chapter"
    assert table.input_files == ["chapter.tex"]


def test_reused_input_id_points_at_latest_file(tmp_path):
    body = _body(tmp_path)
    other = tmp_path / "other.tex"
    other.write_text("x\n" * 20)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [
            f"Input:1:{body}",
            f"Input:1:{other}",
            "{1",
            "x1,5:65536,65536",
            "}1",
        ],
    )
    assert extract_lookup(body, log).lines == {}


def test_parsing_twice_gives_the_same_table(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [f"Input:1:{body}", "{1"]
        + [f"x1,{j}:{j * 65536},{j * 131072}" for j in range(1, 18)]
        + ["}1"],
    )
    first = extract_lookup(body, log)
    second = extract_lookup(body, log)
    assert first.generated_at == second.generated_at
    write_lookup(first, tmp_path / "first.json")
    write_lookup(second, tmp_path / "second.json")
    assert (tmp_path / "first.json").read_bytes() == (
        tmp_path / "second.json"
    ).read_bytes()


def test_missing_or_corrupt_log_raises_extraction_failure(tmp_path):
    body = _body(tmp_path)
    with pytest.raises(ExtractionFailure):
        extract_lookup(body, tmp_path / "missing.synctex.gz")
    corrupt = tmp_path / "body.synctex.gz"
    corrupt.write_bytes(b"this is not gzip data")
    with pytest.raises(ExtractionFailure):
        extract_lookup(body, corrupt)


def test_cancelled_token_stops_extraction(tmp_path):
    body = _body(tmp_path)
    log = _write_log(tmp_path / "body.synctex.gz", [f"Input:1:{body}"])
    token = CancelToken()
    token.cancel()
    with pytest.raises(Superseded):
        SyncTexParser(body, []).parse(log, token=token)


def test_lookup_json_written_and_loaded_by_store(tmp_path):
    body = _body(tmp_path)
    log = _write_log(
        tmp_path / "body.synctex.gz",
        [f"Input:1:{body}", "{2", "x1,9:65536,65536", "}2"],
    )
    document = Document("paper", tmp_path, main_file="body.tex")
    document.output_dir.mkdir(parents=True)
    table = extract_lookup(body, log)
    write_lookup(table, document.output_dir / "lookup.json")

    data = read_lookup(document.output_dir / "lookup.json")
    assert data.get(9).page == 2
    assert data.to_dict()["meta"]["sourceFile"] == "body.tex"

    store = LookupStore()
    assert store.get(document).get(9).content == "Line number 9"
    # loaded once, then served from memory
    (document.output_dir / "lookup.json").unlink()
    assert store.get(document).get(9).page == 2
    assert LookupStore().get(document) is None
