import json
import os
import subprocess
import sys
from pathlib import Path

import yaml

from pagesync.config import CONFIG_NAME


def _make_cli_env():
    repo_root = Path(__file__).resolve().parents[2]
    env = os.environ.copy()
    env["PYTHONPATH"] = str(repo_root)
    return env


def _pgsync(*args, cwd=None):
    cmd = [sys.executable, "-m", "pagesync.command_line", *[str(j) for j in args]]
    return subprocess.run(
        cmd, capture_output=True, text=True, env=_make_cli_env(), cwd=cwd
    )


def _configure(source_dir, fake_commands):
    (source_dir / CONFIG_NAME).write_text(
        yaml.safe_dump({"commands": fake_commands})
    )


def test_build_missing_file(tmp_path):
    proc = _pgsync("build", tmp_path / "missing.tex")
    assert proc.returncode != 0
    assert "Main file not found" in proc.stderr


def test_no_command_prints_help():
    proc = _pgsync()
    assert proc.returncode != 0
    assert "usage: pgsync" in proc.stdout


def test_build_status_and_nearby(source_dir, fake_commands):
    _configure(source_dir, fake_commands)
    proc = _pgsync("build", source_dir / "main.tex")
    assert proc.returncode == 0, proc.stderr
    assert "main: success (3 pages)" in proc.stdout
    output = source_dir / "_pagesync" / "main" / "output"
    assert sorted(p.name for p in output.glob("page-*.svg")) == [
        "page-1.svg",
        "page-2.svg",
        "page-3.svg",
    ]
    assert (output / "lookup.json").exists()
    assert json.loads((output / "signals.json").read_text())["signal:reload"][
        "type"
    ] == "full"

    proc = _pgsync("status", "--log", cwd=source_dir)
    assert proc.returncode == 0
    assert "main: success, 3 pages" in proc.stdout
    assert "Generated 3 pages" in proc.stdout

    # source region x 60-130, y 140-160 on page 1, in canvas pixels
    proc = _pgsync("nearby", output, 78.43, 183.01, 169.93, 209.15)
    assert proc.returncode == 0, proc.stderr
    matches = json.loads(proc.stdout)
    assert [m["line"] for m in matches] == [3, 4, 5]
    assert matches[2]["content"] == "First page text"


def test_failed_build_exits_nonzero(source_dir, fake_commands):
    _configure(source_dir, fake_commands)
    main = source_dir / "main.tex"
    main.write_text(main.read_text().replace("Second page text", "\\fail"))
    proc = _pgsync("build", main, "--structural")
    assert proc.returncode == 1
    assert "Build failed" in proc.stdout
    assert "failed" in proc.stderr
    proc = _pgsync("status", cwd=source_dir)
    assert "main: failed" in proc.stdout


def test_lookup_from_existing_log(source_dir, fake_commands):
    subprocess.run(
        [*fake_commands["slow"][:-1], "main.tex"], cwd=source_dir, check=True
    )
    proc = _pgsync("lookup", source_dir / "main.tex")
    assert proc.returncode == 0, proc.stderr
    table = json.loads((source_dir / "lookup.json").read_text())
    assert table["lines"]["9"]["page"] == 3
    assert table["meta"]["sourceFile"] == "main.tex"


def test_nearby_without_lookup(tmp_path):
    proc = _pgsync("nearby", tmp_path, 0, 0, 10, 10)
    assert proc.returncode == 1
    assert "Lookup table not found" in proc.stderr
