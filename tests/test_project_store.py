import json

import pytest

from pagesync.errors import DocumentNotFoundError, PageSyncError
from pagesync.models import BuildStatus
from pagesync.project_store import ProjectStore, is_build_junk


def test_create_read_save(tmp_path):
    store = ProjectStore(tmp_path / "projects")
    document = store.create("thesis", title="My Thesis")
    assert document.source_dir == tmp_path / "projects" / "thesis" / "source"
    assert document.output_dir.is_dir()
    assert document.created_at is not None
    with pytest.raises(PageSyncError, match="already exists"):
        store.create("thesis")

    document.pages = 12
    document.build_status = BuildStatus.SUCCESS
    store.save(document)
    loaded = store.get("thesis")
    assert loaded.title == "My Thesis"
    assert loaded.pages == 12
    assert loaded.build_status is BuildStatus.SUCCESS


def test_unknown_fields_in_project_file_are_ignored(tmp_path):
    store = ProjectStore(tmp_path)
    document = store.create("notes")
    path = tmp_path / "notes" / "project.json"
    data = json.loads(path.read_text())
    data["sharedWith"] = ["someone"]
    path.write_text(json.dumps(data))
    assert store.get("notes").name == document.name


def test_list_and_stale_reset(tmp_path):
    store = ProjectStore(tmp_path)
    store.create("a")
    building = store.create("b")
    building.build_status = BuildStatus.BUILDING
    store.save(building)
    (tmp_path / "not-a-project").mkdir()
    assert [d.name for d in store.list()] == ["a", "b"]
    assert store.reset_stale() == ["b"]
    assert store.get("b").build_status is BuildStatus.STALE
    assert store.get("a").build_status is BuildStatus.NONE


def test_missing_projects(tmp_path):
    store = ProjectStore(tmp_path)
    assert store.read("ghost") is None
    assert not store.exists("ghost")
    with pytest.raises(DocumentNotFoundError):
        store.get("ghost")
    with pytest.raises(DocumentNotFoundError):
        store.read_build_log("ghost")


def test_build_log(tmp_path):
    src = tmp_path / "paper"
    src.mkdir()
    store = ProjectStore(src / "_pagesync")
    store.create("main", source_dir=src)
    assert store.read_build_log("main") is None
    (store.get("main").output_dir / "build.log").write_text("done\n")
    assert store.read_build_log("main") == "done\n"


def test_build_junk():
    assert is_build_junk("main.synctex.gz")
    assert is_build_junk("main-preamble.fmt")
    assert not is_build_junk("main.tex")
