import pytest

from common.project_schema import ProjectStatus
from common.projects import ProjectStore
from common.storage import LocalBlobStore
from tools.migrate_storage import main, migrate
from worker.worker import process_project


def test_migrate_copies_files_and_repoints_index(tmp_path, settings, png_bytes):
    source = LocalBlobStore(tmp_path / "src")
    dest = LocalBlobStore(tmp_path / "dst")
    store = ProjectStore(source)
    created = store.create("photo.png", png_bytes)
    process_project(store, store.claim_next(), settings)

    copied = migrate(source, dest)
    assert copied == 2  # upload + rendered preview

    moved = ProjectStore(dest).get(created.id)
    assert moved.status == ProjectStatus.DONE
    assert moved.path.startswith(str(dest.root))
    assert dest.fetch(moved.path).read_bytes() == png_bytes
    assert dest.exists(f"uploads/{created.id}_photo.png.png")


def test_main_rejects_same_backend():
    with pytest.raises(SystemExit):
        main(["--from", "local", "--to", "local"])


def test_migrate_keeps_projects_already_at_destination(tmp_path):
    source = LocalBlobStore(tmp_path / "src")
    dest = LocalBlobStore(tmp_path / "dst")
    moved = ProjectStore(source).create("a.txt", b"a")
    resident = ProjectStore(dest).create("b.txt", b"b")

    migrate(source, dest)
    migrate(source, dest)  # re-running does not duplicate records

    dest_store = ProjectStore(dest)
    assert dest_store.get(resident.id).filename == "b.txt"
    assert dest_store.get(moved.id).path.startswith(str(dest.root))
    assert len(dest_store._load()[0]) == 2
