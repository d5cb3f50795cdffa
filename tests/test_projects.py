import pytest

from common.project_schema import ProjectStatus
from common.projects import (
    InvalidTransition,
    LeaseLost,
    ProjectNotFound,
    ProjectStore,
    sanitize_filename,
)
from common.storage import IndexConflict, LocalBlobStore


def test_create_stores_file_and_queues_record(store):
    project = store.create("report.pdf", b"%PDF-1.4")

    assert project.status == ProjectStatus.UPLOADED
    assert project.path.startswith(str(store.blobs.root))
    assert store.blobs.fetch(project.path).read_bytes() == b"%PDF-1.4"
    assert store.get(project.id) == project


def test_records_survive_a_new_store(store, settings):
    project = store.create("a.txt", b"a")
    reopened = ProjectStore(LocalBlobStore(settings.data_dir))
    assert reopened.get(project.id).filename == "a.txt"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("../../etc/passwd", "passwd"),
        ("C:\\Users\\me\\clip.mp4", "clip.mp4"),
        ('what?:"*.txt', "what____.txt"),
        ("...", "upload"),
    ],
)
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_claims_are_fifo_and_exclusive(store):
    first = store.create("1.txt", b"1")
    second = store.create("2.txt", b"2")

    claimed = store.claim_next()
    assert claimed.id == first.id
    assert claimed.status == ProjectStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.lease_token

    assert store.claim_next().id == second.id
    assert store.claim_next() is None


def test_transitions_follow_the_pipeline(store):
    store.create("1.txt", b"1")
    project = store.claim_next()
    token = project.lease_token

    with pytest.raises(InvalidTransition):
        store.transition(project.id, token, ProjectStatus.DONE)

    rendering = store.transition(project.id, token, ProjectStatus.RENDERING, size_bytes=1)
    assert rendering.status == ProjectStatus.RENDERING
    assert rendering.size_bytes == 1

    done = store.transition(project.id, token, ProjectStatus.DONE, output_url="/downloads/x.png")
    assert done.status == ProjectStatus.DONE
    assert done.lease_token is None
    assert store.get(project.id).output_url == "/downloads/x.png"

    with pytest.raises(LeaseLost):
        store.transition(project.id, token, ProjectStatus.FAILED)


def test_transition_requires_the_lease(store):
    store.create("1.txt", b"1")
    project = store.claim_next()

    with pytest.raises(LeaseLost):
        store.transition(project.id, "not-the-token", ProjectStatus.RENDERING)
    with pytest.raises(ProjectNotFound):
        store.transition("missing", project.lease_token, ProjectStatus.RENDERING)


def test_failures_are_retried_then_terminal(settings):
    store = ProjectStore(LocalBlobStore(settings.data_dir), max_attempts=2)
    store.create("1.txt", b"1")

    project = store.claim_next()
    retried = store.fail(project.id, project.lease_token, "boom")
    assert retried.status == ProjectStatus.UPLOADED
    assert retried.error == "boom"

    project = store.claim_next()
    assert project.attempts == 2
    failed = store.fail(project.id, project.lease_token, "boom again")
    assert failed.status == ProjectStatus.FAILED
    assert store.claim_next() is None


def test_stale_lease_is_taken_over(store):
    store.create("1.txt", b"1")
    first = store.claim_next()

    store.lease_seconds = -1
    second = store.claim_next()
    assert second.id == first.id
    assert second.attempts == 2
    assert second.lease_token != first.lease_token

    with pytest.raises(LeaseLost):
        store.transition(first.id, first.lease_token, ProjectStatus.RENDERING)
    store.transition(second.id, second.lease_token, ProjectStatus.RENDERING)


def test_stale_lease_without_attempts_left_fails(settings):
    store = ProjectStore(LocalBlobStore(settings.data_dir), max_attempts=1)
    created = store.create("1.txt", b"1")
    store.claim_next()

    store.lease_seconds = -1
    assert store.claim_next() is None
    project = store.get(created.id)
    assert project.status == ProjectStatus.FAILED
    assert project.error == "worker lease expired"


class FlakyBlobStore(LocalBlobStore):
    def __init__(self, root, conflicts):
        super().__init__(root)
        self.conflicts = conflicts
        self.writes = 0

    def write_index(self, text, token):
        self.writes += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise IndexConflict("busy")
        super().write_index(text, token)


def test_index_conflicts_are_replayed(settings):
    blobs = FlakyBlobStore(settings.data_dir, conflicts=2)
    store = ProjectStore(blobs)
    project = store.create("1.txt", b"1")

    assert blobs.writes == 3
    assert store.get(project.id) is not None


def test_index_conflicts_give_up_eventually(settings):
    store = ProjectStore(FlakyBlobStore(settings.data_dir, conflicts=100))
    with pytest.raises(IndexConflict):
        store.create("1.txt", b"1")


class FlakyReadBlobStore(LocalBlobStore):
    def __init__(self, root, conflicts):
        super().__init__(root)
        self.conflicts = conflicts

    def read_index(self):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise IndexConflict("generation moved")
        return super().read_index()


def test_read_conflicts_are_replayed_on_mutation(settings):
    blobs = FlakyReadBlobStore(settings.data_dir, conflicts=1)
    store = ProjectStore(blobs)
    project = store.create("a.txt", b"a")

    assert blobs.conflicts == 0
    assert store.get(project.id).filename == "a.txt"


def test_read_conflicts_are_replayed_on_get(settings):
    blobs = FlakyReadBlobStore(settings.data_dir, conflicts=0)
    store = ProjectStore(blobs)
    project = store.create("a.txt", b"a")

    blobs.conflicts = 2
    assert store.get(project.id).id == project.id

    blobs.conflicts = 100
    with pytest.raises(IndexConflict):
        store.get(project.id)


def test_idle_claims_do_not_rewrite_the_index(settings):
    blobs = FlakyBlobStore(settings.data_dir, conflicts=0)
    store = ProjectStore(blobs)

    for _ in range(10):
        assert store.claim_next() is None
    assert blobs.writes == 0

    store.create("1.txt", b"1")
    store.claim_next()
    writes = blobs.writes
    assert store.claim_next() is None  # in flight, lease still fresh
    assert blobs.writes == writes


def test_expiring_a_stale_lease_is_persisted(settings):
    blobs = FlakyBlobStore(settings.data_dir, conflicts=0)
    store = ProjectStore(blobs, max_attempts=1)
    created = store.create("1.txt", b"1")
    store.claim_next()
    writes = blobs.writes

    store.lease_seconds = -1
    assert store.claim_next() is None
    assert blobs.writes == writes + 1
    assert store.get(created.id).status == ProjectStatus.FAILED
