"""Durable project index and the queue discipline built on top of it.

All records live in one JSON document in the active storage backend. Every
change is a read-modify-write under the backend's index lock; backends with
versioned writes (GCS generations, Azure ETags) also reject a write whose
read went stale, in which case the change is replayed.
"""

import json
import re
import unicodedata
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import PurePath
from typing import Callable, List, Optional, TypeVar

import structlog

from common.project_schema import IN_FLIGHT, Project, ProjectStatus, can_transition, utcnow
from common.storage import UPLOAD_PREFIX, BlobStore, IndexConflict

LOGGER = structlog.get_logger(__name__)

MAX_INDEX_RETRIES = 5

T = TypeVar("T")

# Returned by a change callback that did not touch the index.
UNCHANGED = object()


class ProjectNotFound(Exception):
    pass


class InvalidTransition(Exception):
    pass


class LeaseLost(Exception):
    """The caller's claim on a project was taken over or released."""


def sanitize_filename(name: str) -> str:
    name = unicodedata.normalize("NFKC", PurePath(name.replace("\\", "/")).name)
    name = re.sub(r'[\\/:*?"<>|\x00-\x1f]', "_", name)
    return name.strip(" .") or "upload"


def upload_key(project_id: str, filename: str) -> str:
    return f"{UPLOAD_PREFIX}{project_id}_{sanitize_filename(filename)}"


def output_key(project: Project) -> str:
    return f"{UPLOAD_PREFIX}{PurePath(project.path).name}.png"


class ProjectStore:
    def __init__(self, blobs: BlobStore, max_attempts: int = 3, lease_seconds: float = 300.0):
        self.blobs = blobs
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds

    # -- index plumbing ------------------------------------------------------

    def _load(self) -> tuple:
        text, token = self.blobs.read_index()
        return [Project.model_validate(x) for x in json.loads(text)], token

    def _mutate(self, change: Callable[[List[Project]], T]) -> T:
        """Apply `change` to the project list and persist it.

        `change` edits the list in place and returns the caller's result, or
        UNCHANGED when it left the list alone (nothing is written then).
        """
        for attempt in range(MAX_INDEX_RETRIES):
            with self.blobs.index_lock():
                try:
                    projects, token = self._load()
                    result = change(projects)
                    if result is UNCHANGED:
                        return None
                    self.blobs.write_index(
                        json.dumps([p.model_dump(mode="json", by_alias=True) for p in projects], indent=2),
                        token,
                    )
                except IndexConflict:
                    LOGGER.info("index_conflict", attempt=attempt + 1)
                    continue
                return result
        raise IndexConflict(f"gave up after {MAX_INDEX_RETRIES} attempts")

    @staticmethod
    def _find(projects: List[Project], project_id: str) -> Project:
        for p in projects:
            if p.id == project_id:
                return p
        raise ProjectNotFound(project_id)

    # -- public API ----------------------------------------------------------

    def create(self, filename: str, content: bytes) -> Project:
        """Store the upload, then queue a project record for it."""
        project_id = str(uuid.uuid4())
        path = self.blobs.put_bytes(upload_key(project_id, filename), content)
        project = Project(id=project_id, filename=filename, path=path)

        def add(projects):
            projects.append(project)
            return project

        self._mutate(add)
        LOGGER.info("project_created", project_id=project_id, filename=filename, size=len(content))
        return project

    def get(self, project_id: str) -> Optional[Project]:
        for attempt in range(MAX_INDEX_RETRIES):
            try:
                projects, _ = self._load()
            except IndexConflict:
                LOGGER.info("index_conflict", attempt=attempt + 1)
                continue
            return next((p for p in projects if p.id == project_id), None)
        raise IndexConflict(f"gave up after {MAX_INDEX_RETRIES} attempts")

    def _is_stale(self, project: Project, now: datetime) -> bool:
        if project.status not in IN_FLIGHT:
            return False
        updated = datetime.fromisoformat(project.updated_at)
        return now - updated > timedelta(seconds=self.lease_seconds)

    def claim_next(self) -> Optional[Project]:
        """Lease the oldest waiting project to the caller.

        Projects whose worker stopped making progress for longer than the
        lease are taken over, or failed once they used up their attempts.
        """

        def claim(projects):
            now = datetime.now(timezone.utc)
            expired = False
            for p in sorted(projects, key=lambda x: x.created_at):
                stale = self._is_stale(p, now)
                if p.status != ProjectStatus.UPLOADED and not stale:
                    continue
                if stale and p.attempts >= self.max_attempts:
                    p.status = ProjectStatus.FAILED
                    p.error = "worker lease expired"
                    p.lease_token = None
                    p.updated_at = utcnow()
                    LOGGER.warning("project_lease_expired", project_id=p.id, attempts=p.attempts)
                    expired = True
                    continue
                p.status = ProjectStatus.PROCESSING
                p.attempts += 1
                p.lease_token = uuid.uuid4().hex
                p.updated_at = utcnow()
                return p.model_copy()
            return None if expired else UNCHANGED

        project = self._mutate(claim)
        if project:
            LOGGER.info("project_claimed", project_id=project.id, attempt=project.attempts)
        return project

    def transition(self, project_id: str, lease_token: Optional[str], status: ProjectStatus, **fields) -> Project:
        """Move a leased project to `status`, setting any extra record fields."""

        def move(projects):
            p = self._find(projects, project_id)
            if p.lease_token is None or p.lease_token != lease_token:
                raise LeaseLost(project_id)
            if not can_transition(p.status, status):
                raise InvalidTransition(f"{p.status.value} -> {status.value}")
            for name, value in fields.items():
                setattr(p, name, value)
            p.status = status
            p.updated_at = utcnow()
            if status in (ProjectStatus.DONE, ProjectStatus.FAILED, ProjectStatus.UPLOADED):
                p.lease_token = None
            return p.model_copy()

        project = self._mutate(move)
        LOGGER.info("project_transition", project_id=project_id, status=status.value)
        return project

    def fail(self, project_id: str, lease_token: Optional[str], error: str) -> Project:
        """Record a stage failure; requeue while attempts remain."""
        project = self.get(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        if project.attempts < self.max_attempts:
            target = ProjectStatus.UPLOADED
        else:
            target = ProjectStatus.FAILED
        LOGGER.warning(
            "project_failed",
            project_id=project_id,
            error=error,
            attempts=project.attempts,
            requeued=target == ProjectStatus.UPLOADED,
        )
        return self.transition(project_id, lease_token, target, error=error)
