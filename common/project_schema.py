from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProjectStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    RENDERING = "rendering"
    DONE = "done"
    FAILED = "failed"


# Allowed moves of the pipeline. A move back to UPLOADED is a retry.
TRANSITIONS = {
    ProjectStatus.UPLOADED: {ProjectStatus.PROCESSING},
    ProjectStatus.PROCESSING: {ProjectStatus.RENDERING, ProjectStatus.FAILED, ProjectStatus.UPLOADED},
    ProjectStatus.RENDERING: {ProjectStatus.DONE, ProjectStatus.FAILED, ProjectStatus.UPLOADED},
    ProjectStatus.DONE: set(),
    ProjectStatus.FAILED: set(),
}

IN_FLIGHT = {ProjectStatus.PROCESSING, ProjectStatus.RENDERING}


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in TRANSITIONS[current]


class Project(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    filename: str
    path: str                # where the upload is stored (local path, gs:// or az://)
    status: ProjectStatus = ProjectStatus.UPLOADED
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)
    output_url: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    media_type: Optional[str] = None
    lease_token: Optional[str] = None

    def public(self) -> dict:
        """Wire form returned by the API."""
        return self.model_dump(mode="json", by_alias=True, exclude={"lease_token"})
