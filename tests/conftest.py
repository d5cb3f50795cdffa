import io
import os
import tempfile

# Configure environment before application imports
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="studio-tests-"))
os.environ.setdefault("EMBEDDED_WORKERS", "0")

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from api.main import create_app
from common.config import Settings
from common.projects import ProjectStore
from common.storage import LocalBlobStore


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        storage_backend="local",
        data_dir=tmp_path / "data",
        embedded_workers=0,
        poll_interval=0.05,
        max_attempts=3,
        lease_seconds=300,
        preview_max_edge=64,
    )


@pytest.fixture()
def store(settings) -> ProjectStore:
    return ProjectStore(
        LocalBlobStore(settings.data_dir),
        max_attempts=settings.max_attempts,
        lease_seconds=settings.lease_seconds,
    )


@pytest.fixture()
def client(settings) -> TestClient:
    return TestClient(create_app(settings))


def make_png(size=(200, 100), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()
