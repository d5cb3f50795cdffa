import fcntl
import mimetypes
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

# Configuration object; STORAGE_BACKEND decides which backend class is built.
from common.config import Settings

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDKs are optional. A backend whose SDK is missing raises when it is used,
# so a local-only install never needs them.
# ------------------------------------------------------------------------------

# 1. Google Cloud Storage SDK
try:
    from google.api_core import exceptions as gcs_exceptions
    from google.cloud import storage as gcs
except ImportError:
    gcs = None
    gcs_exceptions = None

# 2. Azure Blob Storage SDK
try:
    from azure.core import MatchConditions
    from azure.core.exceptions import ResourceExistsError, ResourceModifiedError, ResourceNotFoundError
    from azure.storage.blob import BlobServiceClient
except ImportError:
    BlobServiceClient = None
    MatchConditions = None
    ResourceExistsError = ResourceModifiedError = ResourceNotFoundError = None

# ------------------------------------------------------------------------------
# CONSTANTS
# Folder structure inside the data dir / bucket / container.
# ------------------------------------------------------------------------------
INDEX_OBJECT = "projects/projects.json"  # The file acting as our "database"
UPLOAD_PREFIX = "uploads/"               # Uploaded files and their rendered outputs


class IndexConflict(Exception):
    """The project index changed between our read and our write."""


def _split_uri(location: str, scheme: str) -> Tuple[Optional[str], str]:
    """gs://bucket/key -> (bucket, key). Plain keys come back with no bucket."""
    prefix = f"{scheme}://"
    if not location.startswith(prefix):
        return None, location
    _, _, remainder = location.partition(prefix)
    container, _, key = remainder.partition("/")
    return container, key


def _content_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


class BlobStore:
    """Common interface of the storage backends.

    Keys are slash separated ("uploads/<id>_<name>"). A *location* is the
    backend-qualified form of a key that gets recorded on a project.
    """

    name = "base"

    def location(self, key: str) -> str:
        raise NotImplementedError

    def put_bytes(self, key: str, data: bytes) -> str:
        raise NotImplementedError

    def put_file(self, key: str, path: Path) -> str:
        raise NotImplementedError

    def fetch(self, location: str) -> Path:
        """Return a local file holding the object. Raises FileNotFoundError."""
        raise NotImplementedError

    def release(self, path: Path) -> None:
        """Drop a file handed out by fetch() once the caller is done with it."""

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def read_index(self) -> Tuple[str, object]:
        """Return (json text, version token) of the project index."""
        raise NotImplementedError

    def write_index(self, text: str, token: object) -> None:
        """Write the index if it is still at `token`, else raise IndexConflict."""
        raise NotImplementedError

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        yield


# ------------------------------------------------------------------------------
# LOCAL FILESYSTEM
# Used when STORAGE_BACKEND="local". Everything lives under DATA_DIR.
# ------------------------------------------------------------------------------

class LocalBlobStore(BlobStore):
    name = "local"

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._thread_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise FileNotFoundError(key)
        return path

    def _key(self, location: str) -> str:
        path = Path(location)
        if not path.is_absolute():
            return location
        try:
            return path.resolve().relative_to(self.root).as_posix()
        except ValueError:
            raise FileNotFoundError(location)

    def _write_atomic(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def location(self, key: str) -> str:
        return str(self._path(key))

    def put_bytes(self, key: str, data: bytes) -> str:
        path = self._path(key)
        self._write_atomic(path, data)
        return str(path)

    def put_file(self, key: str, path: Path) -> str:
        dest = self._path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, dest)
        return str(dest)

    def fetch(self, location: str) -> Path:
        path = self._path(self._key(location))
        if not path.is_file():
            raise FileNotFoundError(location)
        return path

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except FileNotFoundError:
            return False

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*"):
            key = path.relative_to(self.root).as_posix()
            if path.is_file() and key.startswith(prefix) and not path.name.startswith("."):
                keys.append(key)
        return sorted(keys)

    def read_index(self) -> Tuple[str, object]:
        path = self._path(INDEX_OBJECT)
        content = path.read_text(encoding="utf-8") if path.exists() else "[]"
        if not content.strip():
            content = "[]"
        return content, None

    def write_index(self, text: str, token: object) -> None:
        # The file lock held by index_lock() makes the write exclusive already.
        self._write_atomic(self._path(INDEX_OBJECT), text.encode("utf-8"))

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        # Thread lock for workers in this process, flock for other processes.
        with self._thread_lock:
            lock_path = self.root / ".projects.lock"
            with open(lock_path, "a") as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS)
# Used when STORAGE_BACKEND="gcp". Index writes use generation preconditions.
# ------------------------------------------------------------------------------

class GCSBlobStore(BlobStore):
    name = "gcp"

    def __init__(self, bucket_name: Optional[str]):
        if not bucket_name:
            raise ValueError("GCS_BUCKET is required for GCP backend")
        self.bucket_name = bucket_name
        self._client = None
        self._bucket = None
        self._thread_lock = threading.Lock()

    @property
    def client(self):
        if self._client is None:
            if not gcs:
                raise RuntimeError("google-cloud-storage library is not installed.")
            self._client = gcs.Client()
        return self._client

    @property
    def bucket(self):
        """Bucket handle; creates the bucket on first use if it does not exist."""
        if self._bucket is None:
            try:
                self._bucket = self.client.get_bucket(self.bucket_name)
            except gcs_exceptions.NotFound:
                self._bucket = self.client.create_bucket(self.bucket_name)
        return self._bucket

    def location(self, key: str) -> str:
        return f"gs://{self.bucket_name}/{key}"

    def put_bytes(self, key: str, data: bytes) -> str:
        self.bucket.blob(key).upload_from_string(data, content_type="application/octet-stream")
        return self.location(key)

    def put_file(self, key: str, path: Path) -> str:
        self.bucket.blob(key).upload_from_filename(str(path), content_type=_content_type(key))
        return self.location(key)

    def fetch(self, location: str) -> Path:
        bucket_name, key = _split_uri(location, "gs")
        bucket = self.client.bucket(bucket_name) if bucket_name else self.bucket
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=Path(key).suffix)
        tmp.close()
        try:
            bucket.blob(key).download_to_filename(tmp.name)
        except gcs_exceptions.NotFound:
            Path(tmp.name).unlink(missing_ok=True)
            raise FileNotFoundError(location)
        return Path(tmp.name)

    def release(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self.bucket.blob(key).exists()

    def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(blob.name for blob in self.client.list_blobs(self.bucket_name, prefix=prefix or None))

    def read_index(self) -> Tuple[str, object]:
        blob = self.bucket.get_blob(INDEX_OBJECT)
        if blob is None:
            # Generation 0 means "object must not exist yet" on write.
            return "[]", 0
        try:
            return blob.download_as_text(if_generation_match=blob.generation), blob.generation
        except gcs_exceptions.PreconditionFailed:
            raise IndexConflict(INDEX_OBJECT)

    def write_index(self, text: str, token: object) -> None:
        blob = self.bucket.blob(INDEX_OBJECT)
        try:
            blob.upload_from_string(text, content_type="application/json", if_generation_match=token)
        except gcs_exceptions.PreconditionFailed:
            raise IndexConflict(INDEX_OBJECT)

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        with self._thread_lock:
            yield


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE
# Used when STORAGE_BACKEND="azure". Index writes are conditional on the ETag.
# ------------------------------------------------------------------------------

class AzureBlobStore(BlobStore):
    name = "azure"

    def __init__(self, conn_str: Optional[str], container_name: Optional[str]):
        if not container_name:
            raise ValueError("AZURE_CONTAINER env var is required for Azure backend")
        self.conn_str = conn_str
        self.container_name = container_name
        self._container = None
        self._thread_lock = threading.Lock()

    @property
    def container(self):
        """Container client; creates the container on first use if missing."""
        if self._container is None:
            if not BlobServiceClient:
                raise RuntimeError("azure-storage-blob library is not installed.")
            if not self.conn_str:
                raise ValueError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
            client = BlobServiceClient.from_connection_string(self.conn_str)
            container = client.get_container_client(self.container_name)
            if not container.exists():
                container.create_container()
            self._container = container
        return self._container

    def location(self, key: str) -> str:
        # Custom scheme for internal tracking: az://container/path
        return f"az://{self.container_name}/{key}"

    def put_bytes(self, key: str, data: bytes) -> str:
        self.container.get_blob_client(key).upload_blob(data, overwrite=True)
        return self.location(key)

    def put_file(self, key: str, path: Path) -> str:
        with open(path, "rb") as data:
            self.container.get_blob_client(key).upload_blob(data, overwrite=True)
        return self.location(key)

    def fetch(self, location: str) -> Path:
        _, key = _split_uri(location, "az")
        blob_client = self.container.get_blob_client(key)
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=Path(key).suffix)
        try:
            with tmp:
                blob_client.download_blob().readinto(tmp)
        except ResourceNotFoundError:
            Path(tmp.name).unlink(missing_ok=True)
            raise FileNotFoundError(location)
        return Path(tmp.name)

    def release(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self.container.get_blob_client(key).exists()

    def list_keys(self, prefix: str = "") -> List[str]:
        return sorted(blob.name for blob in self.container.list_blobs(name_starts_with=prefix or None))

    def read_index(self) -> Tuple[str, object]:
        blob_client = self.container.get_blob_client(INDEX_OBJECT)
        try:
            downloader = blob_client.download_blob()
        except ResourceNotFoundError:
            return "[]", None
        return downloader.readall().decode("utf-8"), downloader.properties.etag

    def write_index(self, text: str, token: object) -> None:
        blob_client = self.container.get_blob_client(INDEX_OBJECT)
        try:
            if token is None:
                blob_client.upload_blob(text, overwrite=False)
            else:
                blob_client.upload_blob(
                    text,
                    overwrite=True,
                    etag=token,
                    match_condition=MatchConditions.IfNotModified,
                )
        except (ResourceExistsError, ResourceModifiedError):
            raise IndexConflict(INDEX_OBJECT)

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        with self._thread_lock:
            yield


def make_blob_store(settings: Settings, backend: Optional[str] = None) -> BlobStore:
    """Build the backend named by `backend` (defaults to STORAGE_BACKEND)."""
    backend = backend or settings.storage_backend
    if backend == "local":
        return LocalBlobStore(settings.data_dir)
    elif backend == "gcp":
        return GCSBlobStore(settings.gcs_bucket)
    elif backend == "azure":
        return AzureBlobStore(settings.azure_storage_connection_string, settings.azure_container)
    else:
        raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
