import signal
import tempfile
import threading
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

import structlog

from common.config import Settings, get_settings
from common.logging_config import configure_logging
from common.pipeline import analyze_upload, render_preview
from common.project_schema import Project, ProjectStatus
from common.projects import LeaseLost, ProjectStore, output_key
from common.storage import make_blob_store

LOGGER = structlog.get_logger(__name__)


def process_project(store: ProjectStore, project: Project, settings: Settings) -> Optional[Project]:
    """Run a claimed project through processing and rendering."""
    log = LOGGER.bind(project_id=project.id)
    token = project.lease_token
    input_path = None
    try:
        # processing: look at what was uploaded
        input_path = store.blobs.fetch(project.path)
        analysis = analyze_upload(input_path, filename=project.filename)
        log.info("project_analyzed", size=analysis.size_bytes, media_type=analysis.media_type)

        project = store.transition(
            project.id,
            token,
            ProjectStatus.RENDERING,
            size_bytes=analysis.size_bytes,
            checksum=analysis.checksum,
            media_type=analysis.media_type,
        )

        # rendering: produce the downloadable preview
        key = output_key(project)
        with tempfile.TemporaryDirectory() as tmp_dir:
            rendered = render_preview(
                input_path,
                analysis,
                Path(tmp_dir) / "preview.png",
                max_edge=settings.preview_max_edge,
                filename=project.filename,
            )
            store.blobs.put_file(key, rendered)

        project = store.transition(
            project.id,
            token,
            ProjectStatus.DONE,
            output_url=f"/downloads/{quote(Path(key).name)}",
            error=None,
        )
        log.info("project_done", output_url=project.output_url)
        return project
    except LeaseLost:
        log.warning("project_lease_lost")
        return None
    except Exception as e:
        log.exception("project_processing_error")
        try:
            return store.fail(project.id, token, str(e))
        except LeaseLost:
            log.warning("project_lease_lost")
            return None
    finally:
        if input_path is not None:
            store.blobs.release(input_path)


class Worker:
    """Claims projects one at a time until told to stop."""

    def __init__(self, store: ProjectStore, settings: Settings, name: str = "worker"):
        self.store = store
        self.settings = settings
        self.name = name

    def run_once(self) -> Optional[Project]:
        project = self.store.claim_next()
        if project is None:
            return None
        return process_project(self.store, project, self.settings)

    def run(self, stop_event: threading.Event) -> None:
        LOGGER.info("worker_started", worker=self.name)
        while not stop_event.is_set():
            try:
                if self.run_once() is None:
                    stop_event.wait(self.settings.poll_interval)
            except Exception:
                # Keep the thread alive; the lease brings the project back.
                LOGGER.exception("worker_loop_error", worker=self.name)
                stop_event.wait(self.settings.poll_interval)
        LOGGER.info("worker_stopped", worker=self.name)


class WorkerPool:
    """A fixed number of Worker threads sharing one ProjectStore."""

    def __init__(self, store: ProjectStore, settings: Settings, concurrency: int = 1):
        self.store = store
        self.settings = settings
        self.concurrency = concurrency
        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []

    def start(self) -> None:
        self.stop_event.clear()
        for i in range(self.concurrency):
            worker = Worker(self.store, self.settings, name=f"worker-{i}")
            thread = threading.Thread(target=worker.run, args=(self.stop_event,), name=worker.name, daemon=True)
            thread.start()
            self.threads.append(thread)
        LOGGER.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout: float = 10.0) -> None:
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout)
        self.threads = []
        LOGGER.info("worker_pool_stopped")


def main():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    store = ProjectStore(
        make_blob_store(settings),
        max_attempts=settings.max_attempts,
        lease_seconds=settings.lease_seconds,
    )
    pool = WorkerPool(store, settings, concurrency=max(1, settings.worker_concurrency))

    def _shutdown(signum, frame):
        LOGGER.info("worker_signal", signal=signum)
        pool.stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    pool.stop_event.wait()
    pool.stop()


if __name__ == "__main__":
    main()
