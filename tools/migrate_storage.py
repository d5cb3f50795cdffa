# migrate_storage.py
#
# Copies every stored upload, rendered output and the project index from one
# storage backend to another, e.g. when moving a deployment from local disk to
# a GCS bucket or from GCS to Azure Blob Storage.
#
#   python -m tools.migrate_storage --from gcp --to azure
#
# Backend settings (GCS_BUCKET, AZURE_CONTAINER, DATA_DIR, ...) come from the
# same environment variables the API and worker read.

import argparse
import json
from typing import Optional

import structlog

from common.config import Settings, get_settings
from common.logging_config import configure_logging
from common.project_schema import Project
from common.storage import INDEX_OBJECT, UPLOAD_PREFIX, BlobStore, make_blob_store

LOGGER = structlog.get_logger(__name__)


def migrate(source: BlobStore, dest: BlobStore) -> int:
    """Copy uploads/outputs and a rewritten project index; return files copied."""
    copied = 0
    for key in source.list_keys(UPLOAD_PREFIX):
        local = source.fetch(key)
        try:
            dest.put_file(key, local)
        finally:
            source.release(local)
        copied += 1
        LOGGER.info("blob_copied", key=key)

    # Project paths are backend-qualified, so they are re-pointed at the
    # destination before the index is written there.
    text, _ = source.read_index()
    projects = [Project.model_validate(x) for x in json.loads(text)]
    for project in projects:
        if project.path:
            key = f"{UPLOAD_PREFIX}{project.path.rsplit('/', 1)[-1]}"
            project.path = dest.location(key)

    # Projects already at the destination are kept; a migrated project
    # replaces the destination record with the same id.
    with dest.index_lock():
        text, token = dest.read_index()
        merged = {p.id: p for p in (Project.model_validate(x) for x in json.loads(text))}
        merged.update((p.id, p) for p in projects)
        dest.write_index(
            json.dumps([p.model_dump(mode="json", by_alias=True) for p in merged.values()], indent=2),
            token,
        )
    LOGGER.info("index_copied", key=INDEX_OBJECT, projects=len(projects), total=len(merged))
    return copied


def main(argv=None, settings: Optional[Settings] = None):
    parser = argparse.ArgumentParser(description="Copy project data between storage backends.")
    parser.add_argument("--from", dest="source", required=True, choices=["local", "gcp", "azure"])
    parser.add_argument("--to", dest="dest", required=True, choices=["local", "gcp", "azure"])
    args = parser.parse_args(argv)
    if args.source == args.dest:
        parser.error("--from and --to must name different backends")

    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    source = make_blob_store(settings, args.source)
    dest = make_blob_store(settings, args.dest)
    copied = migrate(source, dest)
    print(f"Copied {copied} files from {args.source} to {args.dest}")


if __name__ == "__main__":
    main()
