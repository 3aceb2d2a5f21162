"""
Migrate videos stored inline in the legacy_videos table into the chunked
"videos" bucket.

Safe to rerun: objects already migrated (matched by metadata.legacyId) are
skipped, and objects an interrupted run left without chunks are redone.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keepsake.blobs import VIDEOS_BUCKET, BlobStore, BucketRegistry
from keepsake.config import get_settings
from keepsake.db import connect
from keepsake.errors import KeepsakeError, StoreUnavailable
from keepsake.migration import SqlLegacySource, fix_content_types, migrate_legacy_videos


logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Migrate legacy inline videos")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL of the database (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--bucket",
        default=VIDEOS_BUCKET,
        help="Bucket to write migrated videos into",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=20,
        help="Legacy rows loaded per query",
    )
    parser.add_argument(
        "--log-every",
        type=int,
        default=25,
        help="Log progress every N records",
    )
    parser.add_argument(
        "--no-skip-existing",
        action="store_true",
        help="Migrate again even when a record was migrated before",
    )
    parser.add_argument(
        "--fix-content-types",
        action="store_true",
        help="Only fill in missing content types on existing objects",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be migrated without writing anything",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    settings = get_settings()
    database_url = args.database_url or settings.database_url
    if not database_url:
        logger.error("Missing database URL. Use --database-url or DATABASE_URL")
        return 1

    try:
        session_factory = connect(database_url)
    except StoreUnavailable as exc:
        logger.error("%s", exc.message)
        return 1
    store = BlobStore(
        BucketRegistry.sql(session_factory),
        chunk_size=settings.blob_chunk_size,
        read_batch=settings.blob_read_batch,
    )

    if args.fix_content_types:
        fix_content_types(store, args.bucket, log_every=args.log_every)
        return 0

    try:
        report = migrate_legacy_videos(
            SqlLegacySource(session_factory, batch_size=args.batch_size),
            store,
            bucket=args.bucket,
            dry_run=args.dry_run,
            skip_existing=not args.no_skip_existing,
            log_every=args.log_every,
        )
    except KeepsakeError as exc:
        logger.error("Migration aborted: %s", exc.message)
        return 1
    logger.info(
        "Processed %d: migrated %d, skipped %d, failed %d",
        report.processed,
        report.migrated,
        report.skipped,
        report.failed,
    )
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
