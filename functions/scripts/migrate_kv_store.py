"""
Migrate KV entries from the legacy blob store into Postgres/Supabase.

Reads every key from the blob backend, writes non-empty entries through the
KV service in batches, checkpoints progress to a JSON file, and verifies the
target row count at the end. Re-running resumes after the last checkpoint.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kvstore.config import get_settings
from kvstore.dependencies import get_blob_backend, get_relational_backend
from kvstore.errors import KVError
from kvstore.migration import FileCheckpointStore, KVMigration, verify_migration
from kvstore.service import KVStoreService

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Migrate KV entries from blob storage to Supabase"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.migration_batch_size,
        help="Entries per upsert batch",
    )
    parser.add_argument(
        "--checkpoint",
        default=settings.migration_checkpoint_path,
        help="Path of the resumable progress file",
    )
    parser.add_argument(
        "--resume-from",
        default=None,
        help="Start at this key (inclusive), ignoring any saved checkpoint",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be migrated without writing anything",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        help="Skip the read-back verification after migrating",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")

    try:
        source = get_blob_backend()
        target = KVStoreService(
            get_relational_backend(), reserved_prefix=settings.blob_index_prefix
        )
    except KVError as exc:
        logger.error("Cannot start migration: %s", exc)
        return 1

    migration = KVMigration(
        source,
        target,
        FileCheckpointStore(args.checkpoint),
        batch_size=args.batch_size,
        dry_run=args.dry_run,
    )
    report = migration.run(resume_from=args.resume_from)
    print(json.dumps(report.as_dict(), indent=2))

    if args.dry_run:
        logger.warning("This was a dry run; nothing was written")
        return 0

    exit_code = 0 if report.clean else 2
    if not report.clean:
        logger.warning(
            "%d entries failed; checkpoint kept at %s for a resumable rerun",
            report.counts.failed,
            args.checkpoint,
        )

    if not args.no_verify:
        result = verify_migration(source, target, report)
        print(json.dumps(result.as_dict(), indent=2))
        if not result.ok:
            exit_code = 3
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
