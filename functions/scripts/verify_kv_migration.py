"""
Verify that the Supabase KV table accounts for every non-empty blob entry.

Exits non-zero when any source key is missing from the target without being
listed in the failed keys of the saved migration checkpoint.
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
from kvstore.migration import (
    FileCheckpointStore,
    MigrationReport,
    verify_migration,
)
from kvstore.service import KVStoreService

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Verify a KV store migration")
    parser.add_argument(
        "--checkpoint",
        default=settings.migration_checkpoint_path,
        help="Progress file whose failed keys explain missing rows",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")

    source = get_blob_backend()
    target = KVStoreService(
        get_relational_backend(), reserved_prefix=settings.blob_index_prefix
    )

    report = None
    checkpoint = FileCheckpointStore(args.checkpoint).load()
    if checkpoint:
        logger.info(
            "Using %d failed keys from %s", len(checkpoint.failed_keys), args.checkpoint
        )
        report = MigrationReport(counts=checkpoint.counts, failed_keys=checkpoint.failed_keys)

    result = verify_migration(source, target, report)
    print(json.dumps(result.as_dict(), indent=2))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
