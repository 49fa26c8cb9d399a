"""
Backfill KV entries from the legacy blob backend into the relational store.

The migration enumerates every source key once, processes them in fixed-size
batches in key order, and writes each batch through ``KVStoreService`` so the
same validation and tag derivation apply as for live traffic. Progress is
checkpointed after every successful batch so an interrupted run can resume.
"""

from __future__ import annotations

import bisect
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Sequence

from kvstore.db import KVBackend, KVEntry, ListQuery
from kvstore.errors import BackendUnavailableError, ValidationError
from kvstore.indexes import tags_to_declarations
from kvstore.service import KVStoreService

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class MigrationCounts:
    total: int = 0
    migrated: int = 0
    skipped_empty: int = 0
    failed: int = 0
    already_migrated: int = 0


@dataclass
class MigrationCheckpoint:
    last_key: Optional[str]
    timestamp: float = field(default_factory=lambda: time.time())
    counts: MigrationCounts = field(default_factory=MigrationCounts)
    failed_keys: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "lastKey": self.last_key,
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "counts": asdict(self.counts),
            "failedKeys": list(self.failed_keys),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationCheckpoint":
        raw_timestamp = data.get("timestamp")
        if isinstance(raw_timestamp, str):
            timestamp = datetime.fromisoformat(raw_timestamp).timestamp()
        else:
            timestamp = float(raw_timestamp or time.time())
        counts = data.get("counts") or {}
        return cls(
            last_key=data.get("lastKey"),
            timestamp=timestamp,
            counts=MigrationCounts(
                **{k: int(v) for k, v in counts.items() if k in MigrationCounts.__dataclass_fields__}
            ),
            failed_keys=list(data.get("failedKeys") or []),
        )


class CheckpointStore(Protocol):
    def load(self) -> Optional[MigrationCheckpoint]:
        ...

    def save(self, checkpoint: MigrationCheckpoint) -> None:
        ...

    def clear(self) -> None:
        ...


class FileCheckpointStore:
    """Checkpoint persisted as a small JSON file next to the operator's shell."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[MigrationCheckpoint]:
        if not self.path.exists():
            return None
        with self.path.open("r", encoding="utf-8") as f:
            return MigrationCheckpoint.from_dict(json.load(f))

    def save(self, checkpoint: MigrationCheckpoint) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(checkpoint.as_dict(), f, indent=2)
        tmp_path.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class InMemoryCheckpointStore:
    def __init__(self, checkpoint: Optional[MigrationCheckpoint] = None):
        self.checkpoint = checkpoint
        self.saves = 0

    def load(self) -> Optional[MigrationCheckpoint]:
        return self.checkpoint

    def save(self, checkpoint: MigrationCheckpoint) -> None:
        self.checkpoint = MigrationCheckpoint.from_dict(checkpoint.as_dict())
        self.saves += 1

    def clear(self) -> None:
        self.checkpoint = None


@dataclass
class MigrationReport:
    counts: MigrationCounts
    failed_keys: list[str]
    resumed_after: Optional[str] = None
    dry_run: bool = False
    batches: int = 0
    duration_seconds: float = 0.0

    @property
    def clean(self) -> bool:
        return self.counts.failed == 0

    def as_dict(self) -> dict:
        return {
            **asdict(self.counts),
            "failed_keys": list(self.failed_keys),
            "resumed_after": self.resumed_after,
            "dry_run": self.dry_run,
            "batches": self.batches,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def is_empty_value(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (dict, list)) and not value)


def iter_batches(keys: Sequence[str], batch_size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(keys), batch_size):
        yield keys[start : start + batch_size]


class KVMigration:
    def __init__(
        self,
        source: KVBackend,
        target: KVStoreService,
        checkpoints: CheckpointStore,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.source = source
        self.target = target
        self.checkpoints = checkpoints
        self.batch_size = batch_size
        self.dry_run = dry_run

    def _start_index(
        self, keys: list[str], resume_from: Optional[str], checkpoint: Optional[MigrationCheckpoint]
    ) -> tuple[int, Optional[str]]:
        if resume_from:
            # Explicit resume point is inclusive.
            return bisect.bisect_left(keys, resume_from), resume_from
        if checkpoint and checkpoint.last_key:
            return bisect.bisect_right(keys, checkpoint.last_key), checkpoint.last_key
        return 0, None

    def _prepare_batch(
        self, batch: Sequence[str], counts: MigrationCounts, failed_keys: list[str]
    ) -> tuple[list[KVEntry], bool]:
        entries: list[KVEntry] = []
        had_failure = False
        for key in batch:
            try:
                source_entry = self.source.get(key)
            except BackendUnavailableError as exc:
                logger.error("Failed to read %s from source: %s", key, exc)
                counts.failed += 1
                failed_keys.append(key)
                had_failure = True
                continue

            if source_entry is None or is_empty_value(source_entry.value):
                counts.skipped_empty += 1
                continue

            try:
                entries.append(
                    self.target.build_entry(
                        key, source_entry.value, tags_to_declarations(source_entry.indexes)
                    )
                )
            except ValidationError as exc:
                logger.error("Rejected %s during transform: %s", key, exc)
                counts.failed += 1
                failed_keys.append(key)
                had_failure = True
        return entries, had_failure

    def run(self, resume_from: Optional[str] = None) -> MigrationReport:
        started = time.time()
        listing = self.source.list_entries(ListQuery())
        keys = sorted(listing.keys)
        counts = MigrationCounts(total=len(keys))
        failed_keys: list[str] = []

        checkpoint = None if resume_from else self.checkpoints.load()
        start_index, resumed_after = self._start_index(keys, resume_from, checkpoint)
        counts.already_migrated = start_index
        if resumed_after:
            logger.info("Resuming after %s (%d keys already done)", resumed_after, start_index)

        last_good_key = keys[start_index - 1] if start_index else None
        if not self.dry_run:
            self.checkpoints.save(MigrationCheckpoint(last_key=last_good_key, counts=counts))

        logger.info(
            "Migrating %d of %d keys in batches of %d%s",
            len(keys) - start_index,
            len(keys),
            self.batch_size,
            " (dry run)" if self.dry_run else "",
        )

        # Once a batch fails the checkpoint is frozen so a resume re-covers it.
        checkpoint_frozen = False
        batches = 0
        for batch in iter_batches(keys[start_index:], self.batch_size):
            batches += 1
            entries, had_failure = self._prepare_batch(batch, counts, failed_keys)

            if entries and not self.dry_run:
                try:
                    self.target.upsert_entries(entries)
                except BackendUnavailableError as exc:
                    logger.error(
                        "Batch %d failed (%d entries, %s..%s): %s",
                        batches,
                        len(entries),
                        batch[0],
                        batch[-1],
                        exc,
                    )
                    counts.failed += len(entries)
                    failed_keys.extend(entry.key for entry in entries)
                    had_failure = True
                else:
                    counts.migrated += len(entries)
            else:
                counts.migrated += len(entries)

            if had_failure:
                checkpoint_frozen = True
            if not self.dry_run and not checkpoint_frozen:
                last_good_key = batch[-1]
                self.checkpoints.save(
                    MigrationCheckpoint(last_key=last_good_key, counts=counts)
                )

            processed = start_index + batches * self.batch_size
            logger.info(
                "Batch %d done: %d/%d keys (migrated=%d skipped_empty=%d failed=%d)",
                batches,
                min(processed, len(keys)),
                len(keys),
                counts.migrated,
                counts.skipped_empty,
                counts.failed,
            )

        if not self.dry_run:
            if counts.failed == 0:
                self.checkpoints.clear()
            else:
                self.checkpoints.save(
                    MigrationCheckpoint(
                        last_key=last_good_key, counts=counts, failed_keys=failed_keys
                    )
                )

        report = MigrationReport(
            counts=counts,
            failed_keys=failed_keys,
            resumed_after=resumed_after,
            dry_run=self.dry_run,
            batches=batches,
            duration_seconds=time.time() - started,
        )
        logger.info(
            "Migration finished: total=%d migrated=%d skipped_empty=%d failed=%d already_migrated=%d",
            counts.total,
            counts.migrated,
            counts.skipped_empty,
            counts.failed,
            counts.already_migrated,
        )
        return report


@dataclass
class VerificationResult:
    source_count: int
    skipped_empty: int
    target_count: int
    missing_keys: list[str]
    extra_keys: list[str]
    unexplained_keys: list[str]

    @property
    def expected_count(self) -> int:
        return self.source_count - self.skipped_empty

    @property
    def delta(self) -> int:
        return self.target_count - self.expected_count

    @property
    def ok(self) -> bool:
        return not self.unexplained_keys

    def as_dict(self) -> dict:
        return {
            "source_count": self.source_count,
            "skipped_empty": self.skipped_empty,
            "expected_count": self.expected_count,
            "target_count": self.target_count,
            "delta": self.delta,
            "missing_keys": self.missing_keys,
            "extra_keys": self.extra_keys,
            "unexplained_keys": self.unexplained_keys,
            "ok": self.ok,
        }


def verify_migration(
    source: KVBackend,
    target: KVStoreService,
    report: Optional[MigrationReport] = None,
) -> VerificationResult:
    """
    Compare the target store against the source after a migration.

    Target rows absent from the source (``extra_keys``) and source keys that
    the report lists as failed explain the count delta. Any other missing key
    is unexplained and needs manual investigation; nothing is rolled back.
    """
    source_page = source.list_entries(ListQuery(include_values=True))
    source_values = source_page.values or {}
    empty = {key for key in source_page.keys if is_empty_value(source_values.get(key))}
    expected = set(source_page.keys) - empty

    target_keys = set(target.list().keys)
    missing = sorted(expected - target_keys)
    extra = sorted(target_keys - set(source_page.keys))
    known_failures = set(report.failed_keys) if report else set()
    unexplained = [key for key in missing if key not in known_failures]

    result = VerificationResult(
        source_count=len(source_page.keys),
        skipped_empty=len(empty),
        target_count=len(target_keys),
        missing_keys=missing,
        extra_keys=extra,
        unexplained_keys=unexplained,
    )
    if result.ok:
        logger.info(
            "Verification passed: target=%d expected=%d delta=%d",
            result.target_count,
            result.expected_count,
            result.delta,
        )
    else:
        logger.error(
            "Verification found %d unexplained missing keys; manual investigation required: %s",
            len(unexplained),
            ", ".join(unexplained[:20]),
        )
    return result
