"""
Delete expired application state rows.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kvstore.dependencies import get_state_store

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    removed = get_state_store().cleanup_expired()
    logger.info("Removed %d expired state entries", removed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
