from __future__ import annotations

import asyncio
import logging

from changelog_sync.app import run
from changelog_sync.errors import SyncError

LOGGER = logging.getLogger("changelog_sync")


def main() -> None:
    try:
        asyncio.run(run())
    except SyncError:
        LOGGER.exception("service_failed")
        raise SystemExit(1) from None


if __name__ == "__main__":
    main()
