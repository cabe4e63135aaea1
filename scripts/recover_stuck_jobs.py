from __future__ import annotations

import asyncio
import sys

from entitysync.core.logging import configure_logging
from entitysync.services.registry import get_registry
from entitysync.services.sync.scheduler import JobScheduler


async def recover() -> int:
    # Return queued/running units to pending after a crash; run with workers stopped.
    recovered = await JobScheduler(get_registry()).recover_stuck_jobs()
    print(f"recovered_sync_jobs={recovered}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(recover())
    except Exception as exc:  # noqa: BLE001 - surface recovery failures clearly in CLI output.
        print(f"recover_stuck_jobs failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
