from __future__ import annotations

import asyncio
import sys

from entitysync.core.logging import configure_logging
from entitysync.services.sync.reconciler import JobReconciler


async def reconcile() -> int:
    # One self-healing pass outside the worker's timer.
    created = await JobReconciler().reconcile()
    print(f"created_sync_jobs={created}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(reconcile())
    except Exception as exc:  # noqa: BLE001 - surface reconcile failures clearly in CLI output.
        print(f"reconcile_jobs failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
