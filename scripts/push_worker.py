from __future__ import annotations

import asyncio

from tagpush.core.logging import configure_logging
from tagpush.workers.push_worker import run_push_worker


async def _main() -> None:
    # Boot a dedicated worker process so push delivery runs independently from API handlers.
    configure_logging()
    await run_push_worker()


if __name__ == "__main__":
    asyncio.run(_main())
