from __future__ import annotations

import asyncio

from ticketvault.core.logging import configure_logging
from ticketvault.services.archival.scheduler import ArchivalScheduler


async def _main() -> None:
    # Dedicated scheduler process so archival continues without API replicas.
    configure_logging()
    scheduler = ArchivalScheduler()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(_main())
