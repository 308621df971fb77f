from __future__ import annotations

import argparse
import asyncio

from ticketvault.core.logging import configure_logging
from ticketvault.services.maintenance import cleanup_exports


async def _cleanup(older_than_hours: float | None) -> None:
    configure_logging()
    removed = await cleanup_exports(older_than_hours=older_than_hours)
    print(f"removed_exports={removed}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete expired snapshot exports")
    parser.add_argument("--older-than-hours", type=float, default=None)
    args = parser.parse_args()
    asyncio.run(_cleanup(args.older_than_hours))


if __name__ == "__main__":
    main()
