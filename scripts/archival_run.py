from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace

from ticketvault.core.logging import configure_logging
from ticketvault.services.archival.runner import ArchivalConfig
from ticketvault.services.maintenance import run_archival_pass


async def _run(args: argparse.Namespace) -> None:
    configure_logging()
    config = ArchivalConfig.from_settings()
    if args.age_days is not None:
        config = replace(config, age_threshold_days=args.age_days)
    if args.max_records is not None:
        config = replace(config, max_records_per_run=args.max_records)
    if args.ignore_quota:
        config = replace(config, only_when_approaching_limit=False)
    summary = await run_archival_pass(config=config)
    print(f"run_id={summary['runId']}")
    print(f"tenants_processed={summary['tenantsProcessed']}")
    print(f"total_archived={summary['totalArchived']}")
    print(f"tenants_with_errors={','.join(summary['tenantsWithErrors'])}")


def main() -> None:
    # One archival pass for cron-driven deployments without the API scheduler.
    parser = argparse.ArgumentParser(description="Run one archival pass across entitled tenants")
    parser.add_argument("--age-days", type=int, default=None)
    parser.add_argument("--max-records", type=int, default=None)
    parser.add_argument("--ignore-quota", action="store_true")
    asyncio.run(_run(parser.parse_args()))


if __name__ == "__main__":
    main()
