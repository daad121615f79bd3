from __future__ import annotations

import argparse
import asyncio

from querybridge.core.logging import configure_logging
from querybridge.persistence.db import SessionLocal
from querybridge.services.maintenance import prune_audit_entries


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete audit entries older than the retention window")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="override AUDIT_RETENTION_DAYS for this run",
    )
    return parser


async def prune(retention_days: int | None) -> None:
    async with SessionLocal() as session:
        deleted = await prune_audit_entries(session, retention_days=retention_days)
        await session.commit()
        print(f"pruned_audit_entries={deleted}")


if __name__ == "__main__":
    configure_logging()
    args = _build_parser().parse_args()
    asyncio.run(prune(args.retention_days))
