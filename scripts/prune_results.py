from __future__ import annotations

import asyncio

from querybridge.core.logging import configure_logging
from querybridge.persistence.db import SessionLocal
from querybridge.services.maintenance import prune_expired_results


async def prune() -> None:
    async with SessionLocal() as session:
        deleted = await prune_expired_results(session)
        await session.commit()
        print(f"pruned_execution_results={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(prune())
