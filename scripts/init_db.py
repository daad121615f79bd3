from __future__ import annotations

import asyncio

from querybridge.core.logging import configure_logging
from querybridge.persistence.db import init_models


async def _init() -> None:
    await init_models()
    print("querybridge_tables_ready=1")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_init())
