from __future__ import annotations

import asyncio
import sys

from querybridge.core.logging import configure_logging
from querybridge.persistence.db import SessionLocal
from querybridge.services.crypto.credentials import get_credential_cipher
from querybridge.services.maintenance import run_maintenance_task


async def _rotate() -> int:
    # Run after CREDENTIAL_KEY_ID moves to a new key; retired keys must stay in CREDENTIAL_PREVIOUS_KEYS.
    cipher = get_credential_cipher()
    async with SessionLocal() as session:
        count = await run_maintenance_task(session, "reencrypt_credentials")
    print("Connection secrets re-encrypted:")
    print(f"  key_id: {cipher.current_key_id}")
    print(f"  rows: {count}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_rotate())
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_credentials_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
