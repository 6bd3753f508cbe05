from __future__ import annotations

import argparse
import asyncio
import logging

from fleetstore.core.config import get_settings
from fleetstore.store import Store


async def sync(tenant_id: str | None) -> None:
    # Recompute per-status device counters from the devices table to repair drift.
    store = Store.from_settings()
    try:
        repaired = await store.namespace_sync_device_counts(tenant_id)
    finally:
        await store.aclose()
    for tenant, counts in sorted(repaired.items()):
        fields = " ".join(f"{status}={total}" for status, total in sorted(counts.items()))
        print(f"tenant_id={tenant} {fields}")
    print(f"synced_namespaces={len(repaired)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Repair namespace device counters")
    parser.add_argument("--tenant-id", default=None, help="Limit the repair to one namespace")
    args = parser.parse_args()
    logging.basicConfig(level=get_settings().log_level)
    asyncio.run(sync(args.tenant_id))


if __name__ == "__main__":
    main()
