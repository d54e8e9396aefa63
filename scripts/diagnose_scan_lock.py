#!/usr/bin/env python3
"""
Diagnose a tenant's scan lock state and provide recovery recommendations.

Usage: python scripts/diagnose_scan_lock.py <tenant_id>
"""

import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from src.db.models import SCAN_RUNNING, ScanRun
from src.db.session import AsyncSessionLocal
from src.worker.scan_lock import ScanLockManager, heartbeat_key, lock_key


async def diagnose(tenant_id: int) -> None:
    lock_manager = ScanLockManager()

    try:
        lock_info = await lock_manager.get_lock_info(tenant_id)
        heartbeat_age = await lock_manager.get_heartbeat_age(tenant_id)
    finally:
        await lock_manager.close()

    print(f"Scan Lock Diagnosis (tenant {tenant_id})")
    print("===================")
    print(f"lock key: {lock_key(tenant_id)}")
    print(f"heartbeat key: {heartbeat_key(tenant_id)}")
    print("")

    if not lock_info:
        print("Lock: none")
    else:
        print("Lock: present")
        print(f"  run_id: {lock_info.get('run_id')}")
        print(f"  token: {lock_info.get('token')}")
        print(f"  started_at: {lock_info.get('started_at')}")
        print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")

    print(f"Heartbeat age (seconds): {heartbeat_age}")
    print("")

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(ScanRun)
            .where(ScanRun.tenant_id == tenant_id, ScanRun.status == SCAN_RUNNING)
            .order_by(ScanRun.started_at.desc())
        )
        running = result.scalars().all()

    if not running:
        print("Running ScanRuns: none")
    else:
        print(f"Running ScanRuns: {len(running)}")
        for run in running:
            age_s = (datetime.utcnow() - run.started_at).total_seconds()
            print(
                f"  - id={run.id} run_id={run.run_id} started_at={run.started_at} "
                f"age_s={age_s:.0f} trigger={run.trigger}"
            )

    print("")
    print("Recommendations")
    print("----------------")
    if lock_info and heartbeat_age is None:
        print("- Lock exists but heartbeat missing. Consider force-unlock.")
    if heartbeat_age and heartbeat_age > 300:
        print("- Heartbeat is stale (> 300s). Lock likely stuck; force-unlock and let the watchdog fail the run.")
    if lock_info and heartbeat_age is not None and heartbeat_age <= 300:
        print("- Heartbeat appears healthy. A scan is in progress.")
    if not lock_info and running:
        print("- Running ScanRun without lock present. The watchdog will mark it failed.")
    if not lock_info and not running:
        print("- No issues detected.")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python scripts/diagnose_scan_lock.py <tenant_id>")
        sys.exit(2)
    asyncio.run(diagnose(int(sys.argv[1])))
