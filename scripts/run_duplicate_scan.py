#!/usr/bin/env python3
"""
Run one duplicate scan for a tenant from the command line.

Usage: python scripts/run_duplicate_scan.py <tenant_id> [min_confidence] [max_products]
"""

import asyncio
import json
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.logging_config import setup_logging
from src.worker.scan_lock import ScanLockHeld
from src.worker.tasks import DedupeTaskRunner


async def main(tenant_id: int, min_confidence=None, max_products=None) -> int:
    runner = DedupeTaskRunner()
    try:
        summary = await runner.scan_entrypoint(
            tenant_id,
            trigger="manual",
            min_confidence=min_confidence,
            max_products=max_products,
        )
    except ScanLockHeld as e:
        print(f"Scan already running for tenant {tenant_id}: {e.lock_info}")
        return 1
    finally:
        await runner.close()

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__.strip())
        sys.exit(2)

    setup_logging()
    tenant = int(sys.argv[1])
    confidence = float(sys.argv[2]) if len(sys.argv) > 2 else None
    limit = int(sys.argv[3]) if len(sys.argv) > 3 else None
    sys.exit(asyncio.run(main(tenant, confidence, limit)))
