"""
Trigger rent collection for a month by hand.
Run: python scripts/trigger_rent_collection.py 2026-01 [provider] [--live]

Runs in test mode (no money moves) unless --live is given.
"""
import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rentflow.database import init_db
from rentflow.logging_config import configure_logging
from rentflow.workers.rent_collection import batch_service


async def trigger(month: str, provider, live: bool):
    configure_logging()
    await init_db()
    async with batch_service() as service:
        summary = await service.run_monthly_rent_collection(
            month=month,
            provider=provider,
            test_mode=not live,
        )
        
        print(f"Batch {summary['batch_id']}: {summary['status']}")
        print(
            f"  total={summary['total_payments']} "
            f"successful={summary['successful_payments']} "
            f"failed={summary['failed_payments']} "
            f"pending={summary['pending_payments']}"
        )
        if summary.get("error_message"):
            print(f"  error: {summary['error_message']}")
        for item in summary["results"]:
            print(f"  {item['reference']}: {item['status']} {item['failure_reason'] or ''}")


if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if not args:
        print(__doc__)
        sys.exit(1)
    asyncio.run(trigger(args[0], args[1] if len(args) > 1 else None, "--live" in sys.argv))
