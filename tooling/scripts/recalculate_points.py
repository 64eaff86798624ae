"""Replay point ledgers and repair cached customer balances.

Example:
    python tooling/scripts/recalculate_points.py --all
    python tooling/scripts/recalculate_points.py --customer-id 5f0c...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile customer point balances against the ledger")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--customer-id", type=UUID, help="Reconcile a single customer.")
    target.add_argument("--all", action="store_true", help="Reconcile every customer.")
    return parser.parse_args()


async def _run(customer_id: UUID | None) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from aircrm_api.db.session import async_session  # type: ignore import-position
    from aircrm_api.jobs.loyalty.reconciliation import run_points_reconciliation  # type: ignore import-position
    from aircrm_api.services.loyalty import PointLedgerService  # type: ignore import-position

    if customer_id is None:
        return await run_points_reconciliation(session_factory=async_session)

    async with async_session() as session:
        result = await PointLedgerService(session).reconcile_customer(customer_id)
        await session.commit()
    return {
        "customer_id": str(result.customer_id),
        "old_points": result.old_points,
        "new_points": result.new_points,
        "status": result.status,
        "corrections": result.corrections,
    }


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.customer_id))
    logger.success("Point reconciliation completed", **summary)
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
