#!/usr/bin/env python3
"""
Open wallet accounts for workers that do not have one yet.

Scans order contributions and settlements for worker ids, and calls
WalletLedgerService.ensure_account() for each id without a wallet.  Safe to
rerun: ensure_account() returns the existing account.

Usage:
    python3 scripts/backfill_wallet_accounts.py
    python3 scripts/backfill_wallet_accounts.py --database-url sqlite+pysqlite:///./earnings.db --dry-run
"""

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Create missing wallet accounts for known workers")
    p.add_argument("--config", type=Path, default=None, help="Configuration YAML (default: packaged defaults)")
    p.add_argument("--database-url", default=None, help="Overrides database.url from the configuration")
    p.add_argument("--dry-run", action="store_true", help="List the workers without creating accounts")
    return p.parse_args()


def _missing_user_ids(session) -> list[int]:
    from sqlalchemy import select, union

    from earnings_kernel.models import OrderContribution, OrderSettlement, WalletAccount

    known = union(
        select(OrderContribution.user_id),
        select(OrderSettlement.user_id),
    ).subquery()
    existing = select(WalletAccount.user_id)
    return sorted(
        session.execute(
            select(known.c.user_id).where(known.c.user_id.not_in(existing))
        ).scalars()
    )


def _init_database(database_url: str, config) -> None:
    from earnings_kernel.db.engine import init_engine_from_url
    from earnings_kernel.db.immutability import register_immutability_listeners

    init_engine_from_url(database_url, echo=config.database.echo)
    register_immutability_listeners()


def main() -> int:
    args = _parse_args()

    from earnings_config import get_active_config
    from earnings_kernel.db.engine import session_scope
    from earnings_kernel.services.wallet_ledger import WalletLedgerService

    config = get_active_config(args.config)
    database_url = args.database_url or config.database.url
    try:
        _init_database(database_url, config)
    except Exception as exc:
        print(f"ERROR: could not connect to {database_url}: {exc}", file=sys.stderr)
        return 1

    with session_scope() as session:
        user_ids = _missing_user_ids(session)

    print(f"{len(user_ids)} worker(s) without a wallet")
    if args.dry_run:
        for user_id in user_ids:
            print(f"  {user_id}")
        return 0

    created = 0
    for user_id in user_ids:
        with session_scope() as session:
            WalletLedgerService(session).ensure_account(user_id)
        created += 1

    print(f"created {created} wallet account(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
