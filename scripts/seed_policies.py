#!/usr/bin/env python
"""Create tables and seed the default Côte d'Ivoire policy tables.

Usage:
    python scripts/seed_policies.py
    python scripts/seed_policies.py --database-url postgresql+asyncpg://...
    python scripts/seed_policies.py --effective-from 2025-01-01
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import date

from paie_engine.database import create_session_factory, get_engine
from paie_engine.models import Base
from paie_engine.policies.defaults import DEFAULT_EFFECTIVE_FROM, seed_country_policies


async def main(database_url: str | None, effective_from: date, create_tables: bool) -> None:
    """Run seed script."""
    engine = get_engine(database_url)
    try:
        if create_tables:
            print("Creating tables...")
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        print(f"Seeding CI policy tables effective {effective_from.isoformat()}...")
        factory = create_session_factory(engine)
        async with factory() as session:
            inserted = await seed_country_policies(session, effective_from)
            await session.commit()
    finally:
        await engine.dispose()

    if inserted:
        print("\nDone! Policy tables seeded successfully.")
    else:
        print("\nRate definitions already exist for CI, nothing to do.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed default payroll policy tables")
    parser.add_argument("--database-url", help="Async SQLAlchemy URL (defaults to DATABASE_URL)")
    parser.add_argument(
        "--effective-from",
        type=date.fromisoformat,
        default=DEFAULT_EFFECTIVE_FROM,
        help="First day the seeded tables apply (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--no-create-tables", action="store_true", help="Skip Base.metadata.create_all"
    )
    args = parser.parse_args()
    asyncio.run(main(args.database_url, args.effective_from, not args.no_create_tables))
