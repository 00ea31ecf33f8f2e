#!/usr/bin/env python3
"""Create the Exercise Log tables (app_user, exercise) and their indexes.

Uses the same database selection as the API (PGURL, else the EXLOG_DB SQLite file).
Pass --drop to delete existing tables first. That wipes all users and entries.

Usage: python3 create_tables.py [--drop]
"""
import asyncio
import sys

from app import Base, engine, log


async def create_tables(drop: bool = False) -> None:
    async with engine.begin() as conn:
        if drop:
            log.info("Dropping tables...")
            await conn.run_sync(Base.metadata.drop_all)
        log.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
    log.info(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


async def _run(drop: bool) -> None:
    try:
        await create_tables(drop=drop)
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else argv
    unknown = [a for a in args if a != "--drop"]
    if unknown:
        print(__doc__.strip().splitlines()[-1])
        return 2
    asyncio.run(_run(drop="--drop" in args))
    return 0


if __name__ == "__main__":
    sys.exit(main())
