"""Seed the database with the brands listed in brands.yml."""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from app.catalog.brands import load_brands, upsert_brands
from app.db.migrate import run_migrations
from app.db.session import create_engine_from_env


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    engine = create_engine_from_env()
    run_migrations(engine)
    result = upsert_brands(engine, load_brands(limit=args.limit))
    print(f"Seed complete: {result['created']} created, {result['updated']} updated")


if __name__ == "__main__":
    main()
