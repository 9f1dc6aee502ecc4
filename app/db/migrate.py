"""Database migration helpers."""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.db.session import create_engine_from_env
from app.db.tables import metadata

logger = logging.getLogger(__name__)


def run_migrations(engine: Engine) -> None:
    """Create any missing catalog tables and indexes."""
    metadata.create_all(engine, checkfirst=True)
    logger.info("Schema ready (%s tables)", len(metadata.tables))


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    try:
        engine = create_engine_from_env()
    except KeyError as exc:  # pragma: no cover - env failure is user error
        print(f"Missing environment variable: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
