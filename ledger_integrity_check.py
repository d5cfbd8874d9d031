import argparse
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import configure_logging, settings
from app.db import SessionLocal
from app.ledger import recalculate_all

logger = logging.getLogger("ledger_integrity_check")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compare every cached tip balance against its entries and repair drift."
    )
    parser.add_argument("--location-id", type=int, default=None)
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("DATABASE_URL=%s", settings.database_url)
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks = recalculate_all(db, location_id=args.location_id)
    except SQLAlchemyError:
        logger.exception("ledger integrity check FAILED")
        return 1
    finally:
        db.close()

    repaired = [check for check in checks if check.fixed]
    for check in repaired:
        logger.warning(
            "employee %s: cached %s, entries sum to %s",
            check.employee_id,
            check.cached_cents,
            check.calculated_cents,
        )
    logger.info("checked %s ledger(s), repaired %s", len(checks), len(repaired))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
