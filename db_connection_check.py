import argparse

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

import app.models  # noqa: F401  registers the ledger tables on Base.metadata
from app.config import settings
from app.db import Base


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the database and the ledger tables.")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables")
    args = parser.parse_args()

    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            Base.metadata.create_all(bind=engine)
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return

    missing = sorted(set(Base.metadata.tables) - existing)
    if missing:
        print(f"missing tables: {', '.join(missing)} (rerun with --create-tables)")
    else:
        print("ledger tables OK")


if __name__ == "__main__":
    main()
