#!/usr/bin/env python3
# dbtool.py
import argparse
import logging
from pathlib import Path

import crud
from client import DataClient
from db import Base
from models import RegisterIn
from xlsx_utils import read_rows_file

# children first so RESTRICT foreign keys never block the wipe
WIPE_ORDER = (
    "audit_logs",
    "maintenance_records",
    "line_items",
    "assets",
    "purchase_orders",
    "vendors",
    "sub_categories",
    "categories",
    "users",
)


def wipe_all(client: DataClient) -> dict[str, int]:
    def work(tx) -> dict[str, int]:
        return {name: tx.repository(name).delete_many() for name in WIPE_ORDER}

    return client.transaction(work, timeout=None)


def log_report(logger: logging.Logger, label: str, report) -> None:
    logger.info("%s total=%s success=%s errors=%s", label, report.total, report.success, len(report.errors))
    if report.errors:
        logger.warning("Errors (first 10):")
        for e in report.errors[:10]:
            logger.warning("  - %s", e)


def main(argv=None):
    ap = argparse.ArgumentParser(description="Maintenance tasks for the asset registry database")
    ap.add_argument("--url", help="SQLAlchemy database URL (default: APP_DATABASE_URL / APP_DB_PATH)")
    ap.add_argument("--wipe", action="store_true", help="Delete all rows from every table")
    ap.add_argument("--seed", action="store_true", help="Insert the default categories when none exist")
    ap.add_argument("--import-assets", metavar="FILE", help=".csv or .xlsx file of assets (needs a 'category' column)")
    ap.add_argument("--import-pos", metavar="FILE", help=".csv or .xlsx file of purchase order lines grouped by 'po number'")
    ap.add_argument("--add-user", metavar="USERNAME", help="Create a user account (any role)")
    ap.add_argument("--password", help="Password for --add-user")
    ap.add_argument("--name", help="Display name for --add-user (default: the username)")
    ap.add_argument("--role", choices=("ADMIN", "USER"), default="USER", help="Role for --add-user")
    ap.add_argument("--backup", metavar="PATH", help="Copy the SQLite database to PATH")
    ap.add_argument("--log-queries", action="store_true", help="Print every SQL statement")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger = logging.getLogger("dbtool")

    log = ["warn", "error"] + (["query"] if args.log_queries else [])
    client = DataClient(args.url, log=log)
    try:
        Base.metadata.create_all(bind=client.engine)

        if args.wipe:
            counts = wipe_all(client)
            logger.info("Wipe OK %s", " ".join(f"{k}={v}" for k, v in counts.items()))

        if args.seed:
            logger.info("Seed categories_created=%s", crud.seed_database(client))

        if args.import_assets:
            src = Path(args.import_assets)
            if not src.exists():
                raise FileNotFoundError(src)
            log_report(logger, "Assets", crud.import_assets(client, read_rows_file(src)))

        if args.import_pos:
            src = Path(args.import_pos)
            if not src.exists():
                raise FileNotFoundError(src)
            log_report(logger, "Purchase orders", crud.import_purchase_orders(client, read_rows_file(src)))

        if args.add_user:
            if not args.password:
                ap.error("--add-user needs --password")
            body = RegisterIn(
                username=args.add_user, password=args.password, name=args.name or args.add_user, role=args.role
            )
            user = crud.register_user(client, body, trusted=True)
            logger.info("User %s created with role %s", user.username, user.role)

        if args.backup:
            logger.info("Backup written to %s", crud.backup_database(client, args.backup))

    finally:
        client.dispose()


if __name__ == "__main__":
    main()
