#!/usr/bin/env python3
"""
Database initialization script
Creates the predictions, odds_snapshots, match_cache and data_fetches tables
"""

import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv
load_dotenv()

import logging
from sqlalchemy import text, inspect

from backend.models import Base, engine, SessionLocal, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False) -> bool:
    """
    Create all tables.

    Args:
        drop_existing: If True, drops all tables first (data loss!)
    """
    logger.info("Initializing Match Edge database...")

    if drop_existing:
        response = input("Drop all tables? This deletes every prediction. Type 'yes' to confirm: ")
        if response.lower() != 'yes':
            logger.info("Aborted.")
            return False
        Base.metadata.drop_all(bind=engine)
        logger.warning("Existing tables dropped")

    init_db()
    tables = inspect(engine).get_table_names()
    logger.info("Tables: %s", ", ".join(tables))
    return True


def check_connection() -> bool:
    """Test database connection"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize the Match Edge database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first")
    parser.add_argument("--check", action="store_true", help="Only check connection")
    args = parser.parse_args()

    if args.check:
        sys.exit(0 if check_connection() else 1)
    if not check_connection():
        logger.error("Cannot initialize database - connection failed")
        sys.exit(1)
    init_database(drop_existing=args.drop)
