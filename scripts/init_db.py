#!/usr/bin/env python3
"""
Create the edge engine tables and optionally seed the default scoring config

Usage:
    python scripts/init_db.py --check
    python scripts/init_db.py --seed
    python scripts/init_db.py --drop --seed
"""

import sys
import os

# Make edge_engine importable when run from scripts/
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv
load_dotenv()

from edge_engine.models import Base, engine, SessionLocal
from edge_engine.services.repository import seed_default_config
import logging
from sqlalchemy import text, inspect

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def init_database(drop_existing: bool = False):
    """
    Create every table registered on Base.metadata

    Args:
        drop_existing: drop all tables first (data loss!)

    Returns:
        False when the drop was not confirmed
    """
    logger.info("Initializing edge engine database...")

    if drop_existing:
        logger.warning("Dropping all existing tables!")
        answer = input("Drop every edge engine table? Type 'yes' to confirm: ")
        if answer.strip().lower() != "yes":
            logger.info("Aborted.")
            return False

        Base.metadata.drop_all(bind=engine)
        logger.info("Existing tables dropped")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")

    tables = inspect(engine).get_table_names()
    logger.info("Tables: %s", ", ".join(tables))
    return True


def seed_config():
    """Write default engine weights and tier thresholds into empty tables"""
    db = SessionLocal()
    try:
        changes = seed_default_config(db)
        if changes:
            logger.info("Seeded default scoring config (%d rows)", changes)
        else:
            logger.info("Scoring config already present, nothing seeded")
        return True
    except Exception as e:
        logger.error("Error seeding config: %s", e, exc_info=True)
        db.rollback()
        return False
    finally:
        db.close()


def check_connection():
    """Run SELECT 1 against DATABASE_URL"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        logger.info("Database connection OK")
        return True
    except Exception as e:
        logger.error("Database connection failed: %s", e)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize edge engine database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (data loss!)")
    parser.add_argument("--seed", action="store_true", help="Seed default scoring config")
    parser.add_argument("--check", action="store_true", help="Check the connection and exit")

    args = parser.parse_args()

    if not check_connection():
        sys.exit(1)
    if args.check:
        sys.exit(0)

    if not init_database(drop_existing=args.drop):
        sys.exit(1)
    if args.seed and not seed_config():
        sys.exit(1)
    logger.info("Edge engine database ready")
