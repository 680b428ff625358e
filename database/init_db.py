#!/usr/bin/env python3
"""
Initialize LiveRelay Database
Creates the SQLite file from schema.sql in WAL mode
"""

import argparse
import logging
import sqlite3
import sys
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).parent / "schema.sql"


def init_database(db_path: str = "liverelay.db", force: bool = False) -> bool:
    """
    Initialize database with schema

    Args:
        db_path: Path to SQLite database file
        force: If True, drop existing database

    Returns:
        True on success
    """
    db_file = Path(db_path)

    if db_file.exists():
        if not force:
            LOGGER.error(f"❌ Database already exists: {db_path}")
            LOGGER.error("   Use --force to recreate it (WARNING: deletes all data!)")
            return False
        LOGGER.warning(f"⚠️ Dropping existing database: {db_path}")
        db_file.unlink()

    if not SCHEMA_FILE.exists():
        LOGGER.error(f"❌ Schema file not found: {SCHEMA_FILE}")
        return False

    try:
        LOGGER.info(f"📦 Creating database: {db_path}")
        conn = sqlite3.connect(db_path)
        try:
            conn.executescript(SCHEMA_FILE.read_text(encoding="utf-8"))
            conn.commit()

            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()[0]
            LOGGER.info(f"✅ WAL mode enabled: {mode}")

            tables = [
                row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
            ]
            LOGGER.info(f"✅ Tables created: {', '.join(tables)}")
        finally:
            conn.close()
    except sqlite3.Error as e:
        LOGGER.error(f"❌ Failed to initialize database: {e}", exc_info=True)
        return False

    LOGGER.info(f"✅ Database initialized successfully: {db_path}")
    LOGGER.info("📝 Next step: python main.py --config config/config.yaml")
    return True


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s"
    )
    parser = argparse.ArgumentParser(description="Initialize LiveRelay Database")
    parser.add_argument(
        "--db",
        type=str,
        default="liverelay.db",
        help="Path to database file (default: liverelay.db)"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Force recreation (deletes existing database!)"
    )
    args = parser.parse_args()
    sys.exit(0 if init_database(args.db, args.force) else 1)


if __name__ == "__main__":
    main()
