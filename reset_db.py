"""Reload the canonical fixture collections into the configured database.

    python reset_db.py [--data-dir sample-data]

Each collection is emptied and refilled from ``<data-dir>/test.<collection>.json``
(MongoDB Extended JSON, so ObjectIds and dates survive the round trip).
"""

from pathlib import Path
from typing import Dict

import click
from bson import json_util
from pymongo.errors import PyMongoError

import database
from logging_config import configure_logging, get_logger

logger = get_logger(__name__)

FIXTURE_COLLECTIONS = (database.CATEGORIES, database.ORDERS, database.PRODUCTS, database.USERS)
DEFAULT_DATA_DIR = Path(__file__).parent / "sample-data"


def load_collection(db, name: str, path: Path) -> int:
    """Replace the contents of one collection with a fixture file; returns documents inserted."""
    collection = db[name]
    collection.delete_many({})
    data = json_util.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        if not data:
            return 0
        return len(collection.insert_many(data).inserted_ids)
    collection.insert_one(data)
    return 1


def reset_database(db, data_dir: Path) -> Dict[str, int]:
    """Load every fixture collection; one bad file does not stop the others."""
    counts = {}
    for name in FIXTURE_COLLECTIONS:
        path = data_dir / f"test.{name}.json"
        try:
            counts[name] = load_collection(db, name, path)
        except (OSError, ValueError, PyMongoError):
            logger.exception("Error processing collection", extra={"collection": name, "file": str(path)})
            continue
        logger.info("Collection reloaded", extra={"collection": name, "documents": counts[name]})
    return counts


@click.command()
@click.option(
    "--data-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_DATA_DIR,
    show_default=True,
    help="Directory holding test.<collection>.json fixtures.",
)
def main(data_dir: Path) -> None:
    """Clear and reload the fixture collections."""
    configure_logging()
    if database.db is None:
        raise click.ClickException("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
    counts = reset_database(database.db, data_dir)
    for name in FIXTURE_COLLECTIONS:
        loaded = counts.get(name)
        click.echo(f"{name}: {'failed' if loaded is None else loaded}")


if __name__ == "__main__":
    main()
