"""
Quiz access database bootstrap.

Creates the indexes the access engine relies on (collections are created
with their first index) and stamps the schema version in quiz_access_meta.
Safe to re-run; nothing is ever dropped.

    python -m quiz_access.db_init [--dry-run]

Production runs need APP_ENV=production QUIZ_ACCESS_INIT_CONFIRM=YES.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.1.0"

# (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("users", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    ("users", [("username", 1)], {"unique": True, "name": "idx_username_unique"}),
    ("users", [("email", 1)], {"unique": True, "name": "idx_email_unique"}),

    ("payments", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),
    ("payments", [("reference", 1)], {"unique": True, "sparse": True, "name": "idx_reference_unique"}),
    ("payments", [("user_id", 1), ("created_at", -1)], {"name": "idx_user_created"}),

    ("packages", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),

    ("quizzes", [("id", 1)], {"unique": True, "name": "idx_id_unique"}),

    # moderation bypass count
    ("questions", [("moderated_by", 1), ("id", 1)], {"name": "idx_moderated_by_id"}),

    ("credit_ledger", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("credit_ledger", [("request_id", 1)], {"name": "idx_request_id"}),
    # one purchase credit per payment reference
    ("credit_ledger", [("request_id", 1), ("source", 1)], {
        "unique": True,
        "partialFilterExpression": {"source": "purchase"},
        "name": "idx_purchase_request_unique"
    }),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("QUIZ_ACCESS_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: QUIZ_ACCESS_INIT_CONFIRM=YES\n"
                f"Current value: QUIZ_ACCESS_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    if index_name in await collection.index_information():
        return f"  [SKIP] {collection_name}.{index_name}"

    if dry_run:
        return f"  [DRY-RUN] Would create {collection_name}.{index_name}"

    try:
        await collection.create_index(index_spec, **options)
    except OperationFailure as e:
        if "already exists" not in str(e).lower():
            raise
        return f"  [SKIP] {collection_name}.{index_name} (race)"
    return f"  [CREATE] {collection_name}.{index_name}"


async def apply_schema(db, dry_run: bool = False) -> List[str]:
    """Create every missing index, then stamp the version. Returns the log lines."""
    results = []
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    if dry_run:
        results.append(f"  [DRY-RUN] Would stamp version {INIT_VERSION}")
        return results

    await db.quiz_access_meta.update_one(
        {"_id": "quiz_access_init"},
        {"$set": {"version": INIT_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    results.append(f"  [UPDATE] Version stamp {INIT_VERSION}")
    return results


async def run_init(dry_run: bool = False) -> int:
    """Run the database initialization. Returns a process exit code."""
    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        return 1

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    logger.info(f"Database: {db_name} (dry run: {dry_run})")

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
        for line in await apply_schema(client[db_name], dry_run):
            logger.info(line)
    except PyMongoError as e:
        logger.error(f"Quiz access DB init failed: {e}")
        return 1
    finally:
        client.close()

    logger.info("Quiz access DB init completed")
    return 0


def main():
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Quiz Access Database Initialization")
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
