import argparse
import asyncio
import logging
import sys

import config
from cleanup import sweeper
from db import get_client, get_db
from schema import build_indexes, initialize_schema, verify_schema

logger = logging.getLogger("file_uploader")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Bootstrap the file uploader MongoDB schema.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--check", action="store_true", help="only report missing or drifted indexes")
    mode.add_argument("--sweep", action="store_true", help="initialize, then run the cleanup sweeper")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    client = get_client(config.MONGO_URI)
    try:
        db = get_db(client, config.DB_NAME)
        if args.check:
            drift = await verify_schema(db, build_indexes(config.UPLOAD_TTL_SECONDS))
            if drift:
                logger.error("Schema drift on %s: %s", config.DB_NAME, ", ".join(drift))
                return 1
            logger.info("Schema on %s is up to date", config.DB_NAME)
            return 0

        await initialize_schema(
            client,
            config.DB_NAME,
            config.APP_DB_USER,
            config.APP_DB_PASSWORD,
            ttl_seconds=config.UPLOAD_TTL_SECONDS,
        )
        if args.sweep:
            logger.info("Sweeper started (interval=%ss)", config.SWEEPER_INTERVAL)
            await sweeper(db, config.SWEEPER_INTERVAL, config.STALLED_THRESHOLD_SECONDS)
        return 0
    finally:
        client.close()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
