#!/usr/bin/env python3
"""Rebuild every story rating aggregate from the raw ratings.

Repair and backfill tool: rescans each rated story, rewrites its aggregate row,
drops aggregate rows with no ratings left behind them, and bumps the cache
versions so stale analytics are not served afterwards.
"""
import argparse
import logging
import sys

from daily_stories.cache import GLOBAL_TAG, LEADERBOARDS_TAG, get_cache, story_tag
from daily_stories.core.logging import setup_logging
from daily_stories.database import SessionLocal, init_db
from daily_stories.services.aggregation import rebuild_all_aggregates
from daily_stories.services.base import unit_of_work

logger = logging.getLogger("daily_stories.scripts.rebuild_aggregates")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild story rating aggregates")
    parser.add_argument("--skip-cache", action="store_true",
                        help="Do not invalidate cached analytics after the rebuild")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level)
    init_db()

    db = SessionLocal()
    try:
        with unit_of_work(db, "rebuild_all_aggregates"):
            result = rebuild_all_aggregates(db)
    finally:
        db.close()

    logger.info(f"Rebuilt {result['rebuilt']} aggregates, removed {result['removed']} orphaned rows")

    if not args.skip_cache:
        tags = [story_tag(story_id) for story_id in result["story_ids"]]
        get_cache().invalidate(*tags, LEADERBOARDS_TAG, GLOBAL_TAG)
        logger.info(f"Invalidated {len(tags)} story caches")
    return 0


if __name__ == "__main__":
    sys.exit(main())
