#!/usr/bin/env python3
"""
Batch re-rank of the current leaderboard partitions

Meant for a cron job: per-event re-ranking skips partitions whose lock is
busy, this pass catches them up.

Usage:
    python scripts/recalculate_leaderboards.py [--language es --language fr]
"""
import argparse
import logging
import sys

from progression.config import configure_logging
from progression.engine import ProgressionEngine
from progression.exceptions import LeaderboardBusy

logger = logging.getLogger(__name__)


def main(language_ids) -> int:
    engine = ProgressionEngine()
    try:
        results = engine.leaderboard.recalculate_current(language_ids)
    except LeaderboardBusy as e:
        logger.error(f"Aborted: {e.detail}")
        return 1

    for pk, changed in sorted(results.items()):
        logger.info(f"{pk}: {changed} rank(s) changed")
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Re-rank current leaderboard partitions')
    parser.add_argument(
        '--language',
        action='append',
        default=[],
        dest='languages',
        help='Language partition to re-rank as well as the global one (repeatable)'
    )
    args = parser.parse_args()

    configure_logging()
    sys.exit(main(args.languages))
