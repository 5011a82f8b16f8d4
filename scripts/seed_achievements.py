#!/usr/bin/env python3
"""
Seed the achievement catalog

This script is IDEMPOTENT - safe to run multiple times. Existing rows keep
their id (unlocks reference it); names, rewards and criteria are refreshed.

Usage:
    python scripts/seed_achievements.py [--dry-run]
"""
import argparse
import logging

from progression.config import configure_logging
from progression.engine import ProgressionEngine
from progression.logic.criteria import DEFAULT_ACHIEVEMENTS

logger = logging.getLogger(__name__)


def main(dry_run: bool = False) -> int:
    if dry_run:
        for data in DEFAULT_ACHIEVEMENTS:
            logger.info(f"[DRY RUN] Would seed {data['code']} (+{data['xp_reward']} XP)")
        return len(DEFAULT_ACHIEVEMENTS)

    engine = ProgressionEngine()
    seeded = engine.achievements.seed_catalog()
    for definition in seeded:
        logger.info(f"✓ {definition.code} -> {definition.id}")
    return len(seeded)


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Seed achievement catalog')
    parser.add_argument('--dry-run', action='store_true', help='List definitions without writing')
    args = parser.parse_args()

    configure_logging()
    count = main(dry_run=args.dry_run)
    logger.info(f"Seeded {count} achievement(s)")
