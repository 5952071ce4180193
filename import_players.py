#!/usr/bin/env python3
"""
Seed the ladder with unclaimed ("ghost") profiles from a CSV file.

Expected columns (header row required, case-insensitive):
    name     - display name, required
    rank     - starting ladder rank, optional
    fargo    - Fargo rating, optional
    points   - starting points, optional

Rows with a rank are placed first, at that rank; the rest are appended to the
bottom of the ladder in file order. Names already on the ladder are skipped.
When a player later runs /join with the same name, they take over the ghost's
spot.

Usage:
    python import_players.py players.csv
"""

import argparse
import asyncio
import csv
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ladder.database.database import Database
from ladder.operations.profile_operations import ProfileOperations


@dataclass
class PlayerRow:
    name: str
    rank: Optional[int] = None
    fargo: int = 0
    points: int = 0


def setup_logging() -> logging.Logger:
    """Setup logging for the import script"""
    os.makedirs('logs', exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(f'logs/player_import_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'),
            logging.StreamHandler()
        ]
    )
    return logging.getLogger(__name__)


def _optional_int(value: Optional[str], field: str, line: int) -> Optional[int]:
    value = (value or '').strip()
    if not value:
        return None
    try:
        return int(float(value))
    except ValueError:
        raise ValueError(f"Line {line}: {field} '{value}' is not a number")


def parse_player_rows(lines) -> List[PlayerRow]:
    """
    Parse CSV lines into player rows.

    Raises:
        ValueError: Missing name column, bad numbers or duplicate ranks
    """
    reader = csv.DictReader(lines)
    if not reader.fieldnames or 'name' not in [f.strip().lower() for f in reader.fieldnames]:
        raise ValueError("CSV must have a 'name' column")

    rows = []
    seen_ranks = set()
    for line, raw in enumerate(reader, start=2):
        record = {(k or '').strip().lower(): v for k, v in raw.items()}
        name = (record.get('name') or '').strip()
        if not name:
            continue

        rank = _optional_int(record.get('rank'), 'rank', line)
        if rank is not None:
            if rank < 1:
                raise ValueError(f"Line {line}: rank must be 1 or higher")
            if rank in seen_ranks:
                raise ValueError(f"Line {line}: rank {rank} is used twice")
            seen_ranks.add(rank)

        rows.append(PlayerRow(
            name=name,
            rank=rank,
            fargo=_optional_int(record.get('fargo'), 'fargo', line) or 0,
            points=_optional_int(record.get('points'), 'points', line) or 0
        ))
    return rows


async def import_players(rows: List[PlayerRow], db: Database) -> Dict[str, int]:
    """Create ghost profiles for every row whose name is not on the ladder yet"""
    logger = logging.getLogger(__name__)
    profile_ops = ProfileOperations(db)
    results = {'created': 0, 'skipped': 0}

    async with db.transaction() as session:
        ladder = await db.get_ladder(session=session)
        existing_names = {p.display_name.strip().lower() for p in ladder}
        taken_ranks = {p.ladder_rank for p in ladder}

        ranked = sorted((r for r in rows if r.rank is not None), key=lambda r: r.rank)
        unranked = [r for r in rows if r.rank is None]

        for row in ranked + unranked:
            key = row.name.lower()
            if key in existing_names:
                logger.info(f"Skipping '{row.name}': already on the ladder")
                results['skipped'] += 1
                continue

            rank = row.rank
            if rank is not None and rank in taken_ranks:
                logger.warning(f"Rank {rank} is taken; appending '{row.name}' to the bottom instead")
                rank = None

            profile = await profile_ops.seed_ghost_profile(
                row.name, fargo_rating=row.fargo, points=row.points,
                ladder_rank=rank, session=session
            )
            existing_names.add(key)
            taken_ranks.add(profile.ladder_rank)
            results['created'] += 1

    logger.info(f"Import complete: {results['created']} created, {results['skipped']} skipped")
    return results


async def main():
    """Main entry point for standalone script execution"""
    parser = argparse.ArgumentParser(description="Seed ghost profiles from a CSV file")
    parser.add_argument('csv_path', help="Path to the players CSV")
    parser.add_argument('--database-url', default=None, help="Overrides DATABASE_URL")
    args = parser.parse_args()

    logger = setup_logging()
    db = Database(args.database_url)

    try:
        with open(args.csv_path, newline='', encoding='utf-8-sig') as f:
            rows = parse_player_rows(f)

        await db.initialize()
        results = await import_players(rows, db)

        print("\n" + "=" * 50)
        print("PLAYER IMPORT COMPLETED SUCCESSFULLY")
        print("=" * 50)
        print(f"Ghost profiles created: {results['created']}")
        print(f"Rows skipped: {results['skipped']}")
        print("=" * 50)

    except Exception as e:
        logger.error(f"Player import failed: {e}")
        print(f"\nERROR: {e}")
        sys.exit(1)
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
