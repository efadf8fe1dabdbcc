"""
Sweep shows whose poster was never checked and run the lazy fetch paths for
each one (poster, enrichment, episodes), most-voted first.

Usage:
    PYTHONPATH=backend python -m mediacanon.scripts.sync_show_images [--limit N]
"""
import argparse
import asyncio
import logging
import sys
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from mediacanon.core.config import settings
from mediacanon.models import Show, ShowSeason, Title
from mediacanon.resolvable import unresolved_clause
from mediacanon.services.lazy_fetch import LazyFetchGate
from mediacanon.utils.logger import configure_logging

logger = logging.getLogger("mediacanon.scripts.sync_show_images")


def pending_show_ids(db: Session, limit: Optional[int] = None):
    stmt = (
        select(Show.id)
        .join(Title, Show.title_id == Title.id)
        .where(unresolved_clause(Title.image_url), Title.imdb_id.isnot(None))
        .order_by(Title.num_votes.desc().nulls_last(), Show.id)
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars())


async def sync_show_images(session_factory: Callable[[], Session], gate: LazyFetchGate,
                           limit: Optional[int] = None) -> Dict[str, int]:
    stats = {"shows": 0, "episodes_fetched": 0, "episodes_not_found": 0}
    db = session_factory()
    try:
        ids = pending_show_ids(db, limit)
        logger.info(f"{len(ids)} shows with unchecked posters")
        for show_id in ids:
            show = db.execute(
                select(Show)
                .where(Show.id == show_id)
                .options(selectinload(Show.title), selectinload(Show.seasons).selectinload(ShowSeason.episodes))
            ).scalar_one()
            await gate.ensure_title(db, show.title)
            report = await gate.ensure_show_episodes(db, show)
            stats["shows"] += 1
            stats["episodes_fetched"] += report.fetched
            stats["episodes_not_found"] += report.not_found
            if stats["shows"] % 50 == 0:
                logger.info(f"  processed {stats['shows']}/{len(ids)} shows")
    finally:
        db.close()
    logger.info(f"Show image sweep complete: {stats}")
    return stats


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fetch posters and episode stills for shows")
    parser.add_argument("--limit", type=int, default=0, help="Process at most N shows (default: all)")
    args = parser.parse_args(argv)
    configure_logging()

    if not settings.tmdb_enabled:
        logger.error("TMDB_API_KEY is not set")
        return 1

    from mediacanon.core.database import SessionLocal
    from mediacanon.services.tmdb_client import TMDBClient

    async def _run():
        async with TMDBClient.from_settings(settings) as client:
            gate = LazyFetchGate.from_settings(client, settings)
            return await sync_show_images(SessionLocal, gate, limit=args.limit or None)

    asyncio.run(_run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
