"""
backfill.py

Drains the TMDB enrichment backlog: titles with needs_backfill_tmdb set,
most-voted first, one page at a time.

The query is re-run after every page instead of walking a cursor, since
processing a row clears its flag and removes it from the remaining set. A row
only stays flagged when TMDB throttled us; every other outcome clears the flag
so unresolvable rows cannot dominate later passes.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mediacanon.models import Title
from mediacanon.services.enrichment import TitleEnricher
from mediacanon.services.tmdb_client import DetailAPIError, ThrottledError

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    processed: int = 0
    updated: int = 0
    cleared: int = 0
    unresolvable: int = 0
    failed: int = 0
    throttled: int = 0
    pages: int = 0

    def to_dict(self):
        return dict(self.__dict__)


class BackfillScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        enricher: TitleEnricher,
        page_size: int = 100,
        throttle_cooldown: float = 5.0,
        sleep=asyncio.sleep,
        max_pages: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.enricher = enricher
        self.page_size = page_size
        self.throttle_cooldown = throttle_cooldown
        self._sleep = sleep
        self.max_pages = max_pages

    def _next_page(self, db: Session, page_size: int):
        stmt = (
            select(Title)
            .where(Title.needs_backfill_tmdb.is_(True))
            .order_by(Title.num_votes.desc().nulls_last(), Title.id)
            .limit(page_size)
        )
        return db.execute(stmt).scalars().all()

    async def drain_backfill_queue(self, page_size: Optional[int] = None) -> BackfillReport:
        page_size = page_size or self.page_size
        report = BackfillReport()
        db = self.session_factory()
        try:
            while self.max_pages is None or report.pages < self.max_pages:
                page = self._next_page(db, page_size)
                if not page:
                    break
                report.pages += 1
                throttled_before = report.throttled
                for title in page:
                    await self._process(db, title, report)
                logger.info(
                    f"Backfill page {report.pages}: {report.processed} processed, "
                    f"{report.updated} updated, {report.throttled} throttled"
                )
                # A page where every row was throttled would come straight back;
                # stop and leave the rest for the next run.
                if report.throttled - throttled_before == len(page):
                    logger.warning("Every row on the page was throttled; stopping backfill for now")
                    break
        finally:
            db.close()
        logger.info(f"Backfill complete: {report.to_dict()}")
        return report

    async def _process(self, db: Session, title: Title, report: BackfillReport):
        report.processed += 1
        if not title.imdb_id:
            self._clear(db, title, report)
            return

        try:
            changed = await self.enricher.enrich(title)
        except ThrottledError:
            report.throttled += 1
            db.rollback()
            logger.warning(f"TMDB throttled on {title.imdb_id}; sleeping {self.throttle_cooldown}s")
            await self._sleep(self.throttle_cooldown)
            return
        except DetailAPIError as e:
            report.failed += 1
            db.rollback()
            logger.debug(f"TMDB backfill failed for {title.imdb_id}: {e}")
            self._clear(db, title, report)
            return

        if changed is None:
            report.unresolvable += 1
        elif changed:
            report.updated += 1
        self._clear(db, title, report)

    def _clear(self, db: Session, title: Title, report: BackfillReport):
        title.needs_backfill_tmdb = False
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        report.cleared += 1
