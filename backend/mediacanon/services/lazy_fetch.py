"""
lazy_fetch.py

Request-time enrichment for the detail views.

- Title posters are fetched once: a completed lookup stores either the URL or
  the NOT_FOUND marker, so later views make no further calls for that field.
- Show episodes are checked as a batch at most once per cooldown window
  (titles.episodes_checked_at). Outside the window every episode without a
  still is fetched, NOT_FOUND ones included, with a small concurrency cap.
- Seasons where every requested episode 404s (other than season 1) get one
  retry against season 1 using the absolute episode number, for shows TMDB
  lists as a single flat season.

Nothing here raises to the caller: failures are logged and the view renders
with whatever the store already has.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mediacanon.models import Show, ShowEpisode, Title
from mediacanon.resolvable import FieldState
from mediacanon.services.enrichment import TitleEnricher, parse_date
from mediacanon.services.rate_limit import RetryPolicy
from mediacanon.services.tmdb_client import DetailAPIError, EpisodeDetails, NotFoundError, TMDBClient, ThrottledError
from mediacanon.utils.timezone import utc_now, within_cooldown

logger = logging.getLogger(__name__)

OK = "ok"
NOT_FOUND = "not_found"
ERROR = "error"


@dataclass
class EpisodeTarget:
    episode: ShowEpisode
    season: int
    number: int
    status: str = ERROR
    details: Optional[EpisodeDetails] = None


@dataclass
class EpisodeFetchReport:
    requested: int = 0
    fetched: int = 0
    not_found: int = 0
    failed: int = 0
    omniseason_retries: int = 0
    skipped_cooldown: bool = False


class LazyFetchGate:
    def __init__(
        self,
        client: TMDBClient,
        enricher: TitleEnricher,
        cooldown: timedelta = timedelta(hours=24),
        concurrency: int = 5,
        retry: RetryPolicy = RetryPolicy(max_attempts=3, base_delay=2.0),
        still_size: str = "w400",
        clock: Callable = utc_now,
    ):
        self.client = client
        self.enricher = enricher
        self.cooldown = cooldown
        self.concurrency = max(1, concurrency)
        self.retry = retry
        self.still_size = still_size
        self.clock = clock

    @classmethod
    def from_settings(cls, client: TMDBClient, settings) -> "LazyFetchGate":
        return cls(
            client,
            TitleEnricher(client, poster_size=settings.tmdb_poster_size),
            cooldown=timedelta(hours=settings.episode_cooldown_hours),
            concurrency=settings.episode_fetch_concurrency,
            retry=RetryPolicy(
                max_attempts=settings.episode_retry_attempts,
                base_delay=settings.episode_retry_base_seconds,
            ),
            still_size=settings.tmdb_still_size,
        )

    # --- titles ------------------------------------------------------------

    async def ensure_title(self, db: Session, title: Title) -> None:
        """Fetch the poster if it was never checked, then enrich if still flagged."""
        if title.imdb_id and FieldState.of(title.image_url).is_unresolved:
            try:
                state = await self.enricher.fetch_image(title)
                db.commit()
                logger.debug(f"Image for {title.imdb_id}: {state.status.value}")
            except DetailAPIError as e:
                db.rollback()
                logger.warning(f"Image lookup failed for {title.imdb_id}: {e}")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to store image for {title.imdb_id}: {e}")

        if title.imdb_id and title.needs_backfill_tmdb:
            try:
                await self.enricher.enrich(title)
                title.needs_backfill_tmdb = False
                db.commit()
            except ThrottledError:
                db.rollback()
                logger.info(f"TMDB throttled enriching {title.imdb_id}; left for backfill")
            except DetailAPIError as e:
                db.rollback()
                logger.warning(f"Enrichment failed for {title.imdb_id}: {e}")
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to store enrichment for {title.imdb_id}: {e}")

    # --- episodes ----------------------------------------------------------

    async def ensure_show_episodes(self, db: Session, show: Show) -> EpisodeFetchReport:
        report = EpisodeFetchReport()
        title = show.title
        if within_cooldown(title.episodes_checked_at, self.cooldown, self.clock()):
            report.skipped_cooldown = True
            return report

        tmdb_id = await self._show_tmdb_id(db, title)
        if not tmdb_id:
            return report

        targets = [
            EpisodeTarget(episode=ep, season=season.season, number=ep.episode)
            for season in show.seasons
            for ep in season.episodes
            if not FieldState.of(ep.image_url).is_resolved
        ]
        report.requested = len(targets)
        if targets:
            logger.info(f"Fetching TMDB data for {len(targets)} episodes of {title.display_name} (tmdb_id={tmdb_id})")
            semaphore = asyncio.Semaphore(self.concurrency)
            await asyncio.gather(*[self._fetch(semaphore, tmdb_id, t, t.season, t.number) for t in targets])
            await self._omniseason_fallback(semaphore, tmdb_id, show, targets, report)
            self._apply(targets, report)

        title.episodes_checked_at = self.clock()
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store episode data for {title.display_name}: {e}")
        return report

    async def _show_tmdb_id(self, db: Session, title: Title) -> Optional[int]:
        if title.tmdb_id:
            return title.tmdb_id
        if not title.imdb_id or FieldState.of(title.image_url).is_not_found:
            return None
        try:
            tmdb_id, _kind = await self.enricher.resolve_tmdb_id(title)
        except DetailAPIError as e:
            logger.warning(f"TMDB id lookup failed for {title.imdb_id}: {e}")
            return None
        if tmdb_id:
            title.tmdb_id = tmdb_id
            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to store tmdb_id for {title.imdb_id}: {e}")
        return tmdb_id

    async def _fetch(self, semaphore: asyncio.Semaphore, tmdb_id: int, target: EpisodeTarget,
                     season: int, number: int, keep_status_on_failure: bool = False) -> None:
        async with semaphore:
            try:
                target.details = await self.client.get_episode(tmdb_id, season, number, retry=self.retry)
                target.status = OK
            except NotFoundError:
                if not keep_status_on_failure:
                    target.status = NOT_FOUND
            except DetailAPIError as e:
                if not keep_status_on_failure:
                    target.status = ERROR
                logger.debug(f"Episode S{season}E{number} of {tmdb_id} failed: {e}")

    async def _omniseason_fallback(self, semaphore: asyncio.Semaphore, tmdb_id: int, show: Show,
                                   targets: List[EpisodeTarget], report: EpisodeFetchReport) -> None:
        by_season: Dict[int, List[EpisodeTarget]] = {}
        for target in targets:
            by_season.setdefault(target.season, []).append(target)

        offsets: Dict[int, int] = {}
        cumulative = 0
        for season in sorted(show.seasons, key=lambda s: s.season):
            offsets[season.season] = cumulative
            cumulative += len(season.episodes)

        retry: List[EpisodeTarget] = []
        for season_number, group in by_season.items():
            if season_number == 1:
                continue
            if all(t.status == NOT_FOUND for t in group):
                retry.extend(group)
        if not retry:
            return

        logger.info(f"Trying omniseason fallback for {len(retry)} episodes of {show.title.display_name}")
        report.omniseason_retries = len(retry)
        await asyncio.gather(*[
            self._fetch(semaphore, tmdb_id, t, 1, offsets.get(t.season, 0) + t.number, keep_status_on_failure=True)
            for t in retry
        ])

    def _apply(self, targets: List[EpisodeTarget], report: EpisodeFetchReport) -> None:
        for target in targets:
            episode = target.episode
            if target.status == ERROR:
                report.failed += 1
                continue
            if target.status == NOT_FOUND:
                episode.image_url = FieldState.not_found()
                report.not_found += 1
                continue

            details = target.details
            still = self.client.image_url(details.still_path, self.still_size)
            episode.image_url = FieldState.resolved(still) if still else FieldState.not_found()
            air_date = parse_date(details.air_date)
            if air_date and episode.air_date is None:
                episode.air_date = air_date
            if details.name and not episode.display_name:
                episode.display_name = details.name
            if details.overview and not episode.synopsis:
                episode.synopsis = details.overview
            if details.runtime and not episode.runtime_minutes:
                episode.runtime_minutes = details.runtime
            report.fetched += 1
