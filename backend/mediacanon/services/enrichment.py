"""
enrichment.py

TMDB enrichment of a single Title, shared by the backfill scheduler and the
lazy fetch gate. Merges follow fill-if-empty: a field that already holds a
real value is never overwritten, whichever path filled it first.
"""
import logging
from datetime import date
from typing import List, Optional, Tuple

from mediacanon.models import SHOW, Title
from mediacanon.resolvable import FieldState
from mediacanon.services.tmdb_client import (
    MOVIE_KIND, TV_KIND, DetailAPIError, TMDBClient, TitleDetails,
)

logger = logging.getLogger(__name__)


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _is_empty(value) -> bool:
    return value is None or value == "" or value == 0


def merge_details(title: Title, tmdb_id: Optional[int], details: TitleDetails,
                  image_url: Optional[str]) -> List[str]:
    """Fill empty fields of `title` from `details`. Returns the names of fields written.

    `tmdb_id` is only assigned the first time it is learned. An image marked
    NOT_FOUND counts as empty, so a later successful fetch can resolve it.
    """
    changed = []

    if tmdb_id and _is_empty(title.tmdb_id):
        title.tmdb_id = tmdb_id
        changed.append("tmdb_id")

    if image_url and not FieldState.of(title.image_url).is_resolved:
        title.image_url = FieldState.resolved(image_url)
        changed.append("image_url")

    candidates = (
        ("original_language", details.original_language),
        ("release_date", parse_date(details.release_date)),
        ("tmdb_popularity", details.popularity),
        ("origin_country", details.origin_country),
        ("runtime_minutes", details.runtime),
    )
    for name, value in candidates:
        if _is_empty(value):
            continue
        if _is_empty(getattr(title, name)):
            setattr(title, name, value)
            changed.append(name)
    return changed


class TitleEnricher:
    def __init__(self, client: TMDBClient, poster_size: str = "w500"):
        self.client = client
        self.poster_size = poster_size

    @staticmethod
    def kind_for(title: Title) -> str:
        return TV_KIND if title.type == SHOW else MOVIE_KIND

    async def resolve_tmdb_id(self, title: Title) -> Tuple[Optional[int], Optional[str]]:
        """Return (tmdb_id, kind), looking it up by IMDb id when not known yet."""
        if title.tmdb_id:
            return title.tmdb_id, self.kind_for(title)
        if not title.imdb_id:
            return None, None
        found = await self.client.find_by_imdb_id(title.imdb_id)
        record, kind = found.pick(title.type)
        if record is None or not record.get("id"):
            return None, None
        return record["id"], kind

    async def enrich(self, title: Title) -> Optional[List[str]]:
        """Details call plus merge. None when the title cannot be resolved on TMDB.

        Raises ThrottledError / DetailAPIError; the caller decides what a failure means.
        """
        tmdb_id, kind = await self.resolve_tmdb_id(title)
        if tmdb_id is None:
            return None
        details = await self.client.get_details(tmdb_id, kind)
        image = self.client.image_url(details.poster_path, self.poster_size)
        return merge_details(title, tmdb_id, details, image)

    async def fetch_image(self, title: Title) -> FieldState:
        """Resolve the poster of a title whose image was never checked.

        A completed lookup always leaves the field RESOLVED or NOT_FOUND and
        clears the backfill flag; lookup errors propagate without writing.
        """
        found = await self.client.find_by_imdb_id(title.imdb_id)
        record, kind = found.pick(title.type)
        if record is None:
            title.image_url = FieldState.not_found()
            title.needs_backfill_tmdb = False
            logger.info(f"No TMDB match for {title.imdb_id}; image marked not found")
            return FieldState.not_found()

        details = TitleDetails.from_payload(record)
        tmdb_id = record.get("id")
        if not details.origin_country and tmdb_id:
            try:
                full = await self.client.get_details(tmdb_id, kind)
                details.origin_country = full.origin_country
                details.runtime = details.runtime or full.runtime
            except DetailAPIError as e:
                logger.debug(f"Origin country lookup failed for {title.imdb_id}: {e}")

        image = self.client.image_url(details.poster_path, self.poster_size)
        merge_details(title, tmdb_id, details, image)
        if not FieldState.of(title.image_url).is_resolved:
            title.image_url = FieldState.not_found()
        title.needs_backfill_tmdb = False
        return FieldState.of(title.image_url)
