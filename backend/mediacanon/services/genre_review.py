"""
genre_review.py

Hand-curated genres on top of the IMDb ones. Unreviewed titles are exported to
a plain-text file, someone fills in the GENRES: line under each title, and the
file is imported back as memberships of the custom genres. Every title seen in
an imported file is recorded in custom_genre_reviews and never exported again.

File layout:
    # comment lines
    [<title id>] Name (year) | type | 1.2M votes | 7.5 | en/US | Drama, Reality-TV
    GENRES: Dating, Cooking

"none" or an empty GENRES: line marks the title reviewed without assigning anything.
The dataset import only ever adds memberships, so curated ones survive every re-sync.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from mediacanon.crud import insert_ignore_conflicts
from mediacanon.models import Genre, GenreReview, Title, title_genres
from mediacanon.utils.timezone import utc_now

logger = logging.getLogger(__name__)

CUSTOM_GENRES = ("Dating", "Cooking")
GENRES_PREFIX = "GENRES:"
SKIP_TOKEN = "none"


def format_votes(n: int) -> str:
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1000:
        return f"{n / 1000:.0f}K"
    return str(n)


def ensure_custom_genres(db: Session, names: Iterable[str] = CUSTOM_GENRES) -> Dict[str, int]:
    """Create the custom genres (or flag existing ones). Returns name -> id of every custom genre."""
    for name in names:
        genre = db.execute(select(Genre).where(Genre.name == name)).scalar_one_or_none()
        if genre is None:
            db.add(Genre(name=name, is_custom=True))
        elif not genre.is_custom:
            genre.is_custom = True
    db.commit()
    return {name: gid for gid, name in db.execute(select(Genre.id, Genre.name).where(Genre.is_custom.is_(True)))}


@dataclass
class ReviewCandidate:
    id: int
    display_name: str
    start_year: Optional[int]
    type: str
    num_votes: int
    average_rating: float
    original_language: str
    origin_country: str
    genres: List[str]

    @classmethod
    def from_title(cls, title: Title) -> "ReviewCandidate":
        return cls(
            id=title.id,
            display_name=title.display_name,
            start_year=title.start_year,
            type=title.type,
            num_votes=title.num_votes or 0,
            average_rating=title.average_rating or 0.0,
            original_language=title.original_language or "",
            origin_country=title.origin_country or "",
            genres=[g.name for g in title.genres],
        )

    def header(self) -> str:
        year = str(self.start_year) if self.start_year else "????"
        lang = f"{self.original_language}/{self.origin_country}" if self.origin_country else self.original_language
        line = (f"[{self.id}] {self.display_name} ({year}) | {self.type} | "
                f"{format_votes(self.num_votes)} votes | {self.average_rating:.1f} | {lang}")
        if self.genres:
            line += " | " + ", ".join(self.genres)
        return line


def review_candidates(db: Session, limit: int = 100,
                      filter_genres: Optional[Sequence[str]] = None) -> List[ReviewCandidate]:
    """Unreviewed titles, most-voted first, optionally only those carrying one of `filter_genres`."""
    reviewed = select(GenreReview.title_id).where(GenreReview.title_id == Title.id)
    stmt = select(Title).where(~reviewed.exists())
    if filter_genres:
        tagged = (
            select(title_genres.c.title_id)
            .join(Genre, Genre.id == title_genres.c.genre_id)
            .where(title_genres.c.title_id == Title.id, Genre.name.in_(list(filter_genres)))
        )
        stmt = stmt.where(tagged.exists())
    stmt = (
        stmt.options(selectinload(Title.genres))
        .order_by(Title.num_votes.desc().nulls_last(), Title.id)
        .limit(limit)
    )
    return [ReviewCandidate.from_title(t) for t in db.execute(stmt).scalars()]


def export_genre_review(db: Session, path: str, limit: int = 100,
                        filter_genres: Optional[Sequence[str]] = None,
                        custom_names: Iterable[str] = CUSTOM_GENRES) -> int:
    """Write the review file. Returns the number of titles exported."""
    custom = ensure_custom_genres(db, custom_names)
    if filter_genres:
        logger.info(f"Filtering by IMDb genres: {', '.join(filter_genres)}")
    candidates = review_candidates(db, limit, filter_genres)
    if not candidates:
        logger.info("No unreviewed titles found")
        return 0

    with open(path, "w", encoding="utf-8") as fh:
        fh.write("# MediaCanon custom genre review\n")
        fh.write(f"# Generated: {utc_now().date().isoformat()} | {len(candidates)} titles | "
                 f"Custom genres: {', '.join(sorted(custom))}\n")
        fh.write(f'# Fill in the {GENRES_PREFIX} lines. Use "{SKIP_TOKEN}" or leave empty to skip.\n')
        fh.write(f"# Import: python -m mediacanon.scripts.sync_imdb --genres-import {path}\n")
        fh.write("\n")
        for candidate in candidates:
            fh.write(candidate.header() + "\n")
            fh.write(f"{GENRES_PREFIX}\n")
            fh.write("\n")

    logger.info(f"Exported {len(candidates)} titles to {path}")
    return len(candidates)


def parse_review_entries(lines: Iterable[str]) -> Iterator[Tuple[int, List[str]]]:
    """Yield (title_id, genre names) per answered title; an empty list means "none"."""
    current: Optional[int] = None
    for line in lines:
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        if text.startswith("["):
            close = text.find("]")
            if close == -1:
                continue
            try:
                current = int(text[1:close])
            except ValueError:
                logger.warning(f"Invalid title id {text[1:close]!r} in review file, skipping")
                current = None
            continue
        if text.startswith(GENRES_PREFIX) and current is not None:
            title_id, current = current, None
            value = text[len(GENRES_PREFIX):].strip()
            if not value or value.lower() == SKIP_TOKEN:
                yield title_id, []
            else:
                yield title_id, [name.strip() for name in value.split(",") if name.strip()]


@dataclass
class GenreReviewReport:
    titles: int = 0
    assigned: int = 0
    skipped: int = 0
    missing_titles: int = 0
    unknown_genres: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "titles": self.titles,
            "assigned": self.assigned,
            "skipped": self.skipped,
            "missing_titles": self.missing_titles,
            "unknown_genres": dict(self.unknown_genres),
        }


def import_genre_review(db: Session, path: str, custom_names: Iterable[str] = CUSTOM_GENRES) -> GenreReviewReport:
    """Apply a filled-in review file. Only custom genres can be assigned; memberships are never removed."""
    custom = ensure_custom_genres(db, custom_names)
    by_lower = {name.lower(): gid for name, gid in custom.items()}
    report = GenreReviewReport()

    with open(path, encoding="utf-8") as fh:
        entries = list(parse_review_entries(fh))

    conn = db.connection()
    for title_id, names in entries:
        if db.get(Title, title_id) is None:
            logger.warning(f"Title {title_id} from the review file does not exist, skipping")
            report.missing_titles += 1
            continue
        insert_ignore_conflicts(conn, GenreReview.__table__, [{"title_id": title_id}])
        report.titles += 1
        if not names:
            report.skipped += 1
            continue

        genre_ids: Dict[int, None] = {}
        for name in names:
            genre_id = custom.get(name) or by_lower.get(name.lower())
            if genre_id is None:
                logger.warning(f"Unknown genre {name!r} for title {title_id}, skipping")
                report.unknown_genres[name] = report.unknown_genres.get(name, 0) + 1
                continue
            genre_ids[genre_id] = None
        insert_ignore_conflicts(conn, title_genres, [{"title_id": title_id, "genre_id": g} for g in genre_ids])
        report.assigned += len(genre_ids)
    db.commit()

    logger.info(f"Genre review import complete: {report.titles} titles processed, "
                f"{report.assigned} genre assignments, {report.skipped} skipped (none/empty)")
    return report
