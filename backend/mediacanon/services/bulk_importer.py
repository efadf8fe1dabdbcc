"""
bulk_importer.py

Diff/import of the IMDb dataset into the store.

Each stage loads the relevant slice of the store into memory keyed by IMDb id,
streams the dataset once (episodes: twice), and sends only the differences in
fixed-size batches to a bounded worker pool. Inserts are one multi-row
INSERT ... RETURNING per batch; updates are one UPDATE ... SET col = CASE key
WHEN ... per batch. Every batch commits on its own and is safe to replay, so a
failed run is recovered by simply running the import again.
"""
import logging
import struct
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import case, func, insert, literal, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from mediacanon.crud import insert_ignore_conflicts
from mediacanon.models import MOVIE, SHOW, Genre, Movie, Show, ShowEpisode, ShowSeason, Title, title_genres
from mediacanon.services.imdb_dataset import (
    DatasetFiles, Kind, MalformedLine, TitleRecord, classify_kind, decode_line, is_known_kind, iter_tsv,
    parse_episode_line, parse_rating_line, parse_title_line,
)

logger = logging.getLogger(__name__)

titles_t = Title.__table__
movies_t = Movie.__table__
shows_t = Show.__table__
seasons_t = ShowSeason.__table__
episodes_t = ShowEpisode.__table__
genres_t = Genre.__table__

TITLE_FIELDS = ("display_name", "original_title", "start_year", "end_year", "runtime_minutes")

TITLE_PROGRESS_EVERY = 100_000
EPISODE_PROGRESS_EVERY = 100_000
RATING_PROGRESS_EVERY = 500_000
BATCH_PROGRESS_EVERY = 20


class ImportAbortedError(Exception):
    """A store error during a batched write. Committed batches stay committed."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        super().__init__(message or f"{stage} import aborted: {cause}")
        self.stage = stage
        self.cause = cause


class UnknownKindError(ImportAbortedError):
    def __init__(self, token: str):
        super().__init__("titles", message=f"unknown titleType {token!r} in dataset")
        self.token = token


@dataclass
class StageReport:
    name: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    discarded: int = 0
    set_aside: int = 0
    unknown_kinds: Dict[str, int] = field(default_factory=dict)
    by_kind: Dict[str, int] = field(default_factory=dict)
    duration: float = 0.0

    def summary(self) -> str:
        text = (f"{self.name}: {self.inserted} inserted, {self.updated} updated, "
                f"{self.unchanged} unchanged, {self.skipped} skipped, {self.errors} errors")
        if self.discarded or self.set_aside:
            text += f", {self.discarded} discarded, {self.set_aside} set aside"
        if self.unknown_kinds:
            text += f", unknown kinds {self.unknown_kinds}"
        return text + f" ({self.duration:.1f}s)"


@dataclass
class ImportReport:
    titles: StageReport = field(default_factory=lambda: StageReport("titles"))
    genres: StageReport = field(default_factory=lambda: StageReport("genres"))
    episodes: StageReport = field(default_factory=lambda: StageReport("episodes"))
    ratings: StageReport = field(default_factory=lambda: StageReport("ratings"))

    def stages(self) -> List[StageReport]:
        return [self.titles, self.genres, self.episodes, self.ratings]

    def _total(self, attr: str) -> int:
        return sum(getattr(s, attr) for s in self.stages())

    @property
    def inserted(self) -> int:
        return self._total("inserted")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def unchanged(self) -> int:
        return self._total("unchanged")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def errors(self) -> int:
        return self._total("errors")

    def to_dict(self) -> Dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "stages": {
                s.name: {
                    "inserted": s.inserted, "updated": s.updated, "unchanged": s.unchanged,
                    "skipped": s.skipped, "errors": s.errors, "discarded": s.discarded,
                    "set_aside": s.set_aside, "unknown_kinds": dict(s.unknown_kinds),
                }
                for s in self.stages()
            },
        }


@dataclass
class ScanContext:
    """Cross-references gathered while scanning title.basics.

    Lives for exactly one `import_from` call: episode display names (tvEpisode
    rows are set aside and only looked up by the episode pass) and the genre
    list of every imported title.
    """
    episode_names: Dict[str, str] = field(default_factory=dict)
    title_genres: Dict[str, List[str]] = field(default_factory=dict)


def to_stored_real(value: Optional[float]) -> Optional[float]:
    """Round a float to single precision, the precision average_rating is stored at."""
    if value is None:
        return None
    return struct.unpack("f", struct.pack("f", value))[0]


def _chunks(items: Sequence, size: int) -> List[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class BatchExecutor:
    """Runs batch write functions on a bounded thread pool, one transaction per batch."""

    def __init__(self, engine: Engine, batch_size: int = 5000, workers: int = 8):
        self.engine = engine
        self.batch_size = max(1, batch_size)
        # SQLite serialises writers; extra threads would only contend on the file lock
        self.workers = 1 if engine.dialect.name == "sqlite" else max(1, workers)

    def _run_one(self, fn: Callable[[Connection, Sequence], object], batch: Sequence):
        with self.engine.begin() as conn:
            return fn(conn, batch)

    def run(self, stage: str, label: str, items: Sequence,
            fn: Callable[[Connection, Sequence], object]) -> List[object]:
        batches = _chunks(list(items), self.batch_size)
        if not batches:
            return []
        logger.info(f"{label}: {len(items)} rows in {len(batches)} batches ({self.workers} workers)")
        results = []
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [pool.submit(self._run_one, fn, batch) for batch in batches]
            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    results.append(future.result())
                    if done % BATCH_PROGRESS_EVERY == 0 or done == len(batches):
                        logger.info(f"  {label}: {done}/{len(batches)} batches")
            except SQLAlchemyError as e:
                for future in futures:
                    future.cancel()
                logger.error(f"{label} failed, aborting {stage} stage: {e}")
                raise ImportAbortedError(stage, e) from e
        return results


# --- batch write functions (run on worker threads) ----------------------------

def _insert_titles(conn: Connection, batch: Sequence[TitleRecord]) -> List[Tuple[int, str, str]]:
    rows = [
        {
            "imdb_id": r.imdb_id,
            "type": r.type,
            "display_name": r.display_name,
            "original_title": r.original_title,
            "start_year": r.start_year,
            "end_year": r.end_year,
            "runtime_minutes": r.runtime_minutes,
            "needs_backfill_tmdb": True,
        }
        for r in batch
    ]
    stmt = insert(titles_t).values(rows).returning(titles_t.c.id, titles_t.c.imdb_id, titles_t.c.type)
    return [tuple(row) for row in conn.execute(stmt)]


def _case_by_key(key_col, column, values: Dict):
    return case(
        {k: literal(v, column.type) for k, v in values.items()},
        value=key_col,
        else_=column,
    )


def _update_titles(conn: Connection, batch: Sequence[TitleRecord]) -> int:
    assignments = {
        name: _case_by_key(titles_t.c.imdb_id, titles_t.c[name], {r.imdb_id: getattr(r, name) for r in batch})
        for name in TITLE_FIELDS
    }
    assignments["updated_at"] = func.now()
    stmt = (
        update(titles_t)
        .where(titles_t.c.imdb_id.in_([r.imdb_id for r in batch]))
        .values(**assignments)
    )
    return conn.execute(stmt).rowcount


def _insert_movies(conn: Connection, title_ids: Sequence[int]) -> int:
    return insert_ignore_conflicts(conn, movies_t, [{"title_id": tid} for tid in title_ids])


def _insert_shows(conn: Connection, title_ids: Sequence[int]) -> int:
    return insert_ignore_conflicts(conn, shows_t, [{"title_id": tid} for tid in title_ids])


def _insert_title_genres(conn: Connection, pairs: Sequence[Tuple[int, int]]) -> int:
    return insert_ignore_conflicts(conn, title_genres, [{"title_id": t, "genre_id": g} for t, g in pairs])


def _insert_seasons(conn: Connection, keys: Sequence[Tuple[int, int]]) -> List[Tuple[int, int, int]]:
    stmt = (
        insert(seasons_t)
        .values([{"show_id": show_id, "season": season} for show_id, season in keys])
        .returning(seasons_t.c.id, seasons_t.c.show_id, seasons_t.c.season)
    )
    return [tuple(row) for row in conn.execute(stmt)]


def _insert_episodes(conn: Connection, rows: Sequence[Dict]) -> int:
    return insert_ignore_conflicts(conn, episodes_t, list(rows))


def _update_episode_names(conn: Connection, batch: Sequence[Tuple[int, str]]) -> int:
    names = dict(batch)
    stmt = (
        update(episodes_t)
        .where(episodes_t.c.id.in_(list(names)))
        .values(display_name=_case_by_key(episodes_t.c.id, episodes_t.c.display_name, names))
    )
    return conn.execute(stmt).rowcount


def _update_ratings(conn: Connection, batch: Sequence[Tuple[str, int, float]]) -> int:
    votes = {imdb_id: num_votes for imdb_id, num_votes, _ in batch}
    ratings = {imdb_id: avg for imdb_id, _, avg in batch}
    stmt = (
        update(titles_t)
        .where(titles_t.c.imdb_id.in_(list(votes)))
        .values(
            num_votes=_case_by_key(titles_t.c.imdb_id, titles_t.c.num_votes, votes),
            average_rating=_case_by_key(titles_t.c.imdb_id, titles_t.c.average_rating, ratings),
        )
    )
    return conn.execute(stmt).rowcount


class BulkDiffImporter:
    def __init__(self, engine: Engine, batch_size: int = 5000, workers: int = 8, strict_kinds: bool = False):
        self.engine = engine
        self.strict_kinds = strict_kinds
        self.executor = BatchExecutor(engine, batch_size=batch_size, workers=workers)

    def import_from(self, files: DatasetFiles) -> ImportReport:
        """Run every stage in dependency order. Raises ImportAbortedError on store failure."""
        report = ImportReport()
        context = ScanContext()
        self._timed(report.titles, lambda: self.sync_titles(files.basics, context, report.titles))
        self._timed(report.genres, lambda: self.sync_genres(context, report.genres))
        self._timed(report.episodes, lambda: self.sync_episodes(files.episodes, context, report.episodes))
        self._timed(report.ratings, lambda: self.sync_ratings(files.ratings, report.ratings))
        for stage in report.stages():
            logger.info(stage.summary())
        return report

    @staticmethod
    def _timed(stage: StageReport, fn):
        logger.info(f"=== Syncing {stage.name} ===")
        started = time.monotonic()
        try:
            fn()
        finally:
            stage.duration = time.monotonic() - started

    def _load(self, stmt) -> List[Tuple]:
        try:
            with self.engine.connect() as conn:
                return [tuple(row) for row in conn.execute(stmt)]
        except SQLAlchemyError as e:
            raise ImportAbortedError("snapshot", e) from e

    # --- titles ------------------------------------------------------------

    def sync_titles(self, path: str, context: Optional[ScanContext] = None,
                    report: Optional[StageReport] = None) -> StageReport:
        context = context if context is not None else ScanContext()
        report = report or StageReport("titles")

        logger.info("Loading existing titles from database...")
        existing: Dict[str, Tuple] = {}
        for row in self._load(select(
            titles_t.c.imdb_id, titles_t.c.id, titles_t.c.type,
            *[titles_t.c[name] for name in TITLE_FIELDS],
        ).where(titles_t.c.imdb_id.isnot(None))):
            existing[row[0]] = row[1:]
        logger.info(f"Loaded {len(existing)} existing titles")

        to_insert: List[TitleRecord] = []
        to_update: List[TitleRecord] = []
        seen: Set[str] = set()
        kinds: Counter = Counter()
        type_conflicts = 0
        scanned = 0

        for raw in iter_tsv(path):
            scanned += 1
            try:
                line = decode_line(raw)
                token, record, episode_name = parse_title_line(line)
            except MalformedLine:
                report.errors += 1
                continue

            kind = classify_kind(token)
            kinds[kind.value] += 1
            if kind is Kind.EPISODE:
                report.set_aside += 1
                if episode_name:
                    context.episode_names[line.split("\t", 1)[0]] = episode_name
                continue
            if record is None:
                report.discarded += 1
                if not is_known_kind(token):
                    self._unknown_kind(report, token)
                continue

            if record.imdb_id in seen:
                report.skipped += 1
                continue
            seen.add(record.imdb_id)
            if record.genres:
                context.title_genres[record.imdb_id] = record.genres

            current = existing.get(record.imdb_id)
            if current is None:
                to_insert.append(record)
            else:
                if current[1] != record.type:
                    type_conflicts += 1
                if self._title_differs(current[2:], record):
                    to_update.append(record)
                else:
                    report.unchanged += 1

            if scanned % TITLE_PROGRESS_EVERY == 0:
                logger.info(f"  scanned {scanned} rows: {len(to_insert)} new, {len(to_update)} changed")

        report.by_kind = dict(kinds)
        logger.info(
            f"Scanned {scanned} rows: {len(to_insert)} to insert, {len(to_update)} to update, "
            f"{report.unchanged} unchanged, {report.set_aside} episodes set aside, {report.discarded} discarded"
        )
        if type_conflicts:
            logger.warning(f"{type_conflicts} titles changed kind in the dataset; stored type kept")

        ids_by_type: Dict[int, str] = {row[0]: row[1] for row in existing.values()}
        for inserted in self.executor.run("titles", "Inserting titles", to_insert, _insert_titles):
            for title_id, _imdb_id, title_type in inserted:
                ids_by_type[title_id] = title_type
                report.inserted += 1
        for count in self.executor.run("titles", "Updating titles", to_update, _update_titles):
            report.updated += count

        self._ensure_subtypes(ids_by_type)
        return report

    def _unknown_kind(self, report: StageReport, token: str):
        if token not in report.unknown_kinds:
            logger.warning(f"Unknown titleType {token!r} in dataset; discarding these rows")
            if self.strict_kinds:
                raise UnknownKindError(token)
            report.unknown_kinds[token] = 0
        report.unknown_kinds[token] += 1

    @staticmethod
    def _title_differs(current: Tuple, record: TitleRecord) -> bool:
        for stored, name in zip(current, TITLE_FIELDS):
            incoming = getattr(record, name)
            if name == "original_title":
                stored, incoming = stored or None, incoming or None
            if stored != incoming:
                return True
        return False

    def _ensure_subtypes(self, ids_by_type: Dict[int, str]):
        """Every movie title gets one movies row, every show one shows row."""
        have_movie = {row[0] for row in self._load(select(movies_t.c.title_id))}
        have_show = {row[0] for row in self._load(select(shows_t.c.title_id))}
        new_movies = sorted(tid for tid, t in ids_by_type.items() if t == MOVIE and tid not in have_movie)
        new_shows = sorted(tid for tid, t in ids_by_type.items() if t == SHOW and tid not in have_show)
        created_movies = sum(self.executor.run("titles", "Creating movie records", new_movies, _insert_movies))
        created_shows = sum(self.executor.run("titles", "Creating show records", new_shows, _insert_shows))
        if created_movies or created_shows:
            logger.info(f"Created {created_movies} movie and {created_shows} show records")

    # --- genres ------------------------------------------------------------

    def sync_genres(self, context: ScanContext, report: Optional[StageReport] = None) -> StageReport:
        report = report or StageReport("genres")
        names = sorted({g for genres in context.title_genres.values() for g in genres})
        if not names:
            return report

        try:
            with self.engine.begin() as conn:
                created = insert_ignore_conflicts(conn, genres_t, [{"name": n} for n in names])
        except SQLAlchemyError as e:
            raise ImportAbortedError("genres", e) from e
        if created:
            logger.info(f"Added {created} new genres")

        genre_ids = {name: gid for gid, name in self._load(select(genres_t.c.id, genres_t.c.name))}
        title_ids = {
            imdb_id: tid
            for tid, imdb_id in self._load(select(titles_t.c.id, titles_t.c.imdb_id).where(titles_t.c.imdb_id.isnot(None)))
        }
        existing_pairs = set(self._load(select(title_genres.c.title_id, title_genres.c.genre_id)))
        logger.info(f"Loaded {len(existing_pairs)} existing title genres")

        to_insert: List[Tuple[int, int]] = []
        for imdb_id, genres in context.title_genres.items():
            title_id = title_ids.get(imdb_id)
            if title_id is None:
                report.skipped += 1
                continue
            for name in dict.fromkeys(genres):
                pair = (title_id, genre_ids[name])
                if pair in existing_pairs:
                    report.unchanged += 1
                else:
                    existing_pairs.add(pair)
                    to_insert.append(pair)

        report.inserted += sum(self.executor.run("genres", "Inserting title genres", to_insert, _insert_title_genres))
        return report

    # --- episodes ----------------------------------------------------------

    def sync_episodes(self, path: str, context: Optional[ScanContext] = None,
                      report: Optional[StageReport] = None) -> StageReport:
        context = context if context is not None else ScanContext()
        report = report or StageReport("episodes")

        shows = dict(self._load(
            select(titles_t.c.imdb_id, shows_t.c.id).select_from(shows_t.join(titles_t, shows_t.c.title_id == titles_t.c.id))
        ))
        logger.info(f"Loaded {len(shows)} shows into cache")
        seasons: Dict[Tuple[int, int], int] = {
            (show_id, season): sid for sid, show_id, season in self._load(
                select(seasons_t.c.id, seasons_t.c.show_id, seasons_t.c.season)
            )
        }
        logger.info(f"Loaded {len(seasons)} existing seasons")
        episodes: Dict[Tuple[int, int], Tuple[int, Optional[str]]] = {
            (season_id, number): (eid, name) for eid, season_id, number, name in self._load(
                select(episodes_t.c.id, episodes_t.c.season_id, episodes_t.c.episode, episodes_t.c.display_name)
            )
        }
        logger.info(f"Loaded {len(episodes)} existing episodes")

        # Pass 1: seasons must exist before any episode can point at them
        new_seasons: Dict[Tuple[int, int], None] = {}
        for raw in iter_tsv(path):
            try:
                line = decode_line(raw)
                record = parse_episode_line(line)
            except MalformedLine:
                continue
            if record.season is None:
                continue
            show_id = shows.get(record.parent_imdb_id)
            if show_id is None:
                continue
            key = (show_id, record.season)
            if key not in seasons:
                new_seasons[key] = None
        for inserted in self.executor.run("episodes", "Inserting seasons", list(new_seasons), _insert_seasons):
            for sid, show_id, season in inserted:
                seasons[(show_id, season)] = sid

        # Pass 2: episodes
        to_insert: List[Dict] = []
        to_update: List[Tuple[int, str]] = []
        seen: Set[Tuple[int, int]] = set()
        scanned = 0
        for raw in iter_tsv(path):
            scanned += 1
            try:
                line = decode_line(raw)
                record = parse_episode_line(line)
            except MalformedLine:
                report.errors += 1
                continue
            if record.season is None or record.episode is None:
                report.skipped += 1
                continue
            show_id = shows.get(record.parent_imdb_id)
            season_id = seasons.get((show_id, record.season)) if show_id is not None else None
            if season_id is None:
                report.skipped += 1
                continue

            key = (season_id, record.episode)
            if key in seen:
                report.skipped += 1
                continue
            seen.add(key)

            name = context.episode_names.get(record.imdb_id)
            current = episodes.get(key)
            if current is None:
                to_insert.append({"season_id": season_id, "episode": record.episode, "display_name": name})
            elif name and current[1] != name:
                to_update.append((current[0], name))
            else:
                report.unchanged += 1

            if scanned % EPISODE_PROGRESS_EVERY == 0:
                logger.info(f"  scanned {scanned} episodes: {len(to_insert)} new, {len(to_update)} renamed")

        logger.info(f"Episodes: {len(to_insert)} to insert, {len(to_update)} to update, {report.skipped} skipped")
        report.inserted += sum(self.executor.run("episodes", "Inserting episodes", to_insert, _insert_episodes))
        report.updated += sum(self.executor.run("episodes", "Updating episodes", to_update, _update_episode_names))
        return report

    # --- ratings -----------------------------------------------------------

    def sync_ratings(self, path: str, report: Optional[StageReport] = None) -> StageReport:
        report = report or StageReport("ratings")
        current: Dict[str, Tuple[Optional[int], Optional[float]]] = {
            imdb_id: (votes, to_stored_real(avg)) for imdb_id, votes, avg in self._load(
                select(titles_t.c.imdb_id, titles_t.c.num_votes, titles_t.c.average_rating)
                .where(titles_t.c.imdb_id.isnot(None))
            )
        }
        logger.info(f"Loaded ratings for {len(current)} titles")

        to_update: List[Tuple[str, int, float]] = []
        scanned = 0
        for raw in iter_tsv(path):
            scanned += 1
            try:
                line = decode_line(raw)
                record = parse_rating_line(line)
            except MalformedLine:
                report.errors += 1
                continue
            stored = current.get(record.imdb_id)
            if stored is None:
                report.skipped += 1
                continue
            if stored == (record.num_votes, to_stored_real(record.average_rating)):
                report.unchanged += 1
            else:
                to_update.append((record.imdb_id, record.num_votes, record.average_rating))
            if scanned % RATING_PROGRESS_EVERY == 0:
                logger.info(f"  scanned {scanned} ratings: {len(to_update)} changed")

        report.updated += sum(self.executor.run("ratings", "Updating ratings", to_update, _update_ratings))
        return report
