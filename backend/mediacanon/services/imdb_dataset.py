"""
imdb_dataset.py

Reading and fetching the IMDb non-commercial dataset files.

Three gzip'd TSV files with a header row:
  title.basics.tsv.gz   tconst, titleType, primaryTitle, originalTitle, isAdult,
                        startYear, endYear, runtimeMinutes, genres
  title.episode.tsv.gz  tconst, parentTconst, seasonNumber, episodeNumber
  title.ratings.tsv.gz  tconst, averageRating, numVotes
"\\N" stands for a null field everywhere.
"""
import enum
import gzip
import logging
import os
import tempfile
from dataclasses import dataclass, field
from email.utils import format_datetime, parsedate_to_datetime
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

NULL_TOKEN = "\\N"

BASICS_FILE = "title.basics.tsv.gz"
EPISODES_FILE = "title.episode.tsv.gz"
RATINGS_FILE = "title.ratings.tsv.gz"


class Kind(str, enum.Enum):
    MOVIE = "movie"
    SHOW = "show"
    EPISODE = "episode"      # set aside: only its display name is used, by the episode pass
    DISCARDED = "discarded"


# Every titleType IMDb documents. Anything not listed here is an unknown token.
KIND_TOKENS: Dict[str, Kind] = {
    "movie": Kind.MOVIE,
    "tvMovie": Kind.MOVIE,
    "tvSeries": Kind.SHOW,
    "tvMiniSeries": Kind.SHOW,
    "tvEpisode": Kind.EPISODE,
    "short": Kind.DISCARDED,
    "tvShort": Kind.DISCARDED,
    "tvSpecial": Kind.DISCARDED,
    "tvPilot": Kind.DISCARDED,
    "video": Kind.DISCARDED,
    "videoGame": Kind.DISCARDED,
}


def is_known_kind(token: str) -> bool:
    return token in KIND_TOKENS


def classify_kind(token: str) -> Kind:
    """Map a titleType token to a Kind. Unknown tokens are discarded."""
    return KIND_TOKENS.get(token, Kind.DISCARDED)


class MalformedLine(ValueError):
    pass


class DatasetDownloadError(Exception):
    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


@dataclass
class TitleRecord:
    imdb_id: str
    type: str
    display_name: str
    original_title: Optional[str] = None
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    runtime_minutes: Optional[int] = None
    genres: List[str] = field(default_factory=list)


@dataclass
class EpisodeRecord:
    imdb_id: str
    parent_imdb_id: str
    season: Optional[int]
    episode: Optional[int]


@dataclass
class RatingRecord:
    imdb_id: str
    average_rating: float
    num_votes: int


@dataclass
class DatasetFiles:
    basics: str
    episodes: str
    ratings: str

    def paths(self) -> List[str]:
        return [self.basics, self.episodes, self.ratings]


def _null(value: str) -> Optional[str]:
    return None if value == NULL_TOKEN else value


def _int_or_none(value: str) -> Optional[int]:
    if value == NULL_TOKEN or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def split_line(line: str, min_fields: int) -> List[str]:
    fields = line.rstrip("\r\n").split("\t")
    if len(fields) < min_fields:
        raise MalformedLine(f"expected {min_fields} fields, got {len(fields)}")
    return fields


def parse_title_line(line: str) -> Tuple[str, Optional[TitleRecord], Optional[str]]:
    """Parse a title.basics line.

    Returns (token, record, episode_name): `record` is set for movies and shows,
    `episode_name` for tvEpisode rows, neither for discarded kinds.
    """
    fields = split_line(line, 9)
    imdb_id, token, display_name = fields[0], fields[1], fields[2]
    kind = classify_kind(token)
    if kind is Kind.EPISODE:
        return token, None, _null(display_name)
    if kind is Kind.DISCARDED:
        return token, None, None
    original_title = _null(fields[3])
    display_name = _null(display_name) or original_title
    if not display_name:
        raise MalformedLine(f"{imdb_id} has neither a primary nor an original title")
    genres_raw = _null(fields[8])
    record = TitleRecord(
        imdb_id=imdb_id,
        type=kind.value,
        display_name=display_name,
        original_title=original_title,
        start_year=_int_or_none(fields[5]),
        end_year=_int_or_none(fields[6]),
        runtime_minutes=_int_or_none(fields[7]),
        genres=[g for g in genres_raw.split(",") if g] if genres_raw else [],
    )
    return token, record, None


def parse_episode_line(line: str) -> EpisodeRecord:
    fields = split_line(line, 4)
    return EpisodeRecord(
        imdb_id=fields[0],
        parent_imdb_id=fields[1],
        season=_int_or_none(fields[2]),
        episode=_int_or_none(fields[3]),
    )


def parse_rating_line(line: str) -> RatingRecord:
    fields = split_line(line, 3)
    try:
        return RatingRecord(imdb_id=fields[0], average_rating=float(fields[1]), num_votes=int(fields[2]))
    except ValueError as e:
        raise MalformedLine(str(e)) from e


def decode_line(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedLine(f"invalid UTF-8 at byte {e.start}") from e


def iter_tsv(path: str) -> Iterator[bytes]:
    """Yield raw data lines of a gzip'd TSV, header skipped, decompressed on the fly.

    Lines are decoded one at a time with decode_line(), so a bad byte costs one row.
    """
    with gzip.open(path, "rb") as fh:
        next(fh, None)
        for line in fh:
            if line.strip():
                yield line


def download_file(url: str, dest: str, client: Optional[httpx.Client] = None, timeout: float = 300.0) -> bool:
    """Fetch `url` into `dest` unless the server says our copy is current.

    Returns True when a new file was written, False on 304.
    """
    headers = {}
    if os.path.exists(dest):
        mtime = datetime.fromtimestamp(os.path.getmtime(dest), tz=timezone.utc)
        headers["If-Modified-Since"] = format_datetime(mtime, usegmt=True)

    own_client = client is None
    http = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        with http.stream("GET", url, headers=headers) as resp:
            if resp.status_code == 304:
                logger.info(f"{os.path.basename(dest)}: not modified, keeping local copy")
                return False
            if resp.status_code != 200:
                raise DatasetDownloadError(url, f"bad status {resp.status_code}")

            fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(dest) or ".", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as out:
                    for chunk in resp.iter_bytes():
                        out.write(chunk)
                os.replace(tmp_path, dest)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise

            last_modified = resp.headers.get("Last-Modified")
            if last_modified:
                try:
                    ts = parsedate_to_datetime(last_modified).timestamp()
                    os.utime(dest, (ts, ts))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring unparseable Last-Modified {last_modified!r}: {e}")
            logger.info(f"Downloaded {os.path.basename(dest)}")
            return True
    except httpx.HTTPError as e:
        raise DatasetDownloadError(url, str(e)) from e
    finally:
        if own_client:
            http.close()


def download_datasets(dataset_dir: str, client: Optional[httpx.Client] = None, settings=None) -> DatasetFiles:
    """Download all three files; any failure aborts the whole set."""
    if settings is None:
        from mediacanon.core.config import settings
    os.makedirs(dataset_dir, exist_ok=True)
    files = DatasetFiles(
        basics=os.path.join(dataset_dir, BASICS_FILE),
        episodes=os.path.join(dataset_dir, EPISODES_FILE),
        ratings=os.path.join(dataset_dir, RATINGS_FILE),
    )
    for url, dest in (
        (settings.imdb_basics_url, files.basics),
        (settings.imdb_episodes_url, files.episodes),
        (settings.imdb_ratings_url, files.ratings),
    ):
        logger.info(f"Downloading {url}...")
        download_file(url, dest, client=client, timeout=settings.download_timeout_seconds)
    return files
