"""Shared helpers for the unit tests: SQLite stores, dataset files, a stub TMDB."""
import gzip
import os
import shutil
import tempfile

import httpx

from mediacanon.core.database import init_db, make_engine, make_session_factory
from mediacanon.services.imdb_dataset import BASICS_FILE, EPISODES_FILE, RATINGS_FILE, DatasetFiles
from mediacanon.services.rate_limit import MinIntervalLimiter
from mediacanon.services.tmdb_client import TMDBClient

BASICS_HEADER = ["tconst", "titleType", "primaryTitle", "originalTitle", "isAdult",
                 "startYear", "endYear", "runtimeMinutes", "genres"]
EPISODES_HEADER = ["tconst", "parentTconst", "seasonNumber", "episodeNumber"]
RATINGS_HEADER = ["tconst", "averageRating", "numVotes"]

N = "\\N"


def make_tempdir(test_case) -> str:
    path = tempfile.mkdtemp(prefix="mediacanon-")
    test_case.addCleanup(shutil.rmtree, path, True)
    return path


def make_store(test_case):
    """Fresh SQLite store with the schema created. Returns (engine, session_factory)."""
    tmp = make_tempdir(test_case)
    engine = make_engine(f"sqlite:///{os.path.join(tmp, 'store.db')}")
    init_db(engine)
    test_case.addCleanup(engine.dispose)
    return engine, make_session_factory(engine)


def write_tsv_gz(path, header, rows):
    with gzip.open(path, "wt", encoding="utf-8", newline="\n") as fh:
        fh.write("\t".join(header) + "\n")
        for row in rows:
            fh.write((row if isinstance(row, str) else "\t".join(str(v) for v in row)) + "\n")
    return path


def write_dataset(directory, basics=(), episodes=(), ratings=()) -> DatasetFiles:
    return DatasetFiles(
        basics=write_tsv_gz(os.path.join(directory, BASICS_FILE), BASICS_HEADER, basics),
        episodes=write_tsv_gz(os.path.join(directory, EPISODES_FILE), EPISODES_HEADER, episodes),
        ratings=write_tsv_gz(os.path.join(directory, RATINGS_FILE), RATINGS_HEADER, ratings),
    )


def basics_row(imdb_id, kind, name, start=N, end=N, runtime=N, genres=N, original=None):
    return [imdb_id, kind, name, original if original is not None else name, "0", start, end, runtime, genres]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TMDBStub:
    """MockTransport handler serving canned responses keyed by URL path.

    A route value is (status, json) or a list of those served in order, the
    last one repeating. Unknown paths answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._served = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        route = self.routes.get(path)
        if route is None:
            return httpx.Response(404, json={"status_message": "not found"})
        if isinstance(route, list):
            index = self._served.get(path, 0)
            self._served[path] = index + 1
            route = route[min(index, len(route) - 1)]
        status, body = route
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def calls_to(self, prefix):
        return [c for c in self.calls if c.startswith(prefix)]


def make_client(stub: TMDBStub, sleep=None) -> TMDBClient:
    return TMDBClient(
        "test-key",
        base_url="https://tmdb.test",
        image_base_url="https://image.test",
        limiter=MinIntervalLimiter(0),
        transport=httpx.MockTransport(stub),
        sleep=sleep,
    )
