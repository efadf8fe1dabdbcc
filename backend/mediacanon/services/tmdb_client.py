"""
TMDB client for MediaCanon.
- Async httpx client, one instance per pipeline run or app process.
- Every call waits on the shared MinIntervalLimiter first.
- 429 -> ThrottledError, 404 -> NotFoundError, anything else -> DetailAPIError.
- No in-module caching; results are persisted by the caller.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from mediacanon.services.rate_limit import (
    NO_RETRY, MinIntervalLimiter, RateLimitExceeded, RetryPolicy, get_tmdb_limiter, with_backoff,
)

logger = logging.getLogger(__name__)

MOVIE_KIND = "movie"
TV_KIND = "tv"


class DetailAPIError(Exception):
    """Non-success response, transport failure or undecodable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ThrottledError(DetailAPIError, RateLimitExceeded):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        DetailAPIError.__init__(self, message, status_code=429)
        self.service = "tmdb_api"
        self.retry_after = retry_after


class NotFoundError(DetailAPIError):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


@dataclass
class FindResult:
    """Lookup-by-IMDb-id results partitioned by media kind."""
    movie_results: List[Dict[str, Any]] = field(default_factory=list)
    tv_results: List[Dict[str, Any]] = field(default_factory=list)

    def pick(self, title_type: Optional[str]):
        """Return (record, kind) for the title's own kind, else any movie, else any tv."""
        if title_type == "show" and self.tv_results:
            return self.tv_results[0], TV_KIND
        if title_type == "movie" and self.movie_results:
            return self.movie_results[0], MOVIE_KIND
        if self.movie_results:
            return self.movie_results[0], MOVIE_KIND
        if self.tv_results:
            return self.tv_results[0], TV_KIND
        return None, None


@dataclass
class TitleDetails:
    poster_path: Optional[str] = None
    original_language: Optional[str] = None
    release_date: Optional[str] = None
    popularity: Optional[float] = None
    origin_country: Optional[str] = None
    runtime: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "TitleDetails":
        """Build from either a find result or a movie/tv details body."""
        country = None
        origin = data.get("origin_country") or []
        if isinstance(origin, str):
            origin = [origin]
        if origin:
            country = origin[0]
        else:
            production = data.get("production_countries") or []
            if production:
                country = production[0].get("iso_3166_1")

        runtime = data.get("runtime")
        if not runtime:
            run_times = data.get("episode_run_time") or []
            runtime = run_times[0] if run_times else None

        return cls(
            poster_path=data.get("poster_path") or None,
            original_language=data.get("original_language") or None,
            release_date=data.get("release_date") or data.get("first_air_date") or None,
            popularity=data.get("popularity"),
            origin_country=country or None,
            runtime=runtime or None,
        )


@dataclass
class EpisodeDetails:
    still_path: Optional[str] = None
    air_date: Optional[str] = None
    runtime: Optional[int] = None
    name: Optional[str] = None
    overview: Optional[str] = None


class TMDBClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.themoviedb.org/3",
        image_base_url: str = "https://image.tmdb.org/t/p",
        timeout: float = 10.0,
        limiter: Optional[MinIntervalLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.image_base_url = image_base_url.rstrip("/")
        self.limiter = limiter or get_tmdb_limiter()
        self._sleep = sleep
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TMDBClient":
        return cls(
            settings.tmdb_api_key,
            base_url=settings.tmdb_base_url,
            image_base_url=settings.tmdb_image_base_url,
            timeout=settings.tmdb_timeout_seconds,
            **kwargs,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    async def _get_once(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        await self.limiter.acquire()
        query = {"api_key": self.api_key}
        if params:
            query.update(params)
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.get(url, params=query)
        except httpx.HTTPError as e:
            raise DetailAPIError(f"TMDB request {path} failed: {e}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            raise ThrottledError(f"TMDB throttled {path}", retry_after=retry_after)
        if resp.status_code == 404:
            raise NotFoundError(f"TMDB has no {path}")
        if resp.status_code != 200:
            raise DetailAPIError(f"TMDB {path} returned {resp.status_code}", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise DetailAPIError(f"TMDB {path} returned an undecodable body") from e

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None,
                   retry: RetryPolicy = NO_RETRY) -> Dict[str, Any]:
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return await with_backoff(
            lambda: self._get_once(path, params),
            policy=retry,
            retry_on=(ThrottledError,),
            label=f"TMDB {path}",
            **kwargs,
        )

    async def find_by_imdb_id(self, imdb_id: str) -> FindResult:
        data = await self._get(f"/find/{imdb_id}", {"external_source": "imdb_id"})
        return FindResult(
            movie_results=data.get("movie_results") or [],
            tv_results=data.get("tv_results") or [],
        )

    async def get_details(self, tmdb_id: int, kind: str) -> TitleDetails:
        """Movie or TV details; `kind` is "movie" or "tv"."""
        data = await self._get(f"/{kind}/{tmdb_id}")
        return TitleDetails.from_payload(data)

    async def get_episode(self, tmdb_id: int, season: int, episode: int,
                          retry: RetryPolicy = NO_RETRY) -> EpisodeDetails:
        data = await self._get(f"/tv/{tmdb_id}/season/{season}/episode/{episode}", retry=retry)
        return EpisodeDetails(
            still_path=data.get("still_path") or None,
            air_date=data.get("air_date") or None,
            runtime=data.get("runtime") or None,
            name=data.get("name") or None,
            overview=data.get("overview") or None,
        )

    def image_url(self, path: Optional[str], size: str) -> Optional[str]:
        if not path:
            return None
        return f"{self.image_base_url}/{size}{path}"
