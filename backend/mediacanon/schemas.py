"""
schemas.py

Pydantic views returned by the detail API. Image fields go through
FieldState.or_none(), so NOT_FOUND markers render as null.
"""
from pydantic import BaseModel
from typing import List, Optional
import datetime

from mediacanon.models import Show, ShowEpisode, ShowSeason, Title
from mediacanon.resolvable import FieldState


class GenreView(BaseModel):
    id: int
    name: str
    is_custom: bool = False


class TitleView(BaseModel):
    id: int
    type: str
    display_name: str
    original_title: Optional[str] = None
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    runtime_minutes: Optional[int] = None
    imdb_id: Optional[str] = None
    tmdb_id: Optional[int] = None
    image_url: Optional[str] = None
    num_votes: Optional[int] = None
    average_rating: Optional[float] = None
    original_language: Optional[str] = None
    release_date: Optional[datetime.date] = None
    tmdb_popularity: Optional[float] = None
    origin_country: Optional[str] = None
    genres: List[GenreView] = []
    show_id: Optional[int] = None

    @classmethod
    def from_title(cls, title: Title) -> "TitleView":
        return cls(
            id=title.id,
            type=title.type,
            display_name=title.display_name,
            original_title=title.original_title,
            start_year=title.start_year,
            end_year=title.end_year,
            runtime_minutes=title.runtime_minutes,
            imdb_id=title.imdb_id,
            tmdb_id=title.tmdb_id,
            image_url=FieldState.of(title.image_url).or_none(),
            num_votes=title.num_votes,
            average_rating=title.average_rating,
            original_language=title.original_language,
            release_date=title.release_date,
            tmdb_popularity=title.tmdb_popularity,
            origin_country=title.origin_country,
            genres=[GenreView(id=g.id, name=g.name, is_custom=bool(g.is_custom)) for g in title.genres],
            show_id=title.show.id if title.show is not None else None,
        )


class EpisodeView(BaseModel):
    id: int
    episode: int
    display_name: Optional[str] = None
    image_url: Optional[str] = None
    air_date: Optional[datetime.date] = None
    runtime_minutes: Optional[int] = None
    synopsis: Optional[str] = None

    @classmethod
    def from_episode(cls, ep: ShowEpisode) -> "EpisodeView":
        return cls(
            id=ep.id,
            episode=ep.episode,
            display_name=ep.display_name,
            image_url=FieldState.of(ep.image_url).or_none(),
            air_date=ep.air_date,
            runtime_minutes=ep.runtime_minutes,
            synopsis=ep.synopsis,
        )


class SeasonView(BaseModel):
    id: int
    season: int
    episodes: List[EpisodeView] = []

    @classmethod
    def from_season(cls, season: ShowSeason) -> "SeasonView":
        return cls(
            id=season.id,
            season=season.season,
            episodes=[EpisodeView.from_episode(ep) for ep in season.episodes],
        )


class ShowView(BaseModel):
    id: int
    title: TitleView
    seasons: List[SeasonView] = []

    @classmethod
    def from_show(cls, show: Show) -> "ShowView":
        return cls(
            id=show.id,
            title=TitleView.from_title(show.title),
            seasons=[SeasonView.from_season(s) for s in show.seasons],
        )


class MaintenanceResponse(BaseModel):
    status: str
    message: str
    task_id: Optional[str] = None


class SyncStatusResponse(BaseModel):
    status: str
    updated_at: Optional[str] = None
    error: Optional[str] = None
    result: Optional[dict] = None
