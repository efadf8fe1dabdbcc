"""
models.py

SQLAlchemy models for the canonical media store: titles with their movie/show
subtype rows, seasons, episodes, genres and the sync checkpoint table.
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    REAL, String, Table, Text, UniqueConstraint, false, func, true,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from mediacanon.resolvable import EPISODE_IMAGE_NOT_FOUND, TITLE_IMAGE_NOT_FOUND, ResolvableText

Base = declarative_base()

MOVIE = "movie"
SHOW = "show"

title_genres = Table(
    "title_genres",
    Base.metadata,
    Column("title_id", Integer, ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True),
    Column("genre_id", Integer, ForeignKey("genres.id", ondelete="CASCADE"), primary_key=True),
    Index("idx_title_genres_genre", "genre_id"),
)


class Title(Base):
    __tablename__ = "titles"
    id = Column(Integer, primary_key=True)
    type = Column(String(20), nullable=False)  # 'movie' or 'show'; fixed once set
    display_name = Column(String(500), nullable=False)
    original_title = Column(String(500))
    start_year = Column(Integer)
    end_year = Column(Integer)
    runtime_minutes = Column(Integer)
    imdb_id = Column(String(20), unique=True)
    tmdb_id = Column(Integer)
    image_url = Column(ResolvableText(TITLE_IMAGE_NOT_FOUND))
    num_votes = Column(Integer)
    average_rating = Column(REAL)  # single precision; see BulkDiffImporter ratings diff
    original_language = Column(String(10))
    release_date = Column(Date)
    tmdb_popularity = Column(REAL)
    origin_country = Column(String(10))
    # Freshness markers
    needs_backfill_tmdb = Column(Boolean, nullable=False, default=True, server_default=true())
    episodes_checked_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    movie = relationship("Movie", uselist=False, back_populates="title", passive_deletes=True)
    show = relationship("Show", uselist=False, back_populates="title", passive_deletes=True)
    genres = relationship("Genre", secondary=title_genres, viewonly=True, order_by="Genre.name")

    __table_args__ = (
        CheckConstraint("type IN ('movie', 'show')", name="ck_titles_type"),
        Index("idx_titles_num_votes", "num_votes"),
        Index("idx_titles_tmdb_popularity", "tmdb_popularity"),
        Index(
            "idx_titles_needs_backfill", "needs_backfill_tmdb",
            postgresql_where=needs_backfill_tmdb.is_(True),
        ),
    )

    @validates("type")
    def _validate_type(self, key, value):
        if value not in (MOVIE, SHOW):
            raise ValueError(f"unknown title type {value!r}")
        if self.type is not None and self.type != value:
            raise ValueError(f"title {self.imdb_id or self.id} is a {self.type}; type cannot change to {value}")
        return value


class Movie(Base):
    __tablename__ = "movies"
    id = Column(Integer, primary_key=True)
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, unique=True)
    title = relationship("Title", back_populates="movie")


class Show(Base):
    __tablename__ = "shows"
    id = Column(Integer, primary_key=True)
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, unique=True)
    title = relationship("Title", back_populates="show")
    seasons = relationship("ShowSeason", back_populates="show", order_by="ShowSeason.season", passive_deletes=True)


class ShowSeason(Base):
    __tablename__ = "show_seasons"
    id = Column(Integer, primary_key=True)
    show_id = Column(Integer, ForeignKey("shows.id", ondelete="CASCADE"), nullable=False, index=True)
    season = Column(Integer, nullable=False)
    show = relationship("Show", back_populates="seasons")
    episodes = relationship("ShowEpisode", back_populates="season", order_by="ShowEpisode.episode", passive_deletes=True)

    __table_args__ = (UniqueConstraint("show_id", "season", name="uq_show_seasons_show_season"),)


class ShowEpisode(Base):
    __tablename__ = "show_episodes"
    id = Column(Integer, primary_key=True)
    season_id = Column(Integer, ForeignKey("show_seasons.id", ondelete="CASCADE"), nullable=False, index=True)
    episode = Column(Integer, nullable=False)
    display_name = Column(String(500))
    image_url = Column(ResolvableText(EPISODE_IMAGE_NOT_FOUND))
    air_date = Column(Date)
    runtime_minutes = Column(Integer)
    synopsis = Column(Text)
    season = relationship("ShowSeason", back_populates="episodes")

    __table_args__ = (UniqueConstraint("season_id", "episode", name="uq_show_episodes_season_episode"),)


class Genre(Base):
    __tablename__ = "genres"
    id = Column(Integer, primary_key=True)
    name = Column(String(50), nullable=False, unique=True)
    # Curated genres assigned through the review file, never by the dataset import
    is_custom = Column(Boolean, nullable=False, default=False, server_default=false())


class GenreReview(Base):
    """A title whose genres were reviewed by hand. Reviewed titles are not exported again."""
    __tablename__ = "custom_genre_reviews"
    title_id = Column(Integer, ForeignKey("titles.id", ondelete="CASCADE"), primary_key=True)
    reviewed_at = Column(DateTime(timezone=True), server_default=func.now())


class SyncState(Base):
    """Generic key/value checkpoint row (e.g. last imported dataset fingerprint)."""
    __tablename__ = "sync_state"
    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
