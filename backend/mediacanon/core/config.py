from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    log_level: str = "INFO"

    database_url: str = "postgresql+psycopg2://mediacanon:mediacanon@db:5432/mediacanon"
    redis_url: str = "redis://redis:6379/0"

    # Detail API (TMDB). Backfill and lazy fetching are disabled without a key.
    tmdb_api_key: str = ""
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_image_base_url: str = "https://image.tmdb.org/t/p"
    tmdb_poster_size: str = "w500"
    tmdb_still_size: str = "w400"
    tmdb_timeout_seconds: float = 10.0
    # ~40 req/sec to stay under the TMDB rate limit
    tmdb_min_interval_seconds: float = 0.025
    tmdb_throttle_cooldown_seconds: float = 5.0

    # Bulk dataset (IMDb non-commercial TSV files)
    dataset_dir: str = "./imdb_data"
    imdb_basics_url: str = "https://datasets.imdbws.com/title.basics.tsv.gz"
    imdb_episodes_url: str = "https://datasets.imdbws.com/title.episode.tsv.gz"
    imdb_ratings_url: str = "https://datasets.imdbws.com/title.ratings.tsv.gz"
    download_timeout_seconds: float = 300.0

    # Bulk diff/import
    import_batch_size: int = 5000
    import_workers: int = 8
    # Abort instead of discarding when the dataset carries a kind token we have never seen
    import_strict_kinds: bool = False

    # Hand-curated genres offered by the genre review file (JSON list in the environment)
    custom_genres: List[str] = ["Dating", "Cooking"]

    # Backfill
    backfill_enabled: bool = True
    backfill_page_size: int = 100

    # Lazy fetch (request path)
    episode_cooldown_hours: int = 24
    episode_fetch_concurrency: int = 5
    episode_retry_attempts: int = 3
    episode_retry_base_seconds: float = 2.0

    @property
    def tmdb_enabled(self) -> bool:
        return bool(self.tmdb_api_key)


settings = Settings()
