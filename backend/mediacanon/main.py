from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware
import logging

from mediacanon.api import maintenance, titles
from mediacanon.core.config import settings
from mediacanon.core.database import init_db
from mediacanon.utils.logger import configure_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="MediaCanon API", version="1.0.0")

# Add GZip compression middleware for episode-heavy show payloads
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(titles.router, prefix="/api", tags=["Titles"])
app.include_router(maintenance.router, prefix="/api/maintenance", tags=["Maintenance"])


@app.on_event("startup")
async def startup_event():
    configure_logging()
    init_db()

    app.state.lazy_gate = None
    if settings.tmdb_enabled:
        from mediacanon.services.lazy_fetch import LazyFetchGate
        from mediacanon.services.tmdb_client import TMDBClient

        app.state.tmdb_client = TMDBClient.from_settings(settings)
        app.state.lazy_gate = LazyFetchGate.from_settings(app.state.tmdb_client, settings)
        logger.info("Lazy TMDB fetching enabled")
    else:
        logger.info("TMDB API key not configured; lazy fetching disabled")


@app.on_event("shutdown")
async def shutdown_event():
    client = getattr(app.state, "tmdb_client", None)
    if client is not None:
        await client.aclose()


@app.get("/")
def root():
    return {"status": "MediaCanon API Running"}


@app.get("/health")
async def health_check():
    """Simple health check endpoint for load balancers/monitoring"""
    try:
        from sqlalchemy import text
        from mediacanon.core.redis_client import get_redis_sync
        from mediacanon.core.database import SessionLocal

        # Quick Redis check
        get_redis_sync().ping()

        # Quick DB check
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        from mediacanon.utils.timezone import utc_now
        return {"status": "healthy", "timestamp": utc_now().isoformat()}
    except Exception as e:
        from fastapi import HTTPException
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")
