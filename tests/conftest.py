import os
import tempfile

# Module-level engines and settings are built at import time; point them at
# throwaway local resources before any mediacanon module is imported.
_tmp = tempfile.mkdtemp(prefix="mediacanon-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_tmp, 'app.db')}")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("TMDB_API_KEY", "")
os.environ.setdefault("DATASET_DIR", os.path.join(_tmp, "imdb_data"))
