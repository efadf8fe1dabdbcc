"""
Download the IMDb datasets and sync them into the store, then backfill TMDB data.

Usage:
    PYTHONPATH=backend python -m mediacanon.scripts.sync_imdb [--force]
    PYTHONPATH=backend python -m mediacanon.scripts.sync_imdb --genres-export review.txt [--genres-filter Reality-TV]
    PYTHONPATH=backend python -m mediacanon.scripts.sync_imdb --genres-import review.txt

Options:
    --force               Import even if the dataset fingerprint is unchanged
    --batch N             Rows per write batch (default: IMPORT_BATCH_SIZE)
    --workers N           Concurrent write workers (default: IMPORT_WORKERS)
    --dir PATH            Dataset directory (default: DATASET_DIR)
    --skip-backfill       Stop after the import
    --genres-export FILE  Write unreviewed titles to FILE for custom genre review, then exit
    --genres-import FILE  Apply a filled-in review FILE, then exit
    --genres-limit N      Titles to export (default: 100)
    --genres-filter LIST  Only export titles with these IMDb genres (comma-separated)
"""
import argparse
import logging
import sys

from mediacanon.core.config import settings
from mediacanon.services.bulk_importer import ImportAbortedError
from mediacanon.services.imdb_dataset import DatasetDownloadError
from mediacanon.utils.logger import configure_logging

logger = logging.getLogger("mediacanon.scripts.sync_imdb")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync IMDb datasets into the MediaCanon store")
    parser.add_argument("--force", action="store_true", help="Import even if the files are unchanged")
    parser.add_argument("--batch", type=int, default=settings.import_batch_size,
                        help=f"Rows per write batch (default: {settings.import_batch_size})")
    parser.add_argument("--workers", type=int, default=settings.import_workers,
                        help=f"Concurrent write workers (default: {settings.import_workers})")
    parser.add_argument("--dir", default=settings.dataset_dir,
                        help=f"Dataset directory (default: {settings.dataset_dir})")
    parser.add_argument("--skip-backfill", action="store_true", help="Skip the TMDB backfill")

    review = parser.add_argument_group("custom genre review")
    review.add_argument("--genres-export", metavar="FILE", help="Export unreviewed titles for genre review")
    review.add_argument("--genres-import", metavar="FILE", help="Import genre assignments from a reviewed file")
    review.add_argument("--genres-limit", type=int, default=100, help="Titles to export (default: 100)")
    review.add_argument("--genres-filter", default="",
                        help="Only export titles with these IMDb genres (comma-separated, e.g. 'Reality-TV,Game-Show')")
    return parser


def run_genre_review(args) -> int:
    from mediacanon.core.database import SessionLocal
    from mediacanon.services.genre_review import export_genre_review, import_genre_review

    db = SessionLocal()
    try:
        if args.genres_export:
            filter_genres = [g.strip() for g in args.genres_filter.split(",") if g.strip()]
            export_genre_review(db, args.genres_export, limit=args.genres_limit,
                                filter_genres=filter_genres, custom_names=settings.custom_genres)
        else:
            report = import_genre_review(db, args.genres_import, custom_names=settings.custom_genres)
            if report.unknown_genres:
                logger.warning(f"Unknown genres ignored: {report.unknown_genres}")
    except OSError as e:
        logger.error(f"Genre review file error: {e}")
        return 1
    finally:
        db.close()
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    from mediacanon.core.database import init_db

    if args.genres_export or args.genres_import:
        init_db()
        return run_genre_review(args)

    run_settings = settings.model_copy(update={
        "import_batch_size": args.batch,
        "import_workers": args.workers,
        "dataset_dir": args.dir,
    })

    from mediacanon.services.sync_pipeline import build_pipeline

    logger.info(f"Settings: batch={args.batch}, workers={args.workers}, dir={args.dir}, force={args.force}")
    init_db()
    try:
        result = build_pipeline(run_settings).run(force=args.force, skip_backfill=args.skip_backfill)
    except DatasetDownloadError as e:
        logger.error(f"Download failed, nothing imported: {e}")
        return 1
    except ImportAbortedError as e:
        logger.error(f"Import aborted during {e.stage}; re-run to converge: {e}")
        return 2

    if result.import_report:
        report = result.import_report
        logger.info(
            f"Done: {report.inserted} inserted, {report.updated} updated, "
            f"{report.unchanged} unchanged, {report.skipped} skipped, {report.errors} errors"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
