import json
import unittest
from unittest import mock

from redis.exceptions import ConnectionError as RedisConnectionError

from mediacanon.core.config import Settings
from mediacanon.models import Title
from mediacanon.services.imdb_dataset import DatasetDownloadError
from mediacanon.services.sync_pipeline import SyncPipeline, SyncStatusStore
from mediacanon.services.tasks import RELEASE_LOCK_SCRIPT, run_imdb_sync
from store_fixtures import basics_row, make_store, make_tempdir, write_dataset


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.history = []

    def set(self, key, value):
        self.data[key] = value
        self.history.append(json.loads(value)["status"])

    def get(self, key):
        return self.data.get(key)


class BrokenRedis:
    def set(self, key, value):
        raise RedisConnectionError("redis is down")


class TestSyncPipeline(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_store(self)
        self.tmp = make_tempdir(self)
        self.redis = FakeRedis()
        self.settings = Settings(tmdb_api_key="", dataset_dir=self.tmp, import_batch_size=10, import_workers=1)
        self.files = write_dataset(
            self.tmp,
            [basics_row("tt1", "movie", "Movie", start="2001"), basics_row("tt2", "tvSeries", "Show")],
            ratings=[["tt1", "6.5", "42"]],
        )
        self.downloads = 0

    def downloader(self, dataset_dir, settings=None):
        self.downloads += 1
        return self.files

    def pipeline(self, **kwargs):
        kwargs.setdefault("status_store", SyncStatusStore(lambda: self.redis))
        kwargs.setdefault("downloader", self.downloader)
        return SyncPipeline(self.engine, self.Session, self.settings, **kwargs)

    def test_unchanged_files_skip_the_import(self):
        first = self.pipeline().run()
        self.assertTrue(first.changed)
        self.assertEqual(first.reason, "first_run")
        self.assertEqual(first.import_report.titles.inserted, 2)
        self.assertTrue(first.checkpoint_saved)
        self.assertIn("backfill skipped: no TMDB API key", first.notes)

        second = self.pipeline().run()
        self.assertFalse(second.changed)
        self.assertIsNone(second.import_report)
        self.assertEqual(self.downloads, 2)
        self.assertEqual(self.redis.history, ["running", "complete", "running", "complete"])

        status = SyncStatusStore(lambda: self.redis).read()
        self.assertEqual(status["status"], "complete")
        self.assertFalse(status["result"]["changed"])

    def test_force_reimports_without_writes(self):
        self.pipeline().run()
        forced = self.pipeline().run(force=True)
        self.assertTrue(forced.changed)
        self.assertEqual(forced.reason, "forced")
        self.assertEqual(forced.import_report.inserted, 0)
        self.assertEqual(forced.import_report.updated, 0)

    def test_download_failure_aborts_before_import(self):
        def failing_downloader(dataset_dir, settings=None):
            raise DatasetDownloadError("https://datasets.test/x", "bad status 503")

        with self.assertRaises(DatasetDownloadError):
            self.pipeline(downloader=failing_downloader).run()
        self.assertEqual(self.redis.history, ["running", "error"])

        db = self.Session()
        self.assertEqual(db.query(Title).count(), 0)
        db.close()

    def test_status_failures_do_not_break_the_run(self):
        result = self.pipeline(status_store=SyncStatusStore(lambda: BrokenRedis())).run(skip_backfill=True)
        self.assertTrue(result.changed)
        self.assertIn("backfill skipped by request", result.notes)


class TestSyncTaskLock(unittest.TestCase):
    def test_overlapping_trigger_is_skipped(self):
        held = mock.Mock()
        held.set.return_value = None
        with mock.patch("mediacanon.services.tasks.get_redis_sync", return_value=held), \
                mock.patch("mediacanon.services.sync_pipeline.build_pipeline") as build:
            result = run_imdb_sync.apply(kwargs={"force": True}).get()
        self.assertEqual(result["status"], "skipped")
        build.assert_not_called()
        held.eval.assert_not_called()

    def test_lock_released_after_run(self):
        free = mock.Mock()
        free.set.return_value = True
        free.eval.return_value = 1
        pipeline = mock.Mock()
        pipeline.run.return_value.to_dict.return_value = {"changed": False}
        with mock.patch("mediacanon.services.tasks.get_redis_sync", return_value=free), \
                mock.patch("mediacanon.services.sync_pipeline.build_pipeline", return_value=pipeline):
            result = run_imdb_sync.apply(kwargs={"force": True}).get()
        self.assertEqual(result, {"status": "complete", "changed": False})
        pipeline.run.assert_called_once_with(force=True, skip_backfill=False)
        token = free.set.call_args[0][1]
        free.eval.assert_called_once_with(RELEASE_LOCK_SCRIPT, 1, "lock:imdb_sync", token)
        free.delete.assert_not_called()

    def test_expired_lock_is_left_to_its_new_holder(self):
        taken_over = mock.Mock()
        taken_over.set.return_value = True
        taken_over.eval.return_value = 0
        pipeline = mock.Mock()
        pipeline.run.return_value.to_dict.return_value = {"changed": True}
        with mock.patch("mediacanon.services.tasks.get_redis_sync", return_value=taken_over), \
                mock.patch("mediacanon.services.sync_pipeline.build_pipeline", return_value=pipeline):
            result = run_imdb_sync.apply().get()
        self.assertEqual(result["status"], "complete")
        taken_over.delete.assert_not_called()


if __name__ == "__main__":
    unittest.main()
