import os
import unittest

from mediacanon.crud import get_sync_state
from mediacanon.services.change_detector import CHECKPOINT_KEY, ChangeDetector, fingerprint_files
from store_fixtures import make_store, make_tempdir


class TestChangeDetector(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_store(self)
        self.tmp = make_tempdir(self)
        self.paths = []
        for name, content in (("b.tsv.gz", b"basics"), ("a.tsv.gz", b"episodes"), ("c.tsv.gz", b"ratings")):
            path = os.path.join(self.tmp, name)
            with open(path, "wb") as fh:
                fh.write(content)
            self.paths.append(path)

    def test_fingerprint_ignores_argument_order(self):
        self.assertEqual(fingerprint_files(self.paths), fingerprint_files(list(reversed(self.paths))))

    def test_fingerprint_tracks_content(self):
        before = fingerprint_files(self.paths)
        with open(self.paths[0], "ab") as fh:
            fh.write(b"!")
        self.assertNotEqual(before, fingerprint_files(self.paths))

    def test_decisions(self):
        detector = ChangeDetector(self.Session)

        first = detector.check(self.paths)
        self.assertTrue(first.changed)
        self.assertEqual(first.reason, "first_run")

        # Nothing is recorded until the caller commits a successful import
        self.assertTrue(detector.check(self.paths).changed)
        self.assertTrue(detector.commit(first.fingerprint))

        unchanged = detector.check(self.paths)
        self.assertFalse(unchanged.changed)
        self.assertEqual(unchanged.reason, "unchanged")

        forced = detector.check(self.paths, force=True)
        self.assertTrue(forced.changed)
        self.assertEqual(forced.reason, "forced")

        with open(self.paths[2], "ab") as fh:
            fh.write(b"more")
        changed = detector.check(self.paths)
        self.assertTrue(changed.changed)
        self.assertEqual(changed.reason, "changed")
        self.assertEqual(changed.previous, first.fingerprint)

        db = self.Session()
        self.assertEqual(get_sync_state(db, CHECKPOINT_KEY), first.fingerprint)
        db.close()


if __name__ == "__main__":
    unittest.main()
