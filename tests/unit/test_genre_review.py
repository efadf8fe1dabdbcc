import os
import unittest

from mediacanon.models import Genre, GenreReview, Title
from mediacanon.services.bulk_importer import BulkDiffImporter
from mediacanon.services.genre_review import (
    ensure_custom_genres, export_genre_review, format_votes, import_genre_review, parse_review_entries,
)
from store_fixtures import basics_row, make_store, make_tempdir, write_dataset

BASICS = [
    basics_row("tt1", "tvSeries", "Love Island", start="2015", genres="Reality-TV,Romance"),
    basics_row("tt2", "tvSeries", "Chef Show", start="2019", genres="Reality-TV"),
    basics_row("tt3", "movie", "Big Drama", start="2001", genres="Drama"),
    basics_row("tt4", "movie", "Obscure"),
]
RATINGS = [["tt1", "6.5", "5000"], ["tt2", "7.0", "1500"], ["tt3", "8.1", "2000000"]]


def test_format_votes():
    assert format_votes(999) == "999"
    assert format_votes(5000) == "5K"
    assert format_votes(2_000_000) == "2.0M"


def test_parse_review_entries():
    lines = [
        "# header\n",
        "[1] Something | show\n",
        "GENRES: Dating,  Cooking ,\n",
        "[abc] broken id\n",
        "GENRES: Dating\n",
        "[2] Other\n",
        "GENRES: None\n",
        "GENRES: Dating\n",
        "[3] Unanswered\n",
    ]
    assert list(parse_review_entries(lines)) == [(1, ["Dating", "Cooking"]), (2, [])]


class TestGenreReview(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_store(self)
        self.tmp = make_tempdir(self)
        self.files = write_dataset(self.tmp, BASICS, ratings=RATINGS)
        BulkDiffImporter(self.engine, batch_size=10, workers=1).import_from(self.files)
        db = self.Session()
        self.ids = {t.imdb_id: t.id for t in db.query(Title).all()}
        db.close()
        self.path = os.path.join(self.tmp, "review.txt")

    def read_lines(self):
        with open(self.path, encoding="utf-8") as fh:
            return fh.read().splitlines()

    def genre_names(self, imdb_id):
        db = self.Session()
        names = [g.name for g in db.get(Title, self.ids[imdb_id]).genres]
        db.close()
        return names

    def apply_review(self, body):
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write(body)
        db = self.Session()
        try:
            return import_genre_review(db, self.path)
        finally:
            db.close()

    def test_export_filters_by_imdb_genre(self):
        db = self.Session()
        count = export_genre_review(db, self.path, filter_genres=["Reality-TV"])
        db.close()
        self.assertEqual(count, 2)

        lines = self.read_lines()
        self.assertIn("Custom genres: Cooking, Dating", lines[1])
        titles = [line for line in lines if line.startswith("[")]
        self.assertEqual(len(titles), 2)
        self.assertTrue(titles[0].startswith(f"[{self.ids['tt1']}] Love Island (2015) | show | 5K votes | 6.5"))
        self.assertTrue(titles[0].endswith("| Reality-TV, Romance"))
        self.assertTrue(titles[1].startswith(f"[{self.ids['tt2']}] Chef Show (2019)"))
        self.assertEqual(lines.count("GENRES:"), 2)

    def test_export_limit_takes_most_voted(self):
        db = self.Session()
        export_genre_review(db, self.path, limit=1)
        db.close()
        titles = [line for line in self.read_lines() if line.startswith("[")]
        self.assertEqual(len(titles), 1)
        self.assertIn("Big Drama (2001) | movie | 2.0M votes | 8.1", titles[0])

    def test_import_assigns_only_custom_genres(self):
        report = self.apply_review(
            f"# reviewed\n"
            f"[{self.ids['tt1']}] Love Island\nGENRES: dating, Romance\n\n"
            f"[{self.ids['tt2']}] Chef Show\nGENRES: Cooking, Dating, cooking\n\n"
            f"[{self.ids['tt3']}] Big Drama\nGENRES: none\n\n"
            f"[999999] Gone\nGENRES: Dating\n"
        )
        self.assertEqual(report.titles, 3)
        self.assertEqual(report.assigned, 3)
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.missing_titles, 1)
        self.assertEqual(report.unknown_genres, {"Romance": 1})

        self.assertEqual(self.genre_names("tt1"), ["Dating", "Reality-TV", "Romance"])
        self.assertEqual(self.genre_names("tt2"), ["Cooking", "Dating", "Reality-TV"])
        self.assertEqual(self.genre_names("tt3"), ["Drama"])

        db = self.Session()
        self.assertEqual(db.query(GenreReview).count(), 3)
        # Reviewed titles are never offered again
        self.assertEqual(export_genre_review(db, self.path), 1)
        db.close()
        self.assertTrue(any(line.startswith(f"[{self.ids['tt4']}] Obscure") for line in self.read_lines()))

    def test_dataset_reimport_keeps_curated_genres(self):
        self.apply_review(f"[{self.ids['tt1']}] Love Island\nGENRES: Dating\n")

        report = BulkDiffImporter(self.engine, batch_size=10, workers=1).import_from(self.files)
        self.assertEqual(report.genres.inserted, 0)
        self.assertEqual(self.genre_names("tt1"), ["Dating", "Reality-TV", "Romance"])

        db = self.Session()
        self.assertTrue(db.query(Genre).filter_by(name="Dating").one().is_custom)
        self.assertFalse(db.query(Genre).filter_by(name="Drama").one().is_custom)
        db.close()

    def test_existing_genre_is_flagged_custom(self):
        db = self.Session()
        db.add(Genre(name="Cooking"))
        db.commit()
        custom = ensure_custom_genres(db)
        self.assertEqual(sorted(custom), ["Cooking", "Dating"])
        self.assertTrue(db.query(Genre).filter_by(name="Cooking").one().is_custom)
        db.close()
