import unittest

from sqlalchemy import text

from mediacanon.models import MOVIE, SHOW, Show, ShowEpisode, ShowSeason, Title
from mediacanon.resolvable import (
    EPISODE_IMAGE_NOT_FOUND, TITLE_IMAGE_NOT_FOUND, FieldState, Resolution,
)
from mediacanon.schemas import EpisodeView, TitleView
from store_fixtures import make_store


class TestFieldState(unittest.TestCase):
    def test_storage_round_trip(self):
        self.assertTrue(FieldState.from_storage(None, "none").is_unresolved)
        self.assertTrue(FieldState.from_storage("", "none").is_unresolved)
        self.assertTrue(FieldState.from_storage("none", "none").is_not_found)
        resolved = FieldState.from_storage("https://img/x.jpg", "none")
        self.assertEqual(resolved.status, Resolution.RESOLVED)
        self.assertEqual(resolved.value, "https://img/x.jpg")

        self.assertIsNone(FieldState.unresolved().to_storage("none"))
        self.assertEqual(FieldState.not_found().to_storage("none"), "none")
        self.assertEqual(FieldState.resolved("u").to_storage("none"), "u")

    def test_sentinels_are_scoped_to_their_column(self):
        # A title marker in an episode column is just a (strange) value, not NOT_FOUND
        state = FieldState.from_storage(TITLE_IMAGE_NOT_FOUND, EPISODE_IMAGE_NOT_FOUND)
        self.assertTrue(state.is_resolved)

    def test_or_none_never_leaks_markers(self):
        self.assertIsNone(FieldState.not_found().or_none())
        self.assertIsNone(FieldState.unresolved().or_none())
        self.assertEqual(FieldState.resolved("u").or_none(), "u")

    def test_empty_resolution_is_unresolved(self):
        self.assertTrue(FieldState.resolved("").is_unresolved)
        self.assertTrue(FieldState.of(None).is_unresolved)
        self.assertTrue(FieldState.of("u").is_resolved)


class TestResolvableColumns(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_store(self)

    def test_markers_written_at_column_boundary(self):
        db = self.Session()
        title = Title(type=SHOW, display_name="Show", imdb_id="tt1", image_url=FieldState.not_found())
        show = Show(title=title)
        season = ShowSeason(show=show, season=1)
        ShowEpisode(season=season, episode=1, image_url=FieldState.not_found())
        ShowEpisode(season=season, episode=2, image_url=FieldState.resolved("https://img/e2.jpg"))
        db.add(title)
        db.commit()
        db.close()

        with self.engine.connect() as conn:
            self.assertEqual(conn.execute(text("SELECT image_url FROM titles")).scalar(), TITLE_IMAGE_NOT_FOUND)
            raw = [r[0] for r in conn.execute(text("SELECT image_url FROM show_episodes ORDER BY episode"))]
        self.assertEqual(raw, [EPISODE_IMAGE_NOT_FOUND, "https://img/e2.jpg"])

        db = self.Session()
        title = db.query(Title).one()
        self.assertTrue(title.image_url.is_not_found)
        self.assertIsNone(TitleView.from_title(title).image_url)
        views = [EpisodeView.from_episode(ep) for ep in title.show.seasons[0].episodes]
        self.assertEqual([v.image_url for v in views], [None, "https://img/e2.jpg"])
        db.close()

    def test_null_column_reads_as_unresolved(self):
        db = self.Session()
        db.add(Title(type=MOVIE, display_name="Movie", imdb_id="tt2"))
        db.commit()
        title = db.query(Title).one()
        self.assertTrue(FieldState.of(title.image_url).is_unresolved)
        self.assertTrue(title.needs_backfill_tmdb)
        db.close()

    def test_title_type_cannot_change(self):
        title = Title(type=MOVIE, display_name="Movie")
        with self.assertRaises(ValueError):
            title.type = SHOW
        with self.assertRaises(ValueError):
            Title(type="episode", display_name="x")


if __name__ == "__main__":
    unittest.main()
