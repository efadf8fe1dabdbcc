import unittest

from mediacanon.services.rate_limit import RetryPolicy
from mediacanon.services.tmdb_client import (
    DetailAPIError, FindResult, NotFoundError, ThrottledError, TitleDetails,
)
from store_fixtures import SleepRecorder, TMDBStub, make_client


def test_pick_prefers_the_titles_own_kind():
    found = FindResult(movie_results=[{"id": 1}], tv_results=[{"id": 2}])
    assert found.pick("show") == ({"id": 2}, "tv")
    assert found.pick("movie") == ({"id": 1}, "movie")
    assert FindResult(tv_results=[{"id": 2}]).pick("movie") == ({"id": 2}, "tv")
    assert FindResult(movie_results=[{"id": 1}]).pick("show") == ({"id": 1}, "movie")
    assert FindResult().pick("movie") == (None, None)


def test_details_fallbacks():
    details = TitleDetails.from_payload({
        "first_air_date": "2011-04-17",
        "origin_country": [],
        "production_countries": [{"iso_3166_1": "GB"}],
        "episode_run_time": [55],
    })
    assert details.release_date == "2011-04-17"
    assert details.origin_country == "GB"
    assert details.runtime == 55

    details = TitleDetails.from_payload({"release_date": "1999-03-31", "origin_country": ["US"], "runtime": 136})
    assert (details.release_date, details.origin_country, details.runtime) == ("1999-03-31", "US", 136)


class TestTMDBClient(unittest.IsolatedAsyncioTestCase):
    async def test_find_by_imdb_id(self):
        stub = TMDBStub({"/find/tt1": (200, {"movie_results": [{"id": 603}], "tv_results": []})})
        async with make_client(stub) as client:
            found = await client.find_by_imdb_id("tt1")
        self.assertEqual(found.movie_results, [{"id": 603}])
        self.assertEqual(stub.calls, ["/find/tt1"])

    async def test_status_mapping(self):
        stub = TMDBStub({
            "/movie/1": (429, {}),
            "/movie/3": (500, {}),
            "/movie/4": (200, b"not json"),
        })
        async with make_client(stub) as client:
            with self.assertRaises(ThrottledError):
                await client.get_details(1, "movie")
            with self.assertRaises(NotFoundError):
                await client.get_details(2, "movie")
            with self.assertRaises(DetailAPIError) as ctx:
                await client.get_details(3, "movie")
            self.assertEqual(ctx.exception.status_code, 500)
            with self.assertRaises(DetailAPIError):
                await client.get_details(4, "movie")

    async def test_episode_retries_throttling(self):
        sleep = SleepRecorder()
        stub = TMDBStub({"/tv/9/season/1/episode/2": [
            (429, {}), (429, {}), (200, {"still_path": "/s.jpg", "air_date": "2020-01-02", "runtime": 42}),
        ]})
        async with make_client(stub, sleep=sleep) as client:
            episode = await client.get_episode(9, 1, 2, retry=RetryPolicy(max_attempts=3, base_delay=2.0))
        self.assertEqual(episode.still_path, "/s.jpg")
        self.assertEqual(sleep.delays, [2.0, 4.0])
        self.assertEqual(len(stub.calls), 3)

    async def test_image_url(self):
        async with make_client(TMDBStub()) as client:
            self.assertEqual(client.image_url("/p.jpg", "w500"), "https://image.test/w500/p.jpg")
            self.assertIsNone(client.image_url(None, "w500"))


if __name__ == "__main__":
    unittest.main()
