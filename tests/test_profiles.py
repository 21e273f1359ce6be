import unittest
from collections import deque

import httpx
from sqlalchemy import select

from harvester.config import FetchConfig
from harvester.http_client import HttpFetcher
from harvester.leases import Subject
from harvester.profiles import ProfileRefresher, compact_slug, profile_urls, slugify
from harvester.writer import BatchWriter
from models import BylineData

from support import FixedRandom, RecordingSleep, make_session_factory


def public_profile(**overrides) -> dict:
    payload = {
        "id": 77,
        "handle": "janedoe",
        "name": "Jane Doe",
        "slug": "janedoe",
        "photo_url": "https://img.example.com/jane.png",
        "bestseller_tier": 100,
        "profile_set_up_at": "2021-04-01T00:00:00.000Z",
        "rough_num_free_subscribers": "1,000+",
        "rough_num_free_subscribers_int": 1000,
        "subscriberCount": "1234",
        "subscriberCountNumber": 1234,
        "subscriberCountString": "1.2K subscribers",
    }
    payload.update(overrides)
    return payload


class SlugTestCase(unittest.TestCase):
    def test_slugify_matches_profile_slugs(self) -> None:
        self.assertEqual(slugify("A B C DEFG.COM"), "a-b-c-defgcom")
        self.assertEqual(slugify("  José  Núñez "), "jose-nunez")
        self.assertEqual(compact_slug("A B C"), "abc")

    def test_profile_urls_fall_back_by_handle_then_name(self) -> None:
        urls = list(profile_urls(Subject(id=77, name="Jane Doe", handle="jane-doe")))

        self.assertEqual(
            urls,
            [
                "https://substack.com/api/v1/reader/feed/profile/77",
                "https://substack.com/api/v1/user/janedoe/public_profile",
            ],
        )

    def test_profile_urls_skip_missing_handle(self) -> None:
        urls = list(profile_urls(Subject(id=5, name="Some Writer")))
        self.assertEqual(urls[-1], "https://substack.com/api/v1/user/somewriter/public_profile")
        self.assertEqual(len(urls), 2)


class ProfileRefresherTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory()

    def tearDown(self) -> None:
        self.engine.dispose()

    def _refresh(self, routes: dict, subject: Subject) -> tuple[int, deque]:
        requests = deque()

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.path)
            payload = routes.get(request.url.path)
            if payload is None:
                return httpx.Response(404)
            return httpx.Response(200, json=payload)

        fetcher = HttpFetcher(
            FetchConfig(),
            transport=httpx.MockTransport(handler),
            sleep=RecordingSleep(),
            rng=FixedRandom(),
        )
        try:
            count = ProfileRefresher(fetcher, BatchWriter(self.Session))(subject)
        finally:
            fetcher.close()
        return count, requests

    def _profiles(self) -> dict[int, BylineData]:
        with self.Session() as session:
            return {row.id: row for row in session.scalars(select(BylineData)).all()}

    def test_falls_back_to_public_profile_by_handle(self) -> None:
        routes = {
            "/api/v1/reader/feed/profile/77": {"items": [], "nextCursor": None},
            "/api/v1/user/janedoe/public_profile": public_profile(),
        }
        count, requests = self._refresh(routes, Subject(id=77, name="Jane Doe", handle="janedoe"))

        self.assertEqual(count, 1)
        self.assertEqual(list(requests), list(routes))
        profile = self._profiles()[77]
        self.assertEqual(profile.slug, "janedoe")
        self.assertEqual(profile.subscriber_count, 1234)
        self.assertEqual(profile.subscriber_count_string, "1.2K subscribers")
        self.assertIsNone(profile.rough_num_free_subscribers)
        self.assertEqual(profile.rough_num_free_subscribers_int, 1000)

    def test_refresh_merges_every_field(self) -> None:
        subject = Subject(id=77, name="Jane Doe", handle="janedoe")
        self._refresh({"/api/v1/reader/feed/profile/77": public_profile()}, subject)
        self._refresh(
            {
                "/api/v1/reader/feed/profile/77": public_profile(
                    subscriberCount="2000", photo_url="https://img.example.com/new.png", bestseller_tier=None
                )
            },
            subject,
        )

        profile = self._profiles()[77]
        self.assertEqual(profile.subscriber_count, 2000)
        self.assertEqual(profile.photo_url, "https://img.example.com/new.png")
        self.assertIsNone(profile.bestseller_tier)

    def test_unresolvable_profile_writes_nothing(self) -> None:
        count, requests = self._refresh({}, Subject(id=5, name="Ghost Writer", handle="ghost"))

        self.assertEqual(count, 0)
        self.assertEqual(len(requests), 3)
        self.assertEqual(self._profiles(), {})


if __name__ == "__main__":
    unittest.main()
