import unittest
from collections import deque
from datetime import datetime, timedelta

import httpx
from sqlalchemy import select

from harvester.config import ArchiveConfig, FetchConfig
from harvester.http_client import HttpFetcher
from harvester.leases import Subject
from harvester.pagination import TerminationPolicy
from harvester.posts import (
    ArchivePageSource,
    PostArchiveHarvester,
    archive_page_url,
    extract_article_text,
    fetch_post_bodies,
)
from harvester.schemas import ArchivePost
from harvester.writer import BatchWriter
from models import Byline, Post, PostByline

from support import FixedRandom, RecordingSleep, make_session_factory

ARTICLE_HTML = """
<html><body>
  <div class="available-content">
    <div class="body markup">
      <h2>Heading</h2>
      <p>First paragraph</p>
      <ul><li>one</li><li>two</li></ul>
      <script>var tracking = true;</script>
      <p>   </p>
      <blockquote>Quoted</blockquote>
    </div>
  </div>
</body></html>
"""


def archive_post(post_id: int, *, reactions: int = 3, title: str = "Title") -> dict:
    return {
        "id": post_id,
        "publication_id": 7,
        "title": title,
        "slug": f"post-{post_id}",
        "post_date": "2024-01-10T08:00:00.000Z",
        "audience": "everyone",
        "canonical_url": f"https://example.substack.com/p/post-{post_id}",
        "reaction_count": reactions,
        "reactions": {"heart": reactions},
        "comment_count": 1,
        "publishedBylines": [{"id": 900, "name": "Ann", "handle": "ann", "is_guest": False}],
    }


class ArchiveServer:
    def __init__(self, archive: dict, bodies: dict) -> None:
        self.archive = archive
        self.bodies = bodies
        self.archive_requests = deque()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/archive":
            self.archive_requests.append(request)
            return httpx.Response(200, json=self.archive.get(int(request.url.params["offset"]), []))
        body = self.bodies.get(request.url.path)
        if body is None:
            return httpx.Response(500)
        return httpx.Response(200, text=body)


class StubFetcher:
    def __init__(self, payload=None, failing_urls=()) -> None:
        self.payload = payload
        self.failing_urls = set(failing_urls)
        self.urls: list[str] = []

    def fetch_json(self, url, **_kwargs):
        self.urls.append(url)
        return self.payload

    def fetch_text(self, url, **_kwargs):
        if url in self.failing_urls:
            raise RuntimeError("socket closed")
        return ARTICLE_HTML


class ArticleTextTestCase(unittest.TestCase):
    def test_flattens_article_body(self) -> None:
        self.assertEqual(
            extract_article_text(ARTICLE_HTML),
            "## Heading\n\nFirst paragraph\n\n- one\n- two\n\nQuoted\n\n",
        )

    def test_missing_body_yields_empty_text(self) -> None:
        self.assertEqual(extract_article_text("<html><p>paywalled</p></html>"), "")

    def test_failed_body_fetch_yields_empty_body(self) -> None:
        posts = [
            ArchivePost(id=1, publication_id=7, canonical_url="https://a.example.com/p/1"),
            ArchivePost(id=2, publication_id=7, canonical_url="https://a.example.com/p/2"),
            ArchivePost(id=3, publication_id=7),
        ]
        fetcher = StubFetcher(failing_urls={"https://a.example.com/p/2"})

        with self.assertLogs("harvester.posts", level="ERROR"):
            bodies = fetch_post_bodies(fetcher, posts, max_workers=2)

        self.assertTrue(bodies[1].startswith("## Heading"))
        self.assertEqual(bodies[2], "")
        self.assertEqual(bodies[3], "")


class ArchivePageSourceTestCase(unittest.TestCase):
    def test_archive_url_uses_offset_and_limit(self) -> None:
        url = httpx.URL(archive_page_url("http://example.substack.com/", 46, 23))

        self.assertEqual(url.scheme, "https")
        self.assertEqual(url.path, "/api/v1/archive")
        self.assertEqual(url.params["sort"], "new")
        self.assertEqual(url.params["search"], "")
        self.assertEqual(url.params["offset"], "46")
        self.assertEqual(url.params["limit"], "23")

    def test_offset_cursor_and_throttle_pause(self) -> None:
        fetcher = StubFetcher(payload=[archive_post(1)])
        sleep = RecordingSleep()
        source = ArchivePageSource(
            fetcher,
            "https://example.substack.com",
            ArchiveConfig(page_size=2, pause_every=4, pause_seconds=60),
            sleep=sleep,
        )

        first = source(None)
        second = source(first.next_cursor)
        third = source(second.next_cursor)

        self.assertEqual([first.next_cursor, second.next_cursor, third.next_cursor], ["2", "4", "6"])
        self.assertEqual(sleep.calls, [60])

    def test_empty_archive_page_ends_stream(self) -> None:
        source = ArchivePageSource(StubFetcher(payload=[]), "https://example.substack.com", ArchiveConfig())
        page = source("23")

        self.assertEqual(page.items, [])
        self.assertIsNone(page.next_cursor)

    def test_malformed_archive_is_no_response(self) -> None:
        source = ArchivePageSource(
            StubFetcher(payload={"error": "nope"}), "https://example.substack.com", ArchiveConfig()
        )
        self.assertIsNone(source(None))

    def test_malformed_post_is_skipped_and_walk_continues(self) -> None:
        source = ArchivePageSource(
            StubFetcher(payload=[archive_post(1), {"id": "x"}, archive_post(2)]),
            "https://example.substack.com",
            ArchiveConfig(),
        )
        with self.assertLogs("harvester.schemas", level="WARNING"):
            page = source(None)

        self.assertEqual([post.id for post in page.items], [1, 2])
        self.assertEqual(page.next_cursor, str(ArchiveConfig().page_size))

    def test_page_of_only_malformed_posts_keeps_cursor(self) -> None:
        source = ArchivePageSource(
            StubFetcher(payload=[{"id": "x"}]), "https://example.substack.com", ArchiveConfig()
        )
        with self.assertLogs("harvester.schemas", level="WARNING"):
            page = source(None)

        self.assertEqual(page.items, [])
        self.assertEqual(page.next_cursor, str(ArchiveConfig().page_size))


class PostArchiveHarvesterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.Session = make_session_factory()

    def tearDown(self) -> None:
        self.engine.dispose()

    def _run(self, server: ArchiveServer, subject: Subject) -> int:
        fetcher = HttpFetcher(
            FetchConfig(max_attempts=1),
            transport=httpx.MockTransport(server),
            sleep=RecordingSleep(),
            rng=FixedRandom(),
        )
        harvester = PostArchiveHarvester(
            fetcher,
            self.Session,
            BatchWriter(self.Session),
            TerminationPolicy(max_items=9999, refetch_window=timedelta(days=14)),
            ArchiveConfig(body_workers=2),
            clock=lambda: datetime(2024, 3, 1),
            sleep=RecordingSleep(),
        )
        try:
            return harvester(subject)
        finally:
            fetcher.close()

    def _posts(self) -> dict[int, Post]:
        with self.Session() as session:
            return {row.id: row for row in session.scalars(select(Post)).all()}

    def test_harvest_writes_posts_bodies_and_bylines(self) -> None:
        server = ArchiveServer(
            {0: [archive_post(1), archive_post(2)]},
            {"/p/post-1": ARTICLE_HTML},
        )
        count = self._run(server, Subject(id=7, url="http://example.substack.com"))

        self.assertEqual(count, 2)
        first_request = server.archive_requests[0]
        self.assertEqual(first_request.url.scheme, "https")
        self.assertEqual(first_request.url.params["offset"], "0")
        self.assertEqual(len(server.archive_requests), 2)

        posts = self._posts()
        self.assertEqual(sorted(posts), [1, 2])
        self.assertTrue(posts[1].body_text.startswith("## Heading"))
        self.assertEqual(posts[2].body_text, "")
        self.assertEqual(posts[1].post_date, datetime(2024, 1, 10, 8, 0))
        with self.Session() as session:
            self.assertEqual(session.get(Byline, 900).handle, "ann")
            links = session.scalars(select(PostByline)).all()
        self.assertEqual({(link.post_id, link.byline_id) for link in links}, {(1, 900), (2, 900)})

    def test_rerun_refreshes_counters_but_keeps_body(self) -> None:
        self._run(
            ArchiveServer({0: [archive_post(1)]}, {"/p/post-1": ARTICLE_HTML}),
            Subject(id=7, url="https://example.substack.com"),
        )
        server = ArchiveServer(
            {0: [archive_post(1, reactions=10, title="Edited")], 23: [archive_post(0)]},
            {},
        )
        count = self._run(server, Subject(id=7, url="https://example.substack.com"))

        self.assertEqual(count, 1)
        self.assertEqual(len(server.archive_requests), 1)
        post = self._posts()[1]
        self.assertEqual(post.reaction_count, 10)
        self.assertEqual(post.title, "Edited")
        self.assertTrue(post.body_text.startswith("## Heading"))

    def test_subject_without_url_is_skipped(self) -> None:
        server = ArchiveServer({}, {})
        self.assertEqual(self._run(server, Subject(id=7)), 0)
        self.assertEqual(len(server.archive_requests), 0)


if __name__ == "__main__":
    unittest.main()
