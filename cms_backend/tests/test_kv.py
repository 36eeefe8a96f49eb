import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from cms_backend.errors import SerializationError, StorageError
from cms_backend.kv import (
    BLOG_INDEX_KEY,
    BlogKvStore,
    BlogPostRecord,
    CloudflareKvClient,
    InMemoryKvClient,
    LocalKvClient,
)


def make_post(slug, date, visibility="public"):
    return BlogPostRecord(
        id=f"id-{slug}",
        title=slug.title(),
        slug=slug,
        summary="",
        body_html="<p>hi</p>",
        author_id="author",
        tags=["news"],
        date_published=date,
        visibility=visibility,
    )


class BlogKvStoreTests(unittest.TestCase):
    def setUp(self):
        self.client = InMemoryKvClient()
        self.store = BlogKvStore(self.client)

    def test_put_and_get_post(self):
        post = make_post("hello", "2024-01-01T00:00:00+00:00")
        self.store.put_blog_post(post)
        self.assertEqual(self.store.get_blog_post("hello"), post)
        self.assertIn("blog:post:hello", self.client.values)
        self.assertIsNone(self.store.get_blog_post("missing"))

    def test_index_is_sorted_newest_first(self):
        self.store.put_blog_post(make_post("old", "2023-05-01T00:00:00+00:00"))
        self.store.put_blog_post(make_post("new", "2024-05-01T00:00:00+00:00"))
        self.store.put_blog_post(make_post("mid", "2023-12-01T00:00:00+00:00"))
        self.assertEqual(
            [entry.slug for entry in self.store.get_blog_index()],
            ["new", "mid", "old"],
        )

    def test_rewriting_a_post_replaces_its_index_entry(self):
        post = make_post("hello", "2024-01-01T00:00:00+00:00")
        self.store.put_blog_post(post)
        post.title = "Hello again"
        self.store.put_blog_post(post)
        index = self.store.get_blog_index()
        self.assertEqual(len(index), 1)
        self.assertEqual(index[0].title, "Hello again")

    def test_delete_removes_post_and_index_entry(self):
        self.store.put_blog_post(make_post("a", "2024-01-01T00:00:00+00:00"))
        self.store.put_blog_post(make_post("b", "2024-01-02T00:00:00+00:00"))
        self.store.delete_blog_post("a")
        self.assertIsNone(self.store.get_blog_post("a"))
        self.assertEqual([e.slug for e in self.store.get_blog_index()], ["b"])

    def test_unknown_fields_are_ignored(self):
        post = make_post("hello", "2024-01-01T00:00:00+00:00")
        stored = dict(post.as_dict(), legacy_field="ignored")
        self.client.put("blog:post:hello", json.dumps(stored))
        self.assertEqual(self.store.get_blog_post("hello"), post)

    def test_post_missing_fields_raises(self):
        self.client.put("blog:post:broken", json.dumps({"slug": "broken"}))
        with self.assertRaises(SerializationError):
            self.store.get_blog_post("broken")

    def test_corrupt_index_raises(self):
        self.client.put(BLOG_INDEX_KEY, "{broken")
        with self.assertRaises(SerializationError):
            self.store.get_blog_index()


class LocalKvClientTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.client = LocalKvClient(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_files_use_safe_names(self):
        self.client.put("blog:post:hello", '{"a": 1}')
        self.assertTrue((Path(self.tmpdir.name) / "blog_post_hello.json").exists())
        self.assertEqual(self.client.get("blog:post:hello"), '{"a": 1}')

    def test_delete_and_missing(self):
        self.client.put("k", "v")
        self.client.delete("k")
        self.client.delete("k")
        self.assertIsNone(self.client.get("k"))


class CloudflareKvClientTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("cms_backend.kv.requests.Session")
        self.session_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.session = self.session_cls.return_value
        self.client = CloudflareKvClient(
            account_id="acct", namespace_id="ns", api_token="token"
        )

    def _response(self, status, text=""):
        response = MagicMock()
        response.status_code = status
        response.ok = 200 <= status < 300
        response.text = text
        return response

    def test_get_quotes_key(self):
        self.session.get.return_value = self._response(200, "[]")
        self.assertEqual(self.client.get("blog:index"), "[]")
        url = self.session.get.call_args[0][0]
        self.assertTrue(
            url.endswith("/accounts/acct/storage/kv/namespaces/ns/values/blog%3Aindex")
        )

    def test_missing_key_is_none(self):
        self.session.get.return_value = self._response(404)
        self.assertIsNone(self.client.get("nope"))

    def test_failed_put_raises(self):
        self.session.put.return_value = self._response(500, "boom")
        with self.assertRaises(StorageError):
            self.client.put("k", "v")

    def test_delete_tolerates_missing(self):
        self.session.delete.return_value = self._response(404)
        self.client.delete("k")


if __name__ == "__main__":
    unittest.main()
