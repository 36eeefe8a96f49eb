import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from cms_backend.audit import AuditLogStore
from cms_backend.blog import BlogPostDraft, BlogService, slugify
from cms_backend.clock import FixedClock
from cms_backend.db import (
    IN_MEMORY_DATABASE_URL,
    SqlDatastore,
    SqlDbClient,
    UserRole,
    create_db_engine,
)
from cms_backend.errors import (
    ConflictError,
    DatastoreError,
    NotFoundError,
    RequestValidationFailed,
)
from cms_backend.kv import BlogKvStore, InMemoryKvClient


class SlugifyTests(unittest.TestCase):
    def test_slugify(self):
        self.assertEqual(slugify("Hello, World!"), "hello--world")
        self.assertEqual(slugify("  Term 2 Results  "), "term-2-results")
        self.assertEqual(slugify("---"), "")


class BlogServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_db_engine(IN_MEMORY_DATABASE_URL)
        self.db = SqlDbClient(self.engine)
        self.clock = FixedClock()
        self.audit = AuditLogStore(SqlDatastore(self.engine), self.clock)
        self.kv = BlogKvStore(InMemoryKvClient())
        self.blog = BlogService(self.kv, self.db, self.audit, self.clock)
        self.admin = self.db.create_user("admin@llaweb.com", UserRole.ADMIN)

    def tearDown(self):
        self.engine.dispose()

    def _draft(self, **overrides):
        fields = {"title": "Sports Day", "body_html": "<p>Fun</p>", "tags": ["events"]}
        fields.update(overrides)
        return BlogPostDraft(**fields)

    def _audit_actions(self):
        return [
            (a.action, a.resource_id)
            for a in self.audit.get_user_audit_logs(
                self.admin.id,
                datetime(2024, 1, 1, tzinfo=timezone.utc),
                datetime(2024, 2, 1, tzinfo=timezone.utc),
            )
        ]

    def test_create_post(self):
        post = self.blog.create_post(self._draft(summary="Recap"), self.admin.id)
        self.assertEqual(post.slug, "sports-day")
        self.assertEqual(post.summary, "Recap")
        self.assertEqual(post.author_id, self.admin.id)
        self.assertEqual(post.date_published, "2024-01-15T12:00:00+00:00")
        self.assertEqual(self.blog.get_post("sports-day"), post)
        self.assertEqual(self._audit_actions(), [("create_blog_post", post.id)])

    def test_duplicate_slug_conflicts(self):
        self.blog.create_post(self._draft(), self.admin.id)
        with self.assertRaises(ConflictError):
            self.blog.create_post(self._draft(title="sports day!"), self.admin.id)

    def test_validation(self):
        invalid = [
            {"title": "   "},
            {"title": "x" * 201},
            {"body_html": ""},
            {"body_html": "x" * 1_000_001},
            {"visibility": "draft"},
            {"tags": [f"t{i}" for i in range(11)]},
            {"tags": [" "]},
            {"tags": ["x" * 51]},
            {"title": "!!!"},
        ]
        for overrides in invalid:
            with self.subTest(overrides=list(overrides)):
                with self.assertRaises(RequestValidationFailed):
                    self.blog.create_post(self._draft(**overrides), self.admin.id)

    def test_limits_are_inclusive(self):
        post = self.blog.create_post(
            self._draft(title="x" * 200, tags=["y" * 50] * 10), self.admin.id
        )
        self.assertEqual(len(post.tags), 10)

    def test_private_posts_are_hidden_from_public(self):
        self.blog.create_post(self._draft(title="Open"), self.admin.id)
        self.blog.create_post(
            self._draft(title="Staff Notes", visibility="private"), self.admin.id
        )
        self.assertIsNone(self.blog.get_public_post("staff-notes"))
        self.assertIsNotNone(self.blog.get_public_post("open"))
        self.assertIsNone(self.blog.get_public_post("missing"))
        self.assertEqual([e.slug for e in self.blog.list_posts()], ["open"])
        self.assertEqual(
            {e.slug for e in self.blog.list_posts(include_private=True)},
            {"open", "staff-notes"},
        )

    def test_update_post(self):
        created = self.blog.create_post(self._draft(), self.admin.id)
        self.clock.advance(hours=1)
        updated = self.blog.update_post(
            "sports-day",
            self._draft(title="Sports Day 2024", visibility="private"),
            self.admin.id,
        )
        self.assertEqual(updated.id, created.id)
        self.assertEqual(updated.slug, "sports-day")
        self.assertEqual(updated.title, "Sports Day 2024")
        self.assertEqual(updated.date_published, created.date_published)
        self.assertEqual(
            self.blog.list_posts(include_private=True)[0].visibility, "private"
        )
        self.assertEqual(
            self._audit_actions(),
            [("create_blog_post", created.id), ("update_blog_post", created.id)],
        )

    def test_update_missing_post(self):
        with self.assertRaises(NotFoundError):
            self.blog.update_post("missing", self._draft(), self.admin.id)

    def test_delete_post(self):
        created = self.blog.create_post(self._draft(), self.admin.id)
        deleted = self.blog.delete_post("sports-day", self.admin.id)
        self.assertEqual(deleted.id, created.id)
        self.assertIsNone(self.blog.get_post("sports-day"))
        self.assertEqual(self.blog.list_posts(include_private=True), [])
        self.assertEqual(self._audit_actions()[-1], ("delete_blog_post", created.id))
        with self.assertRaises(NotFoundError):
            self.blog.delete_post("sports-day", self.admin.id)

    def test_audit_failure_does_not_fail_mutation(self):
        audit = MagicMock()
        audit.log_action.side_effect = DatastoreError("disk full")
        blog = BlogService(self.kv, self.db, audit, self.clock)

        with self.assertLogs("cms_backend.blog", level="ERROR"):
            post = blog.create_post(self._draft(), self.admin.id)

        self.assertEqual(blog.get_post(post.slug), post)
        audit.log_action.assert_called_once_with(
            self.admin.id, "create_blog_post", resource_id=post.id
        )

    def test_user_lookups(self):
        self.assertEqual(self.blog.get_user(self.admin.id).email, "admin@llaweb.com")
        self.assertEqual(
            self.blog.get_user_by_email("admin@llaweb.com").id, self.admin.id
        )
        self.assertIsNone(self.blog.get_user("missing"))


if __name__ == "__main__":
    unittest.main()
