from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from cms_backend.audit import AuditLogStore
from cms_backend.clock import Clock, SystemClock, as_utc
from cms_backend.db import DbClient, User
from cms_backend.errors import ConflictError, NotFoundError, RequestValidationFailed
from cms_backend.kv import BlogIndexEntry, BlogKvStore, BlogPostRecord

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 200
MAX_BODY_CHARS = 1_000_000
MAX_TAGS = 10
MAX_TAG_CHARS = 50
VISIBILITIES = ("public", "private")


@dataclass
class BlogPostDraft:
    """Author-supplied fields of a post, used for both create and update."""

    title: str
    body_html: str
    summary: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    visibility: str = "public"
    cover_image: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    meta: Optional[dict[str, Any]] = None


def slugify(title: str) -> str:
    slug = "".join(
        ch if ch.isalnum() else "-" for ch in title.lower()
    )
    return slug.strip("-")


def validate_draft(draft: BlogPostDraft) -> None:
    if not draft.title.strip():
        raise RequestValidationFailed("Title cannot be empty")
    if len(draft.title) > MAX_TITLE_CHARS:
        raise RequestValidationFailed(
            f"Title cannot exceed {MAX_TITLE_CHARS} characters"
        )
    if not draft.body_html.strip():
        raise RequestValidationFailed("Content cannot be empty")
    if len(draft.body_html) > MAX_BODY_CHARS:
        raise RequestValidationFailed("Content cannot exceed 1MB")
    if draft.visibility not in VISIBILITIES:
        raise RequestValidationFailed("Visibility must be 'public' or 'private'")
    if len(draft.tags) > MAX_TAGS:
        raise RequestValidationFailed(f"Cannot have more than {MAX_TAGS} tags")
    for tag in draft.tags:
        if not tag.strip():
            raise RequestValidationFailed("Tags cannot be empty")
        if len(tag) > MAX_TAG_CHARS:
            raise RequestValidationFailed(
                f"Tag cannot exceed {MAX_TAG_CHARS} characters"
            )


class BlogService:
    """
    Blog post management on top of the KV store.

    Every mutation is recorded in the audit log on a best-effort basis: an audit
    failure is logged and the post operation still succeeds.
    """

    def __init__(
        self,
        kv: BlogKvStore,
        db: DbClient,
        audit: AuditLogStore,
        clock: Optional[Clock] = None,
    ):
        self.kv = kv
        self.db = db
        self.audit = audit
        self.clock = clock or SystemClock()

    def create_post(self, draft: BlogPostDraft, author_id: str) -> BlogPostRecord:
        validate_draft(draft)
        slug = slugify(draft.title)
        if not slug:
            raise RequestValidationFailed("Title must contain letters or digits")
        if self.kv.get_blog_post(slug) is not None:
            raise ConflictError(f"A blog post with slug '{slug}' already exists")

        post = BlogPostRecord(
            id=str(uuid.uuid4()),
            title=draft.title,
            slug=slug,
            summary=draft.summary or "",
            body_html=draft.body_html,
            author_id=author_id,
            tags=list(draft.tags),
            date_published=as_utc(self.clock.now()).isoformat(),
            visibility=draft.visibility,
            cover_image=draft.cover_image,
            attachments=list(draft.attachments),
            meta=draft.meta,
        )
        self.kv.put_blog_post(post)
        logger.info("Created blog post %s (%s)", post.slug, post.id)
        self._log_audit(author_id, "create_blog_post", post.id)
        return post

    def get_post(self, slug: str) -> Optional[BlogPostRecord]:
        return self.kv.get_blog_post(slug)

    def get_public_post(self, slug: str) -> Optional[BlogPostRecord]:
        post = self.kv.get_blog_post(slug)
        if post is None or not post.is_public:
            return None
        return post

    def update_post(
        self, slug: str, draft: BlogPostDraft, author_id: str
    ) -> BlogPostRecord:
        """Replace the editable fields of ``slug``. The slug itself never changes."""
        post = self.kv.get_blog_post(slug)
        if post is None:
            raise NotFoundError("Blog post not found")
        validate_draft(draft)

        post.title = draft.title
        post.summary = draft.summary or ""
        post.body_html = draft.body_html
        post.tags = list(draft.tags)
        post.visibility = draft.visibility
        post.cover_image = draft.cover_image
        post.attachments = list(draft.attachments)
        if draft.meta is not None:
            post.meta = draft.meta

        self.kv.put_blog_post(post)
        self._log_audit(author_id, "update_blog_post", post.id)
        return post

    def delete_post(self, slug: str, author_id: str) -> BlogPostRecord:
        post = self.kv.get_blog_post(slug)
        if post is None:
            raise NotFoundError("Blog post not found")
        self.kv.delete_blog_post(slug)
        logger.info("Deleted blog post %s (%s)", slug, post.id)
        self._log_audit(author_id, "delete_blog_post", post.id)
        return post

    def list_posts(self, include_private: bool = False) -> list[BlogIndexEntry]:
        index = self.kv.get_blog_index()
        if include_private:
            return index
        return [entry for entry in index if entry.visibility == "public"]

    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.get_user_by_email(email)

    def _log_audit(self, user_id: str, action: str, resource_id: str) -> None:
        try:
            self.audit.log_action(user_id, action, resource_id=resource_id)
        except Exception:
            logger.exception(
                "Failed to record audit action %s for user %s", action, user_id
            )
