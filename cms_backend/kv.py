"""
Key-value storage for blog content.

Development keeps one JSON file per key on disk; production talks to the
Cloudflare KV REST API. Blog posts live under ``blog:post:<slug>`` and a
denormalized listing under ``blog:index``.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import quote

import requests
from dacite import Config, DaciteError, from_dict

from cms_backend.errors import SerializationError, StorageError

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4/accounts"
BLOG_INDEX_KEY = "blog:index"


def blog_post_key(slug: str) -> str:
    return f"blog:post:{slug}"


class KvClient(Protocol):
    def put(self, key: str, value: str) -> None:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def delete(self, key: str) -> None:
        ...


@dataclass
class InMemoryKvClient:
    """Simple in-memory KV store for tests."""

    values: dict = field(default_factory=dict)

    def put(self, key: str, value: str) -> None:
        self.values[key] = value

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


@dataclass
class LocalKvClient:
    storage_dir: str

    def __post_init__(self):
        Path(self.storage_dir).mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = key.replace(":", "_").replace("/", "_")
        return Path(self.storage_dir) / f"{safe}.json"

    def put(self, key: str, value: str) -> None:
        self._path(key).write_text(value, encoding="utf-8")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass
class CloudflareKvClient:
    account_id: str
    namespace_id: str
    api_token: str
    timeout: float = 10.0

    def __post_init__(self):
        self._session = requests.Session()
        self._session.headers["Authorization"] = f"Bearer {self.api_token}"

    def _url(self, key: str) -> str:
        return (
            f"{CLOUDFLARE_API_BASE}/{self.account_id}/storage/kv/namespaces/"
            f"{self.namespace_id}/values/{quote(key, safe='')}"
        )

    def put(self, key: str, value: str) -> None:
        response = self._session.put(
            self._url(key),
            data=value.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
            timeout=self.timeout,
        )
        if not response.ok:
            raise StorageError(f"Cloudflare KV PUT failed: {response.text}")

    def get(self, key: str) -> Optional[str]:
        response = self._session.get(self._url(key), timeout=self.timeout)
        if response.status_code == 404:
            return None
        if not response.ok:
            raise StorageError(f"Cloudflare KV GET failed: {response.text}")
        return response.text

    def delete(self, key: str) -> None:
        response = self._session.delete(self._url(key), timeout=self.timeout)
        if not response.ok and response.status_code != 404:
            raise StorageError(f"Cloudflare KV DELETE failed: {response.text}")


@dataclass
class BlogPostRecord:
    id: str
    title: str
    slug: str
    summary: str
    body_html: str
    author_id: str
    tags: list[str]
    date_published: str
    visibility: str
    cover_image: Optional[str] = None
    attachments: list[str] = field(default_factory=list)
    meta: Optional[dict[str, Any]] = None

    @property
    def is_public(self) -> bool:
        return self.visibility == "public"

    def as_dict(self) -> dict:
        return asdict(self)

    def index_entry(self) -> "BlogIndexEntry":
        return BlogIndexEntry(
            slug=self.slug,
            title=self.title,
            summary=self.summary,
            cover_image=self.cover_image,
            date_published=self.date_published,
            tags=list(self.tags),
            visibility=self.visibility,
        )


@dataclass
class BlogIndexEntry:
    slug: str
    title: str
    summary: str
    date_published: str
    visibility: str
    tags: list[str] = field(default_factory=list)
    cover_image: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _loads(raw: str, key: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise SerializationError(f"Corrupt value stored under {key}") from exc


def _record(data_class, data: Any, key: str):
    # Unknown keys written by other clients of the namespace are ignored.
    try:
        return from_dict(
            data_class=data_class, data=data, config=Config(check_types=False)
        )
    except (DaciteError, TypeError, AttributeError) as exc:
        raise SerializationError(f"Unexpected value shape under {key}") from exc


class BlogKvStore:
    """Blog posts plus a listing index kept in step on every write."""

    def __init__(self, client: KvClient):
        self.client = client

    def put_blog_post(self, post: BlogPostRecord) -> None:
        self.client.put(blog_post_key(post.slug), json.dumps(post.as_dict()))
        index = [entry for entry in self.get_blog_index() if entry.slug != post.slug]
        index.append(post.index_entry())
        self._write_index(index)

    def get_blog_post(self, slug: str) -> Optional[BlogPostRecord]:
        key = blog_post_key(slug)
        raw = self.client.get(key)
        if raw is None:
            return None
        return _record(BlogPostRecord, _loads(raw, key), key)

    def delete_blog_post(self, slug: str) -> None:
        self.client.delete(blog_post_key(slug))
        self._write_index(
            [entry for entry in self.get_blog_index() if entry.slug != slug]
        )

    def get_blog_index(self) -> list[BlogIndexEntry]:
        raw = self.client.get(BLOG_INDEX_KEY)
        if raw is None:
            return []
        return [
            _record(BlogIndexEntry, item, BLOG_INDEX_KEY)
            for item in _loads(raw, BLOG_INDEX_KEY)
        ]

    def _write_index(self, index: list[BlogIndexEntry]) -> None:
        index.sort(key=lambda entry: entry.date_published, reverse=True)
        self.client.put(
            BLOG_INDEX_KEY, json.dumps([entry.as_dict() for entry in index])
        )
