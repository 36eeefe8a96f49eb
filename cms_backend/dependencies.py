"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from cms_backend.audit import AuditLogStore, StorageArchiver
from cms_backend.auth import AuthService
from cms_backend.backup import BackupService
from cms_backend.blog import BlogService
from cms_backend.clock import Clock, SystemClock
from cms_backend.config import get_settings
from cms_backend.db import (
    IN_MEMORY_DATABASE_URL,
    DbClient,
    SqlDatastore,
    SqlDbClient,
    create_db_engine,
)
from cms_backend.kv import (
    BlogKvStore,
    CloudflareKvClient,
    InMemoryKvClient,
    KvClient,
    LocalKvClient,
)
from cms_backend.media import MediaUploader
from cms_backend.storage import (
    InMemoryStorageClient,
    LocalStorageClient,
    S3StorageClient,
    StorageClient,
)

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_clock: Clock | None = None
_db_client: DbClient | None = None
_datastore: SqlDatastore | None = None
_storage_client: StorageClient | None = None
_backup_storage: StorageClient | None = None
_kv_store: BlogKvStore | None = None
_audit_store: AuditLogStore | None = None
_blog_service: BlogService | None = None
_auth_service: AuthService | None = None
_media_uploader: MediaUploader | None = None
_backup_service: BackupService | None = None


def reset_dependencies() -> None:
    """Forget every singleton so the next request rebuilds from settings."""
    global _engine, _clock, _db_client, _datastore, _storage_client
    global _backup_storage, _kv_store, _audit_store, _blog_service
    global _auth_service, _media_uploader, _backup_service
    if _engine is not None:
        _engine.dispose()
    _engine = _clock = _db_client = _datastore = _storage_client = None
    _backup_storage = _kv_store = _audit_store = _blog_service = None
    _auth_service = _media_uploader = _backup_service = None


def get_engine() -> Engine:
    global _engine
    if _engine:
        return _engine

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        url = IN_MEMORY_DATABASE_URL
    else:
        url = settings.database_url
    _engine = create_db_engine(url)
    return _engine


def get_clock() -> Clock:
    global _clock
    if _clock:
        return _clock
    _clock = SystemClock()
    return _clock


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so users and revocations persist across requests.
    """
    global _db_client
    if _db_client:
        return _db_client
    _db_client = SqlDbClient(get_engine())
    return _db_client


def get_datastore() -> SqlDatastore:
    global _datastore
    if _datastore:
        return _datastore
    # The users table must exist before any shard references it.
    get_db_client()
    _datastore = SqlDatastore(get_engine())
    return _datastore


def _s3_client() -> S3StorageClient:
    settings = get_settings()
    return S3StorageClient(
        bucket=settings.s3_bucket,
        region=settings.s3_region or "",
        endpoint=settings.s3_endpoint or "",
        access_key_id=settings.aws_access_key_id or "",
        secret_access_key=settings.aws_secret_access_key or "",
        media_domain=settings.media_domain or None,
    )


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _storage_client = InMemoryStorageClient()
    elif settings.s3_bucket:
        _storage_client = _s3_client()
    else:
        _storage_client = LocalStorageClient(
            root=settings.upload_dir,
            base_url=f"http://localhost:{settings.port}/uploads",
        )
    return _storage_client


def get_backup_storage() -> StorageClient | None:
    """
    Storage for backups and audit archives. Never the public uploads directory,
    so without a bucket there is none.
    """
    global _backup_storage
    if _backup_storage:
        return _backup_storage

    settings = get_settings()
    if settings.use_in_memory_backends or settings.s3_bucket:
        _backup_storage = get_storage_client()
    return _backup_storage


def get_kv_store() -> BlogKvStore:
    global _kv_store
    if _kv_store:
        return _kv_store

    settings = get_settings()
    client: KvClient
    if settings.use_in_memory_backends:
        client = InMemoryKvClient()
    elif (
        settings.cloudflare_account_id
        and settings.cloudflare_api_token
        and settings.cloudflare_kv_namespace_id
    ):
        client = CloudflareKvClient(
            account_id=settings.cloudflare_account_id,
            namespace_id=settings.cloudflare_kv_namespace_id,
            api_token=settings.cloudflare_api_token,
        )
    else:
        client = LocalKvClient(settings.kv_storage_dir)
    _kv_store = BlogKvStore(client)
    return _kv_store


def get_audit_store() -> AuditLogStore:
    global _audit_store
    if _audit_store:
        return _audit_store

    settings = get_settings()
    archiver = None
    if settings.audit_archive_enabled:
        storage = get_backup_storage()
        if storage is None:
            logger.warning("Audit archiving enabled but no storage bucket configured")
        else:
            archiver = StorageArchiver(storage)
    _audit_store = AuditLogStore(
        get_datastore(),
        get_clock(),
        retention_days=settings.audit_retention_days,
        archiver=archiver,
    )
    return _audit_store


def get_blog_service() -> BlogService:
    global _blog_service
    if _blog_service:
        return _blog_service
    _blog_service = BlogService(
        get_kv_store(), get_db_client(), get_audit_store(), get_clock()
    )
    return _blog_service


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service:
        return _auth_service
    _auth_service = AuthService(get_db_client(), get_settings(), get_clock())
    return _auth_service


def get_media_uploader() -> MediaUploader:
    global _media_uploader
    if _media_uploader:
        return _media_uploader
    _media_uploader = MediaUploader(get_storage_client(), get_clock())
    return _media_uploader


def get_backup_service() -> BackupService:
    global _backup_service
    if _backup_service:
        return _backup_service
    _backup_service = BackupService(
        get_engine(), get_backup_storage(), get_settings(), get_clock()
    )
    return _backup_service
