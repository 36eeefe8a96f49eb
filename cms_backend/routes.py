"""
HTTP routes for the CMS API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile
from fastapi.security import HTTPAuthorizationCredentials

from cms_backend.audit import AuditLogStore
from cms_backend.auth import AuthService
from cms_backend.backup import BackupService
from cms_backend.blog import BlogPostDraft, BlogService
from cms_backend.clock import Clock, as_utc
from cms_backend.db import User
from cms_backend.dependencies import (
    get_audit_store,
    get_auth_service,
    get_backup_service,
    get_blog_service,
    get_clock,
    get_media_uploader,
)
from cms_backend.errors import NotFoundError, RequestValidationFailed
from cms_backend.media import IncomingFile, MediaUploader
from cms_backend.schemas import (
    AuditActionResponse,
    AuditCleanupResponse,
    AuditLogResponse,
    BackupResponse,
    BlogIndexEntryResponse,
    BlogIndexResponse,
    BlogPostRequest,
    BlogPostResponse,
    GoogleOAuthRequest,
    LoginRequest,
    LoginResponse,
    MediaUploadResponse,
    MultipartUploadResponse,
    RestoreRequest,
    RoleCheckResponse,
    StatusResponse,
    UserResponse,
)
from cms_backend.security import (
    extract_token,
    get_current_user,
    require_admin,
    security_scheme,
)

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_WINDOW_DAYS = 30

router = APIRouter()


def _draft(payload: BlogPostRequest) -> BlogPostDraft:
    return BlogPostDraft(
        title=payload.title,
        body_html=payload.body_html,
        summary=payload.summary,
        tags=payload.tags,
        visibility=payload.visibility,
        cover_image=payload.cover_image,
        attachments=payload.attachments,
        meta=payload.meta,
    )


async def _read_upload(upload: UploadFile) -> IncomingFile:
    if not upload.filename:
        raise RequestValidationFailed("filename is required")
    data = await upload.read()
    if not data:
        raise RequestValidationFailed("file data is required")
    return IncomingFile(
        filename=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
        data=data,
    )


# Auth


@router.post("/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    """Password login is retired; this always answers 401."""
    result = auth.login(payload.email)
    return LoginResponse(**result.as_dict())


@router.post("/auth/google", response_model=LoginResponse)
def google_login(
    payload: GoogleOAuthRequest,
    response: Response,
    auth: AuthService = Depends(get_auth_service),
):
    result, cookie = auth.google_oauth_login(payload.code, payload.state)
    response.headers.append("set-cookie", cookie)
    return LoginResponse(**result.as_dict())


@router.post("/auth/logout", status_code=204)
def logout(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    auth: AuthService = Depends(get_auth_service),
):
    cookie = auth.logout(extract_token(request, credentials))
    return Response(status_code=204, headers={"set-cookie": cookie})


@router.get("/users/me", response_model=UserResponse)
def current_user(user: User = Depends(get_current_user)):
    return UserResponse(**user.as_dict())


# Public blog


@router.get("/blog/index", response_model=BlogIndexResponse)
def blog_index(blog: BlogService = Depends(get_blog_service)):
    entries = blog.list_posts(include_private=False)
    return BlogIndexResponse(
        posts=[BlogIndexEntryResponse(**entry.as_dict()) for entry in entries]
    )


@router.get("/blog/post/{slug}", response_model=BlogPostResponse)
def blog_post(slug: str, blog: BlogService = Depends(get_blog_service)):
    post = blog.get_public_post(slug)
    if not post:
        raise NotFoundError("Blog post not found")
    return BlogPostResponse(**post.as_dict())


@router.get("/blog/public/{slug}", response_model=BlogPostResponse)
def public_blog_post(slug: str, blog: BlogService = Depends(get_blog_service)):
    post = blog.get_public_post(slug)
    if not post:
        raise NotFoundError("Blog post not found or not public")
    return BlogPostResponse(**post.as_dict())


# Admin: posts


@router.get("/admin/posts", response_model=BlogIndexResponse)
def admin_list_posts(
    _admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    entries = blog.list_posts(include_private=True)
    return BlogIndexResponse(
        posts=[BlogIndexEntryResponse(**entry.as_dict()) for entry in entries]
    )


@router.post("/admin/posts", response_model=BlogPostResponse, status_code=201)
def admin_create_post(
    payload: BlogPostRequest,
    admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    post = blog.create_post(_draft(payload), admin.id)
    return BlogPostResponse(**post.as_dict())


@router.get("/admin/posts/{slug}", response_model=BlogPostResponse)
def admin_get_post(
    slug: str,
    _admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    post = blog.get_post(slug)
    if not post:
        raise NotFoundError("Blog post not found")
    return BlogPostResponse(**post.as_dict())


@router.put("/admin/posts/{slug}", response_model=BlogPostResponse)
def admin_update_post(
    slug: str,
    payload: BlogPostRequest,
    admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    post = blog.update_post(slug, _draft(payload), admin.id)
    return BlogPostResponse(**post.as_dict())


@router.delete("/admin/posts/{slug}", status_code=204)
def admin_delete_post(
    slug: str,
    admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    blog.delete_post(slug, admin.id)
    return Response(status_code=204)


# Admin: audit log


@router.get("/admin/audit/{user_id}", response_model=AuditLogResponse)
def admin_user_audit_logs(
    user_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    _admin: User = Depends(require_admin),
    audit: AuditLogStore = Depends(get_audit_store),
    clock: Clock = Depends(get_clock),
):
    """
    Actions recorded for ``user_id`` between ``start`` and ``end`` (inclusive).
    Defaults to the last 30 days.
    """
    end = as_utc(end) if end else as_utc(clock.now())
    start = as_utc(start) if start else end - timedelta(days=DEFAULT_AUDIT_WINDOW_DAYS)
    actions = audit.get_user_audit_logs(user_id, start, end)
    return AuditLogResponse(
        user_id=user_id,
        start=start,
        end=end,
        actions=[
            AuditActionResponse(
                timestamp=action.timestamp,
                action=action.action,
                resource_id=action.resource_id,
                details=action.details,
            )
            for action in actions
        ],
    )


@router.post("/admin/audit/cleanup", response_model=AuditCleanupResponse)
def admin_cleanup_audit_tables(
    _admin: User = Depends(require_admin),
    audit: AuditLogStore = Depends(get_audit_store),
):
    dropped = audit.cleanup_old_audit_tables()
    return AuditCleanupResponse(dropped=dropped)


# Admin: backups


@router.post("/admin/backup", response_model=BackupResponse)
def admin_backup(
    _admin: User = Depends(require_admin),
    backups: BackupService = Depends(get_backup_service),
):
    local_path = backups.backup_database(force=True)
    removed = backups.cleanup_old_remote_backups()
    return BackupResponse(
        status="success",
        local_path=str(local_path) if local_path else None,
        removed_remote=removed,
    )


@router.post("/admin/backup/restore", response_model=StatusResponse)
def admin_restore_backup(
    payload: RestoreRequest,
    _admin: User = Depends(require_admin),
    backups: BackupService = Depends(get_backup_service),
    audit: AuditLogStore = Depends(get_audit_store),
):
    if not payload.backup_path.strip():
        raise RequestValidationFailed("backup_path is required")
    backups.restore_database(payload.backup_path)
    audit.forget_shards()
    return StatusResponse(status="success", message="Database restored successfully")


# Admin: users


@router.get("/admin/users/by-email/{email}", response_model=UserResponse)
def admin_get_user_by_email(
    email: str,
    _admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    user = blog.get_user_by_email(email)
    if not user:
        raise NotFoundError("User not found")
    return UserResponse(**user.as_dict())


@router.get("/admin/users/{user_id}", response_model=UserResponse)
def admin_get_user(
    user_id: str,
    _admin: User = Depends(require_admin),
    blog: BlogService = Depends(get_blog_service),
):
    user = blog.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return UserResponse(**user.as_dict())


@router.get("/admin/users/{user_id}/role/{role}", response_model=RoleCheckResponse)
def admin_check_user_role(
    user_id: str,
    role: str,
    _admin: User = Depends(require_admin),
    auth: AuthService = Depends(get_auth_service),
):
    parsed = auth.parse_user_role(role)
    return RoleCheckResponse(
        user_id=user_id,
        role=parsed.value,
        has_role=auth.user_has_role(user_id, parsed),
    )


# Admin: media


@router.post("/admin/upload/image", response_model=MediaUploadResponse)
async def admin_upload_image(
    file: UploadFile = File(...),
    _admin: User = Depends(require_admin),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    incoming = await _read_upload(file)
    if not incoming.content_type.startswith("image/"):
        raise RequestValidationFailed("Image file required")
    result = uploader.upload_image(
        incoming.data, incoming.filename, incoming.content_type
    )
    return MediaUploadResponse(**result.as_dict())


@router.post("/admin/upload/file", response_model=MediaUploadResponse)
async def admin_upload_file(
    file: UploadFile = File(...),
    _admin: User = Depends(require_admin),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    incoming = await _read_upload(file)
    result = uploader.upload_file(
        incoming.data, incoming.filename, incoming.content_type
    )
    return MediaUploadResponse(**result.as_dict())


@router.post("/admin/upload/multipart", response_model=MultipartUploadResponse)
async def admin_upload_multipart(
    files: list[UploadFile] = File(...),
    _admin: User = Depends(require_admin),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    incoming = [await _read_upload(upload) for upload in files]
    results = uploader.upload_many(incoming)
    return MultipartUploadResponse(
        files=[MediaUploadResponse(**result.as_dict()) for result in results]
    )
