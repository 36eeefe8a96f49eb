"""
Pydantic schemas for the CMS HTTP API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    full_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: str


class GoogleOAuthRequest(BaseModel):
    code: str
    state: Optional[str] = None


class LoginResponse(BaseModel):
    token: str
    user: UserResponse
    expires_at: int


class StatusResponse(BaseModel):
    status: str
    message: Optional[str] = None


class BlogPostRequest(BaseModel):
    title: str
    body_html: str
    summary: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    visibility: str = "public"
    cover_image: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)
    meta: Optional[dict[str, Any]] = None


class BlogPostResponse(BaseModel):
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
    attachments: list[str] = Field(default_factory=list)
    meta: Optional[dict[str, Any]] = None


class BlogIndexEntryResponse(BaseModel):
    slug: str
    title: str
    summary: str
    date_published: str
    visibility: str
    tags: list[str] = Field(default_factory=list)
    cover_image: Optional[str] = None


class BlogIndexResponse(BaseModel):
    posts: list[BlogIndexEntryResponse]


class AuditActionResponse(BaseModel):
    timestamp: datetime
    action: str
    resource_id: Optional[str] = None
    details: Any = None


class AuditLogResponse(BaseModel):
    user_id: str
    start: datetime
    end: datetime
    actions: list[AuditActionResponse]


class AuditCleanupResponse(BaseModel):
    dropped: list[str]


class BackupResponse(BaseModel):
    status: str
    local_path: Optional[str] = None
    removed_remote: list[str] = Field(default_factory=list)


class RestoreRequest(BaseModel):
    backup_path: str


class RoleCheckResponse(BaseModel):
    user_id: str
    role: str
    has_role: bool


class MediaUploadResponse(BaseModel):
    url: str
    file_id: str
    file_type: str
    path: str


class MultipartUploadResponse(BaseModel):
    files: list[MediaUploadResponse]
