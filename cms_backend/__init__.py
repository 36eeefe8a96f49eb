"""
Backend package for the LLA Web CMS.

This package provides a FastAPI application for blog content, media uploads
and passwordless sessions, plus the month-sharded audit log that records what
authenticated users change.
"""
