"""
Blog backend package.

Provides a FastAPI application for user accounts, posts and image uploads,
with repository and asset-store abstractions so the service can run against
SQL + S3-compatible storage in production and in-memory doubles in tests.
"""
