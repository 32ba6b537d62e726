"""
JSON envelope helpers.

Every endpoint answers with ``{"success": ..., "data": ..., "pagination": ...}``
on success and ``{"success": false, "error": ...}`` on failure.
"""

import math
from typing import Any, Optional

from fastapi import Query

MAX_PAGE_SIZE = 100


class PageParams:
    """Resolved ``page``/``limit`` query parameters."""

    def __init__(self, page: int, limit: int):
        self.page = page
        self.limit = limit

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def apply(self, query):
        return query.offset(self.offset).limit(self.limit)

    def meta(self, total: int) -> dict:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": total,
            "pages": math.ceil(total / self.limit) if self.limit else 0,
        }


def page_params(default_limit: int = 10):
    """Build a dependency that parses pagination query parameters."""

    def dependency(
        page: int = Query(1, ge=1, description="Page number, starting at 1"),
        limit: int = Query(default_limit, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
    ) -> PageParams:
        return PageParams(page, limit)

    return dependency


def ok(data: Any = None, message: Optional[str] = None, pagination: Optional[dict] = None) -> dict:
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def error_body(error: str, details: Any = None) -> dict:
    body = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    return body
