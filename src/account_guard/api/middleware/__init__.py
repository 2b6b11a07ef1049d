"""API middleware — auth, CORS."""

from account_guard.api.middleware.auth import AuthType, CallerContext
from account_guard.api.middleware.cors import setup_cors

__all__ = ["AuthType", "CallerContext", "setup_cors"]
