"""
Shared-secret authentication for the render worker's internal API.

/plans/* and /render/* require an X-Worker-Secret header matching
WORKER_SHARED_SECRET. The provider webhook is authenticated separately by
its callback token, and /health and /metrics stay public.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/plans", "/render")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, secret: str = None, environment: str = None):
        super().__init__(app)
        self.secret = os.environ.get("WORKER_SHARED_SECRET", "") if secret is None else secret
        self.environment = os.environ.get("ENVIRONMENT", "development") if environment is None else environment

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self.secret:
            # Development without a secret: allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
