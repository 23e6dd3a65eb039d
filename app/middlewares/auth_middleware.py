from typing import Callable, FrozenSet, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.config.settings import settings
from app.services.notifications.authorization import CallerContext
from app.utils.errors import AuthenticationError
from app.utils.responses import ResponseBuilder
from app.utils.logging import get_logger

logger = get_logger()


class AuthState:
    """Authentication state to be stored in request.state"""

    def __init__(
        self,
        user_id: str,
        roles: FrozenSet[str],
        is_authenticated: bool = True,
    ):
        self.user_id = user_id
        self.roles = roles
        self.is_authenticated = is_authenticated


class HeaderAuthMiddleware(BaseHTTPMiddleware):
    """
    Reads the caller identity forwarded by the upstream gateway.

    The gateway authenticates the user and sets the user id and a
    comma-separated role list on every request it proxies.
    """

    EXCLUDED_PATHS = {
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
        f"{settings.API_PREFIX}/health",
    }

    def __init__(self, app, excluded_paths: Optional[set] = None):
        super().__init__(app)
        self.excluded_paths = set(self.EXCLUDED_PATHS)
        if excluded_paths:
            self.excluded_paths.update(excluded_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request through authentication middleware"""
        if self._should_skip_auth(request):
            return await call_next(request)

        user_id = (request.headers.get(settings.AUTH_USER_ID_HEADER) or "").strip()
        if not user_id:
            logger.warning(f"Missing {settings.AUTH_USER_ID_HEADER} header on {request.url.path}")
            return ResponseBuilder.error(
                request=request,
                message="Not authenticated",
                error_code="UNAUTHORIZED",
                status_code=401,
            )

        roles_header = request.headers.get(settings.AUTH_USER_ROLES_HEADER) or ""
        request.state.auth = AuthState(
            user_id=user_id,
            roles=frozenset(r.strip() for r in roles_header.split(",") if r.strip()),
        )
        return await call_next(request)

    def _should_skip_auth(self, request: Request) -> bool:
        """Check if the request should skip authentication."""
        return request.method == "OPTIONS" or self._is_excluded_path(request.url.path)

    def _is_excluded_path(self, path: str) -> bool:
        """Check if path is excluded from authentication"""
        return any(path.startswith(excluded) for excluded in self.excluded_paths)


# Dependency for getting the caller from request state
def get_caller_context(request: Request) -> CallerContext:
    """Dependency to get the authenticated caller from request state"""
    auth_state = getattr(request.state, "auth", None)

    if not auth_state or not auth_state.is_authenticated:
        raise AuthenticationError("Not authenticated", "NOT_AUTHENTICATED")

    return CallerContext(user_id=auth_state.user_id, roles=auth_state.roles)
