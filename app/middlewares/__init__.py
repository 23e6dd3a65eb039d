from .auth_middleware import HeaderAuthMiddleware, get_caller_context
from .request_id_middleware import RequestIDMiddleware

__all__ = [
    "HeaderAuthMiddleware",
    "RequestIDMiddleware",
    "get_caller_context",
]
