from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.schemas.response_schemas import ApiResponse, PaginationMeta, ResponseStatus


def _envelope_extras(request: Request) -> Dict[str, Any]:
    extras: Dict[str, Any] = {"path": str(request.url.path)}
    # Set by RequestIDMiddleware; a fresh id is generated when it is missing
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        extras["request_id"] = request_id
    return extras


class ResponseBuilder:
    """Builds the JSON envelope returned by every endpoint"""

    @staticmethod
    def _render(response: ApiResponse, status_code: int) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=response.model_dump(exclude_none=True, by_alias=True),
        )

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        pagination: Optional[PaginationMeta] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        response = ApiResponse(
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
            pagination=pagination,
            **_envelope_extras(request),
        )
        return ResponseBuilder._render(response, status_code)

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        """Error envelope. `error_code` is placed in meta so clients can branch on it."""
        response_meta = dict(meta or {})
        if error_code:
            response_meta["error_code"] = error_code

        response = ApiResponse(
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            meta=response_meta or None,
            errors=errors,
            **_envelope_extras(request),
        )
        return ResponseBuilder._render(response, status_code)

    @staticmethod
    def paginated(
        request: Request,
        data: List[Any],
        page: int,
        per_page: int,
        total: int,
        message: str = "Data retrieved successfully",
    ) -> JSONResponse:
        return ResponseBuilder.success(
            request=request,
            data=data,
            message=message,
            pagination=PaginationMeta.for_page(page, per_page, total),
        )
