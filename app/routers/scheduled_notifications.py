from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Request, status

from app.middlewares.auth_middleware import get_caller_context
from app.services.notifications.authorization import CallerContext
from app.services.notifications.scheduled_notification_service import (
    ScheduledNotificationService,
    get_scheduled_notification_service,
)
from app.schemas.scheduled_notification_schemas import (
    CreateScheduledNotificationRequest,
    UpdateScheduledNotificationRequest,
    ScheduledNotificationListQueryParams,
)
from app.utils.responses import ResponseBuilder

scheduled_notifications_router = APIRouter()


# API Endpoints
@scheduled_notifications_router.get(
    "/",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="List scheduled notifications",
    description="Filter by status, type, next occurrence range and creator. Non-admins only see their own records.",
)
async def list_scheduled_notifications(
    request: Request,
    query_params: Annotated[ScheduledNotificationListQueryParams, Depends()],
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    items, total = await service.list(query_params, caller)

    return ResponseBuilder.paginated(
        request=request,
        data=[item.model_dump(by_alias=True) for item in items],
        page=query_params.page,
        per_page=query_params.per_page,
        total=total,
        message=f"{total} scheduled notification{'s' if total != 1 else ''} found",
    )


@scheduled_notifications_router.post(
    "/",
    response_model=None,
    status_code=status.HTTP_201_CREATED,
    summary="Schedule a notification",
)
async def create_scheduled_notification(
    request: Request,
    data: CreateScheduledNotificationRequest,
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    """Create a pending scheduled notification with its first occurrence computed"""
    response = await service.create(data, caller)

    return ResponseBuilder.success(
        request=request,
        data=response.model_dump(by_alias=True),
        message="Scheduled notification created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@scheduled_notifications_router.get(
    "/stats",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Scheduled notification statistics (admin only)",
)
async def get_scheduled_notification_stats(
    request: Request,
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    stats = await service.stats(caller)

    return ResponseBuilder.success(
        request=request,
        data=stats.model_dump(by_alias=True),
        message="Scheduled notification statistics retrieved successfully",
    )


@scheduled_notifications_router.get(
    "/upcoming",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Pending scheduled notifications in firing order",
)
async def get_upcoming_scheduled_notifications(
    request: Request,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    items = await service.upcoming(caller, limit)

    return ResponseBuilder.success(
        request=request,
        data=[item.model_dump(by_alias=True) for item in items],
        message="Upcoming scheduled notifications retrieved successfully",
    )


@scheduled_notifications_router.get(
    "/{notification_id}",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Get a scheduled notification",
    description="Includes a preview of the next few occurrences while pending.",
)
async def get_scheduled_notification(
    request: Request,
    notification_id: Annotated[str, Path(description="Scheduled notification ID")],
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    response = await service.get(notification_id, caller)

    return ResponseBuilder.success(
        request=request,
        data=response.model_dump(by_alias=True),
        message="Scheduled notification retrieved successfully",
    )


@scheduled_notifications_router.put(
    "/{notification_id}",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Update a pending scheduled notification",
)
async def update_scheduled_notification(
    request: Request,
    data: UpdateScheduledNotificationRequest,
    notification_id: Annotated[str, Path(description="Scheduled notification ID")],
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    response = await service.update(notification_id, data, caller)

    return ResponseBuilder.success(
        request=request,
        data=response.model_dump(by_alias=True),
        message="Scheduled notification updated successfully",
    )


@scheduled_notifications_router.post(
    "/{notification_id}/cancel",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Cancel a pending scheduled notification",
)
async def cancel_scheduled_notification(
    request: Request,
    notification_id: Annotated[str, Path(description="Scheduled notification ID")],
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    response = await service.cancel(notification_id, caller)

    return ResponseBuilder.success(
        request=request,
        data=response.model_dump(by_alias=True),
        message="Scheduled notification cancelled successfully",
    )


@scheduled_notifications_router.delete(
    "/{notification_id}",
    response_model=None,
    status_code=status.HTTP_200_OK,
    summary="Delete a finished scheduled notification",
)
async def delete_scheduled_notification(
    request: Request,
    notification_id: Annotated[str, Path(description="Scheduled notification ID")],
    caller: CallerContext = Depends(get_caller_context),
    service: ScheduledNotificationService = Depends(get_scheduled_notification_service),
):
    result = await service.delete(notification_id, caller)

    return ResponseBuilder.success(
        request=request,
        data=result,
        message="Scheduled notification deleted successfully",
    )
