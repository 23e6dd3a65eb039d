from fastapi import APIRouter

from app.routers.health import health_router
from app.routers.scheduled_notifications import scheduled_notifications_router

main_router = APIRouter()

# Include domain-based routers
main_router.include_router(health_router, prefix="/health", tags=["Health Checks"])
main_router.include_router(
    scheduled_notifications_router,
    prefix="/scheduled-notifications",
    tags=["Scheduled Notifications"],
)
