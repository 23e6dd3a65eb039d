import asyncio

from app.celery import celery
from app.services.notifications.dispatcher import NotificationDispatcher
from app.utils.context import request_id_scope
from app.utils.logging import get_logger


@celery.task(bind=True)
def dispatch_scheduled_notifications_task(self, request_id: str):
    """
    Minutely task that fires every scheduled notification whose next occurrence is due.

    Overlapping runs are safe: each record is claimed atomically before it is
    processed, so a slow run and the next tick never fire the same occurrence.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_dispatch_scheduled_notifications(request_id))


async def _async_dispatch_scheduled_notifications(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    with request_id_scope(request_id):
        try:
            report = await NotificationDispatcher().process_due()

            return {
                "success": True,
                "request_id": request_id,
                **report.model_dump(by_alias=False, exclude={"failures"}),
                "failure_count": len(report.failures),
            }

        except Exception as e:
            logger.error(
                f"Scheduled notification dispatcher task exception: {e}",
            )

            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }
