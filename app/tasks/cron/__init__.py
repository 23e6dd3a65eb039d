from .scheduled_notification_dispatcher import dispatch_scheduled_notifications_task

__all__ = [
    "dispatch_scheduled_notifications_task",
]
