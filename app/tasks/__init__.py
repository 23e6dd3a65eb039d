from .cron import dispatch_scheduled_notifications_task

__all__ = ["dispatch_scheduled_notifications_task"]
