from .authorization import (
    AuthorizationGate,
    CallerContext,
    RoleBasedAuthorizationGate,
    ScheduledNotificationAction,
)
from .channels import BaseChannelAdapter, ChannelAdapterRegistry
from .dispatcher import NotificationDispatcher
from .recipient_resolver import RecipientResolver
from .scheduled_notification_service import (
    ScheduledNotificationService,
    get_scheduled_notification_service,
)

__all__ = [
    "AuthorizationGate",
    "CallerContext",
    "RoleBasedAuthorizationGate",
    "ScheduledNotificationAction",
    "BaseChannelAdapter",
    "ChannelAdapterRegistry",
    "NotificationDispatcher",
    "RecipientResolver",
    "ScheduledNotificationService",
    "get_scheduled_notification_service",
]
