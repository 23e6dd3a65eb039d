import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.db.models import ChannelType, UserNotification
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger

logger = get_logger()

SessionFactory = Callable[[], Session]


class BaseChannelAdapter(ABC):
    """Sends one notification to one user over one channel"""

    def __init__(self, session_factory: SessionFactory, channel: str):
        self.session_factory = session_factory
        self.channel = channel

    @abstractmethod
    async def send(
        self, user_id: str, notification_type: str, payload: Dict[str, Any]
    ) -> bool:
        """Return True when delivered. False or an exception means the delivery failed."""
        pass


class LogChannelAdapter(BaseChannelAdapter):
    """Stand-in transport for mail, SMS and push that records the send in the application log"""

    async def send(
        self, user_id: str, notification_type: str, payload: Dict[str, Any]
    ) -> bool:
        # Yield so deliveries interleave like real network I/O
        await asyncio.sleep(0)
        logger.info(
            f"[{self.channel}] {notification_type} -> user {user_id}: "
            f"{payload.get('subject') or payload.get('title') or notification_type}"
        )
        return True


class InAppChannelAdapter(BaseChannelAdapter):
    """Writes the notification into the user's in-app inbox"""

    async def send(
        self, user_id: str, notification_type: str, payload: Dict[str, Any]
    ) -> bool:
        def _write_sync():
            with self.session_factory() as db_session:
                db_session.add(
                    UserNotification(
                        user_id=user_id,
                        notification_type=notification_type,
                        payload=json.dumps(payload),
                        delivered_at=naive_utc_now(),
                    )
                )
                db_session.commit()

        # Runs in the thread pool so the dispatcher's timeout can abandon a slow write
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _write_sync)
        return True


def create_log_adapter(session_factory: SessionFactory, channel: str) -> BaseChannelAdapter:
    return LogChannelAdapter(session_factory, channel)


def create_in_app_adapter(
    session_factory: SessionFactory, channel: str
) -> BaseChannelAdapter:
    return InAppChannelAdapter(session_factory, channel)


AdapterFactory = Callable[[SessionFactory, str], BaseChannelAdapter]


class ChannelAdapterRegistry:
    """Registry for channel adapter creation"""

    # Map channel codes to factory functions
    _default_factories: Dict[str, AdapterFactory] = {
        ChannelType.MAIL.value: create_log_adapter,
        ChannelType.SMS.value: create_log_adapter,
        ChannelType.PUSH.value: create_log_adapter,
        ChannelType.DATABASE.value: create_in_app_adapter,
    }

    def __init__(self, factories: Optional[Dict[str, AdapterFactory]] = None):
        self._factories: Dict[str, AdapterFactory] = dict(self._default_factories)
        if factories:
            self._factories.update(factories)

    def create_adapter(
        self, channel: str, session_factory: SessionFactory
    ) -> Optional[BaseChannelAdapter]:
        """Create adapter instance for channel code"""
        factory = self._factories.get(channel)
        if factory:
            return factory(session_factory, channel)

        logger.warning(f"No adapter registered for channel: {channel}")
        return None
